"""Source kinds: per-runtime bundling rules.

Each kind is a module exposing the same functions (see :class:`SourceKind`);
the one to use is picked by a static lookup on the declared kind, e.g. the
``exec.kind`` of the remote action (``nodejs:18`` → ``nodejs``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from owdebug.errors import ResolutionError
from owdebug.kinds import nodejs, python
from owdebug.kinds._walk import to_posix
from owdebug.types import SourcePayload


class SourceKind(Protocol):
    NAME: str
    BOOTSTRAP_NAME: str
    SUFFIXES: tuple[str, ...]

    def resolve(self, entry: str | Path, root: Path, *, binary: bool = False) -> SourcePayload: ...
    def wrap_remote(self, code: str) -> SourcePayload: ...
    def loader(self, mount_path: str) -> str: ...


_KINDS: dict[str, SourceKind] = {
    nodejs.NAME: nodejs,  # type: ignore[dict-item]
    python.NAME: python,  # type: ignore[dict-item]
}


def kind_name(declared: str) -> str:
    """Strip the runtime version: ``nodejs:18`` → ``nodejs``."""
    return declared.split(":", 1)[0].strip().lower()


def get_kind(declared: str) -> SourceKind:
    try:
        return _KINDS[kind_name(declared)]
    except KeyError:
        raise ResolutionError(f"Unsupported action kind: {declared}") from None


def infer_kind(entry: str | Path) -> str:
    suffix = Path(to_posix(entry)).suffix.lower()
    for name, kind in _KINDS.items():
        if suffix in kind.SUFFIXES:
            return name
    raise ResolutionError(f"Cannot infer the action kind of {entry}; set action.kind")


def resolve(
    entry: str | Path,
    root: Path,
    *,
    kind: str | None = None,
    binary: bool = False,
) -> SourcePayload:
    """Resolve *entry* under *root* into a mount-ready SourcePayload."""
    return get_kind(kind or infer_kind(entry)).resolve(entry, root, binary=binary)


__all__ = ["SourceKind", "get_kind", "infer_kind", "kind_name", "resolve", "to_posix"]
