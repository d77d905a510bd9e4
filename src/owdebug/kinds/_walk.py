"""Dependency walking and payload packaging shared by all source kinds.

A kind only has to know how to find the local imports of one file, how to
classify its entry file, and how to generate bootstrap code.  Everything
else (entry lookup, cycle-safe traversal, path normalization, archive
layout) lives here so every kind behaves the same way.
"""

from __future__ import annotations

import io
import zipfile
from collections.abc import Callable, Iterable
from pathlib import Path

from owdebug.errors import ResolutionError
from owdebug.types import SourcePayload

# find_imports(file, root, entry_dir): local files that *file* imports.
FindImports = Callable[[Path, Path, Path], Iterable[Path]]

# Fixed timestamp so identical sources produce byte-identical archives.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def to_posix(path: str | Path) -> str:
    """Return *path* with forward slashes only.

    Generated code runs in a Linux sandbox, so this is applied to every
    embedded path even when the host hands us back-slash paths.
    """
    return str(path).replace("\\", "/")


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def relative_posix(path: Path, root: Path) -> str:
    return to_posix(path.relative_to(root).as_posix())


def locate_entry(entry: str | Path, root: Path) -> tuple[Path, str]:
    """Resolve *entry* against *root*; return (absolute file, relative posix path)."""
    root = root.resolve()
    candidate = Path(to_posix(entry))
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()
    if not candidate.is_file():
        raise ResolutionError(f"Entry file not found: {entry}")
    if not is_within(candidate, root):
        raise ResolutionError(f"Entry file {entry} is outside the project root {root}")
    return candidate, relative_posix(candidate, root)


def walk_dependencies(entry: Path, root: Path, find_imports: FindImports) -> list[Path]:
    """Depth-first list of every local file reachable from *entry*.

    Each file appears once, in first-visit order.  The entry itself is not
    included.  Cycles terminate because visited files are keyed by their
    canonical path.
    """
    root = root.resolve()
    entry = entry.resolve()
    entry_dir = entry.parent
    visited: set[Path] = {entry}
    ordered: list[Path] = []

    def visit(file: Path) -> None:
        for dep in find_imports(file, root, entry_dir):
            dep = dep.resolve()
            if dep in visited or not is_within(dep, root):
                continue
            visited.add(dep)
            ordered.append(dep)
            visit(dep)

    visit(entry)
    return ordered


def read_source(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ResolutionError(f"Cannot read {path}: {exc}") from exc


def build_archive(files: Iterable[tuple[str, bytes]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in files:
            info = zipfile.ZipInfo(to_posix(name), date_time=_ZIP_EPOCH)
            info.external_attr = 0o644 << 16
            zf.writestr(info, data, compress_type=zipfile.ZIP_DEFLATED)
    return buf.getvalue()


def package(
    entry: str | Path,
    root: Path,
    *,
    kind: str,
    binary: bool,
    bootstrap_name: str,
    find_imports: FindImports,
    classify: Callable[[str, str], str],
    wrap_source: Callable[[str, str, str], str],
    make_bootstrap: Callable[[str, str], str],
) -> SourcePayload:
    """Resolve *entry* into a SourcePayload using the given kind callbacks.

    ``classify(text, rel)`` returns the entry style ("script" or "module"),
    ``wrap_source(text, rel, style)`` produces single-file code and
    ``make_bootstrap(rel, style)`` produces the archive's bootstrap file.
    """
    root = root.resolve()
    entry_file, entry_rel = locate_entry(entry, root)
    text = read_source(entry_file)
    style = classify(text, entry_rel)

    deps = walk_dependencies(entry_file, root, find_imports)
    dep_rels = tuple(relative_posix(d, root) for d in deps)

    if not deps and not binary:
        return SourcePayload(
            entry_path=entry_rel,
            code=wrap_source(text, entry_rel, style).encode("utf-8"),
            is_binary=False,
            kind=kind,
        )

    files = [(bootstrap_name, make_bootstrap(entry_rel, style).encode("utf-8"))]
    files.append((entry_rel, entry_file.read_bytes()))
    files.extend((rel, dep.read_bytes()) for rel, dep in zip(dep_rels, deps, strict=True))
    return SourcePayload(
        entry_path=entry_rel,
        code=build_archive(files),
        is_binary=True,
        kind=kind,
        dependencies=dep_rels,
    )
