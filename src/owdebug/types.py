"""Data models for owdebug."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

ActivationId = str


@dataclass(frozen=True)
class InvocationRequest:
    """Parameters for one claimed invocation, tied to its activation."""

    activation_id: ActivationId
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvocationResult:
    ok: bool
    value: dict[str, Any] = field(default_factory=dict)
    error_kind: str | None = None
    error_message: str | None = None

    @classmethod
    def success(cls, value: dict[str, Any] | None) -> InvocationResult:
        return cls(ok=True, value=dict(value or {}))

    @classmethod
    def failure(cls, kind: str, message: str) -> InvocationResult:
        return cls(ok=False, error_kind=kind, error_message=message)

    def to_report_fields(self) -> dict[str, Any]:
        """Fields merged into the report body next to ``$activationId``."""
        if self.ok:
            return dict(self.value)
        return {"error": {"kind": self.error_kind, "message": self.error_message}}


@dataclass(frozen=True)
class SourcePayload:
    """Immutable, mount-ready snapshot of the function source.

    ``entry_path`` and ``dependencies`` are project-relative and always use
    forward slashes.  When ``is_binary`` is set, ``code`` is a zip archive.
    """

    entry_path: str
    code: bytes
    is_binary: bool
    kind: str
    dependencies: tuple[str, ...] = ()

    @property
    def files(self) -> tuple[str, ...]:
        return (self.entry_path, *self.dependencies)


class DebuggerState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class BuildConfig:
    command: str
    artifact_path: str
    timeout: float = 300.0


@dataclass(frozen=True)
class ChangeBatch:
    """Debounced set of paths that changed since the previous batch."""

    paths: frozenset[Path]


# --- Claim outcomes (discriminated result of a single claim call) ---


@dataclass(frozen=True)
class Claimed:
    request: InvocationRequest


@dataclass(frozen=True)
class Pending:
    """Nothing pending yet; re-claim immediately."""


@dataclass(frozen=True)
class GiveUp:
    """The stub timed out waiting; back off before the next claim."""


ClaimResult = Claimed | Pending | GiveUp
