"""Error taxonomy.

Which errors end a session and which are only reported:

- ResolutionError: fatal to ``Debugger.start()``; skips one reload otherwise.
- BuildError: skips one reload; the previous payload stays mounted.
- RelayTransientError: retried by the relay client while running.
- RelayFatalError: the session fails and stops itself.
- ExecutionError: reported back to the caller through the relay.
- ContainerError: fatal on start, skips one reload, logged on stop.
"""

from __future__ import annotations


class OwDebugError(Exception):
    """Base class for all owdebug errors."""


class ResolutionError(OwDebugError):
    """Entry file or a required local dependency could not be resolved."""


class BuildError(OwDebugError):
    """External build command failed, timed out, or could not be started."""

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RelayError(OwDebugError):
    """Base class for relay protocol failures."""


class RelayTransientError(RelayError):
    """Claim or report failed in a way that is worth retrying."""


class RelayFatalError(RelayError):
    """Relay gave up: report retries exhausted or the stub kept giving up."""


class ExecutionError(OwDebugError):
    """The function itself failed inside the sandbox."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message


class ContainerError(OwDebugError):
    """Sandbox could not be started, reloaded, or stopped."""


class RemoteActionError(OwDebugError):
    """Remote platform API call failed (fetch, install, restore, trigger)."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
