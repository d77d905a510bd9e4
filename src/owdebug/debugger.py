"""Debugger session orchestrator.

State machine::

    IDLE → STARTING → RUNNING → STOPPING → STOPPED
               │          │
               └──────────┴──→ FAILED (terminal)

Two loops run while the session is RUNNING:

- the relay loop claims one invocation, runs it in the sandbox and reports
  the result before claiming the next, so invocations are handled strictly
  one at a time in claim order;
- the watch loop turns debounced source changes into reloads.

Invocations and reloads both take the exec lock, so a reload never swaps
the sources underneath a running invocation.  State transitions are
serialized by a separate lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
from typing import Any, Protocol

import aiohttp

from owdebug.build import run_build
from owdebug.config import Settings
from owdebug.container import ContainerManager, SandboxOptions, collect_passthrough_env
from owdebug.errors import (
    BuildError,
    ContainerError,
    RelayFatalError,
    RemoteActionError,
    ResolutionError,
)
from owdebug.kinds import get_kind, infer_kind, kind_name, resolve
from owdebug.logger import logger
from owdebug.relay import RelayClient
from owdebug.runtime import SandboxHandle, SandboxRuntime, get_runtime
from owdebug.types import DebuggerState, SourcePayload
from owdebug.utils import create_background_task
from owdebug.watcher import Watcher


class RemoteAction(Protocol):
    """The deployed action as seen by a debugging session."""

    @property
    def relay_url(self) -> str: ...
    @property
    def session(self) -> aiohttp.ClientSession | None: ...

    async def install(self) -> None: ...
    async def restore(self) -> None: ...
    def original_source(self) -> tuple[str, str, bool]: ...
    async def trigger(self, params: dict[str, Any]) -> None: ...
    async def close(self) -> None: ...


class Debugger:
    """One debugging session for one action."""

    def __init__(
        self,
        settings: Settings,
        *,
        remote: RemoteAction,
        runtime: SandboxRuntime | None = None,
        watcher: Watcher | None = None,
        relay: RelayClient | None = None,
        container: ContainerManager | None = None,
    ) -> None:
        self._settings = settings
        self._remote = remote
        self._runtime = runtime
        self._watcher = watcher or Watcher(settings.watch.debounce)
        self._relay = relay
        self._container = container

        self._state = DebuggerState.IDLE
        self._state_lock = asyncio.Lock()
        self._exec_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._torn_down = False
        self._stop_requested = False
        self._starting: asyncio.Task[None] | None = None
        self._fatal: BaseException | None = None

        self._kind: str | None = None
        self._handle: SandboxHandle | None = None
        self._payload: SourcePayload | None = None
        self.last_reload_error: Exception | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> DebuggerState:
        return self._state

    @property
    def payload(self) -> SourcePayload | None:
        """The payload currently mounted in the sandbox."""
        return self._payload

    @property
    def has_local_source(self) -> bool:
        return bool(self._settings.action.source_path or self._settings.build.command)

    def _set_state(self, state: DebuggerState) -> None:
        if state is self._state:
            return
        logger.info("Debugger state changed", old=self._state.value, new=state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Install the relay stub, load sources, and start the sandbox.

        A :meth:`stop` issued while starting interrupts the start; the
        session then ends STOPPED and this returns without raising.
        """
        async with self._state_lock:
            if self._state is not DebuggerState.IDLE:
                raise RuntimeError(f"Cannot start a session in state {self._state.value}")
            self._set_state(DebuggerState.STARTING)
            self._starting = asyncio.create_task(self._start(), name="owdebug-start")
            try:
                await self._starting
            except asyncio.CancelledError as exc:
                current = asyncio.current_task()
                if not self._stop_requested or (current is not None and current.cancelling()):
                    await self._abort_start(exc)
                    raise
                logger.info("Start interrupted by stop", action=self._settings.action.name)
                await self._teardown()
                self._set_state(DebuggerState.STOPPED)
                self._stopped.set()
                return
            except BaseException as exc:
                await self._abort_start(exc)
                raise
            finally:
                self._starting = None
            self._set_state(DebuggerState.RUNNING)

    async def _abort_start(self, exc: BaseException) -> None:
        logger.error("Debugger failed to start", err=str(exc))
        self._fatal = exc
        await self._teardown()
        self._set_state(DebuggerState.FAILED)
        self._stopped.set()

    async def _start(self) -> None:
        s = self._settings
        await self._remote.install()
        remote_kind, code, binary = self._remote.original_source()

        if self.has_local_source:
            entry = s.action.source_path or s.build_config.artifact_path  # type: ignore[union-attr]
            self._kind = kind_name(s.action.kind or remote_kind or infer_kind(entry))
            get_kind(self._kind)
            payload = await self._load_payload()
        else:
            self._kind = kind_name(s.action.kind or remote_kind)
            if binary:
                raise ResolutionError(
                    f"Action {s.action.name} is deployed as an archive; pass its local sources"
                )
            payload = get_kind(self._kind).wrap_remote(code)

        if self._container is None:
            runtime = self._runtime or get_runtime(s.container.runtime)
            if not runtime.is_available():
                raise ContainerError(f"The {runtime.name} CLI was not found on PATH")
            await asyncio.to_thread(runtime.ensure_running)
            self._container = ContainerManager(
                runtime, SandboxOptions.from_settings(s, self._kind)
            )
        if self._relay is None:
            self._relay = RelayClient(self._remote.session, self._remote.relay_url, s.relay)

        env = collect_passthrough_env(s.container.passthrough_env, os.environ)
        self._handle = await self._container.start(payload, env)
        self._payload = payload
        logger.info(
            "Debugger started",
            action=s.action.name,
            kind=self._kind,
            entry=payload.entry_path,
            dependencies=len(payload.dependencies),
        )

    def run(self) -> None:
        """Spawn the relay and watch loops. Call once, after :meth:`start`."""
        if self._state is not DebuggerState.RUNNING:
            raise RuntimeError(f"Cannot run a session in state {self._state.value}")
        if self._tasks:
            raise RuntimeError("Debugger is already running")
        self._tasks.append(asyncio.create_task(self._relay_loop(), name="owdebug-relay"))
        if self.has_local_source:
            self._tasks.append(asyncio.create_task(self._watch_loop(), name="owdebug-watch"))

    async def stop(self) -> None:
        """Tear the session down. Idempotent and safe from any state."""
        self._stop_requested = True
        if self._starting is not None:
            self._starting.cancel()
        async with self._state_lock:
            if self._torn_down:
                return
            failed = self._state is DebuggerState.FAILED
            if not failed:
                self._set_state(DebuggerState.STOPPING)
            # let an in-flight invocation or reload finish first
            async with self._exec_lock:
                await self._cancel_tasks()
            await self._teardown()
            if not failed:
                self._set_state(DebuggerState.STOPPED)
            self._stopped.set()

    async def wait(self) -> None:
        """Block until the session has stopped; re-raise a fatal error."""
        await self._stopped.wait()
        if self._state is DebuggerState.FAILED and self._fatal is not None:
            raise self._fatal

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _teardown(self) -> None:
        self._torn_down = True
        if self._container is not None:
            await self._container.stop(self._handle)
        self._handle = None
        try:
            await self._remote.restore()
        except RemoteActionError as exc:
            logger.error(
                "Could not restore the original action",
                action=self._settings.action.name,
                err=str(exc),
            )
        if self._relay is not None:
            await self._relay.close()
        await self._remote.close()

    async def _fail(self, exc: BaseException) -> None:
        async with self._state_lock:
            if self._state is not DebuggerState.RUNNING:
                return
            self._fatal = exc
            self._set_state(DebuggerState.FAILED)
        create_background_task(self.stop(), name="owdebug-stop")

    # ------------------------------------------------------------------
    # Relay loop
    # ------------------------------------------------------------------

    async def _relay_loop(self) -> None:
        assert self._relay is not None and self._container is not None
        try:
            while True:
                request = await self._relay.next_invocation()
                async with self._exec_lock:
                    assert self._handle is not None
                    result = await self._container.invoke(self._handle, request)
                if not result.ok:
                    logger.warning(
                        "Invocation failed",
                        activation_id=request.activation_id,
                        kind=result.error_kind,
                        message=result.error_message,
                    )
                await self._relay.report(request.activation_id, result)
        except RelayFatalError as exc:
            logger.error("Relay failed; stopping the session", err=str(exc))
            await self._fail(exc)
        except Exception as exc:
            logger.exception("Relay loop crashed")
            await self._fail(exc)

    # ------------------------------------------------------------------
    # Source pipeline
    # ------------------------------------------------------------------

    async def _load_payload(self) -> SourcePayload:
        """Build (when configured) and resolve the current sources."""
        s = self._settings
        root = s.project_root
        entry: str | Path | None = s.action.source_path
        build = s.build_config
        if build is not None:
            entry = await run_build(build, root)
        assert entry is not None
        return await asyncio.to_thread(
            resolve, entry, root, kind=self._kind, binary=s.action.binary
        )

    async def reload_now(self) -> bool:
        """Run the source pipeline once and hot swap the result.

        Build, resolution and sandbox errors are logged and kept in
        :attr:`last_reload_error`; the previous payload stays mounted.
        Returns whether the sandbox now runs the new sources.
        """
        if self._state is not DebuggerState.RUNNING or self._container is None:
            return False
        try:
            payload = await self._load_payload()
            async with self._exec_lock:
                if self._state is not DebuggerState.RUNNING or self._handle is None:
                    return False
                await self._container.reload(self._handle, payload)
        except (BuildError, ResolutionError, ContainerError) as exc:
            self.last_reload_error = exc
            logger.warning(
                "Reload skipped; previous sources stay mounted",
                error_type=type(exc).__name__,
                err=str(exc),
            )
            return False

        self._payload = payload
        self.last_reload_error = None
        params = self._settings.action.invoke_params
        if params is not None:
            create_background_task(self._trigger(params), name="owdebug-trigger")
        return True

    async def _trigger(self, params: dict[str, Any]) -> None:
        try:
            await self._remote.trigger(params)
        except RemoteActionError as exc:
            logger.warning("Could not trigger the action", err=str(exc))

    def _watch_set(self) -> tuple[list[Path], list[Path]]:
        s = self._settings
        root = s.project_root
        ignore = [root / p for p in s.watch.ignore]
        build = s.build_config
        if build is not None:
            artifact = (root / build.artifact_path).resolve()
            out_dir = artifact.parent
            source = (root / s.action.source_path).resolve() if s.action.source_path else None
            if out_dir != root and not (source and source.is_relative_to(out_dir)):
                ignore.append(out_dir)
            else:
                ignore.append(artifact)
            return [root], ignore
        assert self._payload is not None
        return [root / f for f in self._payload.files], ignore

    async def _watch_loop(self) -> None:
        resync = False
        try:
            while True:
                paths, ignore = self._watch_set()
                watched = self._payload.files if self._payload else ()
                restart = False
                # after a restart, reload once more for edits made between observers
                async with contextlib.aclosing(
                    self._watcher.watch(paths, ignore=ignore, resync=resync)
                ) as batches:
                    async for _batch in batches:
                        await self.reload_now()
                        tracks_files = self._settings.build.command is None
                        if tracks_files and self._payload and self._payload.files != watched:
                            logger.debug("Dependency set changed; restarting watch")
                            restart = resync = True
                            break
                if not restart:
                    return
        except Exception as exc:
            logger.exception("Watch loop crashed")
            await self._fail(exc)
