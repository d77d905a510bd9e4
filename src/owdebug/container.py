"""Local execution sandbox: start, hot swap, invoke, stop.

The sandbox runs a stock action runtime image.  It is initialized once with
a small loader (see ``owdebug.kinds.*.loader``) that executes whatever
revision the ``current`` symlink in the mounted staging directory points at,
resolving the link once per run.  A reload writes the new payload into a
fresh ``rev-<n>`` directory and then swaps the symlink with ``os.replace``,
so a run sees either the old revision or the new one in full.

Staging layout on the host (mounted read-only at ``mount_path``)::

    <staging>/rev-3/__owdebug_main__.js
    <staging>/rev-3/lib/action.js
    <staging>/current -> rev-3
"""

from __future__ import annotations

import asyncio
import io
import os
import re
import shutil
import tempfile
import time
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp

from owdebug.errors import ContainerError, ExecutionError
from owdebug.kinds import get_kind
from owdebug.logger import logger
from owdebug.runtime import SandboxHandle, SandboxRuntime, SandboxSpec
from owdebug.types import InvocationRequest, InvocationResult, SourcePayload

if TYPE_CHECKING:
    from owdebug.config import Settings

CURRENT_LINK = "current"


def collect_passthrough_env(
    mapping: Mapping[str, str],
    environ: Mapping[str, str],
) -> dict[str, str]:
    """Snapshot the host variables named in *mapping* under their sandbox names."""
    return {target: environ[source] for source, target in mapping.items() if source in environ}


def container_name(action: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9_.-]+", "-", action).strip("-") or "action"
    return f"owdebug-{slug}-{os.getpid()}"


@dataclass(frozen=True)
class SandboxOptions:
    image: str
    name: str = "owdebug-sandbox"
    mount_path: str = "/owdebug"
    staging_dir: Path | None = None  # None → temp dir removed on stop
    host_ip: str = "127.0.0.1"
    debug_port: int | None = None
    host_debug_port: int | None = None
    invoke_timeout: float = 60.0
    start_timeout: float = 30.0

    @classmethod
    def from_settings(cls, s: Settings, kind: str) -> SandboxOptions:
        c = s.container
        image = c.image or c.images.get(kind)
        if not image:
            raise ContainerError(f"No sandbox image configured for kind {kind!r}")
        debug_port = c.debug_ports.get(kind)
        return cls(
            image=image,
            name=container_name(s.action.name),
            mount_path=c.mount_path,
            staging_dir=Path(c.staging_dir) if c.staging_dir else None,
            host_ip=s.host_ip,
            debug_port=debug_port,
            host_debug_port=c.port if debug_port else None,
            invoke_timeout=c.invoke_timeout,
            start_timeout=c.start_timeout,
        )


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or error)
    return str(error)


def check_run_response(status: int, body: Any) -> dict[str, Any]:
    """Validate an action proxy ``/run`` response; raise ExecutionError on failure."""
    if not isinstance(body, dict):
        raise ExecutionError("invalid_result", f"Action returned non-object result: {body!r}")
    if "error" in body:
        raise ExecutionError("execution", _error_message(body["error"]))
    if status != 200:
        raise ExecutionError("execution", f"Action proxy answered HTTP {status}")
    return body


class ContainerManager:
    """Owns the sandbox handle and the currently mounted payload."""

    def __init__(self, runtime: SandboxRuntime, options: SandboxOptions) -> None:
        self._runtime = runtime
        self._options = options
        self._owns_staging = options.staging_dir is None
        self._staging = options.staging_dir or Path(tempfile.mkdtemp(prefix="owdebug-"))
        self._revision = 0
        self._handle: SandboxHandle | None = None
        self._payload: SourcePayload | None = None
        self._session: aiohttp.ClientSession | None = None

    @property
    def handle(self) -> SandboxHandle | None:
        return self._handle

    @property
    def payload(self) -> SourcePayload | None:
        return self._payload

    @property
    def staging_dir(self) -> Path:
        return self._staging

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def _publish(self, payload: SourcePayload) -> Path:
        """Write *payload* as a new revision and point ``current`` at it."""
        self._staging.mkdir(parents=True, exist_ok=True)
        self._revision += 1
        revision = self._staging / f"rev-{self._revision}"
        tmp = self._staging / f".rev-{self._revision}.tmp"
        shutil.rmtree(tmp, ignore_errors=True)
        tmp.mkdir()
        try:
            if payload.is_binary:
                with zipfile.ZipFile(io.BytesIO(payload.code)) as zf:
                    zf.extractall(tmp)
            else:
                (tmp / get_kind(payload.kind).BOOTSTRAP_NAME).write_bytes(payload.code)
            tmp.rename(revision)
        except (OSError, zipfile.BadZipFile):
            shutil.rmtree(tmp, ignore_errors=True)
            raise

        link_tmp = self._staging / f".{CURRENT_LINK}.tmp"
        if link_tmp.is_symlink() or link_tmp.exists():
            link_tmp.unlink()
        os.symlink(revision.name, link_tmp)
        previous = (self._staging / CURRENT_LINK).resolve() if self._revision > 1 else None
        os.replace(link_tmp, self._staging / CURRENT_LINK)

        # keep the previous revision; a run that resolved the old link may still read it
        for old in self._staging.glob("rev-*"):
            if old.name != revision.name and (previous is None or old.resolve() != previous):
                shutil.rmtree(old, ignore_errors=True)
        return revision

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, payload: SourcePayload, env: Mapping[str, str]) -> SandboxHandle:
        """Mount *payload*, launch the sandbox, and initialize the loader."""
        if self._handle is not None:
            raise ContainerError("Sandbox already started")
        try:
            await asyncio.to_thread(self._publish, payload)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ContainerError(f"Cannot stage payload: {exc}") from exc
        self._payload = payload

        opts = self._options
        spec = SandboxSpec(
            name=opts.name,
            image=opts.image,
            mount_source=str(self._staging),
            mount_target=opts.mount_path,
            env=dict(env),
            host_ip=opts.host_ip,
            debug_port=opts.debug_port,
            host_debug_port=opts.host_debug_port,
        )
        try:
            handle = await self._runtime.start(spec)
        except ContainerError:
            await self._cleanup_staging()
            raise
        except OSError as exc:
            await self._cleanup_staging()
            raise ContainerError(f"Sandbox failed to start: {exc}") from exc

        self._handle = handle
        try:
            await self._wait_ready(handle)
            await self._init(handle, payload)
        except BaseException:
            await self.stop(handle)
            raise
        logger.info(
            "Sandbox ready",
            container=handle.name,
            entry=payload.entry_path,
            binary=payload.is_binary,
        )
        return handle

    async def _wait_ready(self, handle: SandboxHandle, poll_interval: float = 0.25) -> None:
        """Poll the action proxy until it answers with any non-5xx status."""
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._options.start_timeout
        session = self._http()
        while loop.time() < deadline:
            try:
                async with session.get(
                    f"{handle.base_url}/", timeout=aiohttp.ClientTimeout(total=2)
                ) as resp:
                    if resp.status < 500:
                        logger.debug(
                            "Sandbox answered",
                            container=handle.name,
                            elapsed_ms=round((time.monotonic() - start) * 1000),
                        )
                        return
            except (aiohttp.ClientError, OSError, TimeoutError):
                pass
            await asyncio.sleep(poll_interval)
        msg = f"Sandbox {handle.name} did not become ready within {self._options.start_timeout:g}s"
        raise ContainerError(msg)

    async def _init(self, handle: SandboxHandle, payload: SourcePayload) -> None:
        kind = get_kind(payload.kind)
        body = {
            "value": {
                "name": handle.name,
                "main": "main",
                "code": kind.loader(self._options.mount_path),
                "binary": False,
            }
        }
        try:
            async with self._http().post(
                f"{handle.base_url}/init",
                json=body,
                timeout=aiohttp.ClientTimeout(total=self._options.start_timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ContainerError(f"Sandbox init failed (HTTP {resp.status}): {text[:500]}")
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ContainerError(f"Sandbox init failed: {exc}") from exc

    async def reload(self, handle: SandboxHandle, payload: SourcePayload) -> None:
        """Atomically replace the mounted payload without restarting the sandbox."""
        if handle is not self._handle:
            raise ContainerError("Reload on a sandbox that is not running")
        if self._payload is not None and payload.kind != self._payload.kind:
            raise ContainerError(f"Cannot switch kind from {self._payload.kind} to {payload.kind}")
        try:
            revision = await asyncio.to_thread(self._publish, payload)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ContainerError(f"Cannot stage payload: {exc}") from exc
        self._payload = payload
        logger.info(
            "Sources reloaded",
            container=handle.name,
            revision=revision.name,
            files=len(payload.files),
        )

    async def invoke(self, handle: SandboxHandle, request: InvocationRequest) -> InvocationResult:
        """Run the mounted payload with the request's params.

        Function failures, timeouts and transport errors come back as
        failure results; this never raises for them.
        """
        if handle is not self._handle:
            return InvocationResult.failure("sandbox", "Sandbox is not running")
        body = {"value": request.params, "activation_id": request.activation_id}
        try:
            async with self._http().post(
                f"{handle.base_url}/run",
                json=body,
                timeout=aiohttp.ClientTimeout(total=self._options.invoke_timeout),
            ) as resp:
                data = await resp.json(content_type=None)
                return InvocationResult.success(check_run_response(resp.status, data))
        except ExecutionError as exc:
            return InvocationResult.failure(exc.kind, exc.message)
        except TimeoutError:
            return InvocationResult.failure(
                "timeout", f"Invocation exceeded {self._options.invoke_timeout:g}s"
            )
        except (aiohttp.ClientError, ValueError) as exc:
            return InvocationResult.failure("sandbox", str(exc))

    async def stop(self, handle: SandboxHandle | None = None) -> None:
        """Terminate the sandbox and release resources. Never raises ContainerError."""
        handle = handle or self._handle
        try:
            if handle is not None:
                await self._runtime.stop(handle)
        except (ContainerError, OSError) as exc:
            logger.warning(
                "Sandbox stop failed",
                container=handle.name if handle else None,
                err=str(exc),
            )
        finally:
            self._handle = None
            if self._session is not None:
                await self._session.close()
                self._session = None
            await self._cleanup_staging()

    async def _cleanup_staging(self) -> None:
        if self._owns_staging:
            await asyncio.to_thread(shutil.rmtree, self._staging, True)
