"""Sandbox runtime providers.

Docker is built in.  A runtime only knows how to start and stop one
container process; mounting, hot swap and invocation live in
:mod:`owdebug.container`.

All public coroutines are non-blocking: the Docker CLI runs in a thread via
``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from owdebug.errors import ContainerError
from owdebug.logger import logger

ACTION_PORT = 8080  # action proxy port inside the sandbox


@dataclass(frozen=True)
class SandboxSpec:
    """Everything needed to launch one sandbox."""

    name: str
    image: str
    mount_source: str  # host directory
    mount_target: str  # fixed path inside the sandbox
    env: dict[str, str] = field(default_factory=dict)
    host_ip: str = "127.0.0.1"
    debug_port: int | None = None  # inside the sandbox
    host_debug_port: int | None = None  # published on the host


@dataclass(frozen=True)
class SandboxHandle:
    name: str
    base_url: str  # action proxy, e.g. http://127.0.0.1:49153


@runtime_checkable
class SandboxRuntime(Protocol):
    """Runtime provider contract."""

    name: str

    def is_available(self) -> bool: ...
    def ensure_running(self) -> None: ...
    async def start(self, spec: SandboxSpec) -> SandboxHandle: ...
    async def stop(self, handle: SandboxHandle) -> None: ...


# ---------------------------------------------------------------------------
# Docker CLI helpers
# ---------------------------------------------------------------------------


def _run_docker_sync(
    *args: str,
    check: bool = True,
    timeout: float = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command (blocking, internal only)."""
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=check,
    )


async def run_docker(
    *args: str,
    check: bool = True,
    timeout: float = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command without blocking the event loop."""
    try:
        return await asyncio.to_thread(_run_docker_sync, *args, check=check, timeout=timeout)
    except FileNotFoundError as exc:
        raise ContainerError("docker CLI not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise ContainerError(f"docker {args[0]} timed out after {timeout:g}s") from exc
    except subprocess.CalledProcessError as exc:
        raise ContainerError(f"docker {args[0]} failed: {(exc.stderr or '').strip()}") from exc


async def ensure_image(image: str) -> None:
    """Pull a Docker image if not already present locally."""
    result = await run_docker("image", "inspect", image, check=False)
    if result.returncode == 0:
        return

    logger.info("Pulling Docker image (first run may take a minute)", image=image)
    await run_docker("pull", image, timeout=300)
    logger.info("Docker image pulled", image=image)


async def remove_container(name: str) -> None:
    """Force-remove a container (idempotent, no error if absent)."""
    await run_docker("rm", "-f", name, check=False)


def parse_published_port(output: str) -> int:
    """Port number from ``docker port`` output such as ``127.0.0.1:49153``."""
    for line in output.strip().splitlines():
        _, _, port = line.strip().rpartition(":")
        if port.isdigit():
            return int(port)
    raise ContainerError(f"Cannot parse published port from {output!r}")


class DockerSandboxRuntime:
    """Runtime adapter for the Docker CLI."""

    name = "docker"
    cli = "docker"

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def ensure_running(self) -> None:
        try:
            subprocess.run([self.cli, "info"], capture_output=True, check=True)
            logger.debug("Docker daemon is running")
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise ContainerError(
                "Docker is required but not running. Start Docker and try again."
            ) from exc

    async def start(self, spec: SandboxSpec) -> SandboxHandle:
        await ensure_image(spec.image)
        await remove_container(spec.name)  # clear stale state from a crashed session

        args = [
            "run",
            "-d",
            "--rm",
            "--name",
            spec.name,
            "-p",
            f"{spec.host_ip}::{ACTION_PORT}",
            "-v",
            f"{spec.mount_source}:{spec.mount_target}:ro",
        ]
        if spec.debug_port and spec.host_debug_port:
            args += ["-p", f"{spec.host_debug_port}:{spec.debug_port}"]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]
        args.append(spec.image)

        await run_docker(*args, timeout=60)
        result = await run_docker("port", spec.name, f"{ACTION_PORT}/tcp")
        port = parse_published_port(result.stdout)
        logger.info("Sandbox container started", container=spec.name, image=spec.image, port=port)
        return SandboxHandle(name=spec.name, base_url=f"http://{spec.host_ip}:{port}")

    async def stop(self, handle: SandboxHandle) -> None:
        """Gracefully stop then force-remove. Idempotent."""
        await run_docker("stop", "-t", "2", handle.name, check=False)
        await run_docker("rm", "-f", handle.name, check=False)
        logger.info("Sandbox container stopped", container=handle.name)


def get_runtime(name: str | None = None) -> SandboxRuntime:
    """Runtime for the configured name; unknown names fall back to Docker."""
    if name and name.lower() != "docker":
        logger.warning("Unknown runtime override; falling back to docker", runtime=name)
    return DockerSandboxRuntime()
