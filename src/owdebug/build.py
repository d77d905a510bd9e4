"""Optional build step run before sources are resolved.

The build command is opaque: only its exit status matters.  The artifact
path is returned whether or not it exists yet, since some tools finish
writing after the process exits; the resolver's read is what reports a
missing artifact.
"""

from __future__ import annotations

from pathlib import Path

from owdebug.errors import BuildError
from owdebug.logger import logger
from owdebug.types import BuildConfig
from owdebug.utils import run_shell_command

_TAIL = 500


async def run_build(config: BuildConfig, cwd: Path) -> Path:
    """Run ``config.command`` in *cwd* and return the artifact path."""
    logger.info("Running build", command=config.command, cwd=str(cwd))
    result = await run_shell_command(
        config.command,
        cwd=str(cwd),
        timeout_seconds=config.timeout,
    )
    if result.start_error:
        logger.error("Build could not be started", command=config.command, err=result.start_error)
        raise BuildError(f"Build could not be started: {result.start_error}")
    if result.timed_out:
        logger.warning(
            "Build timed out",
            command=config.command,
            timeout=config.timeout,
            stderr_tail=result.stderr[-_TAIL:],
        )
        raise BuildError(f"Build timed out after {config.timeout:g}s", stderr=result.stderr)
    if not result.ok:
        logger.warning(
            "Build failed",
            command=config.command,
            exit_code=result.returncode,
            stderr_tail=result.stderr[-_TAIL:],
        )
        raise BuildError(
            f"Build exited with code {result.returncode}",
            exit_code=result.returncode,
            stderr=result.stderr,
        )
    logger.info("Build finished", elapsed=round(result.elapsed, 2))
    return cwd / config.artifact_path
