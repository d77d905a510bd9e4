"""Entry point for `python -m owdebug` / `owdebug`.

    owdebug ACTION [SOURCE] [--build-command CMD --build-path PATH]
            [--root DIR] [-P JSON] [-p PORT] [--kind KIND]

Command-line flags override owdebug.toml, .env and OWDEBUG_* variables.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Any

from pydantic import ValidationError

from owdebug.errors import OwDebugError


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="owdebug",
        description="Run a deployed OpenWhisk action locally with live reload",
    )
    parser.add_argument("action", help="Name of the deployed action (package/action allowed)")
    parser.add_argument(
        "source",
        nargs="?",
        help="Local entry file; omit to run the deployed code locally",
    )
    parser.add_argument("--build-command", help="Shell command run before each reload")
    parser.add_argument("--build-path", help="Build artifact to load, relative to the root")
    parser.add_argument("--root", help="Project root (default: current directory)")
    parser.add_argument(
        "-P",
        "--invoke-params",
        metavar="JSON",
        help="Invoke the action with these parameters after each reload",
    )
    parser.add_argument("-p", "--port", type=int, help="Debugger port published on the host")
    parser.add_argument("--kind", help="Action kind, e.g. nodejs:18 or python:3.11")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    from owdebug.utils import parse_json_object

    action: dict[str, Any] = {"name": args.action}
    if args.source:
        action["source_path"] = args.source
    if args.root:
        action["project_root"] = args.root
    if args.kind:
        action["kind"] = args.kind
    params = parse_json_object(args.invoke_params, what="--invoke-params")
    if params is not None:
        action["invoke_params"] = params

    overrides: dict[str, Any] = {"action": action}
    if args.build_command:
        overrides["build"] = {"command": args.build_command}
        if args.build_path:
            overrides["build"]["artifact_path"] = args.build_path
    if args.port:
        overrides["container"] = {"port": args.port}
    return overrides


async def _run(args: argparse.Namespace) -> None:
    from owdebug.config import Settings
    from owdebug.debugger import Debugger
    from owdebug.logger import set_level
    from owdebug.openwhisk import ActionInterceptor, OpenWhiskClient
    from owdebug.types import DebuggerState

    # init values are deep-merged over the file and env sources
    s = Settings(**_overrides(args))
    set_level(s.logging.level)

    agent_code = None
    if s.relay.agent_path:
        with open(s.relay.agent_path) as f:
            agent_code = f.read()
    remote = ActionInterceptor(
        OpenWhiskClient(s.openwhisk),
        s.action.name,
        agent_code=agent_code,
    )
    debugger = Debugger(s, remote=remote)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(debugger.stop()))

    await debugger.start()
    if debugger.state is DebuggerState.RUNNING:
        debugger.run()
    await debugger.wait()


def main(argv: list[str] | None = None) -> None:
    from owdebug.logger import install_excepthook

    install_excepthook()
    args = _parse_args(argv)
    try:
        asyncio.run(_run(args))
    except (OwDebugError, ValidationError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
