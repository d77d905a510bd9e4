"""Shared test fixtures for owdebug."""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from owdebug.container import SandboxOptions
from owdebug.relay import ACTIVATION_MARKER, GIVE_UP_CODE, RETRY_CODE, WAIT_MARKER
from owdebug.runtime import SandboxHandle, SandboxSpec

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**sections: Any):
    """Create a Settings object from section dicts, e.g. ``action={"name": "x"}``.

    The autouse ``_isolate_settings`` fixture guarantees no owdebug.toml,
    .env, ~/.wskprops or OWDEBUG_* variable leaks into the result.
    """
    from owdebug.config import Settings

    sections.setdefault("action", {})
    sections["action"].setdefault("name", "myaction")
    return Settings(**sections)


def write(root: Path, rel: str, text: str) -> Path:
    """Write *text* at *root*/*rel*, creating parent directories."""
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def sandbox_options(staging: Path, **overrides: Any) -> SandboxOptions:
    """Options for the in-process sandbox: the staging dir doubles as the mount."""
    values: dict[str, Any] = {
        "image": "owdebug-test",
        "name": "owdebug-test",
        "mount_path": str(staging),
        "staging_dir": staging,
        "invoke_timeout": 5.0,
        "start_timeout": 5.0,
    }
    values.update(overrides)
    return SandboxOptions(**values)


# ---------------------------------------------------------------------------
# In-process sandbox
# ---------------------------------------------------------------------------


class FakeSandboxRuntime:
    """Serves the action proxy protocol (``/init`` + ``/run``) in-process.

    ``/init`` executes the Python loader; ``/run`` calls its ``main`` in a
    worker thread, answering the way the Python action proxy does.
    """

    name = "fake"

    def __init__(self) -> None:
        self.specs: list[SandboxSpec] = []
        self.stopped: list[str] = []
        self.init_count = 0
        self.run_count = 0
        self._servers: dict[str, TestServer] = {}
        self._main: Any = None

    def is_available(self) -> bool:
        return True

    def ensure_running(self) -> None:
        pass

    async def _health(self, request: web.Request) -> web.Response:
        return web.Response(status=404 if self._main is None else 200)

    async def _init(self, request: web.Request) -> web.Response:
        body = await request.json()
        if self._main is not None:
            return web.json_response(
                {"error": "Cannot initialize the action more than once."}, status=403
            )
        namespace: dict[str, Any] = {}
        exec(compile(body["value"]["code"], "<owdebug-loader>", "exec"), namespace)
        self._main = namespace[body["value"].get("main") or "main"]
        self.init_count += 1
        return web.json_response({"ok": True})

    async def _run(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.run_count += 1
        try:
            result = await asyncio.to_thread(self._main, body.get("value") or {})
        except Exception as exc:
            return web.json_response({"error": f"{type(exc).__name__}: {exc}"}, status=502)
        if not isinstance(result, dict):
            return web.json_response(
                {"error": "The action did not return a dictionary."}, status=502
            )
        return web.json_response(result)

    async def start(self, spec: SandboxSpec) -> SandboxHandle:
        self.specs.append(spec)
        app = web.Application()
        app.router.add_get("/", self._health)
        app.router.add_post("/init", self._init)
        app.router.add_post("/run", self._run)
        server = TestServer(app)
        await server.start_server()
        self._servers[spec.name] = server
        return SandboxHandle(name=spec.name, base_url=f"http://{server.host}:{server.port}")

    async def stop(self, handle: SandboxHandle) -> None:
        self.stopped.append(handle.name)
        server = self._servers.pop(handle.name, None)
        if server is not None:
            await server.close()
        self._main = None


@pytest.fixture
async def fake_runtime():
    runtime = FakeSandboxRuntime()
    yield runtime
    for name in list(runtime._servers):
        await runtime.stop(SandboxHandle(name=name, base_url=""))


# ---------------------------------------------------------------------------
# Relay stub
# ---------------------------------------------------------------------------


class RelayStub:
    """Stands in for the relay stub action behind the platform's invoke API.

    Claims are answered from ``scripted`` first (``(status, body)`` pairs),
    then with the oldest queued activation, then, after a short hold, with
    the retry marker.  Reports resolve the future returned by :meth:`invoke`.
    """

    def __init__(self, hold: float = 0.05) -> None:
        self.hold = hold
        self.scripted: list[tuple[int, Any]] = []
        self.report_status: list[int] = []  # consumed per report; 200 when empty
        self.claims = 0
        self.reports: list[dict[str, Any]] = []
        self.claimed: list[str] = []
        self._pending: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self._results: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self.server: TestServer | None = None

    @property
    def url(self) -> str:
        assert self.server is not None
        return f"http://{self.server.host}:{self.server.port}/api/v1/namespaces/_/actions/myaction"

    @staticmethod
    def retry() -> tuple[int, Any]:
        return 502, {"error": {"code": RETRY_CODE, "message": "retry"}}

    @staticmethod
    def give_up() -> tuple[int, Any]:
        return 502, {"error": {"code": GIVE_UP_CODE, "message": "timeout"}}

    def invoke(self, params: dict[str, Any]) -> asyncio.Future[dict[str, Any]]:
        """Queue an activation; the future resolves with the reported result."""
        activation_id = f"act-{next(self._ids)}"
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._results[activation_id] = future
        self._pending.put_nowait((activation_id, params))
        return future

    async def _handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        if body.get(WAIT_MARKER) is True:
            return await self._claim()
        return self._report(body)

    async def _claim(self) -> web.Response:
        self.claims += 1
        if self.scripted:
            status, payload = self.scripted.pop(0)
            return web.json_response(payload, status=status)
        try:
            activation_id, params = await asyncio.wait_for(self._pending.get(), self.hold)
        except TimeoutError:
            status, payload = self.retry()
            return web.json_response(payload, status=status)
        self.claimed.append(activation_id)
        result = {ACTIVATION_MARKER: activation_id, **params}
        return web.json_response({"response": {"result": result}})

    def _report(self, body: dict[str, Any]) -> web.Response:
        status = self.report_status.pop(0) if self.report_status else 200
        if status != 200:
            return web.json_response({"error": "unavailable"}, status=status)
        self.reports.append(body)
        activation_id = body.get(ACTIVATION_MARKER)
        fields = {k: v for k, v in body.items() if k != ACTIVATION_MARKER}
        future = self._results.pop(activation_id, None)
        if future is not None and not future.done():
            future.set_result(fields)
        return web.json_response({})


@pytest.fixture
async def relay_stub():
    stub = RelayStub()
    app = web.Application()
    app.router.add_post("/api/v1/namespaces/_/actions/myaction", stub._handle)
    stub.server = TestServer(app)
    await stub.server.start_server()
    yield stub
    await stub.server.close()


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path_factory, monkeypatch):
    """Keep real config files and OWDEBUG_* variables out of every test."""
    import os

    from owdebug.config import reset_settings

    cwd = tmp_path_factory.mktemp("cwd")
    monkeypatch.chdir(cwd)
    monkeypatch.setenv("WSK_CONFIG_FILE", str(cwd / "no-wskprops"))
    for var in list(os.environ):
        if var.startswith("OWDEBUG_") or var == "DOCKER_HOST_IP":
            monkeypatch.delenv(var)
    reset_settings()
    yield
    reset_settings()
