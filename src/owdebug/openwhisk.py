"""OpenWhisk REST client and the remote action interceptor.

The interceptor swaps the deployed action for the relay stub for the
duration of a session and puts the original back afterwards.  The original
is kept as a regular action named ``<name>_owdebug_original`` so a crashed
session can be recovered by the next one (or by hand with ``wsk``).
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import aiohttp

from owdebug.config import OpenWhiskConfig
from owdebug.errors import RemoteActionError
from owdebug.logger import logger

BACKUP_SUFFIX = "_owdebug_original"
STUB_ANNOTATION = "owdebug-relay"


def _quote_name(name: str) -> str:
    """``pkg/action`` → ``pkg/action`` with each segment escaped."""
    return "/".join(quote(part, safe="") for part in name.split("/"))


def backup_name(name: str) -> str:
    return f"{name}{BACKUP_SUFFIX}"


def is_stub(action: dict[str, Any]) -> bool:
    """True when *action* is a relay stub installed by a previous session."""
    for annotation in action.get("annotations") or []:
        if annotation.get("key") == STUB_ANNOTATION and annotation.get("value"):
            return True
    return False


class OpenWhiskClient:
    """Minimal async client for the actions endpoint of the OpenWhisk API."""

    def __init__(self, config: OpenWhiskConfig) -> None:
        if not config.api_host:
            raise RemoteActionError("OpenWhisk API host is not configured (openwhisk.api_host)")
        self._config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def session(self) -> aiohttp.ClientSession:
        """Authenticated session, created on first use."""
        if self._session is None or self._session.closed:
            auth = None
            if self._config.auth is not None:
                user, _, password = self._config.auth.get_secret_value().partition(":")
                auth = aiohttp.BasicAuth(user, password)
            connector = aiohttp.TCPConnector(ssl=False) if self._config.insecure else None
            self._session = aiohttp.ClientSession(auth=auth, connector=connector)
        return self._session

    def action_url(self, name: str) -> str:
        namespace = quote(self._config.namespace or "_", safe="")
        return (
            f"{self._config.api_host}/api/v1/namespaces/{namespace}/actions/{_quote_name(name)}"
        )

    async def _request(
        self,
        method: str,
        name: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        ok: tuple[int, ...] = (200,),
    ) -> Any:
        try:
            async with self.session.request(
                method,
                self.action_url(name),
                params=params,
                json=json,
                timeout=aiohttp.ClientTimeout(total=60),
            ) as resp:
                if resp.status not in ok:
                    text = await resp.text()
                    raise RemoteActionError(
                        f"{method} {name} answered HTTP {resp.status}: {text[:300]}",
                        status=resp.status,
                    )
                return await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise RemoteActionError(f"{method} {name} failed: {exc}") from exc
        except TimeoutError as exc:
            raise RemoteActionError(f"{method} {name} timed out") from exc

    async def get_action(self, name: str) -> dict[str, Any]:
        return await self._request("GET", name, params={"code": "true"})

    async def put_action(self, name: str, action: dict[str, Any]) -> dict[str, Any]:
        body = {
            key: action[key]
            for key in ("exec", "parameters", "annotations", "limits")
            if key in action
        }
        return await self._request("PUT", name, params={"overwrite": "true"}, json=body)

    async def delete_action(self, name: str) -> None:
        await self._request("DELETE", name)

    async def invoke(self, name: str, params: dict[str, Any]) -> str | None:
        """Fire a non-blocking invocation; returns the activation id."""
        body = await self._request(
            "POST", name, params={"blocking": "false"}, json=params, ok=(200, 202)
        )
        return body.get("activationId") if isinstance(body, dict) else None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class ActionInterceptor:
    """Installs the relay stub in place of an action and restores it later."""

    def __init__(
        self,
        client: OpenWhiskClient,
        name: str,
        *,
        agent_code: str | None = None,
    ) -> None:
        self._client = client
        self._name = name
        self._agent_code = agent_code
        self._original: dict[str, Any] | None = None
        self._installed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def relay_url(self) -> str:
        return f"{self._client.action_url(self._name)}?blocking=true"

    @property
    def session(self) -> aiohttp.ClientSession:
        return self._client.session

    async def install(self) -> None:
        """Back up the deployed action and replace it with the relay stub."""
        action = await self._client.get_action(self._name)
        if self._agent_code is None:
            # the stub was deployed by hand; a backup, if any, holds the real code
            try:
                self._original = await self._client.get_action(backup_name(self._name))
            except RemoteActionError as exc:
                if exc.status != 404:
                    raise
                self._original = action
            logger.info("Using the relay stub already deployed", action=self._name)
            return

        if is_stub(action):
            # left over from a session that did not shut down cleanly
            logger.warning(
                "Relay stub already installed; using existing backup",
                action=self._name,
            )
            action = await self._client.get_action(backup_name(self._name))
        else:
            await self._client.put_action(backup_name(self._name), action)
        self._original = action
        self._installed = True

        kind = action.get("exec", {}).get("kind", "nodejs:default")
        stub = {
            "exec": {"kind": kind, "code": self._agent_code},
            "parameters": action.get("parameters", []),
            "annotations": [
                *(action.get("annotations") or []),
                {"key": STUB_ANNOTATION, "value": True},
            ],
            "limits": action.get("limits", {}),
        }
        await self._client.put_action(self._name, stub)
        logger.info("Relay stub installed", action=self._name, kind=kind)

    async def restore(self) -> None:
        """Put the original action back and drop the backup. Idempotent."""
        if not self._installed or self._original is None:
            return
        self._installed = False
        await self._client.put_action(self._name, self._original)
        try:
            await self._client.delete_action(backup_name(self._name))
        except RemoteActionError as exc:
            if exc.status != 404:
                raise
        logger.info("Original action restored", action=self._name)

    def original_source(self) -> tuple[str, str, bool]:
        """Kind, code and binary flag of the original action."""
        if self._original is None:
            raise RemoteActionError("Original action not fetched yet; call install() first")
        exec_ = self._original.get("exec", {})
        return exec_.get("kind", ""), exec_.get("code", ""), bool(exec_.get("binary"))

    async def trigger(self, params: dict[str, Any]) -> None:
        activation_id = await self._client.invoke(self._name, params)
        logger.info("Action triggered", action=self._name, activation_id=activation_id)

    async def close(self) -> None:
        await self._client.close()
