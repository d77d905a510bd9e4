"""Relay long-polling client.

The relay stub installed in place of the remote action holds invocations
until the local side claims them.  Every exchange is an outbound blocking
invoke of the action:

- claim: ``{"$waitForActivation": true}``. The stub answers with the next
  activation, a retry marker (nothing pending yet) or a give-up marker
  (its own wait timed out).
- report: ``{"$activationId": id, ...result}``. The stub completes the
  held activation with the result.

Only one claim is outstanding at a time and a claim is reported before the
next one is made, so responses are correlated with their claims in order.
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from owdebug.config import RelayConfig
from owdebug.errors import RelayFatalError, RelayTransientError
from owdebug.logger import logger
from owdebug.types import (
    ActivationId,
    Claimed,
    ClaimResult,
    GiveUp,
    InvocationRequest,
    InvocationResult,
    Pending,
)

WAIT_MARKER = "$waitForActivation"
ACTIVATION_MARKER = "$activationId"
RETRY_CODE = 43
GIVE_UP_CODE = 42


def _error_code(body: Any) -> int | None:
    """Marker code of a 502 body, wherever the platform nested it."""
    if not isinstance(body, dict):
        return None
    candidates = [body.get("error")]
    response = body.get("response")
    if isinstance(response, dict):
        result = response.get("result")
        if isinstance(result, dict):
            candidates.append(result.get("error"))
    for error in candidates:
        if isinstance(error, dict) and isinstance(error.get("code"), int):
            return error["code"]
    return None


def parse_claim(body: Any) -> InvocationRequest | None:
    """Extract the claimed activation from a 200 body, or None if there is none.

    Accepts the stub's result wrapped by the platform
    (``{"response": {"result": {"$activationId": ..., **params}}}``), the
    bare result, or the flat ``{"activationId": ..., "params": {...}}`` shape.
    """
    if not isinstance(body, dict):
        return None
    response = body.get("response")
    if isinstance(response, dict) and isinstance(response.get("result"), dict):
        body = response["result"]

    if isinstance(body.get(ACTIVATION_MARKER), str):
        params = {k: v for k, v in body.items() if not k.startswith("$")}
        return InvocationRequest(activation_id=body[ACTIVATION_MARKER], params=params)
    if isinstance(body.get("activationId"), str):
        params = body.get("params")
        return InvocationRequest(
            activation_id=body["activationId"],
            params=params if isinstance(params, dict) else {},
        )
    return None


async def _read_json(resp: aiohttp.ClientResponse) -> Any:
    try:
        return await resp.json(content_type=None)
    except ValueError:
        return None


class RelayClient:
    """Claims invocations from the relay stub and reports their results.

    The session is owned by the caller; :meth:`close` only closes it when
    the client created it.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None,
        url: str,
        options: RelayConfig | None = None,
    ) -> None:
        self._owns_session = session is None
        self._session = session
        self._url = url
        self._options = options or RelayConfig()

    @property
    def url(self) -> str:
        return self._url

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def claim(self) -> ClaimResult:
        """Issue one long-poll claim."""
        timeout = aiohttp.ClientTimeout(total=self._options.claim_timeout)
        try:
            async with self._http().post(
                self._url, json={WAIT_MARKER: True}, timeout=timeout
            ) as resp:
                status = resp.status
                body = await _read_json(resp)
        except TimeoutError:
            logger.debug("Claim timed out client-side; re-claiming")
            return Pending()
        except aiohttp.ClientError as exc:
            raise RelayTransientError(f"Claim failed: {exc}") from exc

        if status == 200:
            request = parse_claim(body)
            if request is None:
                raise RelayTransientError(f"Claim answered 200 without an activation: {body!r}")
            return Claimed(request)
        if status == 202:
            # platform turned the blocking call into an async activation
            return Pending()
        if status == 502:
            code = _error_code(body)
            if code == RETRY_CODE:
                return Pending()
            if code == GIVE_UP_CODE:
                return GiveUp()
        raise RelayTransientError(f"Claim answered HTTP {status}: {str(body)[:300]}")

    async def next_invocation(self) -> InvocationRequest:
        """Claim until an invocation arrives.

        Pending claims are re-issued immediately.  Transient errors are
        retried forever after ``error_backoff``; give-ups back off for
        ``give_up_backoff`` and raise RelayFatalError once ``max_give_ups``
        happen in a row.
        """
        opts = self._options
        give_ups = 0
        while True:
            try:
                outcome = await self.claim()
            except RelayTransientError as exc:
                logger.warning("Relay claim failed; retrying", err=str(exc))
                await asyncio.sleep(opts.error_backoff)
                continue

            if isinstance(outcome, Claimed):
                logger.info("Invocation claimed", activation_id=outcome.request.activation_id)
                return outcome.request
            if isinstance(outcome, GiveUp):
                give_ups += 1
                if give_ups >= opts.max_give_ups:
                    raise RelayFatalError(f"Relay stub gave up {give_ups} times in a row")
                logger.debug("Relay stub gave up; backing off", give_ups=give_ups)
                await asyncio.sleep(opts.give_up_backoff)
                continue
            give_ups = 0

    async def report(self, activation_id: ActivationId, result: InvocationResult) -> None:
        """Deliver *result* for *activation_id*; RelayFatalError when retries run out."""
        body = {ACTIVATION_MARKER: activation_id, **result.to_report_fields()}
        attempts = self._options.report_attempts
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                async with self._http().post(
                    self._url,
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self._options.claim_timeout),
                ) as resp:
                    if resp.status == 200:
                        logger.info(
                            "Result reported",
                            activation_id=activation_id,
                            ok=result.ok,
                        )
                        return
                    last_error = f"HTTP {resp.status}: {(await resp.text())[:300]}"
            except (aiohttp.ClientError, TimeoutError) as exc:
                last_error = str(exc) or type(exc).__name__
            logger.warning(
                "Result report failed",
                activation_id=activation_id,
                attempt=attempt,
                err=last_error,
            )
            if attempt < attempts:
                await asyncio.sleep(self._options.error_backoff)
        raise RelayFatalError(
            f"Could not report activation {activation_id} after {attempts} attempts: {last_error}"
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
