"""Tests for the relay long-polling client against an in-process relay stub."""

from __future__ import annotations

import asyncio

import pytest

from owdebug.config import RelayConfig
from owdebug.errors import RelayFatalError, RelayTransientError
from owdebug.relay import RelayClient, parse_claim
from owdebug.types import Claimed, GiveUp, InvocationRequest, InvocationResult, Pending


def _options(**overrides) -> RelayConfig:
    values = {
        "claim_timeout": 2.0,
        "give_up_backoff": 0.01,
        "error_backoff": 0.01,
        "max_give_ups": 3,
        "report_attempts": 3,
    }
    values.update(overrides)
    return RelayConfig(**values)


@pytest.fixture
async def client(relay_stub):
    relay = RelayClient(None, relay_stub.url, _options())
    yield relay
    await relay.close()


class TestParseClaim:
    def test_wrapped_result(self):
        body = {"response": {"result": {"$activationId": "a1", "name": "x"}}}
        assert parse_claim(body) == InvocationRequest("a1", {"name": "x"})

    def test_bare_result(self):
        assert parse_claim({"$activationId": "a1"}) == InvocationRequest("a1", {})

    def test_flat_shape(self):
        body = {"activationId": "a1", "params": {"k": 1}}
        assert parse_claim(body) == InvocationRequest("a1", {"k": 1})

    def test_marker_keys_are_not_params(self):
        body = {"$activationId": "a1", "$other": True, "k": 1}
        assert parse_claim(body).params == {"k": 1}

    def test_no_activation(self):
        assert parse_claim({"response": {"result": {}}}) is None
        assert parse_claim(["not", "a", "dict"]) is None


class TestClaim:
    async def test_queued_activation_is_claimed(self, relay_stub, client):
        relay_stub.invoke({"name": "world"})

        outcome = await client.claim()

        assert outcome == Claimed(InvocationRequest("act-1", {"name": "world"}))

    async def test_retry_marker_is_pending(self, relay_stub, client):
        relay_stub.scripted.append(relay_stub.retry())
        assert await client.claim() == Pending()

    async def test_give_up_marker(self, relay_stub, client):
        relay_stub.scripted.append(relay_stub.give_up())
        assert await client.claim() == GiveUp()

    async def test_async_activation_is_pending(self, relay_stub, client):
        relay_stub.scripted.append((202, {"activationId": "platform-made-it-async"}))
        assert await client.claim() == Pending()

    async def test_client_timeout_is_pending(self, relay_stub):
        relay_stub.hold = 1.0
        relay = RelayClient(None, relay_stub.url, _options(claim_timeout=0.2))
        try:
            assert await relay.claim() == Pending()
        finally:
            await relay.close()

    async def test_unexpected_status_is_transient(self, relay_stub, client):
        relay_stub.scripted.append((500, {"error": "internal"}))
        with pytest.raises(RelayTransientError, match="HTTP 500"):
            await client.claim()

    async def test_502_without_marker_is_transient(self, relay_stub, client):
        relay_stub.scripted.append((502, {"error": {"code": 7}}))
        with pytest.raises(RelayTransientError):
            await client.claim()

    async def test_200_without_activation_is_transient(self, relay_stub, client):
        relay_stub.scripted.append((200, {"response": {"result": {}}}))
        with pytest.raises(RelayTransientError, match="without an activation"):
            await client.claim()

    async def test_unreachable_relay_is_transient(self):
        relay = RelayClient(None, "http://127.0.0.1:1/unreachable", _options())
        try:
            with pytest.raises(RelayTransientError):
                await relay.claim()
        finally:
            await relay.close()


class TestNextInvocation:
    async def test_retries_immediately_until_claimed(self, relay_stub):
        """Three retry markers, then an activation: no client-side backoff on retry."""
        relay = RelayClient(
            None, relay_stub.url, _options(error_backoff=30, give_up_backoff=30)
        )
        relay_stub.scripted.extend([relay_stub.retry()] * 3)
        relay_stub.invoke({"n": 1})
        try:
            request = await asyncio.wait_for(relay.next_invocation(), 5)
        finally:
            await relay.close()

        assert request.params == {"n": 1}
        assert relay_stub.claims == 4

    async def test_give_ups_are_bounded(self, relay_stub, client):
        relay_stub.scripted.extend([relay_stub.give_up()] * 3)

        with pytest.raises(RelayFatalError, match="gave up 3 times"):
            await client.next_invocation()

        assert relay_stub.claims == 3

    async def test_pending_resets_give_up_count(self, relay_stub, client):
        relay_stub.scripted.extend(
            [
                relay_stub.give_up(),
                relay_stub.give_up(),
                relay_stub.retry(),
                relay_stub.give_up(),
                relay_stub.give_up(),
            ]
        )
        relay_stub.invoke({})

        request = await asyncio.wait_for(client.next_invocation(), 5)

        assert request.activation_id == "act-1"

    async def test_transient_errors_are_retried(self, relay_stub, client):
        relay_stub.scripted.extend([(500, {}), (503, {}), (404, {})])
        relay_stub.invoke({"ok": True})

        request = await asyncio.wait_for(client.next_invocation(), 5)

        assert request.params == {"ok": True}
        assert relay_stub.claims == 4


class TestReport:
    async def test_success_report_body(self, relay_stub, client):
        await client.report("act-7", InvocationResult.success({"msg": "hi"}))
        assert relay_stub.reports == [{"$activationId": "act-7", "msg": "hi"}]

    async def test_failure_report_body(self, relay_stub, client):
        await client.report("act-7", InvocationResult.failure("execution", "boom"))
        assert relay_stub.reports == [
            {"$activationId": "act-7", "error": {"kind": "execution", "message": "boom"}}
        ]

    async def test_report_retried_until_acknowledged(self, relay_stub, client):
        relay_stub.report_status.extend([500, 503])

        await client.report("act-1", InvocationResult.success({}))

        assert len(relay_stub.reports) == 1

    async def test_report_retries_are_bounded(self, relay_stub, client):
        relay_stub.report_status.extend([500, 500, 500])

        with pytest.raises(RelayFatalError, match="after 3 attempts"):
            await client.report("act-1", InvocationResult.success({}))

        assert relay_stub.reports == []


class TestCorrelation:
    async def test_results_reach_their_own_activation_in_order(self, relay_stub, client):
        futures = [relay_stub.invoke({"n": n}) for n in range(5)]

        handled = []
        for _ in range(5):
            request = await asyncio.wait_for(client.next_invocation(), 5)
            handled.append(request.activation_id)
            result = InvocationResult.success({"double": request.params["n"] * 2})
            await client.report(request.activation_id, result)

        assert handled == [f"act-{n}" for n in range(1, 6)]
        results = await asyncio.gather(*futures)
        assert [r["double"] for r in results] == [0, 2, 4, 6, 8]
