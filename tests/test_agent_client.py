"""
Agent Client Test Suite
=======================

Tests for correlated round trips through the upstream-agent circuit breaker.

Run with: uv run pytest tests/test_agent_client.py -v
"""

import asyncio

import pytest

from govchat.realtime.agent_client import FALLBACK_RESPONSE, AgentClient, agent_breaker_config
from govchat.realtime.connection import ConnectionManager
from govchat.realtime.messages import MessageType
from govchat.resilience.circuit_breaker import CircuitBreaker, CircuitState
from govchat.resilience.errors import AgentReplyError, MessageValidationError

from fakes import FakeTransport, echo_responder, error_responder


async def make_client(settings, transport, metrics=None) -> AgentClient:
    manager = ConnectionManager.from_settings(settings, transport=transport)
    await manager.connect("session-1", "user-1")
    breaker = CircuitBreaker(agent_breaker_config(settings))
    return AgentClient(
        manager,
        breaker,
        reply_timeout_sec=settings.agent_reply_timeout_sec,
        metrics=metrics,
    )


async def close_client(client: AgentClient) -> None:
    client.close()
    client.breaker.shutdown()
    await client.connection.disconnect()


def sample(metrics, name, **labels) -> float:
    return metrics.registry.get_sample_value(name, labels) or 0.0


class TestAgentRoundTrip:
    """Test successful and failing round trips"""

    @pytest.mark.asyncio
    async def test_reply_matched_by_correlation_id(self, settings, metrics):
        client = await make_client(settings, FakeTransport(responder=echo_responder), metrics)

        reply = await client.send_message("When does the office open?")

        assert reply.type == MessageType.RESPONSE
        assert reply.content == "echo: When does the office open?"
        assert not reply.metadata.get("fallback")
        assert client.breaker.stats.successes == 1
        assert sample(metrics, "chat_messages_total", type="query", status="success") == 1.0
        await close_client(client)

    @pytest.mark.asyncio
    async def test_concurrent_round_trips(self, settings):
        client = await make_client(settings, FakeTransport(responder=echo_responder))

        replies = await asyncio.gather(*(client.send_message(f"q{i}") for i in range(5)))

        assert sorted(r.content for r in replies) == [f"echo: q{i}" for i in range(5)]
        await close_client(client)

    @pytest.mark.asyncio
    async def test_agent_error_frame_raises(self, settings, metrics):
        client = await make_client(settings, FakeTransport(responder=error_responder), metrics)

        with pytest.raises(AgentReplyError):
            await client.send_message("hello")

        assert client.breaker.stats.failures == 1
        assert sample(metrics, "chat_errors_total", type="AGENT_REPLY_ERROR", service="upstream-agent") == 1.0
        await close_client(client)

    @pytest.mark.asyncio
    async def test_reply_timeout(self, settings):
        client = await make_client(settings, FakeTransport())

        with pytest.raises(AgentReplyError):
            await client.send_message("anyone there?")

        assert client._pending == {}
        await close_client(client)

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_round_trip(self, settings):
        transport = FakeTransport()
        client = await make_client(settings.model_copy(update={"agent_reply_timeout_sec": 5.0}), transport)

        pending = asyncio.create_task(client.send_message("hello"))
        await asyncio.sleep(0.02)
        transport.channels[0].drop()

        with pytest.raises(AgentReplyError):
            await asyncio.wait_for(pending, timeout=1.0)
        await close_client(client)

    @pytest.mark.asyncio
    async def test_validation_happens_before_breaker(self, settings):
        client = await make_client(settings, FakeTransport(responder=echo_responder))

        with pytest.raises(MessageValidationError):
            await client.send_message("")

        assert client.breaker.stats.fires == 0
        await close_client(client)


class TestAgentFallback:
    """Test the canned response when the breaker is open"""

    @pytest.mark.asyncio
    async def test_failure_that_opens_breaker_returns_fallback(self, settings, metrics):
        transport = FakeTransport(responder=error_responder)
        client = await make_client(settings, transport, metrics)

        with pytest.raises(AgentReplyError):
            await client.send_message("first")
        reply = await client.send_message("second")

        assert client.breaker.state == CircuitState.OPEN
        assert reply.content == FALLBACK_RESPONSE
        assert reply.metadata["fallback"] is True
        assert reply.metadata["reason"] == "circuit-breaker-open"
        assert sample(metrics, "chat_messages_total", type="query", status="fallback") == 1.0
        await close_client(client)

    @pytest.mark.asyncio
    async def test_open_breaker_sends_nothing(self, settings):
        transport = FakeTransport(responder=echo_responder)
        client = await make_client(settings, transport)
        client.breaker.force_open()

        reply = await client.send_message("x" * 150)

        assert reply.metadata["fallback"] is True
        assert reply.metadata["original_content"] == "x" * 100
        assert transport.channel.sent == []
        await close_client(client)

    @pytest.mark.asyncio
    async def test_recovers_after_reset_timeout(self, settings):
        transport = FakeTransport(responder=echo_responder)
        client = await make_client(settings, transport)
        client.breaker.force_open()

        await asyncio.sleep(settings.agent_breaker_reset_timeout_sec + 0.05)
        reply = await client.send_message("back?")

        assert reply.content == "echo: back?"
        assert client.breaker.state == CircuitState.CLOSED
        await close_client(client)
