"""
Resilience Service Test Suite
=============================

End-to-end tests of the composed resilience core: delivery at the full
level, queueing when limited, offline payloads and the metrics it writes.

Run with: uv run pytest tests/test_service.py -v
"""

import asyncio

import pytest

from govchat.realtime.connection import ConnectionState
from govchat.resilience.degradation import ServiceLevel
from govchat.resilience.errors import MessageValidationError
from govchat.service import ResilienceService

from fakes import FakeTransport, ToggleProbe, echo_responder, eventually


class ServiceHarness:
    """A service wired to the fake transport and toggleable probes."""

    def __init__(self, settings, metrics, transport=None):
        self.transport = transport or FakeTransport(responder=echo_responder)
        self.agent = ToggleProbe(True)
        self.persistence = ToggleProbe(True)
        self.service = ResilienceService(
            settings,
            transport=self.transport,
            metrics=metrics,
            agent_probe=self.agent,
            persistence_probe=self.persistence,
        )


def gauge(metrics, name, **labels) -> float:
    return metrics.registry.get_sample_value(name, labels)


def is_connected(service, session_id) -> bool:
    status = service.get_connection_status(session_id)
    return status is not None and status.state == ConnectionState.CONNECTED


class TestServiceLevels:
    """Test message handling at each service level"""

    @pytest.mark.asyncio
    async def test_full_level_delivers_and_records_history(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()

        result = await service.send_message("s1", "How do I renew my licence?", user_id="u1")
        history = await service.get_messages("s1")

        assert service.get_current_level().level == ServiceLevel.FULL
        assert result["status"] == "delivered"
        assert result["reply"]["content"] == "echo: How do I renew my licence?"
        assert history["status"] == "ok"
        assert [m["role"] for m in history["messages"]] == ["user", "assistant"]
        assert harness.transport.headers[0]["X-User-ID"] == "u1"
        await service.stop()

    @pytest.mark.asyncio
    async def test_agent_down_queues_then_replays(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()

        harness.agent.healthy = False
        assert (await service.assess()).level == ServiceLevel.LIMITED
        assert not service.can_use_feature("agent")

        queued = await service.send_message("s1", "Is the office open today?")
        cached = await service.get_messages("s1")

        assert queued["status"] == "queued"
        assert len(service.queue) == 1
        assert cached == {"status": "cached", "messages": []}
        assert harness.transport.connect_calls == 0

        harness.agent.healthy = True
        assert (await service.assess()).level == ServiceLevel.FULL
        await eventually(lambda: len(service.queue) == 0 and harness.transport.connect_calls == 1)
        await eventually(lambda: bool(harness.transport.channel.sent))

        assert harness.transport.channel.sent[0].content == "Is the office open today?"
        await service.stop()

    @pytest.mark.asyncio
    async def test_all_down_is_offline(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        harness.agent.healthy = False
        harness.persistence.healthy = False
        await service.start()

        sent = await service.send_message("s1", "hello")
        fetched = await service.get_messages("s1")

        assert service.get_current_level().level == ServiceLevel.OFFLINE
        assert sent["status"] == "offline"
        assert fetched["status"] == "offline"
        assert service.get_fallback_action("sendMessage") is not None
        await service.stop()

    @pytest.mark.asyncio
    async def test_open_breaker_degrades_to_limited(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()

        service.agent_breaker.force_open()

        assert (await service.assess()).level == ServiceLevel.LIMITED
        assert gauge(metrics, "chat_circuit_breaker_state", service="upstream-agent") == 2.0
        await service.stop()

    @pytest.mark.asyncio
    async def test_invalid_content_rejected_at_every_level(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        harness.agent.healthy = False
        harness.persistence.healthy = False
        await service.start()

        with pytest.raises(MessageValidationError):
            await service.send_message("s1", "")

        assert len(service.queue) == 0
        await service.stop()


class TestServiceConnections:
    """Test session bookkeeping and transport metrics"""

    @pytest.mark.asyncio
    async def test_connection_status_and_gauge(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()

        assert service.get_connection_status("s1") is None

        await service.connect("s1", "u1")
        status = service.get_connection_status("s1")

        assert status.state == ConnectionState.CONNECTED
        assert gauge(metrics, "chat_active_connections") == 1.0

        await service.disconnect("s1")

        assert service.get_connection_status("s1") is None
        assert gauge(metrics, "chat_active_connections") == 0.0
        await service.stop()

    @pytest.mark.asyncio
    async def test_give_up_marks_transport_unhealthy(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()
        await service.connect("s1", "u1")

        harness.transport.refuse = True
        harness.transport.channel.drop()
        await eventually(lambda: service.transport_probe.gave_up)

        level = await service.assess()

        assert level.level == ServiceLevel.LIMITED
        assert level.health["real-time-transport"] is False
        assert gauge(metrics, "chat_errors_total", type="transport_error", service="real-time-transport") >= 1.0
        await service.stop()

    @pytest.mark.asyncio
    async def test_transport_recovery_returns_to_full(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()
        await service.connect("s1", "u1")

        harness.transport.refuse = True
        harness.transport.channel.drop()
        await eventually(lambda: service.transport_probe.gave_up)

        assert (await service.assess()).level == ServiceLevel.LIMITED
        queued = await service.send_message("s2", "Can I book an appointment?")
        assert queued["status"] == "queued"

        harness.transport.refuse = False

        assert (await service.assess()).level == ServiceLevel.FULL
        await eventually(lambda: is_connected(service, "s2"))

        result = await service.send_message("s1", "Still there?")

        assert result["status"] == "delivered"
        assert len(service.queue) == 0
        assert is_connected(service, "s1")
        await service.stop()

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_open_one_channel(self, settings, metrics):
        transport = FakeTransport(responder=echo_responder, connect_delay=0.05)
        harness = ServiceHarness(settings, metrics, transport=transport)
        service = harness.service
        await service.start()

        results = await asyncio.gather(
            service.send_message("s1", "first"),
            service.send_message("s1", "second"),
        )

        assert [r["status"] for r in results] == ["delivered", "delivered"]
        assert transport.connect_calls == 1

        await service.stop()
        assert all(channel.closed for channel in transport.channels)

    @pytest.mark.asyncio
    async def test_stop_closes_sessions(self, settings, metrics):
        harness = ServiceHarness(settings, metrics)
        service = harness.service
        await service.start()
        await service.connect("s1", "u1")
        await service.connect("s2", "u2")

        await service.stop()

        assert all(channel.closed for channel in harness.transport.channels)
        assert service.active_connections == 0
