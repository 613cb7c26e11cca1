"""
Shared pytest fixtures.

Settings are shrunk so reconnect, breaker reset and retry delays run in
milliseconds.
"""

import pytest

from govchat.config import Settings
from govchat.observability import ChatMetrics

from fakes import FakeTransport, echo_responder


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        service_name="govchat-test",
        agent_ws_url="ws://agent.test/ws/agents",
        ws_timeout_sec=1.0,
        ws_reconnect_attempts=3,
        ws_reconnect_delay_sec=0.01,
        ws_heartbeat_interval_sec=30.0,
        ws_heartbeat_timeout_sec=1.0,
        transport_retry_max_attempts=2,
        transport_retry_base_delay_sec=0.01,
        transport_retry_max_delay_sec=0.02,
        message_retry_max_attempts=3,
        message_retry_delay_sec=0.01,
        api_retry_max_attempts=2,
        api_retry_base_delay_sec=0.01,
        api_retry_max_delay_sec=0.02,
        agent_breaker_timeout_sec=1.0,
        agent_breaker_error_threshold_percent=50,
        agent_breaker_reset_timeout_sec=0.2,
        agent_breaker_volume_threshold=2,
        agent_breaker_rolling_window_sec=10.0,
        agent_reply_timeout_sec=0.3,
        health_probe_timeout_sec=0.2,
        health_check_interval_sec=60.0,
        metrics_refresh_interval_sec=60.0,
        redis_url="",
        pending_queue_size=10,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(responder=echo_responder)


@pytest.fixture
def metrics() -> ChatMetrics:
    return ChatMetrics()
