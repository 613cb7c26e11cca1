"""
GovChat Configuration Management
================================
Centralized settings using Pydantic Settings.

Values are read once, when components are constructed. Nothing in the
resilience core re-reads configuration mid-flight.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GOVCHAT_",
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # Service
    # ═══════════════════════════════════════════════════════════════
    service_name: str = "govchat"
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False

    # ═══════════════════════════════════════════════════════════════
    # Real-time transport (upstream agent WebSocket)
    # ═══════════════════════════════════════════════════════════════
    agent_ws_url: str = "ws://localhost:8080/ws/agents"
    ws_timeout_sec: float = 5.0
    ws_reconnect_attempts: int = 5
    ws_reconnect_delay_sec: float = 1.0
    ws_heartbeat_interval_sec: float = 30.0
    ws_heartbeat_timeout_sec: float = 10.0
    max_message_chars: int = 4000

    # ═══════════════════════════════════════════════════════════════
    # Retry policies
    # ═══════════════════════════════════════════════════════════════
    transport_retry_max_attempts: int = 5
    transport_retry_base_delay_sec: float = 1.0
    transport_retry_max_delay_sec: float = 30.0

    message_retry_max_attempts: int = 3
    message_retry_delay_sec: float = 0.5

    api_retry_max_attempts: int = 3
    api_retry_base_delay_sec: float = 0.5
    api_retry_max_delay_sec: float = 5.0

    # ═══════════════════════════════════════════════════════════════
    # Upstream agent circuit breaker
    # ═══════════════════════════════════════════════════════════════
    agent_breaker_timeout_sec: float = 10.0
    agent_breaker_error_threshold_percent: int = 50
    agent_breaker_reset_timeout_sec: float = 30.0
    agent_breaker_volume_threshold: int = 5
    agent_breaker_rolling_window_sec: float = 10.0
    agent_reply_timeout_sec: float = 8.0

    # ═══════════════════════════════════════════════════════════════
    # Health checks & degradation
    # ═══════════════════════════════════════════════════════════════
    agent_health_path: str = "/health"
    health_probe_timeout_sec: float = 3.0
    health_check_interval_sec: float = 30.0
    metrics_refresh_interval_sec: float = 10.0

    # ═══════════════════════════════════════════════════════════════
    # Persistence (conversation store)
    # ═══════════════════════════════════════════════════════════════
    redis_url: str = ""
    session_ttl_sec: int = 86400
    max_history_messages: int = 50

    # ═══════════════════════════════════════════════════════════════
    # Limited-mode message queue (in-memory, lost on restart)
    # ═══════════════════════════════════════════════════════════════
    pending_queue_size: int = 500


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
