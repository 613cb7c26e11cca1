"""
Structured Logging
==================
loguru setup and a helper for the structured events the core emits.

Every event carries service name, timestamp and event kind; failures add
the error message.
"""

import sys
from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from govchat.config import Settings


PLAIN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[service]}</cyan> | "
    "{message}"
)


def configure_logging(settings: Settings) -> None:
    """
    Install a single loguru sink.

    Args:
        settings: Uses log_level, log_json and service_name
    """
    logger.remove()
    logger.configure(extra={"service": settings.service_name})
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        serialize=settings.log_json,
        format=PLAIN_FORMAT,
        backtrace=settings.debug,
        diagnose=settings.debug,
    )
    logger.info("Logging configured (level={}, json={})", settings.log_level, settings.log_json)


def log_event(
    kind: str,
    service: str,
    error: Optional[str] = None,
    level: str = "INFO",
    **fields,
) -> None:
    """
    Emit one structured event.

    Usage:
        log_event("circuit_opened", service="upstream-agent", level="WARNING")
    """
    bound = logger.bind(
        service=service,
        event=kind,
        timestamp=datetime.now(timezone.utc).isoformat(),
        **fields,
    )
    if error is not None:
        bound = bound.bind(error=error)
        bound.log(level, "{} [{}]: {}", kind, service, error)
    else:
        bound.log(level, "{} [{}]", kind, service)
