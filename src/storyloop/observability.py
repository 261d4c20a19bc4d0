from __future__ import annotations

import logging
import os

import logfire

from storyloop.feature_flags import logfire_disabled

logger = logging.getLogger(__name__)

_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    level_name = (level or os.getenv("SL_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def configure_logfire() -> bool:
    """Configure Logfire for tracing if a token is available."""
    global _CONFIGURED
    if _CONFIGURED:
        return True
    token = os.getenv("LOGFIRE_TOKEN") or os.getenv("LOGFIRE_WRITE_TOKEN")
    if not token or logfire_disabled():
        return False

    logfire.configure(
        service_name="storyloop",
        environment=os.getenv("SL_ENVIRONMENT", "development"),
        console=False,
        token=token,
        send_to_logfire="if-token-present",
    )
    try:
        logfire.instrument_httpx()
    except Exception as exc:
        logger.debug("httpx instrumentation unavailable: %s", exc)
    _CONFIGURED = True
    return True
