"""Environment knobs for storyloop.

Every value has a safe default. Reads happen on call so tests can patch the
environment per case.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_DB_FILENAME = "storyloop.db"


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _read_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _read_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def get_db_path() -> str:
    env_path = os.getenv("SL_DB_PATH")
    if env_path:
        return env_path
    state_dir = Path.cwd() / ".storyloop"
    state_dir.mkdir(parents=True, exist_ok=True)
    return str(state_dir / DEFAULT_DB_FILENAME)


def startup_recovery_enabled(default: bool = True) -> bool:
    if _is_truthy(os.getenv("SL_DISABLE_STARTUP_RECOVERY")):
        return False
    return default


def logfire_disabled() -> bool:
    return _is_truthy(os.getenv("SL_DISABLE_LOGFIRE"))


def api_host() -> str:
    return (os.getenv("SL_API_HOST") or "127.0.0.1").strip()


def api_port() -> int:
    return _read_int("SL_API_PORT", 8011, minimum=1)


def tracker_endpoint(provider: str) -> tuple[str | None, str | None]:
    """Return the (url, token) pair configured for a tracker provider."""
    key = provider.strip().upper().replace("-", "_")
    url = (os.getenv(f"SL_TRACKER_{key}_URL") or "").strip() or None
    token = (os.getenv(f"SL_TRACKER_{key}_TOKEN") or "").strip() or None
    return url, token


@dataclass(frozen=True)
class RunnerTimings:
    heartbeat_interval_seconds: float = 15.0
    heartbeat_stale_seconds: float = 90.0
    zombie_sweep_interval_seconds: float = 30.0
    agent_timeout_seconds: float = 600.0
    iteration_delay_seconds: float = 2.0
    selection_retry_delay_seconds: float = 1.0
    selection_error_delay_seconds: float = 2.0
    empty_scope_retry_delay_seconds: float = 3.0
    empty_scope_retries: int = 3
    selection_retry_limit: int = 5

    @classmethod
    def from_env(cls) -> "RunnerTimings":
        return cls(
            heartbeat_interval_seconds=_read_float(
                "SL_HEARTBEAT_INTERVAL_SECONDS", 15.0, minimum=1.0
            ),
            heartbeat_stale_seconds=_read_float(
                "SL_HEARTBEAT_STALE_SECONDS", 90.0, minimum=5.0
            ),
            zombie_sweep_interval_seconds=_read_float(
                "SL_ZOMBIE_SWEEP_INTERVAL_SECONDS", 30.0, minimum=1.0
            ),
            agent_timeout_seconds=_read_float(
                "SL_AGENT_TIMEOUT_SECONDS", 600.0, minimum=1.0
            ),
            iteration_delay_seconds=_read_float("SL_ITERATION_DELAY_SECONDS", 2.0),
            selection_retry_delay_seconds=_read_float(
                "SL_SELECTION_RETRY_DELAY_SECONDS", 1.0
            ),
            selection_error_delay_seconds=_read_float(
                "SL_SELECTION_ERROR_DELAY_SECONDS", 2.0
            ),
            empty_scope_retry_delay_seconds=_read_float(
                "SL_EMPTY_SCOPE_RETRY_DELAY_SECONDS", 3.0
            ),
            empty_scope_retries=_read_int("SL_EMPTY_SCOPE_RETRIES", 3, minimum=1),
            selection_retry_limit=_read_int("SL_SELECTION_RETRY_LIMIT", 5, minimum=1),
        )
