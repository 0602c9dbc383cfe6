"""Settings for the API layer."""
from __future__ import annotations

from pydantic_settings import BaseSettings

from training_centre.config import (
    FANOUT_MAX_ATTEMPTS,
    FANOUT_RETRY_DELAY,
    JOB_DB_PATH,
    LOG_LEVEL,
    RUNNER_API_KEY,
    RUNNER_BASE_URL,
    RUNNER_TIMEOUT_SECONDS,
    VERSION_NOTIFY_TIMEOUT,
    VERSION_NOTIFY_URL,
)


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    job_db_path: str = str(JOB_DB_PATH)
    log_level: str = LOG_LEVEL

    runner_base_url: str = RUNNER_BASE_URL
    runner_timeout_seconds: float = RUNNER_TIMEOUT_SECONDS
    runner_api_key: str | None = RUNNER_API_KEY

    version_url: str | None = VERSION_NOTIFY_URL
    version_timeout_seconds: float = VERSION_NOTIFY_TIMEOUT
    fanout_max_attempts: int = FANOUT_MAX_ATTEMPTS
    fanout_retry_delay: float = FANOUT_RETRY_DELAY

    start_scheduler: bool = True
    max_queued_polls: int = 100

    model_config = {"env_prefix": "TC_API_"}
