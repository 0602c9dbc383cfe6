"""
Structured configuration for the training centre using typed dataclasses.

This is the AUTHORITATIVE source of truth for all configuration values.
``config.py`` imports from here for the flat-constant interface.

Each subsystem gets its own dataclass.  Values may be overridden through
``TC_*`` environment variables, read once when ``get_config()`` builds the
singleton.

Usage:
    from config_structured import get_config
    cfg = get_config()
    cfg.poll.initial_delay      # seconds before the first status check
    cfg.runner.base_url         # external ML service
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class LogFormat(Enum):
    """Log line format used by the API process."""
    STRUCTURED = "structured"
    JSON = "json"


@dataclass
class PollConfig:
    """Status polling and backoff for externally executed jobs.

    The first poll happens ``initial_delay`` seconds after submission.  While
    the runner reports the job as running, the k-th reschedule waits
    ``min(backoff_base * 2**k, max_interval)`` seconds.
    """
    initial_delay: float = 300.0
    backoff_base: float = 30.0
    backoff_factor: float = 2.0
    max_interval: float = 600.0
    max_transient_retries: int = 5
    sweep_interval: float = 5.0
    max_concurrent_ticks: int = 4
    sweep_batch_size: int = 50
    max_fanout_failures: int = 10

    def __post_init__(self):
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
        if self.backoff_base <= 0:
            raise ValueError(f"backoff_base must be > 0, got {self.backoff_base}")
        if self.backoff_factor < 1.0:
            raise ValueError(f"backoff_factor must be >= 1.0, got {self.backoff_factor}")
        if self.max_interval < self.backoff_base:
            raise ValueError(
                f"max_interval ({self.max_interval}) must be >= backoff_base ({self.backoff_base})"
            )
        if self.max_transient_retries < 0:
            raise ValueError(
                f"max_transient_retries must be >= 0, got {self.max_transient_retries}"
            )
        if self.sweep_interval <= 0:
            raise ValueError(f"sweep_interval must be > 0, got {self.sweep_interval}")
        if self.max_concurrent_ticks < 1:
            raise ValueError(
                f"max_concurrent_ticks must be >= 1, got {self.max_concurrent_ticks}"
            )
        if self.max_fanout_failures < 1:
            raise ValueError(
                f"max_fanout_failures must be >= 1, got {self.max_fanout_failures}"
            )


@dataclass
class RunnerConfig:
    """External ML service endpoint."""
    base_url: str = "http://localhost:9000"
    timeout_seconds: float = 20.0
    api_key: Optional[str] = None


@dataclass
class FanOutConfig:
    """Artifact fan-out after a job completes."""
    max_attempts: int = 3
    retry_delay_seconds: float = 0.5
    version_url: Optional[str] = None
    version_timeout_seconds: float = 5.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


@dataclass
class StoreConfig:
    """Job and artifact persistence."""
    db_path: Path = Path("training_jobs.db")
    list_limit: int = 50


@dataclass
class LoggingConfig:
    """Process-wide logging."""
    level: str = "INFO"
    format: LogFormat = LogFormat.STRUCTURED

    def __post_init__(self):
        if isinstance(self.format, str):
            self.format = LogFormat(self.format)
        self.level = self.level.upper()


@dataclass
class TrainingCentreConfig:
    """Root configuration object."""
    poll: PollConfig = field(default_factory=PollConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    fanout: FanOutConfig = field(default_factory=FanOutConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def load_config() -> TrainingCentreConfig:
    """Build a config from defaults plus ``TC_*`` environment overrides."""
    poll_defaults = PollConfig()
    poll = PollConfig(
        initial_delay=_env_float("TC_POLL_INITIAL_DELAY", poll_defaults.initial_delay),
        backoff_base=_env_float("TC_POLL_BACKOFF_BASE", poll_defaults.backoff_base),
        backoff_factor=_env_float("TC_POLL_BACKOFF_FACTOR", poll_defaults.backoff_factor),
        max_interval=_env_float("TC_POLL_MAX_INTERVAL", poll_defaults.max_interval),
        max_transient_retries=_env_int(
            "TC_POLL_MAX_TRANSIENT_RETRIES", poll_defaults.max_transient_retries
        ),
        sweep_interval=_env_float("TC_POLL_SWEEP_INTERVAL", poll_defaults.sweep_interval),
        max_concurrent_ticks=_env_int(
            "TC_POLL_MAX_CONCURRENT_TICKS", poll_defaults.max_concurrent_ticks
        ),
        max_fanout_failures=_env_int(
            "TC_POLL_MAX_FANOUT_FAILURES", poll_defaults.max_fanout_failures
        ),
    )
    runner = RunnerConfig(
        base_url=os.environ.get("TC_RUNNER_BASE_URL", RunnerConfig.base_url),
        timeout_seconds=_env_float("TC_RUNNER_TIMEOUT", RunnerConfig.timeout_seconds),
        api_key=os.environ.get("TC_RUNNER_API_KEY") or None,
    )
    fanout = FanOutConfig(
        max_attempts=_env_int("TC_FANOUT_MAX_ATTEMPTS", FanOutConfig.max_attempts),
        version_url=os.environ.get("TC_VERSION_URL") or None,
    )
    store = StoreConfig(
        db_path=Path(os.environ.get("TC_DB_PATH", str(StoreConfig.db_path))),
    )
    log = LoggingConfig(
        level=os.environ.get("TC_LOG_LEVEL", "INFO"),
        format=os.environ.get("TC_LOG_FORMAT", LogFormat.STRUCTURED.value),
    )
    return TrainingCentreConfig(poll=poll, runner=runner, fanout=fanout, store=store, logging=log)


_CONFIG: Optional[TrainingCentreConfig] = None


def get_config() -> TrainingCentreConfig:
    """Return the process-wide config, building it on first use."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config() -> None:
    """Drop the cached config so the next ``get_config()`` re-reads the environment."""
    global _CONFIG
    _CONFIG = None
