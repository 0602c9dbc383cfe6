"""
Central configuration for the training centre.

Flat-constant interface derived from the structured config singleton in
``config_structured.py`` so there is a single source of truth.

Config Status Legend
====================
  ACTIVE: Imported and used by running code.

Search for ``# STATUS:`` to locate all annotations.
"""
from pathlib import Path

try:
    from .config_structured import get_config as _get_config
except ImportError:
    from config_structured import get_config as _get_config

_cfg = _get_config()

# ── Paths ──────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).parent                  # STATUS: ACTIVE: base path for relative references
JOB_DB_PATH = _cfg.store.db_path                  # STATUS: ACTIVE: api/config.py default job database
JOB_LIST_LIMIT = _cfg.store.list_limit            # STATUS: ACTIVE: api/routers/jobs.py default page size

# ── Polling ───────────────────────────────────────────────────────────
POLL_INITIAL_DELAY = _cfg.poll.initial_delay      # STATUS: ACTIVE: api/jobs/scheduler.py; first check 5 minutes after submit
POLL_BACKOFF_BASE = _cfg.poll.backoff_base        # STATUS: ACTIVE: api/jobs/scheduler.py; first reschedule interval
POLL_BACKOFF_FACTOR = _cfg.poll.backoff_factor    # STATUS: ACTIVE: api/jobs/scheduler.py; interval multiplier per running poll
POLL_MAX_INTERVAL = _cfg.poll.max_interval        # STATUS: ACTIVE: api/jobs/scheduler.py; backoff ceiling (10 minutes)
POLL_MAX_TRANSIENT_RETRIES = _cfg.poll.max_transient_retries  # STATUS: ACTIVE: consecutive transient errors before PollExhausted
POLL_SWEEP_INTERVAL = _cfg.poll.sweep_interval    # STATUS: ACTIVE: api/jobs/scheduler.py; how often due jobs are swept
POLL_MAX_CONCURRENT_TICKS = _cfg.poll.max_concurrent_ticks  # STATUS: ACTIVE: parallel ticks across distinct jobs
POLL_SWEEP_BATCH_SIZE = _cfg.poll.sweep_batch_size  # STATUS: ACTIVE: due jobs loaded per sweep
POLL_MAX_FANOUT_FAILURES = _cfg.poll.max_fanout_failures  # STATUS: ACTIVE: api/jobs/scheduler.py; failed fan-out passes before the sweep stops retrying

# ── External ML service ───────────────────────────────────────────────
RUNNER_BASE_URL = _cfg.runner.base_url            # STATUS: ACTIVE: api/jobs/external.py
RUNNER_TIMEOUT_SECONDS = _cfg.runner.timeout_seconds  # STATUS: ACTIVE: per-request timeout
RUNNER_API_KEY = _cfg.runner.api_key              # STATUS: ACTIVE: sent as bearer token when set

# ── Fan-out ───────────────────────────────────────────────────────────
FANOUT_MAX_ATTEMPTS = _cfg.fanout.max_attempts    # STATUS: ACTIVE: api/jobs/fanout.py; per-artifact save attempts
FANOUT_RETRY_DELAY = _cfg.fanout.retry_delay_seconds  # STATUS: ACTIVE: pause between artifact save attempts
VERSION_NOTIFY_URL = _cfg.fanout.version_url      # STATUS: ACTIVE: api/jobs/versioning.py; None disables notifications
VERSION_NOTIFY_TIMEOUT = _cfg.fanout.version_timeout_seconds  # STATUS: ACTIVE: versioning request timeout
PERFORMANCE_HISTORY_LIMIT = 10                    # STATUS: ACTIVE: api/routers/metrics.py; metrics per caller

# ── Logging ───────────────────────────────────────────────────────────
LOG_LEVEL = _cfg.logging.level                    # STATUS: ACTIVE: api/main.py; "DEBUG", "INFO", "WARNING", "ERROR"
LOG_FORMAT = _cfg.logging.format.value            # STATUS: ACTIVE: api/main.py; "structured" or "json"
LOG_BUFFER_SIZE = 500                             # STATUS: ACTIVE: api/routers/logs.py ring buffer length


# ── Config Validation ──────────────────────────────────────────────

def validate_config() -> list:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    Called on server startup.
    """
    import os

    issues = []

    # 1. Runner points at the local default
    if "localhost" in RUNNER_BASE_URL or "127.0.0.1" in RUNNER_BASE_URL:
        issues.append({
            "level": "WARNING",
            "message": (
                f"RUNNER_BASE_URL is {RUNNER_BASE_URL}. Set TC_RUNNER_BASE_URL to the "
                "external ML service before submitting real jobs."
            ),
        })

    # 2. Versioning collaborator not configured
    if not VERSION_NOTIFY_URL:
        issues.append({
            "level": "WARNING",
            "message": (
                "TC_VERSION_URL is not set. Completed jobs will not notify the "
                "versioning service."
            ),
        })

    # 3. First poll scheduled later than the backoff ceiling
    if POLL_INITIAL_DELAY > POLL_MAX_INTERVAL:
        issues.append({
            "level": "WARNING",
            "message": (
                f"POLL_INITIAL_DELAY ({POLL_INITIAL_DELAY}s) exceeds POLL_MAX_INTERVAL "
                f"({POLL_MAX_INTERVAL}s). Staleness checks compare against the ceiling."
            ),
        })

    # 4. Auth enabled without a token rejects every mutation
    auth_enabled = os.environ.get("TC_API_AUTH_ENABLED", "true").lower() in ("true", "1", "yes")
    if auth_enabled and not os.environ.get("TC_API_TOKEN", ""):
        issues.append({
            "level": "ERROR",
            "message": (
                "TC_API_AUTH_ENABLED is true but TC_API_TOKEN is not set. "
                "All job submissions will be rejected."
            ),
        })

    # 5. Job database directory missing
    db_parent = Path(JOB_DB_PATH).parent
    if str(JOB_DB_PATH) != ":memory:" and not db_parent.exists():
        issues.append({
            "level": "ERROR",
            "message": f"Job database directory ({db_parent}) does not exist.",
        })

    return issues
