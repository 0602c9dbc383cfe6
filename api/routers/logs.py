"""Log retrieval endpoint."""
from __future__ import annotations

import logging
import time
from collections import deque

from fastapi import APIRouter

from training_centre.config import LOG_BUFFER_SIZE

from ..schemas.envelope import ApiResponse

router = APIRouter(prefix="/api/logs", tags=["logs"])

# In-memory ring buffer for recent log records.
_LOG_BUFFER: deque = deque(maxlen=LOG_BUFFER_SIZE)

_ROOT_LOGGER = "training_centre"


class _BufferHandler(logging.Handler):
    """Captures log records into the ring buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        _LOG_BUFFER.append({
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "job_id": getattr(record, "job_id", None),
        })


_handler = _BufferHandler()
_handler.setLevel(logging.INFO)


def setup_log_buffer() -> None:
    """Attach the buffer handler to the ``training_centre`` logger.

    Safe to call multiple times.  Call this from the app lifespan.
    """
    tc_logger = logging.getLogger(_ROOT_LOGGER)
    if not any(isinstance(h, _BufferHandler) for h in tc_logger.handlers):
        tc_logger.addHandler(_handler)


def teardown_log_buffer() -> None:
    """Detach the buffer handler.  Useful for test cleanup."""
    tc_logger = logging.getLogger(_ROOT_LOGGER)
    tc_logger.removeHandler(_handler)
    _LOG_BUFFER.clear()


@router.get("")
async def get_logs(last_n: int = 100, level: str | None = None) -> ApiResponse:
    t0 = time.monotonic()
    entries = list(_LOG_BUFFER)
    if level:
        entries = [e for e in entries if e["level"] == level.upper()]
    entries = entries[-last_n:] if last_n > 0 else []
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(entries, elapsed_ms=elapsed)
