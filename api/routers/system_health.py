"""System health endpoint."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from ..config import ApiSettings
from ..deps.providers import get_job_store, get_scheduler, get_settings
from ..jobs.models import JobState
from ..jobs.scheduler import PollScheduler
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse

# Jobs counted in the per-state summary.
_RECENT_JOBS_SAMPLE = 200

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def quick_health(
    store: JobStore = Depends(get_job_store),
    scheduler: PollScheduler = Depends(get_scheduler),
    settings: ApiSettings = Depends(get_settings),
) -> ApiResponse:
    t0 = time.monotonic()
    jobs = await store.list_jobs(limit=_RECENT_JOBS_SAMPLE)
    counts = {s.value: 0 for s in JobState}
    for job in jobs:
        counts[job.state.value] += 1
    pending_fanout = await store.jobs_with_pending_fanout(limit=scheduler.config.sweep_batch_size)
    cfg = scheduler.config
    data = {
        "status": "ok" if scheduler.running or not settings.start_scheduler else "degraded",
        "scheduler": {
            "running": scheduler.running,
            "in_flight": scheduler.in_flight_count,
            "initial_delay": cfg.initial_delay,
            "max_interval": cfg.max_interval,
            "max_transient_retries": cfg.max_transient_retries,
        },
        "runner_base_url": settings.runner_base_url,
        "version_notifications": bool(settings.version_url),
        "recent_jobs": counts,
        "pending_fanout": len(pending_fanout),
    }
    warnings = []
    if data["status"] == "degraded":
        warnings.append("Poll scheduler is not running; submitted jobs will not advance")
    if pending_fanout:
        warnings.append(f"{len(pending_fanout)} completed job(s) have unsaved artifacts")
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(data, warnings=warnings, elapsed_ms=elapsed)
