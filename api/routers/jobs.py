"""Training job endpoints."""
from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sse_starlette.sse import EventSourceResponse

from training_centre.config import JOB_LIST_LIMIT

from ..deps.auth import get_caller_id, require_auth, require_caller_id
from ..deps.providers import get_artifact_store, get_job_store, get_orchestrator, get_scheduler
from ..jobs.artifacts import ArtifactStore
from ..jobs.scheduler import PollScheduler
from ..jobs.store import JobStore
from ..orchestrator import TrainingOrchestrator
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import JobCreatedResponse, StartJobRequest

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", dependencies=[Depends(require_auth)])
async def start_job(
    req: StartJobRequest,
    user_id: str = Depends(require_caller_id),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
) -> ApiResponse:
    token = idempotency_key or req.request_token
    rec = await orchestrator.start_job(req.training_fields(), user_id, request_token=token)
    return ApiResponse.success(JobCreatedResponse(job_id=rec.job_id, state=rec.state.value).model_dump())


@router.get("")
async def list_jobs(
    limit: int = JOB_LIST_LIMIT,
    user_id: Optional[str] = Depends(get_caller_id),
    store: JobStore = Depends(get_job_store),
) -> ApiResponse:
    jobs = await store.list_jobs(limit=limit, user_id=user_id)
    return ApiResponse.success([j.model_dump(mode="json") for j in jobs])


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
) -> ApiResponse:
    view = await orchestrator.get_job_status(job_id)
    warnings = ["Job has not been polled within its schedule"] if view.stale else None
    return ApiResponse.success(view.model_dump(mode="json"), warnings=warnings or [])


@router.get("/{job_id}/events")
async def job_events(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    scheduler: PollScheduler = Depends(get_scheduler),
):
    await store.get_job(job_id)

    async def _generate():
        async for event in scheduler.subscribe_events(job_id):
            yield {"event": event.get("event", "message"), "data": json.dumps(event, default=str)}

    return EventSourceResponse(_generate())


@router.post("/{job_id}/cancel", dependencies=[Depends(require_auth)])
async def cancel_job(
    job_id: str,
    user_id: str = Depends(require_caller_id),
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
) -> ApiResponse:
    view = await orchestrator.cancel_job(job_id, user_id=user_id)
    return ApiResponse.success(view.model_dump(mode="json"))


@router.post("/{job_id}/poll", dependencies=[Depends(require_auth)])
async def poll_now(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    scheduler: PollScheduler = Depends(get_scheduler),
) -> ApiResponse:
    """Queue an immediate status check instead of waiting for the schedule."""
    rec = await store.get_job(job_id)
    if not rec.state.pollable:
        return ApiResponse.success(
            {"queued": False, "state": rec.state.value},
            warnings=[f"Job is {rec.state.value}; nothing to poll"],
        )
    scheduler.trigger(job_id)
    return ApiResponse.success({"queued": True, "state": rec.state.value})


@router.get("/{job_id}/artifacts")
async def job_artifacts(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    artifacts: ArtifactStore = Depends(get_artifact_store),
) -> ApiResponse:
    rec = await store.get_job(job_id)
    found = await artifacts.get_artifacts(job_id)
    data = found.model_dump(mode="json")
    data["fanout_pending"] = rec.fanout_pending
    return ApiResponse.success(data)
