"""Performance history endpoint."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from training_centre.config import PERFORMANCE_HISTORY_LIMIT

from ..deps.auth import require_caller_id
from ..deps.providers import get_artifact_store
from ..jobs.artifacts import ArtifactStore
from ..schemas.envelope import ApiResponse

router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("/performance")
async def performance_history(
    user_id: str = Depends(require_caller_id),
    artifacts: ArtifactStore = Depends(get_artifact_store),
) -> ApiResponse:
    """Accuracy of the caller's most recent completed jobs, newest first."""
    t0 = time.monotonic()
    records = await artifacts.recent_metrics(user_id, limit=PERFORMANCE_HISTORY_LIMIT)
    data = [
        {
            "date": r.created_at.split("T")[0],
            "accuracy": r.value,
            "model_type": r.model_type,
            "job_id": r.job_id,
            "created_at": r.created_at,
        }
        for r in records
    ]
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(data, elapsed_ms=elapsed)
