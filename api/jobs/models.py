"""Job data models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_iso(ts: datetime) -> str:
    """Fixed-width UTC timestamp so stored values sort lexically."""
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utcnow() -> str:
    return to_iso(datetime.now(timezone.utc))


class JobState(str, enum.Enum):
    created = "created"
    submitted = "submitted"
    polling = "polling"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed)

    @property
    def pollable(self) -> bool:
        return self in (JobState.submitted, JobState.polling)


class RemoteStatus(str, enum.Enum):
    """Status reported by the external ML service."""

    running = "running"
    completed = "completed"
    failed = "failed"


# Error strings recorded on failed jobs.
CANCELLED = "Cancelled"
POLL_EXHAUSTED = "PollExhausted"


class TrainingPayload(BaseModel):
    """Training configuration submitted by a caller.

    Feature flags are explicit; ``hyperparameters`` is passed through to the
    external service unchanged.  Accepts the camelCase names used by the
    dashboards (``modelType``, ``abTesting``, ``autoTuning``).
    """

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_type: str = Field(alias="modelType")
    dataset: str
    ab_testing: bool = Field(default=False, alias="abTesting")
    auto_tuning: bool = Field(default=False, alias="autoTuning")
    hyperparameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("model_type", "dataset")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class JobRecord(BaseModel):
    """Persistent representation of a training job."""

    job_id: str
    state: JobState = JobState.created
    payload: TrainingPayload
    user_id: str
    request_token: Optional[str] = None
    external_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)
    next_poll_at: Optional[str] = None
    poll_attempts: int = 0
    transient_errors: int = 0
    fanout_pending: List[str] = Field(default_factory=list)
    fanout_failures: int = 0


class JobStatusView(BaseModel):
    """What callers see from ``get_job_status``."""

    job_id: str
    state: JobState
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    updated_at: Optional[str] = None
    stale: bool = False

    @classmethod
    def from_record(cls, rec: JobRecord) -> "JobStatusView":
        return cls(
            job_id=rec.job_id,
            state=rec.state,
            result=rec.result if rec.state == JobState.completed else None,
            error=rec.error if rec.state == JobState.failed else None,
            updated_at=rec.updated_at,
        )


class PollStatus(BaseModel):
    """Parsed response of ``GET /status/{external_id}``."""

    status: RemoteStatus
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# ── Derived artifacts ────────────────────────────────────────────────


class MetricRecord(BaseModel):
    job_id: str
    user_id: str
    model_type: str
    dataset: str
    metric: str = "accuracy"
    value: float
    created_at: str = Field(default_factory=utcnow)

    model_config = ConfigDict(protected_namespaces=())


class ABTestResult(BaseModel):
    job_id: str
    user_id: str
    model_a: str
    model_b: str
    performance_a: float
    performance_b: float
    created_at: str = Field(default_factory=utcnow)


class TuningResult(BaseModel):
    job_id: str
    user_id: str
    best_hyperparameters: Dict[str, Any]
    performance: Optional[float] = None
    created_at: str = Field(default_factory=utcnow)


class DerivedArtifacts(BaseModel):
    """Artifacts persisted for one completed job."""

    metric: Optional[MetricRecord] = None
    ab_result: Optional[ABTestResult] = None
    tuning_result: Optional[TuningResult] = None


class FanOutReport(BaseModel):
    """Outcome of one fan-out pass."""

    job_id: str
    saved: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    version_notified: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed
