"""SQLite-backed orchestration of externally executed training jobs."""
from .artifacts import ArtifactStore
from .errors import (
    FanOutError,
    JobConflictError,
    JobNotFoundError,
    JobQueueFullError,
    PayloadValidationError,
    PollError,
    SubmissionError,
    TransientPollError,
    UnauthenticatedError,
)
from .external import ExternalRunner
from .fanout import CompletionFanOut
from .models import JobRecord, JobState, JobStatusView, TrainingPayload
from .scheduler import PollScheduler
from .store import JobStore
from .versioning import VersionNotifier

__all__ = [
    "ArtifactStore",
    "CompletionFanOut",
    "ExternalRunner",
    "FanOutError",
    "JobConflictError",
    "JobNotFoundError",
    "JobQueueFullError",
    "JobRecord",
    "JobState",
    "JobStatusView",
    "JobStore",
    "PayloadValidationError",
    "PollError",
    "PollScheduler",
    "SubmissionError",
    "TrainingPayload",
    "TransientPollError",
    "UnauthenticatedError",
    "VersionNotifier",
]
