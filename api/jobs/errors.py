"""Job orchestration error taxonomy."""
from __future__ import annotations


class JobNotFoundError(Exception):
    """Requested job ID does not exist."""


class JobConflictError(Exception):
    """Stored job state did not match the expected prior state."""

    def __init__(self, job_id: str, expected: str, actual: str | None) -> None:
        super().__init__(
            f"Job '{job_id}' is in state {actual!r}, expected {expected!r}"
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class PayloadValidationError(Exception):
    """Training payload is missing required fields or is malformed."""


class UnauthenticatedError(Exception):
    """No caller identity is attached to the request."""


class SubmissionError(Exception):
    """External runner rejected or could not receive a submission."""


class PollError(Exception):
    """Non-retriable failure while checking external job status."""


class TransientPollError(PollError):
    """Status check failed in a way that is expected to clear on retry."""


class FanOutError(Exception):
    """A derived artifact could not be persisted after all attempts."""

    def __init__(self, job_id: str, kind: str, cause: Exception) -> None:
        super().__init__(f"Failed to save {kind} for job '{job_id}': {cause}")
        self.job_id = job_id
        self.kind = kind
        self.cause = cause


class JobQueueFullError(Exception):
    """Raised when the scheduler has too many ticks in flight."""


class JobAccessError(Exception):
    """Caller does not own the job it tried to change."""
