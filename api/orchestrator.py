"""Training job orchestrator: the entrypoints callers use.

``start_job`` persists the job and attempts submission, then returns; the
rest of the lifecycle is driven by the poll scheduler.  Errors after
submission are recorded on the job and observed through ``get_job_status``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from pydantic import ValidationError

from .jobs.errors import (
    JobAccessError,
    JobConflictError,
    PayloadValidationError,
    SubmissionError,
    UnauthenticatedError,
)
from .jobs.external import ExternalRunner
from .jobs.models import CANCELLED, JobRecord, JobState, JobStatusView, TrainingPayload
from .jobs.scheduler import PollScheduler
from .jobs.store import JobStore

logger = logging.getLogger(__name__)

# Read-modify-write retries when a concurrent tick wins the compare-and-swap.
_CONFLICT_RETRIES = 5


def parse_payload(raw: Union[TrainingPayload, Dict[str, Any]]) -> TrainingPayload:
    """Validate a raw training request.

    Raises
    ------
    PayloadValidationError
        If required fields (model type, dataset) are missing or malformed.
    """
    if isinstance(raw, TrainingPayload):
        return raw
    try:
        return TrainingPayload.model_validate(raw or {})
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise PayloadValidationError(f"Invalid training payload: {', '.join(fields)}") from exc


class TrainingOrchestrator:
    """Owns the public job lifecycle operations."""

    def __init__(self, store: JobStore, runner: ExternalRunner, scheduler: PollScheduler) -> None:
        self._store = store
        self._runner = runner
        self._scheduler = scheduler
        # job_id -> [lock, holders]; serialises submission of one job in this process
        self._submit_locks: Dict[str, List[Any]] = {}

    async def start_job(
        self,
        payload: Union[TrainingPayload, Dict[str, Any]],
        user_id: Optional[str],
        request_token: Optional[str] = None,
    ) -> JobRecord:
        """Create (or reuse) a job and try to submit it.

        A submission failure leaves the job in ``created``; calling again
        with the same *request_token* retries the submission without
        creating another job.

        Raises
        ------
        UnauthenticatedError
            If no caller identity is supplied.
        PayloadValidationError
            If the payload is invalid.  No job is created.
        """
        if not user_id or not str(user_id).strip():
            raise UnauthenticatedError("User must be authenticated.")
        training = parse_payload(payload)

        job = await self._store.create_job(training, str(user_id).strip(), request_token)
        if job.state != JobState.created:
            return job

        async with self._submission_lock(job.job_id):
            # A concurrent call with the same token may have submitted it already.
            job = await self._store.get_job(job.job_id)
            if job.state != JobState.created:
                return job
            return await self._submit(job)

    @contextlib.asynccontextmanager
    async def _submission_lock(self, job_id: str) -> AsyncIterator[None]:
        entry = self._submit_locks.setdefault(job_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._submit_locks.pop(job_id, None)

    async def _submit(self, job: JobRecord) -> JobRecord:
        try:
            external_id = await asyncio.to_thread(
                self._runner.submit, job.job_id, job.payload, job.user_id
            )
        except SubmissionError as exc:
            logger.warning(
                "Submission of job %s failed; job stays created: %s", job.job_id, exc,
                extra={"job_id": job.job_id},
            )
            return job

        try:
            job = await self._store.update_job(
                job.job_id,
                JobState.created,
                state=JobState.submitted,
                external_id=external_id,
                next_poll_at=self._scheduler.first_poll_at(),
            )
        except JobConflictError as exc:
            # Cancelled (or submitted by a concurrent retry) while we were submitting.
            logger.warning(
                "Job %s changed during submission: %s", job.job_id, exc,
                extra={"job_id": job.job_id},
            )
            return await self._store.get_job(job.job_id)

        logger.info(
            "Job %s submitted (external id %s)", job.job_id, external_id,
            extra={"job_id": job.job_id},
        )
        await self._scheduler.emit(job.job_id, {
            "event": "submitted",
            "job_id": job.job_id,
            "external_id": external_id,
        })
        self._scheduler.wake()
        return job

    async def get_job_status(self, job_id: str) -> JobStatusView:
        """Raises ``JobNotFoundError`` for unknown IDs."""
        rec = await self._store.get_job(job_id)
        view = JobStatusView.from_record(rec)
        view.stale = self._scheduler.is_stale(rec)
        return view

    async def cancel_job(self, job_id: str, user_id: Optional[str] = None) -> JobStatusView:
        """Fail a non-terminal job with reason ``Cancelled``.

        Terminal jobs are returned unchanged.  A poll already in flight may
        finish, but its result is discarded by the compare-and-swap.  When
        *user_id* is given it must match the job's owner, otherwise
        ``JobAccessError`` is raised.
        """
        for _ in range(_CONFLICT_RETRIES):
            rec = await self._store.get_job(job_id)
            if user_id is not None and rec.user_id != user_id:
                raise JobAccessError(f"Job '{job_id}' belongs to another user")
            if rec.state.terminal:
                return JobStatusView.from_record(rec)
            try:
                rec = await self._store.update_job(
                    job_id,
                    rec.state,
                    state=JobState.failed,
                    error=CANCELLED,
                    next_poll_at=None,
                )
            except JobConflictError:
                continue
            logger.info("Job %s cancelled", job_id, extra={"job_id": job_id})
            await self._scheduler.emit(job_id, {"event": "cancelled", "job_id": job_id})
            await self._scheduler.emit(job_id, {"event": "done", "job_id": job_id})
            return JobStatusView.from_record(rec)

        rec = await self._store.get_job(job_id)
        return JobStatusView.from_record(rec)
