"""Durable status polling for submitted jobs, with backoff and SSE events.

The schedule lives in the database (``jobs.next_poll_at``), so a restarted
process picks up where the previous one stopped.  A background sweep loads
due jobs and runs one *tick* per job; ticks for distinct jobs run in
parallel under a semaphore.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Optional, Set

from training_centre.config_structured import PollConfig

from .errors import JobConflictError, JobQueueFullError, PollError, TransientPollError
from .external import ExternalRunner
from .fanout import VERSION_NOTIFICATION, CompletionFanOut
from .models import POLL_EXHAUSTED, JobRecord, JobState, RemoteStatus, to_iso
from .store import JobStore

logger = logging.getLogger(__name__)


class PollScheduler:
    """Turns ``submitted`` jobs into a sequence of status checks.

    Each tick:
      1. reloads the job and does nothing unless it is submitted/polling
      2. asks the external runner for the job's status
      3. running   -> reschedule at the next backoff interval
         completed -> mark completed, then fan out artifacts
         failed    -> mark failed
         transient -> reschedule at the current interval, fail after
                      ``max_transient_retries`` consecutive errors
    All writes are compare-and-swap on the state the tick loaded; losing
    the race (e.g. to a cancellation) discards the tick's result.
    """

    def __init__(
        self,
        store: JobStore,
        runner: ExternalRunner,
        fanout: CompletionFanOut,
        config: Optional[PollConfig] = None,
        max_queued: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._fanout = fanout
        self._cfg = config or PollConfig()
        self._max_queued = max_queued
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sem = asyncio.Semaphore(self._cfg.max_concurrent_ticks)
        self._in_flight: Set[str] = set()
        self._triggered: Dict[str, asyncio.Task] = {}
        self._event_subscribers: Dict[str, list] = {}
        self._wake = asyncio.Event()
        self._sweeper: Optional[asyncio.Task] = None

    # ── Backoff ──────────────────────────────────────────────────────

    @property
    def config(self) -> PollConfig:
        return self._cfg

    def interval_for(self, attempts: int) -> float:
        """Delay after the *attempts*-th "still running" response (0-based)."""
        delay = self._cfg.backoff_base * (self._cfg.backoff_factor ** max(attempts, 0))
        return min(delay, self._cfg.max_interval)

    def _due_at(self, delay: float) -> str:
        return to_iso(self._clock() + timedelta(seconds=delay))

    def first_poll_at(self) -> str:
        """``next_poll_at`` value for a freshly submitted job."""
        return self._due_at(self._cfg.initial_delay)

    def is_stale(self, job: JobRecord) -> bool:
        """True when a pollable job has not been touched for longer than the schedule allows."""
        if not job.state.pollable:
            return False
        ceiling = max(self._cfg.initial_delay, self._cfg.max_interval) + 2 * self._cfg.sweep_interval
        updated = datetime.fromisoformat(job.updated_at)
        return (self._clock() - updated).total_seconds() > ceiling

    # ── Ticks ────────────────────────────────────────────────────────

    @property
    def in_flight_count(self) -> int:
        """Number of jobs with a tick or fan-out retry running."""
        return len(self._in_flight)

    async def tick(self, job_id: str) -> Optional[JobState]:
        """Run one status check for *job_id* and return the resulting state.

        Returns None when a tick for the same job is already running in this
        process or the tick hit an unexpected error (logged).
        """
        if job_id in self._in_flight:
            logger.debug("Tick for job %s already in flight; skipping", job_id)
            return None
        self._in_flight.add(job_id)
        try:
            async with self._sem:
                return await self._tick(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Tick for job %s failed: %s\n%s", job_id, exc, traceback.format_exc())
            return None
        finally:
            self._in_flight.discard(job_id)

    async def _tick(self, job_id: str) -> JobState:
        job = await self._store.get_job(job_id)
        if not job.state.pollable or not job.external_id:
            logger.debug("Job %s is %s; nothing to poll", job_id, job.state.value)
            return job.state

        try:
            try:
                status = await asyncio.to_thread(self._runner.poll_status, job.external_id)
            except TransientPollError as exc:
                return await self._on_transient(job, exc)
            except PollError as exc:
                return await self._on_failed(job, str(exc))

            if status.status == RemoteStatus.running:
                return await self._on_running(job)
            if status.status == RemoteStatus.completed:
                return await self._on_completed(job, status.result)
            return await self._on_failed(job, status.error or "External training job failed")
        except JobConflictError as exc:
            # Someone else (usually cancel) moved the job on; drop this result.
            logger.info(
                "Discarding poll result for job %s: %s", job_id, exc, extra={"job_id": job_id}
            )
            current = await self._store.get_job(job_id)
            return current.state

    async def _on_running(self, job: JobRecord) -> JobState:
        delay = self.interval_for(job.poll_attempts)
        rec = await self._store.update_job(
            job.job_id,
            job.state,
            state=JobState.polling,
            poll_attempts=job.poll_attempts + 1,
            transient_errors=0,
            next_poll_at=self._due_at(delay),
        )
        logger.info(
            "Job %s still running; next check in %.0fs", job.job_id, delay,
            extra={"job_id": job.job_id},
        )
        await self._emit(job.job_id, {
            "event": "polled",
            "job_id": job.job_id,
            "state": rec.state.value,
            "next_poll_at": rec.next_poll_at,
        })
        return rec.state

    async def _on_transient(self, job: JobRecord, exc: Exception) -> JobState:
        errors = job.transient_errors + 1
        if errors > self._cfg.max_transient_retries:
            logger.error(
                "Job %s exceeded %d transient poll errors: %s",
                job.job_id, self._cfg.max_transient_retries, exc,
                extra={"job_id": job.job_id},
            )
            return await self._on_failed(job, POLL_EXHAUSTED, transient_errors=errors)

        if job.poll_attempts == 0:
            delay = self._cfg.initial_delay
        else:
            delay = self.interval_for(job.poll_attempts - 1)
        await self._store.update_job(
            job.job_id,
            job.state,
            transient_errors=errors,
            next_poll_at=self._due_at(delay),
        )
        logger.warning(
            "Transient poll error for job %s (%d/%d), retrying in %.0fs: %s",
            job.job_id, errors, self._cfg.max_transient_retries, delay, exc,
            extra={"job_id": job.job_id},
        )
        await self._emit(job.job_id, {
            "event": "retry",
            "job_id": job.job_id,
            "transient_errors": errors,
            "error": str(exc),
        })
        return job.state

    async def _on_completed(self, job: JobRecord, result: Dict[str, Any]) -> JobState:
        completed = job.model_copy(update={"state": JobState.completed, "result": result})
        pending = self._fanout.planned_kinds(completed) + [VERSION_NOTIFICATION]
        # Artifacts to write are recorded with the state change so a crash
        # before fan-out finishes leaves them queued for the sweep.
        rec = await self._store.update_job(
            job.job_id,
            job.state,
            state=JobState.completed,
            result=result,
            next_poll_at=None,
            fanout_pending=pending,
        )
        logger.info(
            "Job %s completed", job.job_id,
            extra={"job_id": job.job_id, "metrics": {"accuracy": (result or {}).get("accuracy")}},
        )
        await self._run_fanout(rec)
        await self._emit(job.job_id, {"event": "completed", "job_id": job.job_id, "result": result})
        await self._emit(job.job_id, {"event": "done", "job_id": job.job_id})
        return JobState.completed

    async def _on_failed(self, job: JobRecord, error: str, **fields: Any) -> JobState:
        await self._store.update_job(
            job.job_id,
            job.state,
            state=JobState.failed,
            error=error,
            next_poll_at=None,
            **fields,
        )
        logger.warning("Job %s failed: %s", job.job_id, error, extra={"job_id": job.job_id})
        await self._emit(job.job_id, {"event": "failed", "job_id": job.job_id, "error": error})
        await self._emit(job.job_id, {"event": "done", "job_id": job.job_id})
        return JobState.failed

    # ── Fan-out ──────────────────────────────────────────────────────

    async def _run_fanout(self, job: JobRecord) -> None:
        report = await self._fanout.apply(job, only=list(job.fanout_pending))
        remaining = sorted(report.failed)
        if not remaining:
            if job.fanout_pending:
                await self._store.update_job(job.job_id, JobState.completed, fanout_pending=[])
            return

        # Every failed pass is recorded, which also moves the job to the back
        # of the retry queue.
        failures = job.fanout_failures + 1
        await self._store.update_job(
            job.job_id,
            JobState.completed,
            fanout_pending=remaining,
            fanout_failures=failures,
        )
        if failures >= self._cfg.max_fanout_failures:
            logger.error(
                "Job %s fan-out failed %d times; leaving %s pending",
                job.job_id, failures, remaining, extra={"job_id": job.job_id},
            )
        else:
            logger.warning(
                "Job %s has artifacts left to save: %s", job.job_id, remaining,
                extra={"job_id": job.job_id},
            )

    async def retry_pending_fanout(self) -> int:
        """Re-run fan-out for completed jobs with unsaved artifacts.

        Jobs with a tick in flight are skipped, since that tick runs its own
        fan-out.  Jobs that reached ``max_fanout_failures`` stay pending
        without further retries.
        """
        jobs = await self._store.jobs_with_pending_fanout(
            limit=self._cfg.sweep_batch_size,
            max_failures=self._cfg.max_fanout_failures,
        )
        retried = 0
        for job in jobs:
            if job.job_id in self._in_flight:
                continue
            self._in_flight.add(job.job_id)
            try:
                await self._run_fanout(job)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Fan-out retry for job %s failed: %s", job.job_id, exc,
                    extra={"job_id": job.job_id},
                )
            finally:
                self._in_flight.discard(job.job_id)
            retried += 1
        return retried

    # ── Sweep loop ───────────────────────────────────────────────────

    async def run_due(self) -> int:
        """Tick every job whose ``next_poll_at`` has passed.  Returns the tick count."""
        due = await self._store.due_jobs(to_iso(self._clock()), limit=self._cfg.sweep_batch_size)
        ids = [j.job_id for j in due if j.job_id not in self._in_flight]
        if ids:
            await asyncio.gather(*(self.tick(job_id) for job_id in ids))
        await self.retry_pending_fanout()
        return len(ids)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.run_due()
            except Exception:  # noqa: BLE001
                logger.error("Poll sweep failed\n%s", traceback.format_exc())
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._cfg.sweep_interval)
            self._wake.clear()

    def wake(self) -> None:
        """Run the next sweep now instead of waiting for the interval."""
        self._wake.set()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Poll scheduler started (sweep every %.1fs, initial delay %.0fs, max interval %.0fs)",
                self._cfg.sweep_interval, self._cfg.initial_delay, self._cfg.max_interval,
            )

    async def stop(self) -> None:
        tasks = [t for t in [self._sweeper, *self._triggered.values()] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._sweeper = None
        self._triggered.clear()

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def trigger(self, job_id: str) -> None:
        """Schedule an immediate tick for *job_id* in the background.

        Raises
        ------
        JobQueueFullError
            If too many triggered ticks are pending.
        """
        if job_id in self._triggered:
            return
        if len(self._triggered) >= self._max_queued:
            raise JobQueueFullError(
                f"Poll queue full. {self._max_queued} checks pending. Try again later."
            )
        task = asyncio.create_task(self.tick(job_id))
        self._triggered[job_id] = task
        task.add_done_callback(lambda _t: self._triggered.pop(job_id, None))

    # ── SSE Event Streaming ──────────────────────────────────────────

    async def subscribe_events(self, job_id: str) -> AsyncGenerator[Dict[str, Any], None]:
        """Yield SSE events for a job until it reaches a terminal state."""
        queue: asyncio.Queue = asyncio.Queue()
        self._event_subscribers.setdefault(job_id, []).append(queue)
        try:
            # Send current state as first event
            rec = await self._store.get_job(job_id)
            yield {"event": "status", "data": rec.model_dump(mode="json")}
            if rec.state.terminal:
                return

            while True:
                event = await queue.get()
                yield event
                if event.get("event") == "done":
                    break
        finally:
            subs = self._event_subscribers.get(job_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._event_subscribers.pop(job_id, None)

    async def emit(self, job_id: str, event: Dict[str, Any]) -> None:
        """Publish *event* to subscribers of *job_id*."""
        await self._emit(job_id, event)

    async def _emit(self, job_id: str, event: Dict[str, Any]) -> None:
        for q in self._event_subscribers.get(job_id, []):
            await q.put(event)
