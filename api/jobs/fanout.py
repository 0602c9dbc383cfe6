"""Derive and persist artifacts once a training job completes."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .artifacts import AB_RESULT, METRIC, TUNING_RESULT, ArtifactStore
from .errors import FanOutError
from .models import (
    ABTestResult,
    FanOutReport,
    JobRecord,
    JobState,
    MetricRecord,
    TuningResult,
)
from .versioning import VersionNotifier

logger = logging.getLogger(__name__)

_AB_FIELDS = ("modelA", "modelB", "performanceA", "performanceB")

# Pseudo-kind kept in ``JobRecord.fanout_pending`` until versioning has been told.
VERSION_NOTIFICATION = "version"


def _as_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class CompletionFanOut:
    """Builds the metric, A/B and tuning records implied by a completed job.

    Each artifact is saved independently with its own retry budget, so a
    failing A/B save never undoes a metric that was already written.  Saves
    are idempotent at the storage layer (unique per job and kind).
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        notifier: Optional[VersionNotifier] = None,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self._artifacts = artifacts
        self._notifier = notifier or VersionNotifier()
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay = retry_delay

    @staticmethod
    def planned_kinds(job: JobRecord) -> List[str]:
        """Artifact kinds this job's payload and result call for."""
        result = job.result or {}
        kinds = [METRIC]
        if job.payload.ab_testing and all(result.get(k) is not None for k in _AB_FIELDS):
            kinds.append(AB_RESULT)
        if job.payload.auto_tuning and result.get("bestHyperparameters") is not None:
            kinds.append(TUNING_RESULT)
        return kinds

    def _builders(self, job: JobRecord) -> Dict[str, Callable[[], Awaitable[bool]]]:
        result = job.result or {}
        accuracy = _as_float(result.get("accuracy"))

        async def _metric() -> bool:
            if accuracy is None:
                raise ValueError("completed job result has no numeric accuracy")
            return await self._artifacts.save_metric(MetricRecord(
                job_id=job.job_id,
                user_id=job.user_id,
                model_type=job.payload.model_type,
                dataset=job.payload.dataset,
                metric="accuracy",
                value=accuracy,
            ))

        async def _ab() -> bool:
            return await self._artifacts.save_ab_result(ABTestResult(
                job_id=job.job_id,
                user_id=job.user_id,
                model_a=str(result["modelA"]),
                model_b=str(result["modelB"]),
                performance_a=float(result["performanceA"]),
                performance_b=float(result["performanceB"]),
            ))

        async def _tuning() -> bool:
            return await self._artifacts.save_tuning_result(TuningResult(
                job_id=job.job_id,
                user_id=job.user_id,
                best_hyperparameters=dict(result["bestHyperparameters"]),
                performance=_as_float(result.get("bestPerformance")),
            ))

        return {METRIC: _metric, AB_RESULT: _ab, TUNING_RESULT: _tuning}

    async def _save_with_retries(self, job_id: str, kind: str, save: Callable[[], Awaitable[bool]]) -> bool:
        last_exc: Optional[Exception] = None
        for attempt in range(self._max_attempts):
            try:
                return await save()
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                logger.warning(
                    "Saving %s for job %s failed (attempt %d/%d): %s",
                    kind, job_id, attempt + 1, self._max_attempts, exc,
                )
                if attempt + 1 < self._max_attempts and self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)
        raise FanOutError(job_id, kind, last_exc)

    async def apply(self, job: JobRecord, only: Optional[List[str]] = None) -> FanOutReport:
        """Persist every artifact *job* calls for, then notify versioning.

        ``only`` restricts the pass to the given kinds, used when retrying
        artifacts that failed earlier or resuming an interrupted pass.  The
        version notification is sent on a full pass or when ``only`` names
        ``VERSION_NOTIFICATION``.

        Raises
        ------
        ValueError
            If the job is not ``completed``.
        """
        if job.state != JobState.completed:
            raise ValueError(f"Fan-out requires a completed job, {job.job_id} is {job.state.value}")

        report = FanOutReport(job_id=job.job_id)
        builders = self._builders(job)
        for kind in self.planned_kinds(job):
            if only is not None and kind not in only:
                continue
            try:
                created = await self._save_with_retries(job.job_id, kind, builders[kind])
            except FanOutError as exc:
                logger.error("%s", exc)
                report.failed[kind] = str(exc.cause)
                continue
            (report.saved if created else report.skipped).append(kind)

        if only is None or VERSION_NOTIFICATION in only:
            accuracy = _as_float((job.result or {}).get("accuracy"))
            report.version_notified = await asyncio.to_thread(
                self._notifier.notify, job.job_id, accuracy
            )
        logger.info(
            "Fan-out for job %s: saved=%s skipped=%s failed=%s",
            job.job_id, report.saved, report.skipped, sorted(report.failed),
            extra={"job_id": job.job_id},
        )
        return report
