"""
HTTP adapter for the external ML training service.

Endpoints:
    POST /train                 -> {"jobId": "<external id>"}
    GET  /status/<external id>  -> {"status": ..., "accuracy": ..., ...}

All calls are blocking; the scheduler runs them through ``asyncio.to_thread``.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .errors import PollError, SubmissionError, TransientPollError
from .models import PollStatus, RemoteStatus, TrainingPayload

logger = logging.getLogger(__name__)

# Status strings the service may report for unfinished work.
_RUNNING_ALIASES = frozenset({"running", "in_progress", "queued", "pending", "started"})

# HTTP codes treated as "try again later" when polling.
_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})

# Result fields copied from the status payload.
_RESULT_FIELDS = (
    "accuracy",
    "modelA",
    "modelB",
    "performanceA",
    "performanceB",
    "bestHyperparameters",
    "bestPerformance",
)


class ExternalRunner:
    """
    Thin wrapper around the external ML service with:
      - single-shot submission (no blind retries)
      - transient vs permanent classification of status-check failures
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 20.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = str(base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def submit(self, job_id: str, payload: TrainingPayload, user_id: str) -> str:
        """Start training for *job_id* and return the service's job identifier.

        Raises
        ------
        SubmissionError
            On transport failure, a non-2xx response, or a body without ``jobId``.
        """
        body = {
            "jobId": job_id,
            "modelType": payload.model_type,
            "dataset": payload.dataset,
            "userId": user_id,
            "abTesting": payload.ab_testing,
            "autoTuning": payload.auto_tuning,
            "hyperparameters": payload.hyperparameters,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/train",
                json=body,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise SubmissionError(f"Failed to submit job {job_id}: {exc}") from exc

        external_id = data.get("jobId") if isinstance(data, dict) else None
        if not external_id:
            raise SubmissionError(f"Service response for job {job_id} has no jobId: {data!r}")
        self.logger.info("Submitted job %s as external job %s", job_id, external_id)
        return str(external_id)

    def poll_status(self, external_id: str) -> PollStatus:
        """Fetch and normalise the status of *external_id*.

        Raises
        ------
        TransientPollError
            Timeouts, connection errors, 408/429 and 5xx responses.
        PollError
            Any other failure: 4xx, a non-JSON body, or a missing status.
        """
        url = f"{self.base_url}/status/{external_id}"
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout_seconds)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientPollError(f"Status check for {external_id} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise PollError(f"Status check for {external_id} failed: {exc}") from exc

        request_id = resp.headers.get("X-Request-Id") or ""
        if request_id:
            self.logger.debug("ML service request_id=%s external_id=%s", request_id, external_id)

        if resp.status_code in _TRANSIENT_STATUS:
            raise TransientPollError(
                f"Transient status={resp.status_code} for external job {external_id}"
            )
        if resp.status_code >= 400:
            raise PollError(f"Status check for {external_id} returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise PollError(f"Status body for {external_id} is not JSON") from exc
        if not isinstance(data, dict):
            raise PollError(f"Unexpected payload type: {type(data).__name__}")
        return self.parse_status(data)

    @staticmethod
    def parse_status(data: Dict[str, Any]) -> PollStatus:
        """Map a raw status payload onto ``PollStatus``.

        Anything other than completed/failed counts as still running;
        unrecognised strings are logged.  A missing or non-string status
        raises ``PollError``.
        """
        value = data.get("status")
        if not isinstance(value, str) or not value.strip():
            raise PollError(f"Missing job status in payload: {value!r}")
        raw = value.strip().lower()
        if raw == "completed":
            status = RemoteStatus.completed
        elif raw == "failed":
            status = RemoteStatus.failed
        else:
            if raw not in _RUNNING_ALIASES:
                logger.warning("Unrecognised job status %r; treating as running", value)
            status = RemoteStatus.running

        result = {k: data[k] for k in _RESULT_FIELDS if data.get(k) is not None}
        error = data.get("error")
        if status == RemoteStatus.failed and not error:
            error = "External training job failed"
        return PollStatus(status=status, result=result, error=error)
