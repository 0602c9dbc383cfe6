"""Fire-and-forget notification to the model versioning service."""
from __future__ import annotations

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class VersionNotifier:
    """Tells the versioning service that a job produced a new model.

    What the versioning service does with the notification (registry
    update, artifact storage) is outside this package.  ``notify`` never
    raises; failures are logged and reported through the return value.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, job_id: str, performance: Optional[float]) -> bool:
        """POST ``{jobId, performance}``; return True on a 2xx acknowledgement."""
        if not self.enabled:
            logger.debug("Version notification for job %s skipped: no URL configured", job_id)
            return False
        try:
            resp = self.session.post(
                self.url,
                json={"jobId": job_id, "performance": performance},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Version notification for job %s failed: %s", job_id, exc)
            return False
        logger.info("Version notification sent for job %s (performance=%s)", job_id, performance)
        return True
