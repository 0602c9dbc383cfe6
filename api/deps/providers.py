"""Singleton dependency providers for FastAPI ``Depends()``.

One set of collaborators per process, built from ``ApiSettings`` and
reset by tests through ``reset_providers``.
"""
from __future__ import annotations

from training_centre.config_structured import get_config

from ..config import ApiSettings

# Lazy singletons, built on first call from the running event loop.

_job_store = None
_artifact_store = None
_external_runner = None
_scheduler = None
_orchestrator = None
_settings: ApiSettings | None = None


def get_settings() -> ApiSettings:
    global _settings
    if _settings is None:
        _settings = ApiSettings()
    return _settings


def use_settings(settings: ApiSettings) -> None:
    """Make *settings* the process-wide settings.  Call before any provider."""
    global _settings
    _settings = settings


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ..jobs.store import JobStore

        _job_store = JobStore(get_settings().job_db_path)
    return _job_store


def get_artifact_store():
    """Return the singleton ``ArtifactStore`` (same database file as jobs)."""
    global _artifact_store
    if _artifact_store is None:
        from ..jobs.artifacts import ArtifactStore

        _artifact_store = ArtifactStore(get_settings().job_db_path)
    return _artifact_store


def get_external_runner():
    """Return the singleton ``ExternalRunner``."""
    global _external_runner
    if _external_runner is None:
        from ..jobs.external import ExternalRunner

        settings = get_settings()
        _external_runner = ExternalRunner(
            base_url=settings.runner_base_url,
            timeout_seconds=settings.runner_timeout_seconds,
            api_key=settings.runner_api_key,
        )
    return _external_runner


def get_scheduler():
    """Return the singleton ``PollScheduler``."""
    global _scheduler
    if _scheduler is None:
        from ..jobs.fanout import CompletionFanOut
        from ..jobs.scheduler import PollScheduler
        from ..jobs.versioning import VersionNotifier

        settings = get_settings()
        fanout = CompletionFanOut(
            get_artifact_store(),
            notifier=VersionNotifier(settings.version_url, settings.version_timeout_seconds),
            max_attempts=settings.fanout_max_attempts,
            retry_delay=settings.fanout_retry_delay,
        )
        _scheduler = PollScheduler(
            get_job_store(),
            get_external_runner(),
            fanout,
            config=get_config().poll,
            max_queued=settings.max_queued_polls,
        )
    return _scheduler


def get_orchestrator():
    """Return the singleton ``TrainingOrchestrator``."""
    global _orchestrator
    if _orchestrator is None:
        from ..orchestrator import TrainingOrchestrator

        _orchestrator = TrainingOrchestrator(get_job_store(), get_external_runner(), get_scheduler())
    return _orchestrator


def reset_providers() -> None:
    """Forget every singleton.  Does not close open connections."""
    global _job_store, _artifact_store, _external_runner, _scheduler, _orchestrator, _settings
    _job_store = None
    _artifact_store = None
    _external_runner = None
    _scheduler = None
    _orchestrator = None
    _settings = None
