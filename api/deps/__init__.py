"""Dependency injection providers."""
from .auth import get_caller_id, require_auth, require_caller_id
from .providers import (
    get_artifact_store,
    get_external_runner,
    get_job_store,
    get_orchestrator,
    get_scheduler,
    get_settings,
)

__all__ = [
    "get_artifact_store",
    "get_caller_id",
    "get_external_runner",
    "get_job_store",
    "get_orchestrator",
    "get_scheduler",
    "get_settings",
    "require_auth",
    "require_caller_id",
]
