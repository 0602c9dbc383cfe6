"""Request/response schemas for the job endpoints."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class StartJobRequest(BaseModel):
    """Request body for POST /api/jobs.

    Field validation is left to the orchestrator so that missing model type
    or dataset produce the same error whichever entrypoint is used.
    """

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_type: Optional[str] = Field(default=None, alias="modelType")
    dataset: Optional[str] = None
    ab_testing: bool = Field(default=False, alias="abTesting")
    auto_tuning: bool = Field(default=False, alias="autoTuning")
    hyperparameters: Dict[str, Any] = Field(default_factory=dict)
    request_token: Optional[str] = Field(default=None, alias="requestToken")

    def training_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"request_token"})


class JobCreatedResponse(BaseModel):
    """Response for job submission."""

    job_id: str
    state: str
