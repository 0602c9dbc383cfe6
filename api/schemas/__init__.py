"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .jobs import JobCreatedResponse, StartJobRequest

__all__ = ["ApiResponse", "JobCreatedResponse", "ResponseMeta", "StartJobRequest"]
