"""Training centre: orchestration of externally executed model training jobs."""

__version__ = "1.0.0"
