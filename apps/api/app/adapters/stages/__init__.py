"""Stage executor adapters."""

from .base import JobCancelled, StageContext, StageExecutor, StageFailure
from .http import build_http_executors
from .mock import build_mock_executors

__all__ = [
    "JobCancelled",
    "StageContext",
    "StageExecutor",
    "StageFailure",
    "build_http_executors",
    "build_mock_executors",
]
