"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel

from app.schemas.job import JobError, JobStatus


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class NoLeakNotFoundError(BaseModel):
    code: Literal["RESOURCE_NOT_FOUND"]
    message: str


class InvalidInputError(BaseModel):
    code: Literal["INVALID_INPUT"]
    message: str
    details: dict[str, Any] | None = None


class JobStateConflictDetails(BaseModel):
    current_status: JobStatus


class JobStateConflictError(BaseModel):
    code: Literal["JOB_ALREADY_RUNNING", "JOB_ID_CONFLICT", "JOB_NOT_CANCELLABLE", "JOB_NOT_READY", "JOB_CANCELLED"]
    message: str
    details: JobStateConflictDetails


class JobFailedErrorDetails(BaseModel):
    current_status: JobStatus
    error: JobError


class JobFailedError(BaseModel):
    code: Literal["JOB_FAILED"]
    message: str
    details: JobFailedErrorDetails


class StoreUnavailableErrorResponse(BaseModel):
    code: Literal["STORE_UNAVAILABLE"]
    message: str
