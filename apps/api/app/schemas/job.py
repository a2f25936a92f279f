"""Job API schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobErrorKind(str, Enum):
    STAGE_FAILURE = "STAGE_FAILURE"
    TIMEOUT = "TIMEOUT"


class JobOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    language: str = "en"
    audio_format: Literal["mp3", "wav", "m4a", "flac"] = "mp3"
    audio_quality: str = "highestaudio"
    include_timestamps: bool = False
    enhance_text: bool = False
    generate_summary: bool = False
    extract_keywords: bool = False

    @property
    def wants_enhancement(self) -> bool:
        return self.enhance_text or self.generate_summary or self.extract_keywords


class JobInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    options: JobOptions = Field(default_factory=JobOptions)


class JobError(BaseModel):
    stage: str
    message: str
    kind: JobErrorKind = JobErrorKind.STAGE_FAILURE


class Job(BaseModel):
    """Full persisted job record."""

    job_id: str
    input: JobInput
    status: JobStatus
    current_stage: str | None = None
    progress: int = Field(default=0, ge=0, le=100)
    stage_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    error: JobError | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    attempts: int = Field(default=0, ge=0)


class SubmitJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    options: JobOptions = Field(default_factory=JobOptions)
    job_id: str | None = None


class SubmitJobResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobStatusSnapshot(BaseModel):
    job_id: str
    status: JobStatus
    progress: int
    current_stage: str | None = None
    updated_at: datetime


class JobResult(BaseModel):
    job_id: str
    stage_results: dict[str, dict[str, Any]]
    completed_at: datetime | None = None


class CancelJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    cancellation_applied: bool


class JobPage(BaseModel):
    items: list[JobStatusSnapshot]
    total: int
    limit: int
    offset: int
