"""Job service layer."""

from __future__ import annotations

import logging
import re
from urllib.parse import urlsplit

from app.core.logging_safety import redact_source, safe_log_identifier
from app.errors import ApiError, invalid_input, resource_not_found, store_unavailable
from app.repositories.base import JobStore, StoreUnavailableError
from app.schemas.job import (
    CancelJobResponse,
    Job,
    JobInput,
    JobPage,
    JobResult,
    JobStatus,
    JobStatusSnapshot,
    SubmitJobRequest,
    SubmitJobResponse,
)
from app.services.pipeline_engine import PipelineEngine

logger = logging.getLogger(__name__)

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]{8,36}$")
_SOURCE_MAX_LENGTH = 2048
_SOURCE_SCHEMES = frozenset({"http", "https"})
_LIST_LIMIT_DEFAULT = 20
_LIST_LIMIT_MIN = 1
_LIST_LIMIT_MAX = 100


class JobService:
    """Public job operations. Reads go straight to the store and have no side effects."""

    def __init__(self, store: JobStore, engine: PipelineEngine) -> None:
        self._store = store
        self._engine = engine

    async def submit(self, request: SubmitJobRequest) -> SubmitJobResponse:
        source = self._validate_source(request.source)
        if request.job_id is not None and not _JOB_ID_PATTERN.fullmatch(request.job_id):
            raise invalid_input(
                "job_id must be 8-36 characters of letters, digits or hyphens.",
                details={"field": "job_id"},
            )

        job_input = JobInput(source=source, options=request.options)
        try:
            job = await self._engine.submit(job_input, job_id=request.job_id)
        except StoreUnavailableError as exc:
            logger.error(
                "submit.store_unavailable source=%s reason=%s",
                redact_source(source),
                type(exc).__name__,
            )
            raise store_unavailable() from exc
        except ApiError as exc:
            logger.warning(
                "submit.rejected job_id=%s code=%s",
                safe_log_identifier(request.job_id, prefix="jid"),
                exc.payload.code,
            )
            raise

        return SubmitJobResponse(job_id=job.job_id, status=job.status)

    async def get_status(self, job_id: str) -> JobStatusSnapshot:
        return self._to_snapshot(await self._load(job_id))

    async def get_result(self, job_id: str) -> JobResult:
        job = await self._load(job_id)

        if job.status is JobStatus.COMPLETED:
            return JobResult(job_id=job.job_id, stage_results=job.stage_results, completed_at=job.completed_at)
        if job.status is JobStatus.FAILED:
            raise ApiError(
                status_code=409,
                code="JOB_FAILED",
                message="Job failed before producing a result.",
                details={
                    "current_status": job.status,
                    "error": job.error.model_dump(mode="json") if job.error else None,
                },
            )
        if job.status is JobStatus.CANCELLED:
            raise ApiError(
                status_code=409,
                code="JOB_CANCELLED",
                message="Job was cancelled and has no result.",
                details={"current_status": job.status},
            )
        raise ApiError(
            status_code=409,
            code="JOB_NOT_READY",
            message="Job result is not available yet.",
            details={"current_status": job.status, "progress": job.progress},
        )

    async def cancel_job(self, job_id: str) -> CancelJobResponse:
        safe_job_id = safe_log_identifier(job_id, prefix="jid")
        try:
            job, applied = await self._engine.cancel(job_id)
        except StoreUnavailableError as exc:
            raise store_unavailable() from exc
        except ApiError as exc:
            logger.warning("cancel.rejected job_id=%s code=%s", safe_job_id, exc.payload.code)
            raise

        logger.info("cancel.accepted job_id=%s status=%s applied=%s", safe_job_id, job.status, applied)
        return CancelJobResponse(job_id=job.job_id, status=job.status, cancellation_applied=applied)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = _LIST_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> JobPage:
        if limit < _LIST_LIMIT_MIN or limit > _LIST_LIMIT_MAX:
            raise invalid_input(
                "Invalid list query parameters",
                details={"limit": limit, "min_limit": _LIST_LIMIT_MIN, "max_limit": _LIST_LIMIT_MAX},
            )
        if offset < 0:
            raise invalid_input("Invalid list query parameters", details={"offset": offset, "min_offset": 0})

        try:
            jobs, total = await self._store.list(status=status, limit=limit, offset=offset)
        except StoreUnavailableError as exc:
            raise store_unavailable() from exc
        return JobPage(items=[self._to_snapshot(job) for job in jobs], total=total, limit=limit, offset=offset)

    async def _load(self, job_id: str) -> Job:
        try:
            job = await self._store.get(job_id)
        except StoreUnavailableError as exc:
            raise store_unavailable() from exc
        if job is None:
            raise resource_not_found()
        return job

    @staticmethod
    def _validate_source(source: str) -> str:
        normalized = (source or "").strip()
        if not normalized or len(normalized) > _SOURCE_MAX_LENGTH:
            raise invalid_input("source must be a non-empty URL", details={"field": "source"})
        try:
            parts = urlsplit(normalized)
            hostname = parts.hostname
            # ``port`` raises for non-numeric or out-of-range values.
            parts.port
        except ValueError as exc:
            raise invalid_input("source is not a valid URL", details={"field": "source"}) from exc
        if parts.scheme.lower() not in _SOURCE_SCHEMES or not hostname:
            raise invalid_input("source must be an http(s) URL with a host", details={"field": "source"})
        return normalized

    @staticmethod
    def _to_snapshot(job: Job) -> JobStatusSnapshot:
        return JobStatusSnapshot(
            job_id=job.job_id,
            status=job.status,
            progress=job.progress,
            current_stage=job.current_stage,
            updated_at=job.updated_at,
        )
