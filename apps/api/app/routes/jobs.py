"""Job routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, Response, status

from app.routes.dependencies import get_job_service
from app.schemas.error import (
    InvalidInputError,
    JobFailedError,
    JobStateConflictError,
    NoLeakNotFoundError,
    StoreUnavailableErrorResponse,
)
from app.schemas.job import (
    CancelJobResponse,
    JobPage,
    JobResult,
    JobStatus,
    JobStatusSnapshot,
    SubmitJobRequest,
    SubmitJobResponse,
)
from app.services.jobs import JobService

router = APIRouter(tags=["Jobs"])


@router.post(
    "/jobs",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        409: {"model": JobStateConflictError},
        422: {"model": InvalidInputError},
        503: {"model": StoreUnavailableErrorResponse},
    },
)
async def submit_job(
    payload: SubmitJobRequest,
    service: Annotated[JobService, Depends(get_job_service)],
) -> SubmitJobResponse:
    return await service.submit(payload)


@router.get(
    "/jobs",
    response_model=JobPage,
    responses={422: {"model": InvalidInputError}},
)
async def list_jobs(
    service: Annotated[JobService, Depends(get_job_service)],
    job_status: Annotated[JobStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query()] = 20,
    offset: Annotated[int, Query()] = 0,
) -> JobPage:
    return await service.list_jobs(status=job_status, limit=limit, offset=offset)


@router.get(
    "/jobs/{jobId}",
    response_model=JobStatusSnapshot,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_job_status(
    job_id: Annotated[str, Path(alias="jobId")],
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobStatusSnapshot:
    return await service.get_status(job_id)


@router.get(
    "/jobs/{jobId}/result",
    response_model=JobResult,
    responses={
        404: {"model": NoLeakNotFoundError},
        409: {"model": JobStateConflictError | JobFailedError},
    },
)
async def get_job_result(
    job_id: Annotated[str, Path(alias="jobId")],
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobResult:
    return await service.get_result(job_id)


@router.post(
    "/jobs/{jobId}/cancel",
    response_model=CancelJobResponse,
    responses={
        202: {"model": CancelJobResponse},
        404: {"model": NoLeakNotFoundError},
        409: {"model": JobStateConflictError},
    },
)
async def cancel_job(
    job_id: Annotated[str, Path(alias="jobId")],
    response: Response,
    service: Annotated[JobService, Depends(get_job_service)],
) -> CancelJobResponse:
    cancel_result = await service.cancel_job(job_id)
    response.status_code = status.HTTP_200_OK if cancel_result.cancellation_applied else status.HTTP_202_ACCEPTED
    return cancel_result
