"""Health routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app.routes.dependencies import get_engine
from app.services.pipeline_engine import PipelineEngine

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    active_jobs: int
    pending_outcomes: int


@router.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
) -> HealthResponse:
    pending = len(engine.pending_outcomes())
    return HealthResponse(
        status="degraded" if pending else "ok",
        service="media-transcriber",
        version=request.app.version,
        active_jobs=len(engine.active_job_ids()),
        pending_outcomes=pending,
    )
