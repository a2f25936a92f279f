"""Dependency wiring for routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from app.repositories.base import JobStore
from app.services.jobs import JobService
from app.services.pipeline_engine import PipelineEngine


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_engine(request: Request) -> PipelineEngine:
    return request.app.state.engine


def get_job_service(
    store: Annotated[JobStore, Depends(get_store)],
    engine: Annotated[PipelineEngine, Depends(get_engine)],
) -> JobService:
    return JobService(store, engine)
