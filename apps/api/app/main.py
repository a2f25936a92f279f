"""FastAPI application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
import httpx

from app.adapters.stages import StageExecutor, build_http_executors, build_mock_executors
from app.core.config import Settings, get_settings
from app.errors import ApiError
from app.repositories.base import JobStore
from app.repositories.memory import InMemoryJobStore
from app.repositories.redis_store import RedisJobStore
from app.routes import health_router, jobs_router
from app.schemas.error import ErrorResponse
from app.services.pipeline_engine import PipelineEngine

logger = logging.getLogger(__name__)

_API_PREFIX = "/api/v1"

_OPENAPI_RESPONSE_CODES: dict[str, dict[str, set[str]]] = {
    "/api/v1/jobs": {"post": {"202", "409", "422", "503"}, "get": {"200", "422"}},
    "/api/v1/jobs/{jobId}": {"get": {"200", "404"}},
    "/api/v1/jobs/{jobId}/result": {"get": {"200", "404", "409"}},
    "/api/v1/jobs/{jobId}/cancel": {"post": {"200", "202", "404", "409"}},
}


def _apply_contract_response_codes(schema: dict) -> None:
    """Limit documented response codes to the job API contract."""
    for path, methods in _OPENAPI_RESPONSE_CODES.items():
        path_item = schema.get("paths", {}).get(path)
        if not path_item:
            continue

        for method, allowed_codes in methods.items():
            operation = path_item.get(method)
            if not operation:
                continue

            responses = operation.setdefault("responses", {})
            for status_code in list(responses.keys()):
                if status_code not in allowed_codes:
                    responses.pop(status_code, None)

            for status_code in sorted(allowed_codes):
                responses.setdefault(status_code, {"description": "See API contract"})


def _build_store(settings: Settings) -> JobStore:
    if settings.store_backend == "redis":
        return RedisJobStore.from_url(
            settings.redis_url,
            namespace=settings.store_namespace,
            ttl_seconds=settings.job_ttl_seconds,
        )
    return InMemoryJobStore(ttl_seconds=settings.job_ttl_seconds)


def _build_executors(settings: Settings, http_client: httpx.AsyncClient | None) -> dict[str, StageExecutor]:
    if settings.stage_provider == "http":
        if http_client is None:
            raise ValueError("http stage provider requires an HTTP client")
        return build_http_executors(
            http_client,
            video_processor_url=settings.video_processor_url,
            llm_service_url=settings.llm_service_url,
        )
    return build_mock_executors(delay_seconds=settings.mock_stage_delay_seconds)


def create_app(
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    executors: Mapping[str, StageExecutor] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("app").setLevel(settings.log_level.upper())

    http_client: httpx.AsyncClient | None = None
    if executors is None and settings.stage_provider == "http":
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.stage_http_timeout_seconds))

    if store is None:
        store = _build_store(settings)
    engine = PipelineEngine(
        store,
        settings.pipeline_config(),
        executors if executors is not None else _build_executors(settings, http_client),
        job_timeout_seconds=settings.job_timeout_seconds,
        stage_retry_delay_seconds=settings.stage_retry_delay_seconds,
        store_write_attempts=settings.store_write_attempts,
        store_retry_base_delay_seconds=settings.store_retry_base_delay_seconds,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.started store_backend=%s stage_provider=%s stages=%s",
            settings.store_backend,
            settings.stage_provider,
            ",".join(engine.pipeline.stage_names),
        )
        try:
            yield
        finally:
            await engine.shutdown(grace_seconds=settings.shutdown_grace_seconds)
            if http_client is not None:
                await http_client.aclose()
            await store.close()
            logger.info("app.stopped")

    app = FastAPI(title="Media Transcriber API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.engine = engine

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Job endpoints report malformed input with the contract envelope.
        if request.url.path.startswith(f"{_API_PREFIX}/jobs"):
            fields = sorted({".".join(str(part) for part in error.get("loc", ())[1:]) for error in exc.errors()})
            payload = ErrorResponse(
                code="INVALID_INPUT",
                message="Invalid request payload",
                details={"fields": [field for field in fields if field]},
            )
            return JSONResponse(status_code=422, content=payload.model_dump())

        return await request_validation_exception_handler(request, exc)

    app.include_router(jobs_router, prefix=_API_PREFIX)
    app.include_router(health_router)

    def custom_openapi() -> dict:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        _apply_contract_response_codes(schema)
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
