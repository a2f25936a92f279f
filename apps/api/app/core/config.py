"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.domain.pipeline import DEFAULT_STAGE_ORDER, DEFAULT_STAGE_WEIGHTS, PipelineConfig, build_pipeline_config


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    log_level: str = "INFO"

    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    store_namespace: str = "job"
    job_ttl_seconds: int = Field(default=3600, ge=1)
    store_write_attempts: int = Field(default=3, ge=1)
    store_retry_base_delay_seconds: float = Field(default=0.2, ge=0)

    job_timeout_seconds: float = Field(default=1800, gt=0)
    stage_retry_delay_seconds: float = Field(default=0.3, ge=0)
    shutdown_grace_seconds: float = Field(default=10, ge=0)
    stage_weights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_STAGE_WEIGHTS))
    stage_max_attempts: dict[str, int] = Field(default_factory=dict)

    stage_provider: Literal["mock", "http"] = "mock"
    mock_stage_delay_seconds: float = Field(default=0.05, ge=0)
    video_processor_url: str = "http://localhost:8002"
    llm_service_url: str = "http://localhost:8005"
    stage_http_timeout_seconds: float = Field(default=300, gt=0)

    model_config = SettingsConfigDict(env_prefix="TRANSCRIBER_", extra="ignore")

    def pipeline_config(self) -> PipelineConfig:
        order = [name for name in DEFAULT_STAGE_ORDER if name in self.stage_weights]
        order.extend(name for name in self.stage_weights if name not in order)
        return build_pipeline_config(self.stage_weights, order=order, max_attempts=self.stage_max_attempts)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
