"""Redis-backed implementation of :class:`JobStore`."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.repositories.base import JobStore, StoreUnavailableError
from app.repositories.memory import DEFAULT_TTL_SECONDS
from app.schemas.job import Job, JobStatus

logger = logging.getLogger(__name__)


class RedisJobStore(JobStore):
    """Stores one JSON document per job under ``<namespace>:<job_id>`` with a TTL."""

    def __init__(
        self,
        client: Any,
        *,
        namespace: str = "job",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisJobStore:
        return cls(redis_asyncio.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, job_id: str) -> str:
        return f"{self._namespace}:{job_id}"

    async def put(self, job: Job) -> None:
        try:
            await self._client.set(self._key(job.job_id), job.model_dump_json(), ex=self._ttl_seconds)
        except RedisError as exc:
            raise StoreUnavailableError(f"redis put failed: {type(exc).__name__}") from exc

    async def get(self, job_id: str) -> Job | None:
        try:
            payload = await self._client.get(self._key(job_id))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis get failed: {type(exc).__name__}") from exc
        if payload is None:
            return None
        try:
            return Job.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("store.record_unreadable key=%s", self._key(job_id))
            raise StoreUnavailableError("stored job record is unreadable") from exc

    async def list(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        try:
            keys = [key async for key in self._client.scan_iter(match=f"{self._namespace}:*")]
            payloads = await self._client.mget(keys) if keys else []
        except RedisError as exc:
            raise StoreUnavailableError(f"redis list failed: {type(exc).__name__}") from exc

        jobs: list[Job] = []
        for key, payload in zip(keys, payloads):
            # Keys may expire between SCAN and MGET.
            if payload is None:
                continue
            try:
                job = Job.model_validate_json(payload)
            except ValidationError:
                logger.warning("store.record_unreadable key=%s", key)
                continue
            if status is None or job.status is status:
                jobs.append(job)

        jobs.sort(key=lambda job: (job.created_at, job.job_id), reverse=True)
        return jobs[offset : offset + limit], len(jobs)

    async def delete(self, job_id: str) -> bool:
        try:
            removed = await self._client.delete(self._key(job_id))
        except RedisError as exc:
            raise StoreUnavailableError(f"redis delete failed: {type(exc).__name__}") from exc
        return bool(removed)

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["RedisJobStore"]
