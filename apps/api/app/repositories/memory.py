"""In-memory job store used by local development and tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import time

from app.repositories.base import JobStore, StoreUnavailableError
from app.schemas.job import Job, JobStatus

DEFAULT_TTL_SECONDS = 3600


@dataclass(slots=True)
class _Entry:
    payload: str
    expires_at: float


@dataclass(slots=True)
class InMemoryJobStore(JobStore):
    """Simple, deterministic persistence layer for scaffolding and tests.

    Records are kept as serialized JSON so readers never share mutable state
    with the engine, the same way a networked store would behave.
    """

    ttl_seconds: int = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.monotonic
    entries: dict[str, _Entry] = field(default_factory=dict)
    job_write_count: int = 0
    fail_next_puts: int = 0
    failure_message: str = "Injected store write failure"

    async def put(self, job: Job) -> None:
        if self.fail_next_puts > 0:
            self.fail_next_puts -= 1
            raise StoreUnavailableError(self.failure_message)

        self.entries[job.job_id] = _Entry(
            payload=job.model_dump_json(),
            expires_at=self.clock() + self.ttl_seconds,
        )
        self.job_write_count += 1

    async def get(self, job_id: str) -> Job | None:
        entry = self._live_entry(job_id)
        if entry is None:
            return None
        return Job.model_validate_json(entry.payload)

    async def list(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        self._evict_expired()
        jobs = [Job.model_validate_json(entry.payload) for entry in self.entries.values()]
        if status is not None:
            jobs = [job for job in jobs if job.status is status]
        jobs.sort(key=lambda job: (job.created_at, job.job_id), reverse=True)
        return jobs[offset : offset + limit], len(jobs)

    async def delete(self, job_id: str) -> bool:
        return self.entries.pop(job_id, None) is not None

    def _live_entry(self, job_id: str) -> _Entry | None:
        entry = self.entries.get(job_id)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            del self.entries[job_id]
            return None
        return entry

    def _evict_expired(self) -> None:
        now = self.clock()
        expired = [job_id for job_id, entry in self.entries.items() if entry.expires_at <= now]
        for job_id in expired:
            del self.entries[job_id]
