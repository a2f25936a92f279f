"""Job store interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from app.schemas.job import Job, JobStatus


class StoreUnavailableError(Exception):
    """Raised when the underlying store cannot complete an operation."""


class JobStore(ABC):
    """Keyed, TTL-bearing persistence for job records.

    No transactions or compare-and-swap are offered. A ``put`` followed by a
    ``get`` from the same caller observes the written value.
    """

    @abstractmethod
    async def put(self, job: Job) -> None:
        """Upsert the full record and refresh its retention TTL."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Return the record, or ``None`` when unknown or expired."""

    @abstractmethod
    async def list(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Return one page of records (newest first) and the filtered total."""

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Remove a record. Returns whether anything was removed."""

    async def close(self) -> None:
        return None


__all__ = ["JobStore", "StoreUnavailableError"]
