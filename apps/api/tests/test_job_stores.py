"""Job store contract tests for the in-memory and Redis backends."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import unittest

from redis.exceptions import ConnectionError as RedisConnectionError

from app.domain.job_updates import apply_job_update, new_job
from app.repositories.base import StoreUnavailableError
from app.repositories.memory import InMemoryJobStore
from app.repositories.redis_store import RedisJobStore
from app.schemas.job import Job, JobInput, JobStatus

_T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _job(job_id: str, *, minutes: int = 0, status: JobStatus = JobStatus.QUEUED) -> Job:
    job = new_job(
        job_id=job_id,
        job_input=JobInput(source=f"https://example/{job_id}"),
        now=_T0 + timedelta(minutes=minutes),
    )
    if status is not JobStatus.QUEUED:
        job = apply_job_update(job, status=JobStatus.RUNNING, now=job.created_at)
    if status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
        job = apply_job_update(job, status=status, now=job.created_at)
    return job


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Async stand-in for the subset of ``redis.asyncio.Redis`` the store calls."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.fail_with: Exception | None = None
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._maybe_fail()
        self.values[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        self._maybe_fail()
        return self.values.get(key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self._maybe_fail()
        return [self.values.get(key) for key in keys]

    async def scan_iter(self, match: str | None = None):
        self._maybe_fail()
        prefix = (match or "*").rstrip("*")
        for key in list(self.values):
            if key.startswith(prefix):
                yield key

    async def delete(self, key: str) -> int:
        self._maybe_fail()
        return 1 if self.values.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        self.closed = True


class InMemoryJobStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_put_then_get_returns_equal_but_independent_record(self) -> None:
        store = InMemoryJobStore()
        job = _job("job-mem-0001")

        await store.put(job)
        loaded = await store.get("job-mem-0001")

        self.assertEqual(loaded, job)
        self.assertIsNot(loaded, job)
        self.assertEqual(store.job_write_count, 1)

    async def test_get_unknown_returns_none(self) -> None:
        self.assertIsNone(await InMemoryJobStore().get("missing"))

    async def test_records_expire_after_ttl_and_put_refreshes_it(self) -> None:
        clock = FakeClock()
        store = InMemoryJobStore(ttl_seconds=60, clock=clock)
        job = _job("job-mem-0002")

        await store.put(job)
        clock.now = 50
        await store.put(job)
        clock.now = 100
        self.assertIsNotNone(await store.get("job-mem-0002"))

        clock.now = 111
        self.assertIsNone(await store.get("job-mem-0002"))
        self.assertEqual(await store.list(), ([], 0))

    async def test_list_is_newest_first_with_filter_and_paging(self) -> None:
        store = InMemoryJobStore()
        await store.put(_job("job-a", minutes=1))
        await store.put(_job("job-b", minutes=2, status=JobStatus.RUNNING))
        await store.put(_job("job-c", minutes=3))
        await store.put(_job("job-d", minutes=4, status=JobStatus.COMPLETED))

        items, total = await store.list(limit=2)
        self.assertEqual([job.job_id for job in items], ["job-d", "job-c"])
        self.assertEqual(total, 4)

        items, total = await store.list(limit=2, offset=2)
        self.assertEqual([job.job_id for job in items], ["job-b", "job-a"])

        items, total = await store.list(status=JobStatus.QUEUED)
        self.assertEqual([job.job_id for job in items], ["job-c", "job-a"])
        self.assertEqual(total, 2)

    async def test_injected_put_failure_leaves_previous_value(self) -> None:
        store = InMemoryJobStore()
        job = _job("job-mem-0003")
        await store.put(job)
        store.fail_next_puts = 1

        with self.assertRaises(StoreUnavailableError):
            await store.put(apply_job_update(job, status=JobStatus.RUNNING))

        self.assertEqual((await store.get("job-mem-0003")).status, JobStatus.QUEUED)
        await store.put(apply_job_update(job, status=JobStatus.RUNNING))
        self.assertEqual((await store.get("job-mem-0003")).status, JobStatus.RUNNING)

    async def test_delete_reports_whether_record_existed(self) -> None:
        store = InMemoryJobStore()
        await store.put(_job("job-mem-0004"))

        self.assertTrue(await store.delete("job-mem-0004"))
        self.assertFalse(await store.delete("job-mem-0004"))
        self.assertIsNone(await store.get("job-mem-0004"))


class RedisJobStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = FakeRedis()
        self.store = RedisJobStore(self.client, namespace="job", ttl_seconds=3600)

    async def test_put_writes_namespaced_json_with_ttl(self) -> None:
        job = _job("job-redis-0001")

        await self.store.put(job)

        self.assertIn("job:job-redis-0001", self.client.values)
        self.assertEqual(self.client.expiries["job:job-redis-0001"], 3600)
        self.assertEqual(Job.model_validate_json(self.client.values["job:job-redis-0001"]), job)
        self.assertEqual(await self.store.get("job-redis-0001"), job)

    async def test_get_unknown_returns_none(self) -> None:
        self.assertIsNone(await self.store.get("missing"))

    async def test_list_skips_other_namespaces_and_unreadable_records(self) -> None:
        await self.store.put(_job("job-1", minutes=1))
        await self.store.put(_job("job-2", minutes=2, status=JobStatus.CANCELLED))
        self.client.values["job:broken"] = "{not json"
        self.client.values["session:xyz"] = "{}"

        items, total = await self.store.list()
        self.assertEqual([job.job_id for job in items], ["job-2", "job-1"])
        self.assertEqual(total, 2)

        items, total = await self.store.list(status=JobStatus.CANCELLED)
        self.assertEqual([job.job_id for job in items], ["job-2"])
        self.assertEqual(total, 1)

    async def test_unreadable_record_on_get_surfaces_as_store_unavailable(self) -> None:
        self.client.values["job:job-broken-0001"] = "{not json"

        with self.assertRaises(StoreUnavailableError):
            await self.store.get("job-broken-0001")

    async def test_redis_errors_surface_as_store_unavailable(self) -> None:
        self.client.fail_with = RedisConnectionError("connection refused")

        with self.assertRaises(StoreUnavailableError):
            await self.store.put(_job("job-redis-0002"))
        with self.assertRaises(StoreUnavailableError):
            await self.store.get("job-redis-0002")
        with self.assertRaises(StoreUnavailableError):
            await self.store.list()
        with self.assertRaises(StoreUnavailableError):
            await self.store.delete("job-redis-0002")

    async def test_delete_and_close(self) -> None:
        await self.store.put(_job("job-redis-0003"))

        self.assertTrue(await self.store.delete("job-redis-0003"))
        self.assertFalse(await self.store.delete("job-redis-0003"))

        await self.store.close()
        self.assertTrue(self.client.closed)


if __name__ == "__main__":
    unittest.main()
