"""Pipeline engine: drives each job through its stages on a dedicated task."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import copy
from dataclasses import dataclass, field
import logging
import time
from typing import Any
from uuid import uuid4

from app.adapters.stages.base import JobCancelled, StageContext, StageExecutor, StageFailure
from app.core.logging_safety import redact_source, safe_log_identifier
from app.domain.job_fsm import IN_FLIGHT_STATES, is_terminal
from app.domain.job_updates import apply_job_update, new_job
from app.domain.pipeline import PipelineConfig, PipelineConfigError, StageDefinition, overall_progress
from app.errors import ApiError, resource_not_found
from app.repositories.base import JobStore, StoreUnavailableError
from app.schemas.job import Job, JobError, JobErrorKind, JobInput, JobStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Execution:
    """In-process handle for one job. Holds the authoritative copy of the record."""

    job: Job
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    started_at: float | None = None
    task: asyncio.Task[None] | None = None


class PipelineEngine:
    """Runs jobs through a fixed, validated stage list.

    At most one execution exists per job id in this process; every write for
    a job is made under that execution's lock, so writes to one record are
    totally ordered. Cancellation and the wall-clock timeout are checked at
    stage boundaries only.
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: PipelineConfig,
        executors: Mapping[str, StageExecutor],
        *,
        job_timeout_seconds: float = 1800,
        stage_retry_delay_seconds: float = 0.3,
        store_write_attempts: int = 3,
        store_retry_base_delay_seconds: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        missing = [name for name in pipeline.stage_names if name not in executors]
        if missing:
            raise PipelineConfigError(f"no executor registered for stages: {missing}")

        self._store = store
        self._pipeline = pipeline
        self._executors = dict(executors)
        self._job_timeout_seconds = job_timeout_seconds
        self._stage_retry_delay_seconds = stage_retry_delay_seconds
        self._store_write_attempts = max(1, store_write_attempts)
        self._store_retry_base_delay_seconds = store_retry_base_delay_seconds
        self._clock = clock
        self._executions: dict[str, _Execution] = {}
        self._pending_outcomes: dict[str, Job] = {}

    @property
    def pipeline(self) -> PipelineConfig:
        return self._pipeline

    def is_executing(self, job_id: str) -> bool:
        return job_id in self._executions

    def active_job_ids(self) -> list[str]:
        return sorted(self._executions)

    def pending_outcomes(self) -> dict[str, Job]:
        return dict(self._pending_outcomes)

    async def submit(self, job_input: JobInput, *, job_id: str | None = None) -> Job:
        """Persist a queued record and start its execution without waiting for it."""
        job_id = job_id or str(uuid4())
        safe_job_id = safe_log_identifier(job_id, prefix="jid")

        active = self._executions.get(job_id)
        if active is not None:
            # The record can turn terminal slightly before its task releases the id.
            if is_terminal(active.job.status):
                self._raise_job_id_conflict(active.job.status)
            self._raise_job_already_running(active.job.status)

        execution = _Execution(job=new_job(job_id=job_id, job_input=job_input))
        # Reserve the id before the first await so a concurrent submit sees it.
        self._executions[job_id] = execution
        # Held until the task exists, so a concurrent cancel never acts on a bare reservation.
        async with execution.lock:
            try:
                existing = await self._store.get(job_id)
                if existing is not None:
                    if existing.status in IN_FLIGHT_STATES:
                        self._raise_job_already_running(existing.status)
                    self._raise_job_id_conflict(existing.status)
                await self._store.put(execution.job)
            except BaseException:
                self._executions.pop(job_id, None)
                raise
            execution.task = asyncio.create_task(self._run(execution), name=f"pipeline-{job_id}")

        logger.info(
            "engine.job_submitted job_id=%s source=%s stages=%s",
            safe_job_id,
            redact_source(job_input.source),
            ",".join(self._pipeline.stage_names),
        )
        return execution.job

    async def cancel(self, job_id: str) -> tuple[Job, bool]:
        """Request cancellation.

        Returns the record as it stands and whether the cancellation is already
        applied (``False`` means a running job will stop at its next boundary).
        """
        safe_job_id = safe_log_identifier(job_id, prefix="jid")
        execution = self._executions.get(job_id)
        if execution is not None:
            async with execution.lock:
                # No task means the submit holding this id was rejected; the store decides.
                live = execution.task is not None
                if live:
                    job = execution.job
                    if is_terminal(job.status):
                        self._raise_not_cancellable(job.status)
                    execution.cancel_event.set()
                    if job.status is JobStatus.QUEUED:
                        await self._write_terminal(execution, status=JobStatus.CANCELLED)
                        return execution.job, True
            if live:
                logger.info("engine.cancel_requested job_id=%s status=%s", safe_job_id, execution.job.status)
                return execution.job, False

        job = await self._store.get(job_id)
        if job is None:
            raise resource_not_found()
        if is_terminal(job.status):
            self._raise_not_cancellable(job.status)

        # No live execution in this process owns the record, so it is written directly.
        cancelled = apply_job_update(job, status=JobStatus.CANCELLED)
        await self._store.put(cancelled)
        logger.info("engine.orphan_cancelled job_id=%s prev_status=%s", safe_job_id, job.status)
        return cancelled, True

    async def join(self, job_id: str) -> None:
        """Wait until the job's execution (if any) has finished."""
        execution = self._executions.get(job_id)
        if execution is None or execution.task is None:
            return
        await asyncio.shield(execution.task)

    async def flush_pending_outcomes(self) -> int:
        """Retry terminal writes that could not be persisted earlier."""
        flushed = 0
        for job_id, job in list(self._pending_outcomes.items()):
            if await self._persist(job):
                self._pending_outcomes.pop(job_id, None)
                flushed += 1
                logger.info(
                    "engine.outcome_flushed job_id=%s status=%s",
                    safe_log_identifier(job_id, prefix="jid"),
                    job.status,
                )
        return flushed

    async def shutdown(self, *, grace_seconds: float = 10) -> None:
        """Signal every live job to stop, wait briefly, then cancel the rest."""
        executions = list(self._executions.values())
        for execution in executions:
            execution.cancel_event.set()

        tasks = [execution.task for execution in executions if execution.task is not None]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("engine.shutdown_forced pending_jobs=%s", len(pending))

        # A task cancelled before its first step never reaches its own cleanup.
        for execution in executions:
            if execution.task is None:
                continue
            if not is_terminal(execution.job.status):
                await self._commit_terminal(execution, status=JobStatus.CANCELLED)
            self._executions.pop(execution.job.job_id, None)

        await self.flush_pending_outcomes()
        if self._pending_outcomes:
            logger.error("engine.shutdown_outcomes_lost count=%s", len(self._pending_outcomes))

    async def _run(self, execution: _Execution) -> None:
        job_id = execution.job.job_id
        try:
            await self._drive(execution)
        except asyncio.CancelledError:
            await self._commit_terminal(execution, status=JobStatus.CANCELLED)
            raise
        except Exception:
            logger.exception(
                "engine.execution_crashed job_id=%s stage=%s",
                safe_log_identifier(job_id, prefix="jid"),
                execution.job.current_stage,
            )
            await self._commit_terminal(
                execution,
                status=JobStatus.FAILED,
                error=JobError(
                    stage=execution.job.current_stage or "pipeline",
                    message="Internal pipeline error",
                ),
            )
        finally:
            self._executions.pop(job_id, None)

    async def _drive(self, execution: _Execution) -> None:
        async with execution.lock:
            if execution.job.status is not JobStatus.QUEUED:
                return
            if execution.cancel_event.is_set():
                await self._write_terminal(execution, status=JobStatus.CANCELLED)
                return
            await self._commit(execution, status=JobStatus.RUNNING)
        execution.started_at = self._clock()
        logger.info("engine.job_started job_id=%s", safe_log_identifier(execution.job.job_id, prefix="jid"))

        for index, stage in enumerate(self._pipeline.stages):
            output = await self._run_stage(execution, index, stage)
            if output is None:
                return
            async with execution.lock:
                await self._commit(
                    execution,
                    progress=self._pipeline.prior_weight(index) + stage.weight,
                    stage_result=(stage.name, output),
                )

        if execution.cancel_event.is_set():
            await self._commit_terminal(execution, status=JobStatus.CANCELLED)
            return
        await self._commit_terminal(execution, status=JobStatus.COMPLETED)

    async def _run_stage(self, execution: _Execution, index: int, stage: StageDefinition) -> dict[str, Any] | None:
        """Run one stage with its retry policy. ``None`` means the job reached a terminal status."""
        job_id = execution.job.job_id
        safe_job_id = safe_log_identifier(job_id, prefix="jid")
        prior_weight = self._pipeline.prior_weight(index)
        executor = self._executors[stage.name]

        for attempt in range(1, stage.max_attempts + 1):
            if await self._stopped_at_boundary(execution, stage.name):
                return None

            async with execution.lock:
                await self._commit(execution, current_stage=stage.name, progress=prior_weight, add_attempt=True)
            logger.info(
                "engine.stage_started job_id=%s stage=%s attempt=%s max_attempts=%s",
                safe_job_id,
                stage.name,
                attempt,
                stage.max_attempts,
            )

            ctx = StageContext(
                job_id=job_id,
                stage=stage.name,
                job_input=execution.job.input,
                prior_results=copy.deepcopy(execution.job.stage_results),
                cancel_check=execution.cancel_event.is_set,
                progress_reporter=self._progress_reporter(execution, prior_weight, stage.weight),
            )
            try:
                output = await executor.execute(ctx)
            except JobCancelled:
                await self._commit_terminal(execution, status=JobStatus.CANCELLED)
                return None
            except StageFailure as exc:
                failure = exc
            except Exception as exc:
                logger.exception("engine.stage_crashed job_id=%s stage=%s attempt=%s", safe_job_id, stage.name, attempt)
                failure = StageFailure(f"{type(exc).__name__}: {exc}", retryable=False)
            else:
                if isinstance(output, dict):
                    logger.info("engine.stage_completed job_id=%s stage=%s attempt=%s", safe_job_id, stage.name, attempt)
                    return output
                failure = StageFailure(f"stage returned {type(output).__name__}, expected a mapping", retryable=False)

            exhausted = not failure.retryable or attempt >= stage.max_attempts
            logger.warning(
                "engine.stage_failed job_id=%s stage=%s attempt=%s retryable=%s exhausted=%s",
                safe_job_id,
                stage.name,
                attempt,
                failure.retryable,
                exhausted,
            )
            if exhausted:
                await self._commit_terminal(
                    execution,
                    status=JobStatus.FAILED,
                    error=JobError(stage=stage.name, message=failure.message, kind=JobErrorKind.STAGE_FAILURE),
                )
                return None
            await asyncio.sleep(self._stage_retry_delay_seconds)

        return None

    async def _stopped_at_boundary(self, execution: _Execution, stage_name: str) -> bool:
        if execution.cancel_event.is_set():
            await self._commit_terminal(execution, status=JobStatus.CANCELLED)
            return True

        started_at = execution.started_at if execution.started_at is not None else self._clock()
        elapsed = self._clock() - started_at
        if elapsed > self._job_timeout_seconds:
            logger.warning(
                "engine.job_timed_out job_id=%s stage=%s elapsed_seconds=%.1f budget_seconds=%s",
                safe_log_identifier(execution.job.job_id, prefix="jid"),
                stage_name,
                elapsed,
                self._job_timeout_seconds,
            )
            await self._commit_terminal(
                execution,
                status=JobStatus.FAILED,
                error=JobError(
                    stage=stage_name,
                    message=f"Job exceeded its wall-clock budget of {self._job_timeout_seconds:g}s",
                    kind=JobErrorKind.TIMEOUT,
                ),
            )
            return True
        return False

    def _progress_reporter(
        self,
        execution: _Execution,
        prior_weight: int,
        stage_weight: int,
    ) -> Callable[[float], Awaitable[None]]:
        async def report(percent: float) -> None:
            value = overall_progress(prior_weight, stage_weight, percent)
            if value <= execution.job.progress:
                return
            async with execution.lock:
                if execution.job.status is not JobStatus.RUNNING or value <= execution.job.progress:
                    return
                await self._commit(execution, progress=value)

        return report

    async def _commit(self, execution: _Execution, **changes: Any) -> None:
        """Apply a non-terminal update. Caller holds ``execution.lock``."""
        execution.job = apply_job_update(execution.job, **changes)
        if not await self._persist(execution.job):
            # A later full-record put supersedes this one.
            logger.error(
                "engine.progress_write_dropped job_id=%s status=%s progress=%s",
                safe_log_identifier(execution.job.job_id, prefix="jid"),
                execution.job.status,
                execution.job.progress,
            )

    async def _commit_terminal(self, execution: _Execution, *, status: JobStatus, error: JobError | None = None) -> None:
        """Acquire the job lock and write a terminal outcome."""
        async with execution.lock:
            await self._write_terminal(execution, status=status, error=error)

    async def _write_terminal(
        self,
        execution: _Execution,
        *,
        status: JobStatus,
        error: JobError | None = None,
    ) -> None:
        """Write a terminal outcome once. Caller holds ``execution.lock``."""
        if is_terminal(execution.job.status):
            return
        previous_status = execution.job.status
        execution.job = apply_job_update(execution.job, status=status, error=error)
        job = execution.job
        safe_job_id = safe_log_identifier(job.job_id, prefix="jid")

        if not await self._persist(job):
            self._pending_outcomes[job.job_id] = job
            logger.error(
                "engine.outcome_pending job_id=%s status=%s reason=store_unavailable",
                safe_job_id,
                job.status,
            )

        if job.status is JobStatus.FAILED and job.error is not None:
            logger.warning(
                "engine.job_failed job_id=%s stage=%s kind=%s attempts=%s",
                safe_job_id,
                job.error.stage,
                job.error.kind.value,
                job.attempts,
            )
        else:
            logger.info(
                "engine.job_finished job_id=%s prev_status=%s new_status=%s progress=%s attempts=%s",
                safe_job_id,
                previous_status,
                job.status,
                job.progress,
                job.attempts,
            )

    async def _persist(self, job: Job) -> bool:
        """Put with exponential backoff. Returns ``False`` once attempts are exhausted."""
        for attempt in range(1, self._store_write_attempts + 1):
            try:
                await self._store.put(job)
                return True
            except StoreUnavailableError as exc:
                logger.warning(
                    "engine.store_write_failed job_id=%s status=%s attempt=%s reason=%s",
                    safe_log_identifier(job.job_id, prefix="jid"),
                    job.status,
                    attempt,
                    exc,
                )
                if attempt < self._store_write_attempts:
                    await asyncio.sleep(self._store_retry_base_delay_seconds * 2 ** (attempt - 1))
        return False

    @staticmethod
    def _raise_job_already_running(current_status: JobStatus) -> None:
        raise ApiError(
            status_code=409,
            code="JOB_ALREADY_RUNNING",
            message="Job is already queued or running.",
            details={"current_status": current_status},
        )

    @staticmethod
    def _raise_job_id_conflict(current_status: JobStatus) -> None:
        raise ApiError(
            status_code=409,
            code="JOB_ID_CONFLICT",
            message="Job id is already used by a finished job.",
            details={"current_status": current_status},
        )

    @staticmethod
    def _raise_not_cancellable(current_status: JobStatus) -> None:
        raise ApiError(
            status_code=409,
            code="JOB_NOT_CANCELLABLE",
            message="Job is already in a terminal state.",
            details={"current_status": current_status},
        )
