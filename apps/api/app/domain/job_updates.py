"""Validated construction and mutation of job records.

Every change to a :class:`~app.schemas.job.Job` goes through
:func:`apply_job_update`. It returns a new record and never mutates its
argument, so an engine can keep the previous value if persisting the new one
fails.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from app.domain.job_fsm import ensure_transition, is_terminal
from app.schemas.job import Job, JobError, JobInput, JobStatus

_UNSET: Any = object()


class JobUpdateError(ValueError):
    """Raised when an update would break a record invariant."""


def new_job(*, job_id: str, job_input: JobInput, now: datetime | None = None) -> Job:
    created_at = now or datetime.now(UTC)
    return Job(
        job_id=job_id,
        input=job_input,
        status=JobStatus.QUEUED,
        progress=0,
        created_at=created_at,
        updated_at=created_at,
    )


def apply_job_update(
    job: Job,
    *,
    status: JobStatus | None = None,
    current_stage: str | None = _UNSET,
    progress: int | None = None,
    stage_result: tuple[str, dict[str, Any]] | None = None,
    error: JobError | None = None,
    add_attempt: bool = False,
    now: datetime | None = None,
) -> Job:
    """Return ``job`` with the requested changes applied.

    Status changes are validated against the lifecycle FSM, which also rejects
    any write to a terminal record. Progress is clamped so it never decreases
    and is pinned to 100 on completion. Stage results are append-only.
    """
    target_status = status or job.status
    ensure_transition(job.status, target_status)

    if error is not None and target_status is not JobStatus.FAILED:
        raise JobUpdateError("error may only be recorded together with status=failed")
    if target_status is JobStatus.FAILED and error is None:
        raise JobUpdateError("a failed job must carry an error")

    stage_results = job.stage_results
    if stage_result is not None:
        stage_name, payload = stage_result
        if stage_name in stage_results:
            raise JobUpdateError(f"stage result for {stage_name!r} already recorded")
        stage_results = {**stage_results, stage_name: dict(payload)}

    next_progress = job.progress
    if progress is not None:
        next_progress = max(job.progress, min(100, max(0, int(progress))))
    if target_status is JobStatus.COMPLETED:
        next_progress = 100

    if is_terminal(target_status) or target_status is JobStatus.QUEUED:
        next_stage = None
    elif current_stage is _UNSET:
        next_stage = job.current_stage
    else:
        next_stage = current_stage

    timestamp = now or datetime.now(UTC)
    completed_at = job.completed_at
    if is_terminal(target_status) and completed_at is None:
        completed_at = timestamp

    return job.model_copy(
        update={
            "status": target_status,
            "current_stage": next_stage,
            "progress": next_progress,
            "stage_results": stage_results,
            "error": error,
            "attempts": job.attempts + 1 if add_attempt else job.attempts,
            "updated_at": timestamp,
            "completed_at": completed_at,
        }
    )
