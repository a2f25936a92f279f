"""Stage executor interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from app.schemas.job import JobInput


class StageFailure(Exception):
    """Raised by an executor when its stage cannot produce output."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class JobCancelled(Exception):
    """Raised by an executor that observed a cancellation request mid-stage."""


async def _ignore_progress(_: float) -> None:
    return None


@dataclass(slots=True)
class StageContext:
    """Everything a stage may read while it runs.

    ``prior_results`` is a copy; executors return their own output rather than
    writing into it.
    """

    job_id: str
    stage: str
    job_input: JobInput
    prior_results: Mapping[str, Mapping[str, Any]]
    cancel_check: Callable[[], bool] = lambda: False
    progress_reporter: Callable[[float], Awaitable[None]] = field(default=_ignore_progress)

    def is_cancelled(self) -> bool:
        return self.cancel_check()

    def raise_if_cancelled(self) -> None:
        if self.cancel_check():
            raise JobCancelled(self.job_id)

    async def report_progress(self, percent: float) -> None:
        """Report 0-100 progress within the current stage."""
        await self.progress_reporter(percent)


class StageExecutor(ABC):
    """Provider-neutral stage interface."""

    @abstractmethod
    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        """Run the stage and return its output summary.

        Raise :class:`StageFailure` to report failure and whether it is retryable.
        """


__all__ = ["JobCancelled", "StageContext", "StageExecutor", "StageFailure"]
