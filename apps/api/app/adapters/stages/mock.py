"""Mock stage executors for local development and tests."""

from __future__ import annotations

from abc import abstractmethod
import asyncio
from typing import Any
from urllib.parse import parse_qs, urlsplit

from app.adapters.stages.base import StageContext, StageExecutor, StageFailure


def derive_video_id(source: str) -> str:
    """Pick a stable identifier out of a media URL.

    Uses the ``v`` query parameter when present, otherwise the last path segment.
    """
    parts = urlsplit(source)
    query_id = parse_qs(parts.query).get("v")
    if query_id and query_id[0]:
        return query_id[0]
    segments = [segment for segment in parts.path.split("/") if segment]
    return segments[-1] if segments else parts.netloc


class _SteppedMockExecutor(StageExecutor):
    """Sleeps through a fixed number of steps, reporting progress after each."""

    def __init__(self, *, delay_seconds: float = 0.0, steps: int = 4) -> None:
        self._delay_seconds = delay_seconds
        self._steps = max(1, steps)

    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        for step in range(1, self._steps + 1):
            ctx.raise_if_cancelled()
            await asyncio.sleep(self._delay_seconds)
            await ctx.report_progress(step * 100 / self._steps)
        return self.build_output(ctx)

    @abstractmethod
    def build_output(self, ctx: StageContext) -> dict[str, Any]:
        """Return the stage output once every step has run."""


class MockFetchExecutor(_SteppedMockExecutor):
    def build_output(self, ctx: StageContext) -> dict[str, Any]:
        video_id = derive_video_id(ctx.job_input.source)
        if not video_id:
            raise StageFailure("Could not resolve a video id from source", retryable=False)
        return {
            "video_id": video_id,
            "title": f"Video {video_id}",
            "duration_seconds": 0,
        }


class MockExtractExecutor(_SteppedMockExecutor):
    def build_output(self, ctx: StageContext) -> dict[str, Any]:
        audio_format = ctx.job_input.options.audio_format
        return {
            "audio_uri": f"memory://audio/{ctx.job_id}.{audio_format}",
            "format": audio_format,
            "quality": ctx.job_input.options.audio_quality,
        }


class MockTranscribeExecutor(_SteppedMockExecutor):
    def build_output(self, ctx: StageContext) -> dict[str, Any]:
        fetched = ctx.prior_results.get("fetch", {})
        title = fetched.get("title", ctx.job_id)
        output: dict[str, Any] = {
            "text": f"Mock transcript for {title}.",
            "language": ctx.job_input.options.language,
            "transcript_uri": f"memory://transcripts/{ctx.job_id}.txt",
        }
        if ctx.job_input.options.include_timestamps:
            output["segment_count"] = 1
        return output


class MockEnhanceExecutor(_SteppedMockExecutor):
    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        if not ctx.job_input.options.wants_enhancement:
            return {"skipped": True}
        return await super().execute(ctx)

    def build_output(self, ctx: StageContext) -> dict[str, Any]:
        options = ctx.job_input.options
        text = str(ctx.prior_results.get("transcribe", {}).get("text", ""))
        output: dict[str, Any] = {"skipped": False}
        if options.enhance_text:
            output["enhanced_text"] = text.strip()
        if options.generate_summary:
            output["summary"] = text[:120]
        if options.extract_keywords:
            output["keywords"] = sorted({word.strip(".,").lower() for word in text.split() if len(word) > 4})
        return output


def build_mock_executors(*, delay_seconds: float = 0.0) -> dict[str, StageExecutor]:
    return {
        "fetch": MockFetchExecutor(delay_seconds=delay_seconds),
        "extract": MockExtractExecutor(delay_seconds=delay_seconds),
        "transcribe": MockTranscribeExecutor(delay_seconds=delay_seconds),
        "enhance": MockEnhanceExecutor(delay_seconds=delay_seconds),
    }


__all__ = [
    "MockEnhanceExecutor",
    "MockExtractExecutor",
    "MockFetchExecutor",
    "MockTranscribeExecutor",
    "build_mock_executors",
    "derive_video_id",
]
