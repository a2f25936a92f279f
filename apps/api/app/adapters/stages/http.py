"""HTTP stage executors backed by the video-processor and LLM services."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.adapters.stages.base import StageContext, StageExecutor, StageFailure
from app.core.logging_safety import safe_log_identifier

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class _HttpStageExecutor(StageExecutor):
    """Shared request/response handling for service-backed stages."""

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def _call(self, ctx: StageContext, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        ctx.raise_if_cancelled()
        url = f"{self._base_url}{path}"
        safe_job_id = safe_log_identifier(ctx.job_id, prefix="jid")
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("stage.http_timeout job_id=%s stage=%s path=%s", safe_job_id, ctx.stage, path)
            raise StageFailure(f"{ctx.stage} service timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "stage.http_unreachable job_id=%s stage=%s path=%s reason=%s",
                safe_job_id,
                ctx.stage,
                path,
                type(exc).__name__,
            )
            raise StageFailure(f"{ctx.stage} service unreachable", retryable=True) from exc

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS_CODES
            raise StageFailure(
                f"{ctx.stage} service returned HTTP {response.status_code}: {self._error_text(response)}",
                retryable=retryable,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise StageFailure(f"{ctx.stage} service returned a non-JSON body", retryable=False) from exc

        if isinstance(body, dict) and body.get("success") is False:
            raise StageFailure(str(body.get("error") or f"{ctx.stage} service reported failure"), retryable=False)
        data = body.get("data", body) if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise StageFailure(f"{ctx.stage} service returned an unexpected payload", retryable=False)
        return data

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or response.reason_phrase)
        return response.reason_phrase

    @staticmethod
    def _require(data: dict[str, Any], *keys: str, stage: str) -> Any:
        for key in keys:
            value = data.get(key)
            if value not in (None, ""):
                return value
        raise StageFailure(f"{stage} service response is missing {keys[0]!r}", retryable=False)


class HttpFetchExecutor(_HttpStageExecutor):
    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        data = await self._call(ctx, "GET", "/api/video/info", params={"url": ctx.job_input.source})
        return {
            "video_id": self._require(data, "videoId", "video_id", stage=ctx.stage),
            "title": data.get("title", ""),
            "duration_seconds": int(data.get("lengthSeconds") or data.get("duration") or 0),
        }


class HttpExtractExecutor(_HttpStageExecutor):
    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        options = ctx.job_input.options
        data = await self._call(
            ctx,
            "POST",
            "/api/video/process",
            json={
                "url": ctx.job_input.source,
                "quality": options.audio_quality,
                "format": options.audio_format,
            },
        )
        await ctx.report_progress(100)
        return {
            "audio_uri": self._require(data, "audioFile", "audioPath", "audio_uri", stage=ctx.stage),
            "format": options.audio_format,
            "quality": options.audio_quality,
        }


class HttpTranscribeExecutor(_HttpStageExecutor):
    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        extracted = ctx.prior_results.get("extract", {})
        audio_uri = extracted.get("audio_uri")
        if not audio_uri:
            raise StageFailure("No extracted audio available to transcribe", retryable=False)

        options = ctx.job_input.options
        data = await self._call(
            ctx,
            "POST",
            "/api/llm/transcribe-from-path",
            json={
                "audioPath": audio_uri,
                "language": options.language,
                "includeTimestamps": options.include_timestamps,
            },
        )
        output: dict[str, Any] = {
            "text": self._require(data, "text", stage=ctx.stage),
            "language": data.get("language") or options.language,
        }
        segments = data.get("segments")
        if isinstance(segments, list):
            output["segment_count"] = len(segments)
        if data.get("transcriptUri"):
            output["transcript_uri"] = data["transcriptUri"]
        return output


class HttpEnhanceExecutor(_HttpStageExecutor):
    async def execute(self, ctx: StageContext) -> dict[str, Any]:
        options = ctx.job_input.options
        if not options.wants_enhancement:
            return {"skipped": True}

        text = ctx.prior_results.get("transcribe", {}).get("text")
        if not text:
            raise StageFailure("No transcript text available to enhance", retryable=False)

        data = await self._call(
            ctx,
            "POST",
            "/api/llm/enhance",
            json={
                "text": text,
                "options": {
                    "addPunctuation": options.enhance_text,
                    "fixGrammar": options.enhance_text,
                    "generateSummary": options.generate_summary,
                    "extractKeywords": options.extract_keywords,
                },
            },
        )
        output: dict[str, Any] = {"skipped": False}
        if data.get("enhancedText"):
            output["enhanced_text"] = data["enhancedText"]
        if data.get("summary"):
            output["summary"] = data["summary"]
        if isinstance(data.get("keywords"), list):
            output["keywords"] = [str(keyword) for keyword in data["keywords"]]
        return output


def build_http_executors(
    client: httpx.AsyncClient,
    *,
    video_processor_url: str,
    llm_service_url: str,
) -> dict[str, StageExecutor]:
    return {
        "fetch": HttpFetchExecutor(client, video_processor_url),
        "extract": HttpExtractExecutor(client, video_processor_url),
        "transcribe": HttpTranscribeExecutor(client, llm_service_url),
        "enhance": HttpEnhanceExecutor(client, llm_service_url),
    }


__all__ = [
    "HttpEnhanceExecutor",
    "HttpExtractExecutor",
    "HttpFetchExecutor",
    "HttpTranscribeExecutor",
    "build_http_executors",
]
