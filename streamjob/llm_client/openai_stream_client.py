from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Protocol

from streamjob.llm_client.base import CancellationToken, ChunkCallback, StreamResult
from streamjob.llm_client.normalize_usage import normalize_openai_usage
from streamjob.utils.error_taxonomy import StreamCancelledError

logger = logging.getLogger("streamjob.llm")

JSON_MODE_SYSTEM_PROMPT = (
    "You are a helpful assistant that responds in valid JSON format only."
)


class ChatCompletionsService(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class OpenAIStreamClient:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 30.0,
        temperature: float | None = 0.7,
        completions_service: ChatCompletionsService | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._temperature = temperature
        self._completions_service = completions_service

    async def stream_text(
        self,
        *,
        prompt: str,
        json_mode: bool,
        cancellation: CancellationToken,
        on_chunk: ChunkCallback,
    ) -> StreamResult:
        service = self._resolve_service()
        payload = self.build_request_payload(
            prompt=prompt,
            model=self.model,
            json_mode=json_mode,
            temperature=self._temperature,
        )

        start_time = time.perf_counter()
        first_chunk_ms: float | None = None
        parts: list[str] = []
        usage_raw: dict[str, Any] = {}
        model = self.model

        stream = await cancellation.race(service.create(**payload))
        try:
            chunks = stream.__aiter__()
            while True:
                try:
                    chunk = await cancellation.race(chunks.__anext__())
                except StopAsyncIteration:
                    break
                if cancellation.cancelled:
                    raise StreamCancelledError(cancellation.reason or "cancelled")

                chunk_payload = _to_dict(chunk)
                model = str(chunk_payload.get("model") or model)
                usage = chunk_payload.get("usage")
                if isinstance(usage, dict):
                    usage_raw = usage

                delta = _extract_delta_text(chunk_payload)
                if not delta:
                    continue
                if first_chunk_ms is None:
                    first_chunk_ms = (time.perf_counter() - start_time) * 1000
                parts.append(delta)
                on_chunk(delta, "".join(parts))
        finally:
            await _close_stream(stream)

        if cancellation.cancelled:
            raise StreamCancelledError(cancellation.reason or "cancelled")

        timings = {"t_llm_total_ms": (time.perf_counter() - start_time) * 1000}
        if first_chunk_ms is not None:
            timings["t_llm_first_chunk_ms"] = first_chunk_ms

        logger.debug(
            "Stream finished",
            extra={"stage": "stream", "metrics": {"chunks": len(parts)}},
        )
        return StreamResult(
            text="".join(parts),
            model=model,
            usage_raw=usage_raw,
            usage_normalized=normalize_openai_usage(usage_raw),
            timings=timings,
        )

    @staticmethod
    def build_request_payload(
        *,
        prompt: str,
        model: str,
        json_mode: bool,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        messages: list[dict[str, str]] = [{"role": "user", "content": prompt}]
        if json_mode:
            messages.insert(0, {"role": "system", "content": JSON_MODE_SYSTEM_PROMPT})

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        return payload

    def _resolve_service(self) -> ChatCompletionsService:
        if self._completions_service is not None:
            return self._completions_service

        if self._api_key is None:
            raise ValueError("API key is required when service is not injected")

        try:
            from openai import AsyncOpenAI
        except ImportError as error:
            raise RuntimeError("openai package is not installed") from error

        client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=self._timeout_seconds,
        )
        self._completions_service = client.chat.completions
        return self._completions_service


def _extract_delta_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list):
        return ""

    parts: list[str] = []
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            continue
        content = delta.get("content")
        if isinstance(content, str):
            parts.append(content)
    return "".join(parts)


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if not callable(close):
        return
    result = close()
    if inspect.isawaitable(result):
        await result


def _to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    return {}
