from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from streamjob.llm_client.base import CancellationToken, StreamingBackend
from streamjob.logging import clear_log_context, set_log_context
from streamjob.pipeline.extract_json import parse_json_from_response
from streamjob.pipeline.normalizers import Normalizer, get_normalizer
from streamjob.pipeline.stream_tags import streaming_display_text
from streamjob.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    ErrorCode,
    StreamCancelledError,
    build_error_details,
    classify_transport_error,
    is_retryable_error_code,
)

logger = logging.getLogger("streamjob.jobs")

JobType = Literal[
    "logic-check",
    "grammar-check",
    "scoring",
    "letter-logic",
    "letter-scoring",
]
JobPhase = Literal[
    "idle", "starting", "streaming", "settling", "cancelled", "failed"
]

DEFAULT_FALLBACK_ERROR_MESSAGE = "Request failed, please retry."
APPLICATION_ERROR_STATUS = "error"


@dataclass(frozen=True, slots=True)
class StreamingState:
    type: str | None = None
    id: str | None = None
    text: str = ""


EMPTY_STREAMING = StreamingState()


@dataclass(frozen=True, slots=True)
class JobError:
    message: str
    id: str | None
    type: str | None
    code: ErrorCode = "UNKNOWN_ERROR"
    retryable: bool = True
    partial_text: str = ""


@dataclass(frozen=True, slots=True)
class JobDescriptor:
    type: str
    id: str
    prompt: str
    loading_key: str | None = None
    error_id: str | None = None
    fallback_error_message: str = DEFAULT_FALLBACK_ERROR_MESSAGE
    json_mode: bool = False
    normalizer: Normalizer | None = None

    @classmethod
    def for_job_type(
        cls, job_type: JobType, *, id: str, prompt: str, **kwargs: Any
    ) -> "JobDescriptor":
        return cls(
            type=job_type,
            id=id,
            prompt=prompt,
            normalizer=get_normalizer(job_type),
            **kwargs,
        )

    @property
    def effective_loading_key(self) -> str:
        return self.loading_key if self.loading_key is not None else self.id

    @property
    def effective_error_id(self) -> str:
        if self.error_id is not None:
            return self.error_id
        return self.effective_loading_key


@dataclass(frozen=True, slots=True)
class JobOutcome:
    ok: bool
    json: Any
    display_text: str
    raw: str
    model: str = ""
    usage: dict[str, int | None] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EngineSnapshot:
    loading: str | None
    streaming: StreamingState
    error: JobError | None


class _JobFailure(Exception):
    def __init__(self, code: ErrorCode) -> None:
        super().__init__(ERROR_FRIENDLY_MESSAGES[code])
        self.code = code


class StreamingJobController:
    """Runs one streamed generation job at a time and owns the shared UI state.

    ``loading``, ``streaming`` and ``error`` are only mutated here. Every
    asynchronous continuation checks that its cancellation token is still the
    active one before writing, so a late chunk or settle from a cancelled job
    cannot overwrite the state of a job started after it.
    """

    def __init__(self, *, backend: StreamingBackend) -> None:
        self.backend = backend
        self._loading: str | None = None
        self._streaming: StreamingState = EMPTY_STREAMING
        self._error: JobError | None = None
        self._phase: JobPhase = "idle"
        self._active_token: CancellationToken | None = None

    @property
    def loading(self) -> str | None:
        return self._loading

    @property
    def streaming(self) -> StreamingState:
        return self._streaming

    @property
    def error(self) -> JobError | None:
        return self._error

    @property
    def phase(self) -> JobPhase:
        return self._phase

    @property
    def active(self) -> bool:
        return self._loading is not None

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            loading=self._loading,
            streaming=self._streaming,
            error=self._error,
        )

    def clear_error(self) -> None:
        self._error = None

    def set_error(self, error: JobError | None) -> None:
        self._error = error

    def cancel(self) -> None:
        token = self._active_token
        if token is not None:
            token.cancel()
            self._active_token = None
            logger.info("Job cancelled", extra={"stage": "cancel"})
        self._streaming = EMPTY_STREAMING
        self._loading = None
        self._phase = "cancelled" if token is not None else "idle"

    async def run_job(
        self,
        descriptor: JobDescriptor,
        *,
        on_start: Callable[[], None] | None = None,
        on_success: Callable[[JobOutcome], None] | None = None,
        on_error: Callable[[JobError, JobOutcome | None], None] | None = None,
    ) -> JobOutcome | None:
        if not descriptor.prompt:
            return None
        if self._loading is not None:
            logger.info(
                "Job rejected, another job is active",
                extra={"stage": "start", "metrics": {"active": self._loading}},
            )
            return None

        job_type = descriptor.type
        error_id = descriptor.effective_error_id
        token = CancellationToken()

        self._loading = descriptor.effective_loading_key
        self._error = None
        self._phase = "starting"
        self._streaming = StreamingState(type=job_type, id=error_id, text="")
        self._active_token = token
        set_log_context(job_id=error_id, job_type=job_type)
        started_at = time.perf_counter()
        logger.info("Job started", extra={"stage": "start"})

        def on_chunk(_chunk: str, full_text: str) -> None:
            if self._active_token is not token or token.cancelled:
                return
            self._phase = "streaming"
            display_text = streaming_display_text(full_text)
            self._streaming = StreamingState(
                type=job_type, id=error_id, text=display_text
            )

        try:
            if on_start is not None:
                on_start()

            # Racing the token lets cancel() interrupt backends that never poll it.
            result = await token.race(
                self.backend.stream_text(
                    prompt=descriptor.prompt,
                    json_mode=descriptor.json_mode,
                    cancellation=token,
                    on_chunk=on_chunk,
                )
            )
            if token.cancelled:
                return None

            self._phase = "settling"
            raw = result.text
            extraction = parse_json_from_response(raw)
            if extraction.candidate is None or _is_falsy_payload(
                extraction.parsed_json
            ):
                raise _JobFailure("JOB_PARSE_FAILED")
            if extraction.candidate != "final_json_block":
                logger.info(
                    "Payload recovered by fallback candidate",
                    extra={
                        "stage": "extract",
                        "metrics": {"candidate": extraction.candidate},
                    },
                )

            parsed = extraction.parsed_json
            display_text = extraction.display_text

            if _has_embedded_error(parsed):
                outcome = JobOutcome(
                    ok=False,
                    json=parsed,
                    display_text=display_text,
                    raw=raw,
                    model=result.model,
                    usage=result.usage_normalized,
                )
                job_error = JobError(
                    message=_embedded_error_message(parsed, display_text),
                    id=error_id,
                    type=job_type,
                    code="JOB_APPLICATION_ERROR",
                    retryable=is_retryable_error_code("JOB_APPLICATION_ERROR"),
                )
                self._phase = "failed"
                self._error = job_error
                logger.warning(
                    "Model reported an application error: %s",
                    job_error.message,
                    extra={"stage": "settle"},
                )
                _notify_error(on_error, job_error, outcome)
                return outcome

            normalized = parsed
            if descriptor.normalizer is not None:
                try:
                    normalized = descriptor.normalizer(
                        parsed, display_text=display_text, raw=raw
                    )
                except Exception as error:  # noqa: BLE001
                    logger.warning(
                        "Normalization failed: %s",
                        build_error_details(error),
                        extra={"stage": "normalize"},
                    )
                    raise _JobFailure("JOB_STRUCTURE_INVALID") from error
            if _is_falsy_payload(normalized):
                raise _JobFailure("JOB_STRUCTURE_INVALID")

            outcome = JobOutcome(
                ok=True,
                json=normalized,
                display_text=display_text,
                raw=raw,
                model=result.model,
                usage=result.usage_normalized,
            )
            if on_success is not None:
                on_success(outcome)
            elapsed_ms = (time.perf_counter() - started_at) * 1000
            logger.info(
                "Job completed",
                extra={"stage": "settle", "duration_ms": round(elapsed_ms, 2)},
            )
            return outcome

        except _JobFailure as failure:
            self._fail(
                token,
                JobError(
                    message=str(failure),
                    id=error_id,
                    type=job_type,
                    code=failure.code,
                    retryable=is_retryable_error_code(failure.code),
                ),
                on_error,
            )
            return None

        except StreamCancelledError:
            if token.cancelled:
                return None
            self._fail(
                token,
                JobError(
                    message=descriptor.fallback_error_message,
                    id=error_id,
                    type=job_type,
                    code="UNKNOWN_ERROR",
                    partial_text=self._streaming.text,
                ),
                on_error,
            )
            return None

        except Exception as error:  # noqa: BLE001
            if token.cancelled:
                return None
            code = classify_transport_error(error)
            logger.error(
                "Job failed: %s",
                build_error_details(error),
                extra={"stage": "stream"},
            )
            self._fail(
                token,
                JobError(
                    message=str(error) or descriptor.fallback_error_message,
                    id=error_id,
                    type=job_type,
                    code=code,
                    retryable=is_retryable_error_code(code),
                    partial_text=self._streaming.text,
                ),
                on_error,
            )
            return None

        finally:
            if not token.cancelled and self._active_token is token:
                self._loading = None
                self._streaming = EMPTY_STREAMING
                if self._phase != "failed":
                    self._phase = "idle"
            # A newer job owns the log context once it has taken the slot.
            if self._active_token is token or self._active_token is None:
                self._active_token = None
                clear_log_context(["job_id", "job_type"])

    def _fail(
        self,
        token: CancellationToken,
        job_error: JobError,
        on_error: Callable[[JobError, JobOutcome | None], None] | None,
    ) -> None:
        if token.cancelled or self._active_token is not token:
            return
        self._phase = "failed"
        self._error = job_error
        logger.warning(
            "Job error recorded: %s (%s)",
            job_error.message,
            job_error.code,
            extra={"stage": "settle"},
        )
        _notify_error(on_error, job_error, None)


def _notify_error(
    on_error: Callable[[JobError, JobOutcome | None], None] | None,
    job_error: JobError,
    outcome: JobOutcome | None,
) -> None:
    if on_error is None:
        return
    try:
        on_error(job_error, outcome)
    except Exception as error:  # noqa: BLE001
        logger.error(
            "Error callback failed: %s",
            build_error_details(error),
            extra={"stage": "settle"},
        )


def _is_falsy_payload(value: Any) -> bool:
    """JSON-level falsiness: empty objects and arrays still count as a value."""
    if value is None or value is False or value == "":
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0 or math.isnan(value)
    return False


def _has_embedded_error(parsed: Any) -> bool:
    if not isinstance(parsed, dict):
        return False
    if not _is_falsy_payload(parsed.get("error")):
        return True
    return parsed.get("status") == APPLICATION_ERROR_STATUS


def _embedded_error_message(parsed: dict[str, Any], display_text: str) -> str:
    error = parsed.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    for candidate in (error, parsed.get("message"), display_text):
        if not _is_falsy_payload(candidate):
            return str(candidate)
    return ERROR_FRIENDLY_MESSAGES["JOB_APPLICATION_ERROR"]
