from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

from streamjob.llm_client.base import CancellationToken, StreamResult
from streamjob.pipeline.job_controller import (
    EMPTY_STREAMING,
    JobDescriptor,
    JobError,
    JobOutcome,
    StreamingJobController,
    StreamingState,
)
from streamjob.utils.error_taxonomy import StreamCancelledError

LETTER_TEXT = 'Hello world\n<FINAL_JSON>{"status":"pass","score":11}</FINAL_JSON>'


@dataclass
class _Script:
    chunks: list[str] = field(default_factory=list)
    gate: asyncio.Event | None = None
    late_chunks: list[str] = field(default_factory=list)
    error: Exception | None = None
    waiting: bool = False


class _RateLimitError(Exception):
    status_code = 429


class FakeBackend:
    """Plays back scripted chunks; never looks at the cancellation token."""

    def __init__(self, scripts: list[_Script]) -> None:
        self.scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []

    async def stream_text(
        self,
        *,
        prompt: str,
        json_mode: bool,
        cancellation: CancellationToken,
        on_chunk: Callable[[str, str], None],
    ) -> StreamResult:
        script = self.scripts.pop(0)
        self.calls.append(
            {"prompt": prompt, "json_mode": json_mode, "cancellation": cancellation}
        )

        text = ""
        for chunk in script.chunks:
            text += chunk
            on_chunk(chunk, text)
            await asyncio.sleep(0)

        if script.gate is not None:
            script.waiting = True
            await script.gate.wait()

        for chunk in script.late_chunks:
            text += chunk
            on_chunk(chunk, text)

        if script.error is not None:
            raise script.error

        return StreamResult(
            text=text,
            model="deepseek-chat",
            usage_normalized={
                "prompt_tokens": 12,
                "completion_tokens": 30,
                "total_tokens": 42,
            },
        )


async def _until(predicate: Callable[[], bool], *, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


def _letter_job(
    job_id: str = "letter-1", prompt: str = "Check my letter"
) -> JobDescriptor:
    return JobDescriptor.for_job_type("letter-logic", id=job_id, prompt=prompt)


def test_successful_job_returns_normalized_outcome_and_resets_state() -> None:
    backend = FakeBackend([_Script(chunks=["Hello ", LETTER_TEXT[6:]])])
    controller = StreamingJobController(backend=backend)
    started: list[bool] = []
    successes: list[JobOutcome] = []

    outcome = asyncio.run(
        controller.run_job(
            _letter_job(),
            on_start=lambda: started.append(True),
            on_success=successes.append,
        )
    )

    assert outcome is not None
    assert outcome.ok is True
    assert outcome.json["score"] == 10
    assert outcome.json["status"] == "pass"
    assert outcome.json["comment"] == "Hello world"
    assert outcome.display_text == "Hello world"
    assert outcome.raw == LETTER_TEXT
    assert outcome.usage["total_tokens"] == 42
    assert started == [True]
    assert successes == [outcome]
    assert controller.loading is None
    assert controller.streaming == EMPTY_STREAMING
    assert controller.error is None
    assert controller.phase == "idle"
    assert backend.calls[0]["prompt"] == "Check my letter"
    assert backend.calls[0]["json_mode"] is False


def test_streaming_state_shows_prose_but_never_the_terminal_block() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        script = _Script(
            chunks=["Hello ", 'world\n<FINAL_JSON>\n{"sta'],
            gate=gate,
            late_chunks=['tus":"pass"}\n</FINAL_JSON>'],
        )
        controller = StreamingJobController(backend=FakeBackend([script]))

        task = asyncio.create_task(controller.run_job(_letter_job()))
        await _until(lambda: script.waiting)

        assert controller.loading == "letter-1"
        assert controller.phase == "streaming"
        assert controller.streaming == StreamingState(
            type="letter-logic", id="letter-1", text="Hello world"
        )
        assert controller.active is True

        gate.set()
        outcome = await task
        assert outcome is not None and outcome.ok is True
        assert controller.active is False

    asyncio.run(scenario())


def test_second_job_is_rejected_while_one_is_active() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        first = _Script(chunks=["Working"], gate=gate, late_chunks=[LETTER_TEXT])
        backend = FakeBackend([first, _Script(chunks=[LETTER_TEXT])])
        controller = StreamingJobController(backend=backend)

        task = asyncio.create_task(controller.run_job(_letter_job("first")))
        await _until(lambda: first.waiting)
        streaming_before = controller.streaming

        rejected = await controller.run_job(_letter_job("second"))

        assert rejected is None
        assert len(backend.calls) == 1
        assert controller.loading == "first"
        assert controller.streaming is streaming_before

        gate.set()
        await task

    asyncio.run(scenario())


def test_cancel_resets_state_immediately_and_discards_late_output() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        script = _Script(chunks=["Partial"], gate=gate, late_chunks=[LETTER_TEXT])
        backend = FakeBackend([script])
        controller = StreamingJobController(backend=backend)
        successes: list[JobOutcome] = []
        errors: list[JobError] = []

        task = asyncio.create_task(
            controller.run_job(
                _letter_job(),
                on_success=successes.append,
                on_error=lambda error, _outcome: errors.append(error),
            )
        )
        await _until(lambda: script.waiting)

        controller.cancel()

        assert controller.loading is None
        assert controller.streaming == EMPTY_STREAMING
        assert controller.phase == "cancelled"
        assert backend.calls[0]["cancellation"].cancelled is True

        gate.set()
        assert await task is None
        assert controller.streaming == EMPTY_STREAMING
        assert controller.error is None
        assert successes == []
        assert errors == []

    asyncio.run(scenario())


def test_cancelled_job_cannot_clobber_the_job_started_after_it() -> None:
    async def scenario() -> None:
        gate_a = asyncio.Event()
        gate_b = asyncio.Event()
        script_a = _Script(chunks=["Old"], gate=gate_a, late_chunks=[" stale\n"])
        script_b = _Script(chunks=["New text"], gate=gate_b, late_chunks=[LETTER_TEXT])
        controller = StreamingJobController(backend=FakeBackend([script_a, script_b]))

        task_a = asyncio.create_task(controller.run_job(_letter_job("a")))
        await _until(lambda: script_a.waiting)
        controller.cancel()

        task_b = asyncio.create_task(controller.run_job(_letter_job("b")))
        await _until(lambda: script_b.waiting)

        gate_a.set()
        assert await task_a is None
        assert controller.loading == "b"
        assert controller.streaming == StreamingState(
            type="letter-logic", id="b", text="New text"
        )
        assert controller.error is None

        gate_b.set()
        outcome = await task_b
        assert outcome is not None and outcome.ok is True
        assert controller.loading is None

    asyncio.run(scenario())


def test_empty_prompt_is_a_no_op() -> None:
    backend = FakeBackend([])
    controller = StreamingJobController(backend=backend)
    previous = JobError(message="earlier", id="x", type="scoring")
    controller.set_error(previous)

    result = asyncio.run(controller.run_job(_letter_job(prompt="")))

    assert result is None
    assert backend.calls == []
    assert controller.error is previous
    assert controller.loading is None


def test_unparseable_response_sets_parse_error() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=["Only prose, no payload."])])
    )
    errors: list[tuple[JobError, JobOutcome | None]] = []

    result = asyncio.run(
        controller.run_job(
            JobDescriptor.for_job_type(
                "scoring", id="essay-1", prompt="Score", error_id="essay-panel"
            ),
            on_error=lambda error, outcome: errors.append((error, outcome)),
        )
    )

    assert result is None
    assert controller.error is not None
    assert controller.error.code == "JOB_PARSE_FAILED"
    assert controller.error.message == (
        "AI response format could not be parsed, please retry."
    )
    assert controller.error.id == "essay-panel"
    assert controller.error.type == "scoring"
    assert controller.error.retryable is True
    assert controller.phase == "failed"
    assert controller.loading is None
    assert controller.streaming == EMPTY_STREAMING
    assert errors == [(controller.error, None)]


def test_embedded_application_error_returns_not_ok_outcome() -> None:
    text = 'Cannot grade this.\n<FINAL_JSON>{"error": "Essay is empty"}</FINAL_JSON>'
    controller = StreamingJobController(backend=FakeBackend([_Script(chunks=[text])]))
    errors: list[tuple[JobError, JobOutcome | None]] = []

    outcome = asyncio.run(
        controller.run_job(
            _letter_job(),
            on_error=lambda error, result: errors.append((error, result)),
        )
    )

    assert outcome is not None
    assert outcome.ok is False
    assert outcome.json == {"error": "Essay is empty"}
    assert controller.error is not None
    assert controller.error.message == "Essay is empty"
    assert controller.error.code == "JOB_APPLICATION_ERROR"
    assert controller.error.retryable is False
    assert errors == [(controller.error, outcome)]


def test_status_error_uses_message_then_display_text() -> None:
    with_message = (
        '<FINAL_JSON>{"status": "error", "message": "Off topic"}</FINAL_JSON>'
    )
    without_message = 'Model says no.\n<FINAL_JSON>{"status": "error"}</FINAL_JSON>'
    controller = StreamingJobController(
        backend=FakeBackend(
            [_Script(chunks=[with_message]), _Script(chunks=[without_message])]
        )
    )

    asyncio.run(controller.run_job(_letter_job()))
    assert controller.error is not None
    assert controller.error.message == "Off topic"

    asyncio.run(controller.run_job(_letter_job()))
    assert controller.error is not None
    assert controller.error.message == "Model says no."


def test_non_object_payload_sets_structure_error() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=["<FINAL_JSON>[1, 2]</FINAL_JSON>"])])
    )

    result = asyncio.run(controller.run_job(_letter_job()))

    assert result is None
    assert controller.error is not None
    assert controller.error.code == "JOB_STRUCTURE_INVALID"


def test_falsy_normalizer_result_sets_structure_error() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=['<FINAL_JSON>{"a": 1}</FINAL_JSON>'])])
    )
    descriptor = JobDescriptor(
        type="custom",
        id="custom-1",
        prompt="Go",
        normalizer=lambda payload, **_: None,
    )

    assert asyncio.run(controller.run_job(descriptor)) is None
    assert controller.error is not None
    assert controller.error.code == "JOB_STRUCTURE_INVALID"


def test_job_without_normalizer_returns_parsed_json() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=['```json\n{"a": 1}\n```'])])
    )
    descriptor = JobDescriptor(
        type="custom", id="custom-1", prompt="Go", json_mode=True
    )

    outcome = asyncio.run(controller.run_job(descriptor))

    assert outcome is not None
    assert outcome.json == {"a": 1}


def test_rate_limit_mid_stream_keeps_partial_text_on_error() -> None:
    script = _Script(
        chunks=["Half of the ", "feedback"],
        error=_RateLimitError("quota exceeded"),
    )
    controller = StreamingJobController(backend=FakeBackend([script]))

    result = asyncio.run(controller.run_job(_letter_job()))

    assert result is None
    assert controller.error is not None
    assert controller.error.code == "LLM_RATE_LIMITED"
    assert controller.error.retryable is True
    assert controller.error.message == "quota exceeded"
    assert controller.error.partial_text == "Half of the feedback"
    assert controller.streaming == EMPTY_STREAMING


def test_transport_error_without_message_uses_fallback() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(error=ConnectionError())])
    )
    descriptor = JobDescriptor.for_job_type(
        "scoring",
        id="essay-1",
        prompt="Score",
        fallback_error_message="Scoring failed, try again.",
    )

    asyncio.run(controller.run_job(descriptor))

    assert controller.error is not None
    assert controller.error.message == "Scoring failed, try again."
    assert controller.error.code == "NETWORK_ERROR"


def test_backend_cancellation_without_cancel_call_is_reported() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=["x"], error=StreamCancelledError())])
    )

    assert asyncio.run(controller.run_job(_letter_job())) is None
    assert controller.error is not None
    assert controller.error.message == "Request failed, please retry."


def test_new_job_clears_previous_error() -> None:
    controller = StreamingJobController(
        backend=FakeBackend(
            [_Script(chunks=["no json"]), _Script(chunks=[LETTER_TEXT])]
        )
    )

    asyncio.run(controller.run_job(_letter_job()))
    assert controller.error is not None

    outcome = asyncio.run(controller.run_job(_letter_job()))
    assert outcome is not None and outcome.ok is True
    assert controller.error is None
    assert controller.phase == "idle"
    assert controller.snapshot().error is None


def test_raising_error_callback_does_not_escape() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=["no json"])])
    )

    def on_error(_error: JobError, _outcome: JobOutcome | None) -> None:
        raise RuntimeError("toast failed")

    assert asyncio.run(controller.run_job(_letter_job(), on_error=on_error)) is None
    assert controller.error is not None
    assert controller.error.code == "JOB_PARSE_FAILED"
    assert controller.loading is None


def test_empty_object_payload_without_normalizer_is_a_success() -> None:
    controller = StreamingJobController(
        backend=FakeBackend([_Script(chunks=["Done.\n<FINAL_JSON>{}</FINAL_JSON>"])])
    )
    descriptor = JobDescriptor(type="custom", id="custom-1", prompt="Go")

    outcome = asyncio.run(controller.run_job(descriptor))

    assert outcome is not None
    assert outcome.ok is True
    assert outcome.json == {}
    assert outcome.display_text == "Done."
    assert controller.error is None


def test_empty_list_and_zero_payloads() -> None:
    controller = StreamingJobController(
        backend=FakeBackend(
            [
                _Script(chunks=["<FINAL_JSON>[]</FINAL_JSON>"]),
                _Script(chunks=["<FINAL_JSON>0</FINAL_JSON>"]),
            ]
        )
    )
    descriptor = JobDescriptor(type="custom", id="custom-1", prompt="Go")

    outcome = asyncio.run(controller.run_job(descriptor))
    assert outcome is not None and outcome.json == []

    assert asyncio.run(controller.run_job(descriptor)) is None
    assert controller.error is not None
    assert controller.error.code == "JOB_PARSE_FAILED"


def test_empty_error_object_counts_as_embedded_error() -> None:
    text = 'Refused.\n<FINAL_JSON>{"error": {}}</FINAL_JSON>'
    controller = StreamingJobController(backend=FakeBackend([_Script(chunks=[text])]))

    outcome = asyncio.run(controller.run_job(_letter_job()))

    assert outcome is not None and outcome.ok is False
    assert controller.error is not None
    assert controller.error.message == "Refused."


class _StalledBackend:
    """Never finishes and ignores the token."""

    def __init__(self) -> None:
        self.started = False
        self.interrupted = False

    async def stream_text(self, **_: Any) -> StreamResult:
        self.started = True
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.interrupted = True
            raise
        raise AssertionError("unreachable")


def test_cancel_interrupts_a_stalled_backend() -> None:
    async def scenario() -> None:
        backend = _StalledBackend()
        controller = StreamingJobController(backend=backend)

        task = asyncio.create_task(controller.run_job(_letter_job()))
        await _until(lambda: backend.started)
        controller.cancel()

        assert await asyncio.wait_for(task, 1.0) is None
        assert backend.interrupted is True
        assert controller.phase == "cancelled"
        assert controller.error is None
        assert controller.loading is None

    asyncio.run(scenario())


def test_cancelled_phase_lasts_until_next_job() -> None:
    async def scenario() -> None:
        backend = _StalledBackend()
        controller = StreamingJobController(backend=backend)
        controller.cancel()
        assert controller.phase == "idle"

        task = asyncio.create_task(controller.run_job(_letter_job()))
        await _until(lambda: backend.started)
        controller.cancel()
        await task
        assert controller.phase == "cancelled"

        controller.backend = FakeBackend([_Script(chunks=[LETTER_TEXT])])
        outcome = await controller.run_job(_letter_job())
        assert outcome is not None and outcome.ok is True
        assert controller.phase == "idle"

    asyncio.run(scenario())
