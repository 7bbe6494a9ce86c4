from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from streamjob.utils.error_taxonomy import StreamCancelledError

ChunkCallback = Callable[[str, str], None]
T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class StreamResult:
    text: str
    model: str = ""
    usage_raw: dict[str, Any] = field(default_factory=dict)
    usage_normalized: dict[str, int | None] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)


class CancellationToken:
    """Cancellation signal shared by a job and its backend call.

    Backends either poll ``cancelled`` or wrap their awaits in ``race`` to be
    interrupted as soon as ``cancel`` runs.

    Identity matters: the controller compares the live token against the one a
    continuation captured before mutating shared state.
    """

    __slots__ = ("_cancelled", "_event", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the pending work is cancelled and awaited, then
        ``StreamCancelledError`` is raised. A stalled request or a stream that
        stops producing chunks is therefore interrupted immediately.
        """
        if self._cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise StreamCancelledError(self.reason or "cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise StreamCancelledError(self.reason or "cancelled")


class StreamingBackend(Protocol):
    async def stream_text(
        self,
        *,
        prompt: str,
        json_mode: bool,
        cancellation: CancellationToken,
        on_chunk: ChunkCallback,
    ) -> StreamResult: ...
