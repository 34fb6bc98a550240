"""
Stream consumer for task-mode responses.

Reads the response body chunk by chunk, keeps the append-only buffer for
one request, drives the live "typing" text and a progress value, and hands
the complete text to the recovering parser exactly once at stream end.

Cancellation is cooperative: the caller sets an asyncio.Event, the pending
read is aborted, the partial buffer is dropped and no parse is attempted.
"""

import asyncio
import codecs
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, Callable, Dict, Iterable, Optional, Union

from .json_recovery import COULD_NOT_RECOVER, RecoveryResult, recover_report
from .live_text import LiveTextThrottle, extract_live_text
from .observer import RequestObserver, ensure_observer


logger = logging.getLogger(__name__)

PHASE_STARTING = "Initializing Virtual CA..."
PHASE_RECEIVING = "Receiving response..."
PHASE_HIGHLIGHTS = "Summarizing highlights..."
PHASE_SHEETS = "Building report sheets..."
PHASE_PARSING = "Finalizing report..."
PHASE_DONE = "Done"
PHASE_UNREADABLE = "Could not read response"
PHASE_FAILED = "Failed"
PHASE_CANCELLED = "Cancelled"

# Structural markers in the order the generator writes them
PHASE_MARKERS = (
    ('"highlights"', PHASE_HIGHLIGHTS),
    ('"sheets"', PHASE_SHEETS),
)

DEFAULT_REPLY = "Analysis Complete"

_END = object()
_CANCELLED = object()

Chunk = Union[bytes, bytearray, str]


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ProgressUpdate:
    """What the display collaborator renders: 0-100 value, label, live text."""
    percent: float
    phase: str
    live_text: Optional[str] = None


@dataclass
class StreamResult:
    """Outcome of consuming one response stream."""
    outcome: StreamOutcome
    recovery: Optional[RecoveryResult] = None
    error: Optional[str] = None
    raw_text: str = ""
    chunks: int = 0
    progress: float = 0.0
    phase: str = ""

    @property
    def document(self) -> Optional[Dict[str, Any]]:
        return self.recovery.document if self.recovery else None

    @property
    def display_text(self) -> str:
        """The line shown to the user; never empty."""
        if self.outcome == StreamOutcome.CANCELLED:
            return "Request cancelled."
        if self.outcome == StreamOutcome.FAILED:
            return f"Request failed: {self.error or 'connection error'}"
        document = self.document
        if document is None:
            return COULD_NOT_RECOVER
        reply = document.get("replyText")
        if isinstance(reply, str) and reply.strip():
            return reply
        return document.get("errorMessage") or DEFAULT_REPLY


class _Progress:
    """Monotonic progress that stays below the ceiling until the parse succeeds."""

    def __init__(self, start: float, step: float, ceiling: float):
        self.percent = min(start, ceiling)
        self.step = step
        self.ceiling = ceiling

    def advance(self) -> float:
        self.percent = min(self.percent + self.step, self.ceiling)
        return self.percent

    def complete(self) -> float:
        self.percent = 100.0
        return self.percent


async def _as_async(chunks: Iterable[Chunk]):
    for chunk in chunks:
        yield chunk


class StreamConsumer:
    """Consumes one response stream per `consume` call; holds no per-request state."""

    def __init__(
        self,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        throttle_seconds: float = 0.1,
        progress_start: float = 5.0,
        progress_step: float = 0.5,
        progress_ceiling: float = 95.0,
        strict_repair: bool = False,
        encoding: str = "utf-8",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_progress = on_progress
        self.throttle_seconds = throttle_seconds
        self.progress_start = progress_start
        self.progress_step = progress_step
        self.progress_ceiling = progress_ceiling
        self.strict_repair = strict_repair
        self.encoding = encoding
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, on_progress=None, **kwargs) -> "StreamConsumer":
        return cls(
            on_progress=on_progress,
            throttle_seconds=settings.throttle_seconds,
            progress_ceiling=settings.progress_ceiling,
            strict_repair=settings.strict_repair,
            **kwargs
        )

    def _emit(self, percent: float, phase: str, live_text: Optional[str]):
        if self.on_progress is not None:
            self.on_progress(ProgressUpdate(percent=percent, phase=phase, live_text=live_text))

    async def _next_chunk(self, iterator, cancel_event: Optional[asyncio.Event]):
        """Next chunk, _END at end of stream, or _CANCELLED if the abort signal won the race."""
        if cancel_event is None:
            try:
                return await iterator.__anext__()
            except StopAsyncIteration:
                return _END

        if cancel_event.is_set():
            return _CANCELLED

        read = asyncio.ensure_future(iterator.__anext__())
        abort = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({read, abort}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not abort.done():
                abort.cancel()

        if cancel_event.is_set():
            if not read.done():
                read.cancel()
            try:
                await read
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            except Exception as e:
                logger.debug("Read aborted with %s after cancellation", type(e).__name__)
            return _CANCELLED

        try:
            return read.result()
        except StopAsyncIteration:
            return _END

    async def consume(
        self,
        chunks: Union[AsyncIterable[Chunk], Iterable[Chunk]],
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[RequestObserver] = None,
    ) -> StreamResult:
        """Read the whole stream, then recover the report from the final text."""
        obs = ensure_observer(observer, "stream")
        source = chunks if hasattr(chunks, "__aiter__") else _as_async(chunks)
        iterator = source.__aiter__()

        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        buffer = []
        tail = ""
        phase_index = -1
        phase = PHASE_STARTING
        live_text: Optional[str] = None
        throttle = LiveTextThrottle(self.throttle_seconds, self.clock)
        progress = _Progress(self.progress_start, self.progress_step, self.progress_ceiling)
        chunk_count = 0

        obs.log("STREAM_START", "Waiting for response chunks")
        self._emit(progress.percent, phase, None)

        try:
            while True:
                try:
                    chunk = await self._next_chunk(iterator, cancel_event)
                    if chunk is _END or chunk is _CANCELLED:
                        break
                    text = decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else str(chunk)
                except Exception as e:
                    obs.error("STREAM_ERROR", "Stream transport failed", {
                        "error": type(e).__name__,
                        "message": str(e),
                        "chunks": chunk_count,
                    })
                    self._emit(progress.percent, PHASE_FAILED, live_text)
                    return StreamResult(
                        outcome=StreamOutcome.FAILED,
                        error=str(e) or type(e).__name__,
                        raw_text="".join(buffer),
                        chunks=chunk_count,
                        progress=progress.percent,
                        phase=PHASE_FAILED,
                    )

                chunk_count += 1
                if not text:
                    continue
                buffer.append(text)

                window = tail + text
                for index in range(phase_index + 1, len(PHASE_MARKERS)):
                    marker, label = PHASE_MARKERS[index]
                    if marker in window:
                        phase_index, phase = index, label
                if phase_index == -1:
                    phase = PHASE_RECEIVING
                tail = window[-16:]

                if throttle.ready():
                    live_text = extract_live_text("".join(buffer)) or live_text
                self._emit(progress.advance(), phase, live_text)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Closing response stream raised %s", type(e).__name__)

        if chunk is _CANCELLED:
            obs.warn("STREAM_CANCELLED", "Stream cancelled; partial response discarded", {"chunks": chunk_count})
            buffer.clear()
            self._emit(progress.percent, PHASE_CANCELLED, live_text)
            return StreamResult(
                outcome=StreamOutcome.CANCELLED,
                chunks=chunk_count,
                progress=progress.percent,
                phase=PHASE_CANCELLED,
            )

        remainder = decoder.decode(b"", final=True)
        if remainder:
            buffer.append(remainder)
        full_text = "".join(buffer)
        obs.log("STREAM_COMPLETE", "Stream completed", {"chunks": chunk_count, "length": len(full_text)})

        live_text = extract_live_text(full_text) or live_text
        self._emit(progress.percent, PHASE_PARSING, live_text)

        recovery = recover_report(full_text, observer=obs, strict=self.strict_repair)
        if recovery.recovered:
            phase = PHASE_DONE
            progress.complete()
        else:
            phase = PHASE_UNREADABLE
        self._emit(progress.percent, phase, live_text)

        return StreamResult(
            outcome=StreamOutcome.COMPLETED,
            recovery=recovery,
            raw_text=full_text,
            chunks=chunk_count,
            progress=progress.percent,
            phase=phase,
        )
