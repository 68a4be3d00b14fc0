"""Reconnection manager -- resumes a dropped event stream without gaps or duplicates.

``ResumableStream`` wraps the initial stream and, on a retryable failure,
re-fetches the interaction as a stream starting after the last event the
consumer has processed. Events at or below that id are dropped if the
server over-delivers at the resume boundary, so downstream consumers see
each event at most once.

A server that closes the connection after the interaction settled
(``requires_action`` or terminal, no block open) has nothing left to send,
so that close ends the stream instead of triggering a resume.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import aclosing

import httpx

from colloquy.content.events import (
    BlockStart,
    BlockStop,
    StatusUpdate,
    StreamEvent,
    StreamStart,
    is_terminal_event,
)
from colloquy.content.interaction import SETTLED_STATUSES, InteractionStatus
from colloquy.errors import (
    ServerUnavailable,
    StreamExhausted,
    StreamInterrupted,
    UnresumableStream,
)

logger = logging.getLogger(__name__)

# Failures worth a resume attempt. Anything else propagates untouched.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    StreamInterrupted,
    ServerUnavailable,
)

StreamOpener = Callable[[], AsyncGenerator[StreamEvent, None]]
StreamResumer = Callable[[str, int | None], AsyncGenerator[StreamEvent, None]]
Sleep = Callable[[float], Awaitable[None]]
ResumeHook = Callable[[str, int | None, int], Awaitable[None]]


class ResumableStream:
    """Async-iterable event stream that survives network interruptions.

    Attributes:
        interaction_id: Captured from the first ``StreamStart``; ``None``
            until then (or preset when resuming an existing interaction).
        last_event_id: Id of the last event the consumer finished
            processing.
        resumes: Number of successful re-fetches so far.
        status: Last interaction status seen on the stream.
    """

    def __init__(
        self,
        open_stream: StreamOpener,
        resume_stream: StreamResumer,
        *,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        jitter: float = 0.1,
        interaction_id: str | None = None,
        last_event_id: int | None = None,
        sleep: Sleep = asyncio.sleep,
        on_resume: ResumeHook | None = None,
    ) -> None:
        self._open_stream = open_stream
        self._resume_stream = resume_stream
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._jitter = jitter
        self._sleep = sleep
        self._on_resume = on_resume
        self.interaction_id = interaction_id
        self.last_event_id = last_event_id
        self.resumes = 0
        self.status: InteractionStatus | None = None
        self._open: set[int] = set()
        self._used = False

    def __aiter__(self) -> AsyncGenerator[StreamEvent, None]:
        if self._used:
            raise RuntimeError("ResumableStream can only be iterated once")
        self._used = True
        return self._iterate()

    @property
    def settled(self) -> bool:
        """True once the interaction awaits the client or has ended, with no block open."""
        return self.status in SETTLED_STATUSES and not self._open

    def _track(self, event: StreamEvent) -> None:
        if isinstance(event, (StreamStart, StatusUpdate)):
            self.status = event.status
        elif isinstance(event, BlockStart):
            self._open.add(event.index)
        elif isinstance(event, BlockStop):
            self._open.discard(event.index)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before resume attempt ``attempt`` (1-based)."""
        delay = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
        return delay * (1 + random.uniform(0, self._jitter))

    async def _iterate(self) -> AsyncGenerator[StreamEvent, None]:
        attempts = 0
        source = self._open_stream()

        while True:
            try:
                async with aclosing(source) as events:
                    async for event in events:
                        if self.last_event_id is not None and event.event_id <= self.last_event_id:
                            logger.debug(
                                "Dropping duplicate event %d (last processed %d)",
                                event.event_id,
                                self.last_event_id,
                            )
                            continue
                        if isinstance(event, StreamStart) and self.interaction_id is None:
                            self.interaction_id = event.interaction_id
                        self._track(event)

                        yield event
                        # Consumer came back for more: the event is processed.
                        self.last_event_id = event.event_id
                        attempts = 0

                        if is_terminal_event(event):
                            return
                if self.settled:
                    logger.debug(
                        "Stream for %s closed by server after settling as %s",
                        self.interaction_id,
                        self.status,
                    )
                    return
                raise StreamInterrupted(
                    f"Stream closed after event {self.last_event_id} without completion"
                )
            except RETRYABLE_ERRORS as exc:
                if self.interaction_id is None:
                    raise UnresumableStream(
                        f"Stream failed before an interaction id was received: {exc}"
                    ) from exc

                attempts += 1
                if attempts > self._max_attempts:
                    raise StreamExhausted(
                        self.interaction_id, self.last_event_id, attempts - 1
                    ) from exc

                delay = self.backoff_delay(attempts)
                logger.warning(
                    "Stream for %s interrupted after event %s (%s); resume %d/%d in %.2fs",
                    self.interaction_id,
                    self.last_event_id,
                    exc,
                    attempts,
                    self._max_attempts,
                    delay,
                )
                await self._sleep(delay)
                source = self._resume_stream(self.interaction_id, self.last_event_id)
                self.resumes += 1
                if self._on_resume is not None:
                    await self._on_resume(self.interaction_id, self.last_event_id, attempts)
