"""Interaction lifecycle notifications and the bus that delivers them.

The runner reports what happens to each interaction of a conversation:
status transitions, tool batches going out and coming back, stream
resumptions, and the end of a logical turn. Each kind has a builder here
that fixes its payload shape, so observers can rely on the keys listed in
``PAYLOAD_FIELDS``.

Delivery is fire-and-forget through ``EventBus``: a queue drained by one
background task, handlers for an event run concurrently, and a failing
handler is logged without touching the turn that emitted the event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

from colloquy.content.blocks import FunctionCallBlock, FunctionResultBlock
from colloquy.content.interaction import InteractionStatus

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class EventType(StrEnum):
    INTERACTION_STATUS = "interaction.status"
    STREAM_RESUMED = "stream.resumed"
    TOOL_DISPATCHED = "tool.dispatched"
    TOOL_COMPLETED = "tool.completed"
    TURN_COMPLETED = "turn.completed"


INTERACTION_STATUS = EventType.INTERACTION_STATUS
STREAM_RESUMED = EventType.STREAM_RESUMED
TOOL_DISPATCHED = EventType.TOOL_DISPATCHED
TOOL_COMPLETED = EventType.TOOL_COMPLETED
TURN_COMPLETED = EventType.TURN_COMPLETED

WILDCARD = "*"

# Keys each lifecycle event is guaranteed to carry in ``data``
PAYLOAD_FIELDS: dict[str, frozenset[str]] = {
    EventType.INTERACTION_STATUS: frozenset({"status"}),
    EventType.STREAM_RESUMED: frozenset({"last_event_id", "attempt"}),
    EventType.TOOL_DISPATCHED: frozenset({"calls"}),
    EventType.TOOL_COMPLETED: frozenset({"results"}),
    EventType.TURN_COMPLETED: frozenset({"status", "tool_rounds"}),
}


@dataclass
class Event:
    """Something that happened to one interaction of one conversation.

    ``type`` is normally an ``EventType``; other strings are accepted so
    applications can route their own events over the same bus.
    """

    type: str
    conversation_id: str
    interaction_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        missing = PAYLOAD_FIELDS.get(self.type, frozenset()) - self.data.keys()
        if missing:
            raise ValueError(f"{self.type} event is missing {sorted(missing)}")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def status_changed(
    conversation_id: str, interaction_id: str, status: InteractionStatus
) -> Event:
    return Event(
        EventType.INTERACTION_STATUS,
        conversation_id,
        interaction_id,
        {"status": str(status)},
    )


def stream_resumed(
    conversation_id: str, interaction_id: str, last_event_id: int | None, attempt: int
) -> Event:
    return Event(
        EventType.STREAM_RESUMED,
        conversation_id,
        interaction_id,
        {"last_event_id": last_event_id, "attempt": attempt},
    )


def tools_dispatched(
    conversation_id: str, interaction_id: str, calls: Sequence[FunctionCallBlock]
) -> Event:
    """Calls are reported by id and name only; arguments may be sensitive."""
    return Event(
        EventType.TOOL_DISPATCHED,
        conversation_id,
        interaction_id,
        {"calls": [{"id": c.id, "name": c.name} for c in calls]},
    )


def tools_completed(
    conversation_id: str, interaction_id: str, results: Sequence[FunctionResultBlock]
) -> Event:
    return Event(
        EventType.TOOL_COMPLETED,
        conversation_id,
        interaction_id,
        {
            "results": [
                {"call_id": r.call_id, "name": r.name, "is_error": r.is_error} for r in results
            ]
        },
    )


def turn_completed(
    conversation_id: str,
    interaction_id: str,
    status: InteractionStatus,
    tool_rounds: int,
) -> Event:
    return Event(
        EventType.TURN_COMPLETED,
        conversation_id,
        interaction_id,
        {"status": str(status), "tool_rounds": tool_rounds},
    )


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Queue-backed async bus.

    ``emit`` never blocks the emitter; a full queue drops the event with a
    warning. ``stop`` delivers whatever is still queued before returning.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``event_type`` (or ``"*"``); returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)
        logger.debug("Subscribed %s to %s", handler.__qualname__, event_type)

        def unsubscribe() -> None:
            self.off(event_type, handler)

        return unsubscribe

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Event queue full, dropping %s for interaction %s",
                event.type,
                event.interaction_id,
            )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="colloquy-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        drained = 0
        while not self._queue.empty():
            await self._dispatch(self._queue.get_nowait())
            drained += 1
        logger.info("Event bus stopped (%d queued event(s) delivered on stop)", drained)

    async def _run(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Dispatch of %s failed", event.type)

    async def _dispatch(self, event: Event) -> None:
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(WILDCARD, [])]
        if handlers:
            await asyncio.gather(*(self._deliver(h, event) for h in handlers))

    async def _deliver(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed on %s for interaction %s",
                handler.__qualname__,
                event.type,
                event.interaction_id,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()
