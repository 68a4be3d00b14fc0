"""Stream event variants and the wire-dict parser.

Every event carries ``event_id``, a per-interaction monotonically
increasing integer used to resume a dropped stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from colloquy.content.interaction import Interaction, InteractionStatus
from colloquy.errors import MalformedBlock, StreamProtocolError


@dataclass(frozen=True)
class StreamStart:
    event_id: int
    interaction_id: str
    status: InteractionStatus = InteractionStatus.IN_PROGRESS


@dataclass(frozen=True)
class BlockStart:
    """Opens block ``index``. ``payload`` holds fields known up front (id, name, ...)."""

    event_id: int
    index: int
    block_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BlockDelta:
    event_id: int
    index: int
    delta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BlockStop:
    event_id: int
    index: int


@dataclass(frozen=True)
class StatusUpdate:
    event_id: int
    status: InteractionStatus
    interaction_id: str | None = None


@dataclass(frozen=True)
class StreamComplete:
    """Final snapshot with usage totals."""

    event_id: int
    interaction: Interaction


@dataclass(frozen=True)
class StreamError:
    event_id: int
    code: str = "unknown"
    message: str = ""


@dataclass(frozen=True)
class UnknownEvent:
    """Event type this client does not understand; ignored by the decoder."""

    event_id: int
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)


StreamEvent = Union[
    StreamStart,
    BlockStart,
    BlockDelta,
    BlockStop,
    StatusUpdate,
    StreamComplete,
    StreamError,
    UnknownEvent,
]

TERMINAL_EVENTS = (StreamComplete, StreamError)


def is_terminal_event(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


def _event_id(data: dict[str, Any], sse_id: str | None) -> int:
    raw = data.get("event_id", sse_id)
    if isinstance(raw, bool) or raw is None:
        raise StreamProtocolError(f"Event has no event_id: {data!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise StreamProtocolError(f"Event has non-integer event_id {raw!r}") from e


def _index(data: dict[str, Any]) -> int:
    index = data.get("index")
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise StreamProtocolError(f"Content event has invalid index {index!r}")
    return index


def _status(value: Any) -> InteractionStatus:
    try:
        return InteractionStatus(value)
    except ValueError as e:
        raise StreamProtocolError(f"Unknown interaction status {value!r}") from e


def parse_event(data: dict[str, Any], sse_id: str | None = None) -> StreamEvent:
    """Parse one decoded SSE ``data:`` payload into a StreamEvent.

    ``sse_id`` is the SSE ``id:`` field, used when the payload itself has
    no ``event_id``. Unrecognised event types become ``UnknownEvent``.

    Raises:
        StreamProtocolError: Missing event id, index, or status.
        MalformedBlock: A block-start or completion payload is invalid.
    """
    event_id = _event_id(data, sse_id)
    event_type = data.get("event_type")

    if event_type == "interaction.start":
        interaction = data.get("interaction") or {}
        interaction_id = interaction.get("id")
        if not interaction_id:
            raise StreamProtocolError("interaction.start without interaction id")
        return StreamStart(
            event_id=event_id,
            interaction_id=interaction_id,
            status=_status(interaction.get("status", InteractionStatus.IN_PROGRESS)),
        )

    if event_type == "content.start":
        content = data.get("content") or {}
        block_type = content.get("type")
        if not isinstance(block_type, str) or not block_type:
            raise MalformedBlock(f"content.start without block type: {data!r}")
        payload = {k: v for k, v in content.items() if k != "type"}
        return BlockStart(event_id=event_id, index=_index(data), block_type=block_type, payload=payload)

    if event_type == "content.delta":
        delta = data.get("delta")
        if not isinstance(delta, dict):
            raise StreamProtocolError(f"content.delta without delta object: {data!r}")
        return BlockDelta(event_id=event_id, index=_index(data), delta=delta)

    if event_type == "content.stop":
        return BlockStop(event_id=event_id, index=_index(data))

    if event_type == "interaction.status_update":
        return StatusUpdate(
            event_id=event_id,
            status=_status(data.get("status")),
            interaction_id=data.get("interaction_id"),
        )

    if event_type == "interaction.complete":
        snapshot = data.get("interaction")
        if not isinstance(snapshot, dict):
            raise MalformedBlock("interaction.complete without interaction snapshot")
        return StreamComplete(event_id=event_id, interaction=Interaction.from_wire(snapshot))

    if event_type == "error":
        error = data.get("error") or {}
        return StreamError(
            event_id=event_id,
            code=str(error.get("code", "unknown")),
            message=error.get("message", ""),
        )

    return UnknownEvent(event_id=event_id, event_type=str(event_type), data=data)
