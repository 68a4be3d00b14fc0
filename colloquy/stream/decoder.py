"""Stream decoder -- reassembles content blocks from start/delta/stop events.

One decoder instance owns one stream's arena (``contentIndex`` ->
accumulator). Blocks are emitted only when their stop event arrives; the
arena is dropped with the decoder. Resumption is not the decoder's
concern: feed it the de-duplicated sequence from ``ResumableStream`` and
it cannot tell an interrupted stream from an uninterrupted one.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterable
from dataclasses import dataclass, field
from typing import Any, Union

from colloquy.content.blocks import (
    MEDIA_TYPES,
    ContentBlock,
    is_known_type,
    parse_block,
)
from colloquy.content.events import (
    BlockDelta,
    BlockStart,
    BlockStop,
    StatusUpdate,
    StreamComplete,
    StreamError,
    StreamEvent,
    StreamStart,
    UnknownEvent,
)
from colloquy.content.interaction import Interaction, InteractionStatus
from colloquy.errors import MalformedBlock, ServerRejected, StreamProtocolError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Decoder output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamStarted:
    interaction_id: str
    status: InteractionStatus


@dataclass(frozen=True)
class BlockCompleted:
    index: int
    block: ContentBlock


@dataclass(frozen=True)
class StatusChanged:
    status: InteractionStatus


@dataclass(frozen=True)
class StreamFinished:
    interaction: Interaction


Decoded = Union[StreamStarted, BlockCompleted, StatusChanged, StreamFinished]


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


@dataclass
class _Accumulator:
    """In-progress block for one content index."""

    block_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    parts: list[str] = field(default_factory=list)
    chunks: list[bytes] = field(default_factory=list)

    def apply(self, delta: dict[str, Any]) -> None:
        """Merge one delta fragment using the rule for this block type."""
        if self.block_type == "text":
            self.parts.append(delta.get("text", ""))
            if delta.get("annotations"):
                self.payload.setdefault("annotations", []).extend(delta["annotations"])
        elif self.block_type == "thought":
            self.parts.append(delta.get("summary", delta.get("text", "")))
            if delta.get("signature"):
                self.payload["signature"] = delta["signature"]
        elif self.block_type == "function_call":
            arguments = delta.get("arguments")
            if isinstance(arguments, str):
                self.parts.append(arguments)
            elif isinstance(arguments, dict):
                self.payload.setdefault("arguments", {}).update(arguments)
            for key in ("id", "name"):
                if delta.get(key):
                    self.payload[key] = delta[key]
        elif self.block_type in MEDIA_TYPES:
            if delta.get("data"):
                self.chunks.append(self._decode_media(delta["data"]))
            for key in ("uri", "mime_type"):
                if delta.get(key):
                    self.payload[key] = delta[key]
        else:
            # Built-in tool blocks and unknown types: shallow merge
            self.payload.update({k: v for k, v in delta.items() if k != "type"})

    def _decode_media(self, fragment: str) -> bytes:
        # Each fragment is encoded on its own and may carry padding.
        try:
            return base64.b64decode(fragment, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedBlock(f"{self.block_type} block has invalid base64 data: {e}") from e

    def finalize(self) -> ContentBlock:
        data: dict[str, Any] = {"type": self.block_type, **self.payload}

        if self.block_type == "text":
            data["text"] = data.get("text", "") + "".join(self.parts)
        elif self.block_type == "thought":
            data["summary"] = data.get("summary", "") + "".join(self.parts)
        elif self.block_type == "function_call" and self.parts:
            raw = "".join(self.parts)
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError as e:
                raise MalformedBlock(
                    f"function_call {data.get('name')!r} has unparsable arguments: {raw[:200]!r}"
                ) from e
            if not isinstance(arguments, dict):
                raise MalformedBlock(f"function_call arguments must be an object, got {raw[:200]!r}")
            data["arguments"] = {**data.get("arguments", {}), **arguments}
        elif self.block_type in MEDIA_TYPES and self.chunks:
            head = data.get("data")
            prefix = self._decode_media(head) if isinstance(head, str) else head or b""
            data["data"] = prefix + b"".join(self.chunks)

        return parse_block(data)


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------


class StreamDecoder:
    """Turns raw StreamEvents into completed blocks and status transitions.

    Not restartable on its own; one instance per interaction stream.
    """

    def __init__(self) -> None:
        self._arena: dict[int, _Accumulator] = {}
        self._completed: dict[int, ContentBlock] = {}
        self._interaction_id: str | None = None
        self._status: InteractionStatus | None = None
        self._final: Interaction | None = None
        self._finished = False

    @property
    def interaction_id(self) -> str | None:
        return self._interaction_id

    @property
    def status(self) -> InteractionStatus | None:
        return self._status

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def open_indices(self) -> list[int]:
        return sorted(self._arena)

    def outputs(self) -> list[ContentBlock]:
        """Completed blocks in content-index order."""
        return [self._completed[i] for i in sorted(self._completed)]

    def feed(self, event: StreamEvent) -> list[Decoded]:
        """Apply one event and return whatever it completed.

        Raises:
            StreamProtocolError: Ordering violation.
            MalformedBlock: A finished block fails validation.
            ServerRejected: The stream carried an error event.
        """
        if self._finished:
            raise StreamProtocolError(
                f"Event {event.event_id} arrived after the stream finished"
            )

        if isinstance(event, StreamStart):
            self._bind(event.interaction_id)
            self._status = event.status
            return [StreamStarted(event.interaction_id, event.status)]

        if isinstance(event, BlockStart):
            open_acc = self._arena.get(event.index)
            if open_acc is not None:
                if open_acc.block_type != event.block_type:
                    raise StreamProtocolError(
                        f"Index {event.index} already open as {open_acc.block_type!r}, "
                        f"cannot start {event.block_type!r}"
                    )
                raise StreamProtocolError(f"Index {event.index} started twice")
            self._arena[event.index] = _Accumulator(
                block_type=event.block_type,
                payload=dict(event.payload),
            )
            return []

        if isinstance(event, BlockDelta):
            acc = self._arena.get(event.index)
            if acc is None:
                raise StreamProtocolError(f"Delta for unknown content index {event.index}")
            delta_type = event.delta.get("type")
            if (
                isinstance(delta_type, str)
                and is_known_type(delta_type)
                and delta_type != acc.block_type
            ):
                raise StreamProtocolError(
                    f"{delta_type!r} delta sent to {acc.block_type!r} block at index {event.index}"
                )
            acc.apply(event.delta)
            return []

        if isinstance(event, BlockStop):
            acc = self._arena.pop(event.index, None)
            if acc is None:
                raise StreamProtocolError(f"Stop for index {event.index} without prior start")
            block = acc.finalize()
            self._completed[event.index] = block
            logger.debug("Decoded %s block at index %d", block.type, event.index)
            return [BlockCompleted(event.index, block)]

        if isinstance(event, StatusUpdate):
            if event.interaction_id:
                self._bind(event.interaction_id)
            return self._set_status(event.status)

        if isinstance(event, StreamComplete):
            if self._arena:
                raise StreamProtocolError(
                    f"Stream completed with open content indices {self.open_indices}"
                )
            self._bind(event.interaction.id)
            self._finished = True
            self._final = event.interaction
            items = self._set_status(event.interaction.status)
            items.append(StreamFinished(self.snapshot()))
            return items

        if isinstance(event, StreamError):
            self._finished = True
            raise ServerRejected(
                f"Stream error {event.code}: {event.message}",
                error_type=event.code,
            )

        if isinstance(event, UnknownEvent):
            logger.debug("Ignoring unknown stream event %r", event.event_type)
        return []

    async def decode(self, events: AsyncIterable[StreamEvent]) -> AsyncGenerator[Decoded, None]:
        """Lazily decode an event sequence."""
        async for event in events:
            for item in self.feed(event):
                yield item

    def snapshot(self) -> Interaction:
        """Local mirror of the interaction as decoded so far.

        The server's completion snapshot wins; decoded blocks fill in its
        outputs when the snapshot omits them.
        """
        if self._final is not None:
            if not self._final.outputs and self._completed:
                return self._final.model_copy(update={"outputs": self.outputs()})
            return self._final
        if self._interaction_id is None or self._status is None:
            raise StreamProtocolError("No interaction observed on this stream yet")
        return Interaction(
            id=self._interaction_id,
            status=self._status,
            outputs=self.outputs(),
        )

    def _bind(self, interaction_id: str) -> None:
        if self._interaction_id is None:
            self._interaction_id = interaction_id
        elif self._interaction_id != interaction_id:
            raise StreamProtocolError(
                f"Stream for {self._interaction_id} carried events for {interaction_id}"
            )

    def _set_status(self, status: InteractionStatus) -> list[Decoded]:
        if status == self._status:
            return []
        logger.debug("Interaction %s status %s -> %s", self._interaction_id, self._status, status)
        self._status = status
        return [StatusChanged(status)]
