"""Interaction snapshots, role-tagged turns, and create-turn requests.

An ``Interaction`` here is a short-lived local projection of server state,
rebuilt from every poll or stream; the server copy is authoritative.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from colloquy.content.blocks import (
    ContentBlock,
    FunctionCallBlock,
    TextBlock,
    block_to_wire,
    parse_block,
)
from colloquy.errors import MalformedBlock


class InteractionStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    InteractionStatus.COMPLETED,
    InteractionStatus.FAILED,
    InteractionStatus.CANCELLED,
})

# The server produces no further output until the client acts
SETTLED_STATUSES = TERMINAL_STATUSES | {InteractionStatus.REQUIRES_ACTION}


def _coerce_blocks(value: Any) -> Any:
    if isinstance(value, list):
        return [parse_block(item) if isinstance(item, dict) else item for item in value]
    return value


class Usage(BaseModel):
    """Token totals reported on a completed interaction."""

    model_config = ConfigDict(frozen=True)

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_thought_tokens: int = 0
    total_tool_use_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            total_input_tokens=self.total_input_tokens + other.total_input_tokens,
            total_output_tokens=self.total_output_tokens + other.total_output_tokens,
            total_thought_tokens=self.total_thought_tokens + other.total_thought_tokens,
            total_tool_use_tokens=self.total_tool_use_tokens + other.total_tool_use_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class Interaction(BaseModel):
    """One server-tracked turn, as last observed by the client."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    status: InteractionStatus
    outputs: Annotated[list[ContentBlock], BeforeValidator(_coerce_blocks)] = Field(
        default_factory=list
    )
    background: bool = False
    previous_interaction_id: str | None = None
    model: str | None = None
    agent: str | None = None
    usage: Usage | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Interaction:
        """Parse a server snapshot.

        Raises:
            MalformedBlock: If the snapshot or one of its outputs is invalid.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedBlock(f"Invalid interaction snapshot: {e}") from e

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def function_calls(self) -> list[FunctionCallBlock]:
        return [b for b in self.outputs if isinstance(b, FunctionCallBlock)]

    def text(self) -> str:
        return "".join(b.text for b in self.outputs if isinstance(b, TextBlock))


class Turn(BaseModel):
    """A role-tagged entry of client-held history."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "model"]
    content: Annotated[str | list[ContentBlock], BeforeValidator(_coerce_blocks)]

    def to_wire(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block_to_wire(b) for b in self.content]}


TurnInput = str | list[ContentBlock] | list[Turn]


class CreateInteractionRequest(BaseModel):
    """Body of a create-turn call."""

    model: str | None = None
    agent: str | None = None
    input: Any
    previous_interaction_id: str | None = None
    tools: list[dict[str, Any]] | None = None
    background: bool = False
    store: bool = True
    stream: bool = False

    @field_validator("input", mode="before")
    @classmethod
    def _coerce_input(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value
        if not isinstance(value, list) or not value:
            raise ValueError("input must be a string or a non-empty list")
        items = []
        for item in value:
            if isinstance(item, dict):
                item = Turn.model_validate(item) if "role" in item else parse_block(item)
            items.append(item)
        kinds = {isinstance(item, Turn) for item in items}
        if len(kinds) > 1:
            raise ValueError("input cannot mix role-tagged turns and bare content blocks")
        return items

    @model_validator(mode="after")
    def _check_combinations(self) -> CreateInteractionRequest:
        if bool(self.model) == bool(self.agent):
            raise ValueError("Exactly one of model or agent is required")
        if self.background and not self.store:
            raise ValueError("background=True is incompatible with store=False")
        if self.previous_interaction_id and self.has_history:
            raise ValueError(
                "previous_interaction_id cannot be combined with full turn history in input"
            )
        return self

    @property
    def has_history(self) -> bool:
        return isinstance(self.input, list) and isinstance(self.input[0], Turn)

    def result_blocks(self) -> list[ContentBlock]:
        """Content blocks of the newest user input, for correlation checks."""
        if isinstance(self.input, str):
            return []
        if self.has_history:
            last = self.input[-1]
            return [] if isinstance(last.content, str) else list(last.content)
        return list(self.input)

    def to_wire(self) -> dict[str, Any]:
        if isinstance(self.input, str):
            wire_input: Any = self.input
        elif self.has_history:
            wire_input = [turn.to_wire() for turn in self.input]
        else:
            wire_input = [block_to_wire(b) for b in self.input]

        payload: dict[str, Any] = {"input": wire_input}
        if self.agent:
            payload["agent"] = self.agent
        else:
            payload["model"] = self.model
        if self.previous_interaction_id:
            payload["previous_interaction_id"] = self.previous_interaction_id
        if self.tools:
            payload["tools"] = self.tools
        if self.background:
            payload["background"] = True
        if not self.store:
            payload["store"] = False
        if self.stream:
            payload["stream"] = True
        return payload
