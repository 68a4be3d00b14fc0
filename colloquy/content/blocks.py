"""Content block variants exchanged with the Interactions service.

Each variant is a frozen pydantic model carrying a ``type`` discriminator.
``parse_block`` is the single entry point from wire dicts; any ``type`` it
does not know becomes an ``OpaqueBlock`` so newer server block types pass
through untouched.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from colloquy.errors import MalformedBlock

MediaType = Literal["image", "audio", "video", "document"]

BuiltinCallType = Literal[
    "google_search_call",
    "code_execution_call",
    "url_context_call",
    "mcp_server_tool_call",
    "file_search_call",
]

BuiltinResultType = Literal[
    "google_search_result",
    "code_execution_result",
    "url_context_result",
    "mcp_server_tool_result",
    "file_search_result",
]


class _Block(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str
    annotations: list[dict[str, Any]] | None = None


class ThoughtBlock(_Block):
    """Reasoning summary. ``signature`` is opaque and echoed back unchanged."""

    type: Literal["thought"] = "thought"
    summary: str = ""
    signature: str | None = None


class MediaBlock(_Block):
    """Image, audio, video or document payload, inline or by URI."""

    type: MediaType
    data: bytes | None = None
    uri: str | None = None
    mime_type: str | None = None

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"data is not valid base64: {e}") from e
        return value

    @field_serializer("data")
    def _encode_base64(self, value: bytes | None) -> str | None:
        if value is None:
            return None
        return base64.b64encode(value).decode("ascii")

    @model_validator(mode="after")
    def _one_source(self) -> "MediaBlock":
        if (self.data is None) == (self.uri is None):
            raise ValueError("media block needs exactly one of data or uri")
        return self


class FunctionCallBlock(_Block):
    type: Literal["function_call"] = "function_call"
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


class FunctionResultBlock(_Block):
    """Result for a client-executed function_call.

    ``call_id`` must equal the ``id`` of the originating call.
    """

    type: Literal["function_result"] = "function_result"
    call_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    result: Any = None
    is_error: bool = False


class BuiltinToolCallBlock(_Block):
    """Server-side tool invocation (search, code execution, URL fetch, ...)."""

    type: BuiltinCallType
    id: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


class BuiltinToolResultBlock(_Block):
    type: BuiltinResultType
    call_id: str = ""
    result: Any = None


class OpaqueBlock(_Block):
    """Block of a type this client does not know; preserved verbatim."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


ContentBlock = Union[
    TextBlock,
    ThoughtBlock,
    MediaBlock,
    FunctionCallBlock,
    FunctionResultBlock,
    BuiltinToolCallBlock,
    BuiltinToolResultBlock,
    OpaqueBlock,
]

MEDIA_TYPES: frozenset[str] = frozenset(MediaType.__args__)
BUILTIN_CALL_TYPES: frozenset[str] = frozenset(BuiltinCallType.__args__)
BUILTIN_RESULT_TYPES: frozenset[str] = frozenset(BuiltinResultType.__args__)

_BLOCK_MODELS: dict[str, type[_Block]] = {
    "text": TextBlock,
    "thought": ThoughtBlock,
    "function_call": FunctionCallBlock,
    "function_result": FunctionResultBlock,
    **{t: MediaBlock for t in MEDIA_TYPES},
    **{t: BuiltinToolCallBlock for t in BUILTIN_CALL_TYPES},
    **{t: BuiltinToolResultBlock for t in BUILTIN_RESULT_TYPES},
}


def is_known_type(block_type: str) -> bool:
    return block_type in _BLOCK_MODELS


def _validate(model: type[_Block], data: dict[str, Any]) -> ContentBlock:
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or err["msg"] for err in e.errors()
        )
        raise MalformedBlock(f"{data.get('type')} block invalid ({fields}): {e}") from e


def parse_block(data: Any) -> ContentBlock:
    """Build a ContentBlock from a wire dict.

    Raises:
        MalformedBlock: If ``type`` is missing or a required field for the
            given type is absent or invalid.
    """
    if not isinstance(data, dict):
        raise MalformedBlock(f"Content block must be an object, got {type(data).__name__}")
    block_type = data.get("type")
    if not isinstance(block_type, str) or not block_type:
        raise MalformedBlock(f"Content block has no type discriminator: {data!r}")

    model = _BLOCK_MODELS.get(block_type)
    if model is None:
        payload = {k: v for k, v in data.items() if k != "type"}
        return OpaqueBlock(type=block_type, payload=payload)
    return _validate(model, data)


def block_to_wire(block: ContentBlock) -> dict[str, Any]:
    """Serialize a block to its wire dict (snake_case, None fields omitted)."""
    if isinstance(block, OpaqueBlock):
        return {"type": block.type, **block.payload}
    data = block.model_dump(mode="json", exclude_none=True)
    if isinstance(block, (FunctionResultBlock, BuiltinToolResultBlock)):
        data.setdefault("result", None)
    return data


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def text(value: str) -> TextBlock:
    return TextBlock(text=value)


def function_call(id: str, name: str, arguments: dict[str, Any] | None = None) -> FunctionCallBlock:
    return _validate(  # type: ignore[return-value]
        FunctionCallBlock,
        {"type": "function_call", "id": id, "name": name, "arguments": arguments or {}},
    )


def function_result(
    call_id: str,
    name: str,
    result: Any,
    is_error: bool = False,
) -> FunctionResultBlock:
    """Build a function_result; ``call_id`` and ``name`` are mandatory."""
    return _validate(  # type: ignore[return-value]
        FunctionResultBlock,
        {
            "type": "function_result",
            "call_id": call_id,
            "name": name,
            "result": result,
            "is_error": is_error,
        },
    )


def result_for(call: FunctionCallBlock, result: Any) -> FunctionResultBlock:
    """Result correlated to ``call`` by copying its id and name verbatim."""
    return function_result(call.id, call.name, result)


def error_result(call: FunctionCallBlock, exc: BaseException) -> FunctionResultBlock:
    """Result carrying a tool failure so the model can react to it."""
    return function_result(
        call.id,
        call.name,
        {"error": {"type": type(exc).__name__, "message": str(exc)}},
        is_error=True,
    )
