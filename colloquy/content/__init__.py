"""Content model -- blocks, interactions, and stream events.

Pure data plus constructors and validators; nothing here performs I/O.
"""

from colloquy.content.blocks import (
    BuiltinToolCallBlock,
    BuiltinToolResultBlock,
    ContentBlock,
    FunctionCallBlock,
    FunctionResultBlock,
    MediaBlock,
    OpaqueBlock,
    TextBlock,
    ThoughtBlock,
    block_to_wire,
    error_result,
    function_call,
    function_result,
    parse_block,
    result_for,
    text,
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
    is_terminal_event,
    parse_event,
)
from colloquy.content.interaction import (
    SETTLED_STATUSES,
    TERMINAL_STATUSES,
    CreateInteractionRequest,
    Interaction,
    InteractionStatus,
    Turn,
    TurnInput,
    Usage,
)

__all__ = [
    # Blocks
    "BuiltinToolCallBlock",
    "BuiltinToolResultBlock",
    "ContentBlock",
    "FunctionCallBlock",
    "FunctionResultBlock",
    "MediaBlock",
    "OpaqueBlock",
    "TextBlock",
    "ThoughtBlock",
    "block_to_wire",
    "error_result",
    "function_call",
    "function_result",
    "parse_block",
    "result_for",
    "text",
    # Events
    "BlockDelta",
    "BlockStart",
    "BlockStop",
    "StatusUpdate",
    "StreamComplete",
    "StreamError",
    "StreamEvent",
    "StreamStart",
    "UnknownEvent",
    "is_terminal_event",
    "parse_event",
    # Interactions
    "SETTLED_STATUSES",
    "TERMINAL_STATUSES",
    "CreateInteractionRequest",
    "Interaction",
    "InteractionStatus",
    "Turn",
    "TurnInput",
    "Usage",
]
