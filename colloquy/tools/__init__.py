"""Tools -- local handler registry and the requires_action coordinator."""

from colloquy.tools.coordinator import (
    ToolCoordinator,
    ToolExecutor,
    ToolRoundCounter,
    pending_calls,
    validate_batch,
)
from colloquy.tools.dispatcher import ToolDispatcher

__all__ = [
    "ToolCoordinator",
    "ToolDispatcher",
    "ToolExecutor",
    "ToolRoundCounter",
    "pending_calls",
    "validate_batch",
]
