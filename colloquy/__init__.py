"""Colloquy -- async client runtime for stateful, multi-turn model Interactions.

Streams and reassembles content blocks, resumes dropped streams without
gaps or duplicates, runs function calls concurrently and correlates their
results, and keeps conversation memory server-side or client-side.
"""

from colloquy.api.client import InteractionsClient
from colloquy.api.runner import InteractionRunner, TurnResult, TurnState
from colloquy.config import Settings
from colloquy.content import (
    ContentBlock,
    FunctionCallBlock,
    FunctionResultBlock,
    Interaction,
    InteractionStatus,
    TextBlock,
)
from colloquy.events import Event, EventBus, EventType
from colloquy.main import create_components, open_runner
from colloquy.memory import (
    ClientHeldMemory,
    Conversation,
    MemoryStrategy,
    ServerDelegatedMemory,
)
from colloquy.tools import ToolCoordinator, ToolDispatcher

__all__ = [
    "ClientHeldMemory",
    "ContentBlock",
    "Conversation",
    "Event",
    "EventBus",
    "EventType",
    "FunctionCallBlock",
    "FunctionResultBlock",
    "Interaction",
    "InteractionRunner",
    "InteractionStatus",
    "InteractionsClient",
    "MemoryStrategy",
    "ServerDelegatedMemory",
    "Settings",
    "TextBlock",
    "ToolCoordinator",
    "ToolDispatcher",
    "TurnResult",
    "TurnState",
    "create_components",
    "open_runner",
]
