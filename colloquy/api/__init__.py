"""API layer -- HTTP client and the interaction state machine."""

from colloquy.api.client import InteractionsClient, iter_sse_events
from colloquy.api.runner import InteractionRunner, TurnResult, TurnState

__all__ = [
    "InteractionRunner",
    "InteractionsClient",
    "TurnResult",
    "TurnState",
    "iter_sse_events",
]
