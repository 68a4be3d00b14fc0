"""Exception hierarchy for colloquy.

Every error raised by the orchestration layer derives from
``InteractionError`` so callers can catch the whole family at once.
"""

from __future__ import annotations

from typing import Any


class InteractionError(Exception):
    """Base exception for all colloquy errors."""


# ---------------------------------------------------------------------------
# Decode errors -- abort stream consumption
# ---------------------------------------------------------------------------


class MalformedBlock(InteractionError):
    """A content block or event payload lacks a field its type requires."""


class StreamProtocolError(InteractionError):
    """The event stream violated start -> delta* -> stop ordering."""


# ---------------------------------------------------------------------------
# Reconnection errors
# ---------------------------------------------------------------------------


class StreamInterrupted(InteractionError):
    """The server closed the stream before a terminal event arrived."""


class UnresumableStream(InteractionError):
    """The stream failed before an interaction id was known."""


class StreamExhausted(InteractionError):
    """Resume attempts exceeded the configured bound.

    Attributes:
        interaction_id: The interaction whose stream could not be resumed.
        last_event_id: The last event forwarded before giving up.
        attempts: Number of resume attempts made.
    """

    def __init__(
        self,
        interaction_id: str,
        last_event_id: int | None,
        attempts: int,
    ) -> None:
        super().__init__(
            f"Stream for interaction {interaction_id} exhausted after "
            f"{attempts} resume attempt(s) (last_event_id={last_event_id})"
        )
        self.interaction_id = interaction_id
        self.last_event_id = last_event_id
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class CallIdMismatch(InteractionError):
    """A function_result does not correlate with a pending function_call."""


class ToolExecutionAborted(InteractionError):
    """A fail-fast tool batch aborted before any follow-up was sent.

    Attributes:
        call_id: Id of the function_call whose execution failed.
        name: Tool name of the failing call.
    """

    def __init__(self, call_id: str, name: str, cause: BaseException) -> None:
        super().__init__(f"Tool {name!r} (call {call_id}) failed: {cause}")
        self.call_id = call_id
        self.name = name


class ToolLoopLimitExceeded(InteractionError):
    """The turn kept returning requires_action past the round limit."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(
            f"Tool resolution exceeded max_tool_rounds={max_rounds}. "
            "Check for tool call loops."
        )
        self.max_rounds = max_rounds


class UnknownTool(InteractionError):
    """The executor has no handler registered for the requested tool."""


# ---------------------------------------------------------------------------
# Conversation / state machine errors
# ---------------------------------------------------------------------------


class ConversationStrategyConflict(InteractionError):
    """A conversation tried to mix server-delegated and client-held memory."""


class TurnInProgress(InteractionError):
    """A new turn started before the previous one on the same conversation settled."""


class InteractionClosed(InteractionError):
    """A mutating call targeted an interaction already observed terminal."""

    def __init__(self, interaction_id: str, status: str) -> None:
        super().__init__(f"Interaction {interaction_id} is {status}; no further writes")
        self.interaction_id = interaction_id
        self.status = status


class PollTimeout(InteractionError):
    """A background interaction did not settle within the polling budget."""


# ---------------------------------------------------------------------------
# Server errors
# ---------------------------------------------------------------------------


class ServerError(InteractionError):
    """Base for errors reported by the Interactions service.

    Attributes:
        status_code: HTTP status code, or ``None`` for in-stream errors.
        error_type: Machine-readable error code from the body, if any.
        details: Raw error body.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: str = "unknown",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.details = details or {}


class ServerRejected(ServerError):
    """4xx-class rejection, or an error event inside the stream."""


class ServerUnavailable(ServerError):
    """429 or 5xx response; safe to retry."""
