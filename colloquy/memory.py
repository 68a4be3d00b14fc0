"""Conversation memory -- server-delegated chaining vs. client-held history.

Two interchangeable strategies behind one interface:

- ``ServerDelegatedMemory`` sends only the new input plus the id of the
  previous interaction; history never materializes locally.
- ``ClientHeldMemory`` keeps every turn's input and output in an ordered
  local history and sends all of it on each call.

A ``Conversation`` is bound to one strategy for its whole life. Mixing them
silently duplicates or drops context, so switching after the first
recorded turn raises ``ConversationStrategyConflict``.
"""

from __future__ import annotations

import logging
import uuid
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from colloquy.content.blocks import ContentBlock, FunctionCallBlock, FunctionResultBlock
from colloquy.content.interaction import (
    CreateInteractionRequest,
    Interaction,
    InteractionStatus,
    Turn,
)
from colloquy.errors import CallIdMismatch, ConversationStrategyConflict, TurnInProgress
from colloquy.tools.coordinator import pending_calls, validate_batch

logger = logging.getLogger(__name__)

NewInput = str | list[ContentBlock]

# Only these outcomes extend the conversation; failed/cancelled turns are
# reported to the caller but not chained onto.
_RECORDABLE = frozenset({InteractionStatus.COMPLETED, InteractionStatus.REQUIRES_ACTION})


class MemoryStrategy(StrEnum):
    SERVER_DELEGATED = "server"
    CLIENT_HELD = "client"


@runtime_checkable
class ConversationMemory(Protocol):
    """What the state machine needs from a memory strategy."""

    strategy: MemoryStrategy

    def prepare(self, new_input: NewInput) -> dict[str, Any]:
        """Return the ``input``/``previous_interaction_id`` fields for the next turn."""
        ...

    def record(self, new_input: NewInput, interaction: Interaction) -> None:
        """Fold a finished exchange into memory."""
        ...


class ServerDelegatedMemory:
    """Chains turns by reference; the server holds the history."""

    strategy = MemoryStrategy.SERVER_DELEGATED

    def __init__(self, previous_interaction_id: str | None = None) -> None:
        self.previous_interaction_id = previous_interaction_id

    def prepare(self, new_input: NewInput) -> dict[str, Any]:
        return {
            "input": new_input,
            "previous_interaction_id": self.previous_interaction_id,
        }

    def record(self, new_input: NewInput, interaction: Interaction) -> None:
        self.previous_interaction_id = interaction.id


class ClientHeldMemory:
    """Keeps the full role-tagged history locally."""

    strategy = MemoryStrategy.CLIENT_HELD

    def __init__(self, history: list[Turn] | None = None) -> None:
        self._history: list[Turn] = list(history or [])

    @property
    def history(self) -> list[Turn]:
        return list(self._history)

    def prepare(self, new_input: NewInput) -> dict[str, Any]:
        return {"input": [*self._history, Turn(role="user", content=new_input)]}

    def record(self, new_input: NewInput, interaction: Interaction) -> None:
        self._history.append(Turn(role="user", content=new_input))
        if interaction.outputs:
            self._history.append(Turn(role="model", content=list(interaction.outputs)))


def make_memory(strategy: MemoryStrategy | str) -> ConversationMemory:
    if MemoryStrategy(strategy) == MemoryStrategy.CLIENT_HELD:
        return ClientHeldMemory()
    return ServerDelegatedMemory()


class Conversation:
    """One logical conversation: its memory, call bookkeeping, and turn guard.

    Tracks every function_call id observed in the chain and every id
    already answered, so each call gets exactly one result.
    """

    def __init__(
        self,
        memory: ConversationMemory | MemoryStrategy | str = MemoryStrategy.SERVER_DELEGATED,
        conversation_id: str | None = None,
    ) -> None:
        self.id = conversation_id or uuid.uuid4().hex
        self.memory: ConversationMemory = (
            memory if isinstance(memory, ConversationMemory) else make_memory(memory)
        )
        self.turns = 0
        self.last_interaction: Interaction | None = None
        self.observed_call_ids: set[str] = set()
        self.answered_call_ids: set[str] = set()
        self._in_flight = False

    @property
    def strategy(self) -> MemoryStrategy:
        return self.memory.strategy

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def switch_strategy(self, memory: ConversationMemory | MemoryStrategy | str) -> None:
        """Replace the memory strategy; only allowed before the first turn."""
        new_memory = memory if isinstance(memory, ConversationMemory) else make_memory(memory)
        if self.turns and new_memory.strategy != self.strategy:
            raise ConversationStrategyConflict(
                f"Conversation {self.id} uses {self.strategy} memory; "
                f"cannot switch to {new_memory.strategy} after {self.turns} turn(s)"
            )
        self.memory = new_memory

    # ------------------------------------------------------------------
    # Turn guard
    # ------------------------------------------------------------------

    def begin_turn(self) -> None:
        if self._in_flight:
            raise TurnInProgress(
                f"Conversation {self.id} already has a turn in flight; serialize turns"
            )
        self._in_flight = True

    def end_turn(self) -> None:
        self._in_flight = False

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_request(
        self,
        new_input: NewInput,
        *,
        selector: dict[str, str],
        tools: list[dict[str, Any]] | None = None,
        background: bool = False,
        store: bool = True,
        stream: bool = False,
        previous_interaction_id: str | None = None,
    ) -> CreateInteractionRequest:
        """Build the next create-turn request from memory plus ``new_input``.

        Raises:
            ConversationStrategyConflict: The request would mix strategies.
            CallIdMismatch: ``new_input`` answers an unknown or already
                answered call.
        """
        if isinstance(new_input, list) and any(isinstance(item, Turn) for item in new_input):
            raise ConversationStrategyConflict(
                "Pass only the new input; the conversation supplies history itself"
            )
        if self.strategy == MemoryStrategy.SERVER_DELEGATED and not store:
            raise ConversationStrategyConflict(
                "Server-delegated memory requires store=True to chain later turns"
            )
        if previous_interaction_id is not None and self.strategy == MemoryStrategy.CLIENT_HELD:
            raise ConversationStrategyConflict(
                "previous_interaction_id cannot be used with client-held history"
            )

        self.check_results(new_input)
        fields = self.memory.prepare(new_input)
        if previous_interaction_id is not None:
            fields["previous_interaction_id"] = previous_interaction_id

        return CreateInteractionRequest(
            **selector,
            **fields,
            tools=tools,
            background=background,
            store=store,
            stream=stream,
        )

    def pending_calls(self) -> list[FunctionCallBlock]:
        """Unanswered calls of the latest interaction, if it awaits results."""
        last = self.last_interaction
        if last is None or last.status != InteractionStatus.REQUIRES_ACTION:
            return []
        return pending_calls(last, self.answered_call_ids)

    def check_results(self, new_input: NewInput) -> list[FunctionResultBlock]:
        """Enforce result -> call correlation before anything is sent.

        Results must answer every pending call of the latest interaction
        exactly once; results for calls of earlier turns are rejected.
        """
        if isinstance(new_input, str):
            return []
        results = [b for b in new_input if isinstance(b, FunctionResultBlock)]
        if not results:
            return []
        for result in results:
            if result.call_id not in self.observed_call_ids:
                raise CallIdMismatch(
                    f"function_result call_id {result.call_id!r} matches no function_call "
                    f"observed in conversation {self.id}"
                )
            if result.call_id in self.answered_call_ids:
                raise CallIdMismatch(f"Call {result.call_id!r} was already answered")
        pending = self.pending_calls()
        pending_ids = {call.id for call in pending}
        for result in results:
            if result.call_id not in pending_ids:
                raise CallIdMismatch(
                    f"Call {result.call_id!r} belongs to an earlier turn, not the "
                    "interaction awaiting results"
                )
        return validate_batch(pending, results)

    def record(self, new_input: NewInput, interaction: Interaction) -> None:
        """Record a settled exchange (completed or requires_action)."""
        if interaction.status not in _RECORDABLE:
            logger.info(
                "Not chaining %s interaction %s onto conversation %s",
                interaction.status,
                interaction.id,
                self.id,
            )
            return
        self.memory.record(new_input, interaction)
        if not isinstance(new_input, str):
            self.answered_call_ids.update(
                b.call_id for b in new_input if isinstance(b, FunctionResultBlock)
            )
        self.observed_call_ids.update(
            b.id for b in interaction.outputs if isinstance(b, FunctionCallBlock)
        )
        self.last_interaction = interaction
        self.turns += 1
