"""Interaction runner -- drives one logical turn from create to a settled state.

The state machine per logical turn::

    created -> in_progress -> completed | failed | cancelled
                    |  ^
                    v  |
              requires_action --(tool results submitted as a new turn)

``in_progress`` is observed by streaming (decoder + resumable stream) or,
for non-streaming background turns, by polling. ``requires_action`` hands
control to the ToolCoordinator; its result batch goes out as one follow-up
request that references the originating interaction. Terminal states are
sticky: once seen, no further writes are issued against that id.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

from colloquy.api.client import InteractionsClient
from colloquy.config import Settings
from colloquy.content.blocks import ContentBlock, FunctionCallBlock, FunctionResultBlock
from colloquy.content.interaction import (
    CreateInteractionRequest,
    Interaction,
    InteractionStatus,
    Usage,
)
from colloquy.errors import (
    CallIdMismatch,
    InteractionClosed,
    InteractionError,
    PollTimeout,
)
from colloquy.events import (
    Event,
    EventBus,
    status_changed,
    stream_resumed,
    tools_completed,
    tools_dispatched,
    turn_completed,
)
from colloquy.memory import Conversation, NewInput
from colloquy.stream.decoder import (
    Decoded,
    StatusChanged,
    StreamDecoder,
    StreamStarted,
)
from colloquy.stream.reconnect import RETRYABLE_ERRORS, ResumableStream
from colloquy.tools.coordinator import ToolCoordinator, ToolRoundCounter

logger = logging.getLogger(__name__)

MAX_TRACKED_INTERACTIONS = 1000
POLL_BACKOFF_FACTOR = 1.5

class TurnState(StrEnum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({TurnState.COMPLETED, TurnState.FAILED, TurnState.CANCELLED})


@dataclass
class TurnResult:
    """Outcome of one logical turn, tool rounds included."""

    conversation_id: str
    interaction: Interaction  # last interaction of the chain
    interactions: list[Interaction] = field(default_factory=list)
    tool_results: list[FunctionResultBlock] = field(default_factory=list)
    tool_rounds: int = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def status(self) -> InteractionStatus:
        return self.interaction.status

    @property
    def outputs(self) -> list[ContentBlock]:
        return [block for i in self.interactions for block in i.outputs]

    @property
    def text(self) -> str:
        return self.interaction.text()


@dataclass(frozen=True)
class ToolBatchStarted:
    interaction_id: str
    calls: list[FunctionCallBlock]


@dataclass(frozen=True)
class ToolBatchFinished:
    interaction_id: str
    results: list[FunctionResultBlock]


@dataclass(frozen=True)
class TurnFinished:
    result: TurnResult


TurnEvent = Union[Decoded, ToolBatchStarted, ToolBatchFinished, TurnFinished]


class InteractionRunner:
    """Runs logical turns against the Interactions service.

    One runner can serve many conversations; each conversation must run
    its turns one at a time (enforced by ``Conversation.begin_turn``).
    """

    def __init__(
        self,
        client: InteractionsClient,
        settings: Settings,
        coordinator: ToolCoordinator | None = None,
        bus: EventBus | None = None,
        *,
        tools: list[dict[str, Any]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._settings = settings
        self._coordinator = coordinator
        self._bus = bus
        self._tools = tools
        self._sleep = sleep
        self._clock = clock
        self._states: OrderedDict[str, TurnState] = OrderedDict()
        self._cancelled: dict[str, Interaction] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def state_of(self, interaction_id: str) -> TurnState | None:
        return self._states.get(interaction_id)

    async def run_turn(
        self,
        conversation: Conversation,
        new_input: NewInput,
        *,
        stream: bool | None = None,
        background: bool | None = None,
        store: bool | None = None,
        tools: list[dict[str, Any]] | None = None,
        previous_interaction_id: str | None = None,
    ) -> TurnResult:
        """Drive a turn to a settled state and return the outcome.

        Settled means terminal, or ``requires_action`` when no coordinator
        is configured (submit results with ``submit_tool_results``).
        ``failed`` and ``cancelled`` are returned, not raised.
        """
        result: TurnResult | None = None
        turn = self.stream_turn(
            conversation,
            new_input,
            stream=stream,
            background=background,
            store=store,
            tools=tools,
            previous_interaction_id=previous_interaction_id,
        )
        async with aclosing(turn) as events:
            async for event in events:
                if isinstance(event, TurnFinished):
                    result = event.result
        if result is None:
            raise InteractionError("Turn ended without a result")
        return result

    async def stream_turn(
        self,
        conversation: Conversation,
        new_input: NewInput,
        *,
        stream: bool | None = None,
        background: bool | None = None,
        store: bool | None = None,
        tools: list[dict[str, Any]] | None = None,
        previous_interaction_id: str | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Full turn including tool rounds, yielding progress as it happens.

        Yields decoded blocks and status changes (streaming mode only),
        tool batch start/finish markers, and finally ``TurnFinished``.
        """
        settings = self._settings
        stream = settings.stream if stream is None else stream
        background = settings.background if background is None else background
        store = settings.store if store is None else store
        tools = self._tools if tools is None else tools

        conversation.begin_turn()
        try:
            counter = (
                self._coordinator.round_counter()
                if self._coordinator
                else ToolRoundCounter(settings.max_tool_rounds)
            )
            interactions: list[Interaction] = []
            tool_results: list[FunctionResultBlock] = []
            usage = Usage()
            turn_input: NewInput = new_input
            prior_override = previous_interaction_id

            while True:
                self._guard_pending_writable(conversation, turn_input)
                request = conversation.build_request(
                    turn_input,
                    selector=settings.selector,
                    tools=tools,
                    background=background,
                    store=store,
                    stream=stream,
                    previous_interaction_id=prior_override,
                )
                prior_override = None

                if stream:
                    decoder = StreamDecoder()
                    async with aclosing(self._stream_interaction(conversation, request, decoder)) as items:
                        async for item in items:
                            yield item
                    interaction = decoder.snapshot()
                    if not interaction.is_terminal and interaction.id in self._cancelled:
                        interaction = self._cancelled[interaction.id]
                else:
                    interaction = await self._create_and_wait(conversation, request)

                await self._observe(conversation, interaction)
                conversation.record(turn_input, interaction)
                interactions.append(interaction)
                if interaction.usage:
                    usage = usage + interaction.usage

                if interaction.status != InteractionStatus.REQUIRES_ACTION or not self._coordinator:
                    break

                # requires_action: resolve every pending call, then resume
                counter.next_round()
                calls = conversation.pending_calls()
                if not calls:
                    raise InteractionError(
                        f"Interaction {interaction.id} requires action but has no "
                        "unanswered function_call"
                    )
                yield ToolBatchStarted(interaction.id, calls)
                await self._emit(tools_dispatched(conversation.id, interaction.id, calls))
                results = await self._coordinator.execute(interaction, conversation.answered_call_ids)
                await self._emit(tools_completed(conversation.id, interaction.id, results))
                yield ToolBatchFinished(interaction.id, results)
                logger.info(
                    "Submitting %d tool result(s) for %s (round %d/%d)",
                    len(results),
                    interaction.id,
                    counter.rounds,
                    counter.max_rounds,
                )
                tool_results.extend(results)
                turn_input = list(results)

            result = TurnResult(
                conversation_id=conversation.id,
                interaction=interactions[-1],
                interactions=interactions,
                tool_results=tool_results,
                tool_rounds=counter.rounds,
                usage=usage,
            )
            logger.info(
                "Turn on conversation %s settled as %s after %d interaction(s)",
                conversation.id,
                result.status,
                len(interactions),
            )
            await self._emit(
                turn_completed(
                    conversation.id, result.interaction.id, result.status, result.tool_rounds
                )
            )
        finally:
            conversation.end_turn()

        yield TurnFinished(result)

    async def submit_tool_results(
        self,
        conversation: Conversation,
        results: Sequence[FunctionResultBlock],
        **options: Any,
    ) -> TurnResult:
        """Submit externally executed results for the pending calls.

        Raises:
            CallIdMismatch: ``results`` do not answer the pending calls
                exactly once each.
            InteractionClosed: The interaction awaiting results has since
                reached a terminal state.
        """
        last = conversation.last_interaction
        if last is None or last.status != InteractionStatus.REQUIRES_ACTION:
            raise CallIdMismatch(f"Conversation {conversation.id} has no pending function calls")
        ordered = conversation.check_results(list(results))
        return await self.run_turn(conversation, ordered, **options)

    async def retrieve(self, interaction_id: str) -> Interaction:
        """Read-only retrieval; allowed in any state."""
        interaction = await self._client.get(interaction_id)
        self._transition(interaction.id, TurnState(interaction.status))
        return interaction

    async def cancel(self, interaction_id: str) -> Interaction | None:
        """Request cancellation of a background interaction.

        Returns the server snapshot, or ``None`` when the interaction was
        already observed terminal (no call is made).
        """
        state = self._states.get(interaction_id)
        if state is not None and state.is_terminal:
            logger.info("Interaction %s already %s; not cancelling", interaction_id, state)
            return None
        interaction = await self._client.cancel(interaction_id)
        self._transition(interaction.id, TurnState(interaction.status))
        if interaction.status == InteractionStatus.CANCELLED:
            self._cancelled[interaction.id] = interaction
        return interaction

    async def delete(self, interaction_id: str) -> None:
        await self._client.delete(interaction_id)
        self._states.pop(interaction_id, None)
        self._cancelled.pop(interaction_id, None)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream_interaction(
        self,
        conversation: Conversation,
        request: CreateInteractionRequest,
        decoder: StreamDecoder,
    ) -> AsyncGenerator[Decoded, None]:
        settings = self._settings

        async def on_resume(interaction_id: str, last_event_id: int | None, attempt: int) -> None:
            await self._emit(
                stream_resumed(conversation.id, interaction_id, last_event_id, attempt)
            )

        resumable = ResumableStream(
            lambda: self._client.create_stream(request),
            self._client.get_stream,
            max_attempts=settings.stream_max_attempts,
            backoff_base=settings.stream_backoff_base,
            backoff_max=settings.stream_backoff_max,
            jitter=settings.stream_backoff_jitter,
            sleep=self._sleep,
            on_resume=on_resume,
        )

        async with aclosing(aiter(resumable)) as events:
            async for event in events:
                for item in decoder.feed(event):
                    if isinstance(item, StreamStarted):
                        self._transition(item.interaction_id, TurnState.CREATED)
                        self._transition(item.interaction_id, TurnState(item.status))
                    elif isinstance(item, StatusChanged) and decoder.interaction_id:
                        self._transition(decoder.interaction_id, TurnState(item.status))
                        await self._emit(
                            status_changed(conversation.id, decoder.interaction_id, item.status)
                        )
                    yield item
                if decoder.finished:
                    return
                if decoder.interaction_id in self._cancelled:
                    logger.info("Interaction %s cancelled locally; closing stream", decoder.interaction_id)
                    return

    # ------------------------------------------------------------------
    # Non-streaming / polling
    # ------------------------------------------------------------------

    async def _create_and_wait(
        self,
        conversation: Conversation,
        request: CreateInteractionRequest,
    ) -> Interaction:
        interaction = await self._client.create(request)
        self._transition(interaction.id, TurnState.CREATED)
        await self._observe(conversation, interaction)
        if interaction.status == InteractionStatus.IN_PROGRESS:
            interaction = await self._poll(conversation, interaction)
        return interaction

    async def _poll(self, conversation: Conversation, interaction: Interaction) -> Interaction:
        """Poll until the interaction leaves in_progress.

        The interval grows from ``poll_interval`` to ``poll_interval_max``;
        the total wait is capped at ``poll_timeout``.
        """
        settings = self._settings
        deadline = self._clock() + settings.poll_timeout
        interval = settings.poll_interval
        interaction_id = interaction.id

        while interaction.status == InteractionStatus.IN_PROGRESS:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise PollTimeout(
                    f"Interaction {interaction_id} still in progress after "
                    f"{settings.poll_timeout:.0f}s"
                )
            await self._sleep(min(interval, remaining))
            interval = min(interval * POLL_BACKOFF_FACTOR, settings.poll_interval_max)

            cancelled = self._cancelled.get(interaction_id)
            if cancelled is not None:
                logger.info("Interaction %s cancelled; stopping poll", interaction_id)
                return cancelled

            try:
                interaction = await self._client.get(interaction_id)
            except RETRYABLE_ERRORS as e:
                logger.warning("Poll of %s failed, will retry: %s", interaction_id, e)
                continue
            await self._observe(conversation, interaction)

        return interaction

    # ------------------------------------------------------------------
    # State tracking
    # ------------------------------------------------------------------

    async def _observe(self, conversation: Conversation, interaction: Interaction) -> None:
        previous = self._states.get(interaction.id)
        self._transition(interaction.id, TurnState(interaction.status))
        if previous != self._states.get(interaction.id):
            await self._emit(status_changed(conversation.id, interaction.id, interaction.status))

    def _transition(self, interaction_id: str, new_state: TurnState) -> None:
        """Record a state change; terminal states never change again."""
        current = self._states.get(interaction_id)
        if current is not None and current.is_terminal:
            if new_state != current:
                logger.warning(
                    "Ignoring %s -> %s for interaction %s (terminal state is sticky)",
                    current,
                    new_state,
                    interaction_id,
                )
            return
        if current is not None:
            self._states.move_to_end(interaction_id)
        self._states[interaction_id] = new_state
        while len(self._states) > MAX_TRACKED_INTERACTIONS:
            evicted, _ = self._states.popitem(last=False)
            self._cancelled.pop(evicted, None)

    def _guard_pending_writable(self, conversation: Conversation, turn_input: NewInput) -> None:
        """Refuse to submit tool results against an interaction now terminal."""
        if isinstance(turn_input, str):
            return
        if not any(isinstance(b, FunctionResultBlock) for b in turn_input):
            return
        last = conversation.last_interaction
        if last is None:
            return
        state = self._states.get(last.id)
        if state is not None and state.is_terminal:
            raise InteractionClosed(last.id, str(state))

    async def _emit(self, event: Event) -> None:
        if self._bus is not None:
            await self._bus.emit(event)

