"""Tool execution coordinator -- fan-out, barrier, correlated fan-in.

For an interaction in ``requires_action`` the coordinator:

1. Collects the function_call blocks not yet answered in this chain.
2. Dispatches them all concurrently to the caller's executor.
3. Waits for every one of them (the barrier) before returning.
4. Returns exactly one function_result per call, ``call_id`` and ``name``
   copied verbatim from the call, in call order.

A failing tool becomes an error-carrying result unless ``fail_fast`` is
set, in which case sibling calls are cancelled and the batch raises
``ToolExecutionAborted`` before anything is submitted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Collection, Sequence
from typing import Any

from colloquy.content.blocks import (
    FunctionCallBlock,
    FunctionResultBlock,
    block_to_wire,
    error_result,
    result_for,
)
from colloquy.content.interaction import Interaction
from colloquy.errors import CallIdMismatch, ToolExecutionAborted, ToolLoopLimitExceeded

logger = logging.getLogger(__name__)

# Receives one function_call, returns its result payload (or a ready-made
# FunctionResultBlock for that call).
ToolExecutor = Callable[[FunctionCallBlock], Awaitable[Any]]


class ToolRoundCounter:
    """Bounds requires_action -> resume ping-pong within one logical turn."""

    def __init__(self, max_rounds: int) -> None:
        self.max_rounds = max_rounds
        self.rounds = 0

    def next_round(self) -> int:
        """Count one more round; raises ToolLoopLimitExceeded past the bound."""
        self.rounds += 1
        if self.rounds > self.max_rounds:
            raise ToolLoopLimitExceeded(self.max_rounds)
        return self.rounds


def pending_calls(
    interaction: Interaction,
    answered: Collection[str] = (),
) -> list[FunctionCallBlock]:
    """Function calls in ``interaction`` that have no result yet.

    Only the given interaction's outputs are considered; calls from
    ancestor turns are never pending again.
    """
    seen: set[str] = set()
    calls: list[FunctionCallBlock] = []
    for call in interaction.function_calls():
        if call.id in answered:
            continue
        if call.id in seen:
            logger.warning("Interaction %s repeats function_call id %s", interaction.id, call.id)
            continue
        seen.add(call.id)
        calls.append(call)
    return calls


def validate_batch(
    pending: Sequence[FunctionCallBlock],
    results: Sequence[FunctionResultBlock],
) -> list[FunctionResultBlock]:
    """Check that ``results`` answer ``pending`` exactly once each.

    Returns the results reordered to match ``pending``.

    Raises:
        CallIdMismatch: Unknown call id, name mismatch, duplicate result,
            or a pending call left without a result.
    """
    by_id = {call.id: call for call in pending}
    matched: dict[str, FunctionResultBlock] = {}

    for result in results:
        call = by_id.get(result.call_id)
        if call is None:
            raise CallIdMismatch(
                f"function_result call_id {result.call_id!r} matches no pending call "
                f"(pending: {sorted(by_id)})"
            )
        if result.name != call.name:
            raise CallIdMismatch(
                f"function_result for {result.call_id!r} names {result.name!r}, "
                f"but the call was {call.name!r}"
            )
        if result.call_id in matched:
            raise CallIdMismatch(f"Duplicate function_result for call {result.call_id!r}")
        matched[result.call_id] = result

    missing = [call.id for call in pending if call.id not in matched]
    if missing:
        raise CallIdMismatch(f"No function_result for pending call(s) {missing}")

    return [matched[call.id] for call in pending]


class ToolCoordinator:
    """Executes a requires_action batch and assembles its results.

    Attributes:
        fail_fast: Abort the whole batch on the first tool failure.
        call_timeout: Per-call timeout in seconds, or ``None``.
        max_rounds: Tool-resolution rounds allowed per logical turn.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        *,
        fail_fast: bool = False,
        call_timeout: float | None = None,
        max_rounds: int = 10,
    ) -> None:
        self._executor = executor
        self.fail_fast = fail_fast
        self.call_timeout = call_timeout
        self.max_rounds = max_rounds

    def round_counter(self) -> ToolRoundCounter:
        return ToolRoundCounter(self.max_rounds)

    async def execute(
        self,
        interaction: Interaction,
        answered: Collection[str] = (),
    ) -> list[FunctionResultBlock]:
        """Run every pending call of ``interaction`` and return the result batch."""
        pending = pending_calls(interaction, answered)
        if not pending:
            return []
        results = await self.run_batch(pending)
        return validate_batch(pending, results)

    async def run_batch(self, calls: Sequence[FunctionCallBlock]) -> list[FunctionResultBlock]:
        """Dispatch ``calls`` concurrently; return only when all have settled."""
        batch_t0 = time.monotonic()
        tasks = [
            asyncio.create_task(self._run_one(call), name=f"tool-{call.name}-{call.id}")
            for call in calls
        ]
        try:
            results = list(await asyncio.gather(*tasks))
        except BaseException:
            # Fail-fast abort or caller cancellation: stop the siblings too.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.debug(
            "Executed %d tool call(s) concurrently in %.3fs",
            len(calls),
            time.monotonic() - batch_t0,
        )
        return results

    async def _run_one(self, call: FunctionCallBlock) -> FunctionResultBlock:
        start_time = time.monotonic()
        try:
            if self.call_timeout is not None:
                value = await asyncio.wait_for(self._executor(call), timeout=self.call_timeout)
            else:
                value = await self._executor(call)
            result = value if isinstance(value, FunctionResultBlock) else result_for(call, value)
            # An unserializable payload counts as a tool failure
            block_to_wire(result)
        except Exception as exc:
            if self.fail_fast:
                logger.error("Tool %r (call %s) failed, aborting batch: %s", call.name, call.id, exc)
                raise ToolExecutionAborted(call.id, call.name, exc) from exc
            logger.warning(
                "Tool %r (call %s) failed, returning error result: %s",
                call.name,
                call.id,
                exc,
                exc_info=True,
            )
            return error_result(call, exc)

        logger.debug(
            "Tool %r (call %s) finished in %dms",
            call.name,
            call.id,
            int((time.monotonic() - start_time) * 1000),
        )
        return result
