"""Component wiring.

Builds the runner stack in dependency order:
  Settings -> InteractionsClient -> ToolDispatcher -> ToolCoordinator -> EventBus -> InteractionRunner

``open_runner`` owns the lifecycle: it starts the HTTP client and the bus,
yields the runner, and shuts everything down in reverse order.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from colloquy.api.client import InteractionsClient
from colloquy.api.runner import InteractionRunner
from colloquy.config import Settings
from colloquy.events import EventBus
from colloquy.tools.coordinator import ToolCoordinator
from colloquy.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def create_components(settings: Settings, dispatcher: ToolDispatcher | None = None) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components; nothing is started yet.

    1. InteractionsClient - HTTP boundary
    2. ToolDispatcher - local tool handlers (caller may pre-register)
    3. ToolCoordinator - concurrent execution of requires_action batches
    4. EventBus - optional (None if event_bus_enabled is off)
    5. InteractionRunner - the turn state machine
    """
    client = InteractionsClient(settings)
    dispatcher = dispatcher if dispatcher is not None else ToolDispatcher()
    coordinator = ToolCoordinator(
        dispatcher,
        fail_fast=settings.tool_fail_fast,
        call_timeout=settings.tool_timeout,
        max_rounds=settings.max_tool_rounds,
    )

    bus = EventBus() if settings.event_bus_enabled else None

    runner = InteractionRunner(
        client,
        settings,
        coordinator,
        bus,
        tools=dispatcher.tool_definitions() or None,
    )

    logger.info(
        "Components created: %s, %d tool(s), event bus %s",
        settings.agent or settings.model,
        len(dispatcher.names),
        "enabled" if bus else "disabled",
    )
    return {
        "client": client,
        "dispatcher": dispatcher,
        "coordinator": coordinator,
        "bus": bus,
        "runner": runner,
    }


async def start_components(components: dict) -> None:
    await components["client"].start()
    bus = components.get("bus")
    if bus:
        await bus.start()


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    bus = components.get("bus")
    if bus:
        await bus.stop()

    client = components.get("client")
    if client:
        await client.close()

    logger.info("Colloquy shutdown complete.")


@asynccontextmanager
async def open_runner(
    settings: Settings | None = None,
    dispatcher: ToolDispatcher | None = None,
) -> AsyncIterator[InteractionRunner]:
    """Yield a started InteractionRunner; close client and bus on exit."""
    components = create_components(settings or Settings(), dispatcher)
    await start_components(components)
    try:
        yield components["runner"]
    finally:
        await shutdown_components(components)
