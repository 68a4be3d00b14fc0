"""Tool dispatcher -- a registry of local function handlers.

The dispatcher is the default executor for ``ToolCoordinator``: calling it
with a ``FunctionCallBlock`` runs the registered handler with the call's
arguments as keyword arguments. Handler errors propagate; the coordinator
decides whether they become error results or abort the batch.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

from colloquy.content.blocks import FunctionCallBlock
from colloquy.errors import UnknownTool

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """Registers tool handlers and dispatches function calls to them.

    Handlers may be sync or async callables taking ``**kwargs``; their
    return value becomes the ``result`` of the function_result block.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema.

        ``schema`` is the parameters object; an optional top-level
        ``description`` key is lifted into the function declaration.
        """
        if name in self._handlers:
            logger.warning("Replacing handler for tool %r", name)
        self._handlers[name] = handler
        self._schemas[name] = schema

    def tool(self, name: str | None = None, schema: dict[str, Any] | None = None) -> Callable:
        """Decorator form of register()."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            tool_schema = dict(schema or {"type": "object", "properties": {}})
            if func.__doc__ and "description" not in tool_schema:
                tool_schema["description"] = inspect.cleandoc(func.__doc__).splitlines()[0]
            self.register(name or func.__name__, func, tool_schema)
            return func

        return decorator

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def dispatch(self, name: str, args: dict[str, Any]) -> Any:
        """Run the handler for ``name`` and return its result.

        Raises:
            UnknownTool: No handler registered under ``name``.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownTool(f"Unknown tool: {name}")
        result = handler(**args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def __call__(self, call: FunctionCallBlock) -> Any:
        logger.debug("Dispatching tool %s(%s) for call %s", call.name, call.arguments, call.id)
        return await self.dispatch(call.name, call.arguments)

    def tool_definitions(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """Function declarations in Interactions API format.

        Restricted to ``names`` when given; ``"*"`` in ``names`` means all.
        """
        selected = self._schemas.items()
        if names is not None and "*" not in names:
            selected = [(n, s) for n, s in self._schemas.items() if n in names]
        return [
            {
                "type": "function",
                "name": name,
                "description": schema.get("description", ""),
                "parameters": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in selected
        ]
