"""Tool executor for the conversation loop.

Provides:
- ToolExecutor: the protocol the gate calls, execute(name, input) -> result
- ToolDispatcher: in-process executor that registers async handlers with
  their JSON schemas and exposes them as Anthropic tool definitions
- request_history: built-in tool giving the model the recent task history

Browser tools themselves (DOM queries, screenshots, storage access) live
outside this package and are registered by whoever embeds it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from tabagent.history import TaskHistory

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    async def execute(self, name: str, tool_input: dict[str, Any]) -> Any: ...


class UnknownToolError(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.tool_name = name


class ToolDispatcher:
    """Registers tool handlers and executes tool calls from the model.

    Each handler is an async callable that accepts the tool input as
    **kwargs and returns any JSON-serialisable value. Exceptions raised
    by a handler propagate to the caller unchanged.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def execute(self, name: str, tool_input: dict[str, Any]) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownToolError(name)
        logger.info("Executing tool: %s", name)
        return await handler(**tool_input)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in self._schemas.items()
        ]


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


REQUEST_HISTORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Return summaries of the user's most recent completed tasks "
        "(most recent first). Use it when the request refers to earlier work."
    ),
    "properties": {},
}


def register_history_tool(dispatcher: ToolDispatcher, history: TaskHistory) -> None:
    """Register request_history, backed by the shared TaskHistory."""

    async def request_history() -> dict[str, Any]:
        tasks = history.recent()
        if not tasks:
            return {"tasks": [], "message": "No previous tasks recorded"}
        formatted = [
            {
                "taskNumber": len(tasks) - i,
                "userRequest": entry.user_message,
                "outcome": entry.assistant_response,
                "timestamp": datetime.fromtimestamp(entry.timestamp, UTC).isoformat(),
            }
            for i, entry in enumerate(tasks)
        ]
        return {
            "taskCount": len(formatted),
            "tasks": formatted,
            "note": "Most recent task listed first. Use this context to inform your current action.",
        }

    dispatcher.register("request_history", request_history, REQUEST_HISTORY_SCHEMA)
