"""UI notification channel for tabagent.

Notifications are pure data describing what the conversation loop is
doing (text arriving, tools running, limits reached). Handlers are
called in registration order for each notification; errors are
isolated so one broken subscriber never stalls a task.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class NotificationType(StrEnum):
    TOKEN_USAGE = "token_usage"
    TEXT_DELTA = "text_delta"
    TOOL_USE_START = "tool_use_start"
    TOOL_INPUT_DELTA = "tool_input_delta"
    BLOCK_STOP = "block_stop"
    TOOL_USE = "tool_use"
    CONFIRM_TOOL = "confirm_tool"
    TOOL_RESULT = "tool_result"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    STREAM_END = "stream_end"
    STREAM_ERROR = "stream_error"


# Notifications after which no more will arrive for the task
TERMINAL_TYPES = frozenset({NotificationType.STREAM_END, NotificationType.STREAM_ERROR})


@dataclass
class Notification:
    """A typed UI notification scoped to one tab."""

    type: NotificationType
    tab_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "tab_id": self.tab_id, **self.data}


# Handler type: async function taking a Notification
NotificationHandler = Callable[[Notification], Awaitable[None]]


class NotificationBus:
    """In-process notification fan-out with error isolation.

    Handlers registered via on() receive one notification type;
    handlers registered via on_any() receive everything. emit() awaits
    all handlers so ordering per tab is exactly emission order.
    """

    def __init__(self) -> None:
        self._handlers: dict[NotificationType, list[NotificationHandler]] = defaultdict(list)
        self._any_handlers: list[NotificationHandler] = []

    def on(self, notification_type: NotificationType, handler: NotificationHandler) -> None:
        """Register a handler for one notification type. Can register multiple."""
        self._handlers[notification_type].append(handler)
        logger.debug("Registered handler for '%s': %s", notification_type, handler.__qualname__)

    def on_any(self, handler: NotificationHandler) -> None:
        self._any_handlers.append(handler)

    def off(self, handler: NotificationHandler) -> None:
        """Remove a handler from every registration it holds."""
        if handler in self._any_handlers:
            self._any_handlers.remove(handler)
        for handlers in self._handlers.values():
            if handler in handlers:
                handlers.remove(handler)

    async def emit(self, notification: Notification) -> None:
        handlers = [*self._handlers.get(notification.type, []), *self._any_handlers]
        for handler in handlers:
            await self._safe_handle(handler, notification)

    async def notify(
        self,
        notification_type: NotificationType,
        tab_id: str | None = None,
        **data: Any,
    ) -> None:
        """Shorthand for emit(Notification(...))."""
        await self.emit(Notification(type=notification_type, tab_id=tab_id, data=data))

    async def _safe_handle(self, handler: NotificationHandler, notification: Notification) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(notification)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for notification %s",
                handler.__qualname__,
                notification.type,
            )

    @property
    def handler_count(self) -> int:
        return len(self._any_handlers) + sum(len(h) for h in self._handlers.values())
