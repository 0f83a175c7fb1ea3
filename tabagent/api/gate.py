"""Tool execution gate.

Decides whether a tool call needs the user's confirmation, executes it
once authorized, and turns whatever the executor returns (or raises)
into a ToolResultBlock for the model.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from typing import Any

from tabagent.api.errors import TaskCancelled
from tabagent.api.models import ImageBlock, ToolResultBlock, ToolUseBlock
from tabagent.api.pending import wait_or_cancel
from tabagent.api.task import Task, TaskState
from tabagent.api.tools import ToolExecutor
from tabagent.events import NotificationBus, NotificationType

logger = logging.getLogger(__name__)

MAX_RESULT_CHARS = 50_000
TRUNCATION_MARKER = "\n... [TRUNCATED - result too large]"
CANCELLED_RESULT = "User cancelled this action."
MIN_SCREENSHOT_DATA = 100

_DATA_URL_RE = re.compile(r"^data:(image/\w+);base64,(.+)$", re.DOTALL)


def to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def result_block(tool_use_id: str, result: Any) -> ToolResultBlock:
    """Translate an executor result into a tool result block.

    A dict carrying a ``screenshot`` data URL becomes an image for model
    vision; everything else is serialized JSON, truncated when huge.
    """
    if isinstance(result, dict) and result.get("screenshot"):
        try:
            match = _DATA_URL_RE.match(str(result["screenshot"]))
            if not match:
                raise ValueError("Invalid screenshot data URL format")
            media_type, data = match.group(1), match.group(2)
            if len(data) < MIN_SCREENSHOT_DATA:
                raise ValueError("Screenshot data appears empty or corrupted")
        except ValueError as e:
            logger.error("Screenshot processing error: %s", e)
            return ToolResultBlock(
                tool_use_id=tool_use_id,
                content=(
                    f"Screenshot captured but failed to process: {e}. "
                    "Try again or use a different approach."
                ),
            )
        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=[ImageBlock(media_type=media_type, data=data)],
        )

    text = to_json(result)
    if len(text) > MAX_RESULT_CHARS:
        logger.warning("Tool result too large (%d chars), truncating", len(text))
        text = text[:MAX_RESULT_CHARS] + TRUNCATION_MARKER
    return ToolResultBlock(tool_use_id=tool_use_id, content=text)


class ToolGate:
    """Confirmation gate in front of the tool executor.

    Confirmation is required iff the tab's autonomy mode is "ask" and the
    tool is high-risk. A rejected call never counts against the task's
    iteration budget; an approved one always does, whatever its outcome.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        bus: NotificationBus,
        high_risk_tools: Iterable[str],
        autonomy_mode: Callable[[str | None], str],
    ) -> None:
        self._executor = executor
        self._bus = bus
        self.high_risk_tools = frozenset(high_risk_tools)
        self._autonomy_mode = autonomy_mode

    def is_high_risk(self, name: str) -> bool:
        return name in self.high_risk_tools

    def needs_confirmation(self, tab_id: str | None, name: str) -> bool:
        return self._autonomy_mode(tab_id) == "ask" and self.is_high_risk(name)

    async def execute(self, task: Task, tool_use: ToolUseBlock) -> ToolResultBlock:
        """Run one tool call for the task. Raises TaskCancelled when cancelled."""
        tab_id = task.tab_id

        if self.needs_confirmation(tab_id, tool_use.name):
            approved = await self._confirm(task, tool_use)
            if not approved:
                logger.info("User rejected %s (%s)", tool_use.name, tool_use.id)
                await self._bus.notify(
                    NotificationType.TOOL_USE, tab_id,
                    tool_id=tool_use.id, tool_name=tool_use.name, tool_input=tool_use.input,
                )
                await self._bus.notify(
                    NotificationType.TOOL_RESULT, tab_id,
                    tool_id=tool_use.id, result={"cancelled": True},
                )
                return ToolResultBlock(tool_use_id=tool_use.id, content=CANCELLED_RESULT)

        task.transition(TaskState.TOOL_EXECUTING)
        await self._bus.notify(
            NotificationType.TOOL_USE, tab_id,
            tool_id=tool_use.id, tool_name=tool_use.name, tool_input=tool_use.input,
        )
        task.governor.record_call()

        try:
            result = await wait_or_cancel(
                self._executor.execute(tool_use.name, tool_use.input),
                task.cancel_event,
                tab_id,
            )
        except TaskCancelled:
            raise
        except Exception as e:
            logger.warning("Tool execution error (%s): %s", tool_use.name, e)
            await self._bus.notify(
                NotificationType.TOOL_RESULT, tab_id,
                tool_id=tool_use.id, result={"error": str(e)}, is_error=True,
            )
            return ToolResultBlock(
                tool_use_id=tool_use.id,
                content=to_json({"error": str(e)}),
                is_error=True,
            )

        block = result_block(tool_use.id, result)
        await self._bus.notify(
            NotificationType.TOOL_RESULT, tab_id,
            tool_id=tool_use.id,
            result={"image": True} if block.has_image else result,
        )
        return block

    async def _confirm(self, task: Task, tool_use: ToolUseBlock) -> bool:
        task.transition(TaskState.AWAITING_CONFIRMATION)
        key, future = task.confirmations.create(tool_use.id)
        await self._bus.notify(
            NotificationType.CONFIRM_TOOL, task.tab_id,
            tool_id=tool_use.id, tool_name=tool_use.name, tool_input=tool_use.input,
        )
        return bool(await task.confirmations.wait(key, future, task.cancel_event, task.tab_id))
