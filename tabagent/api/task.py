"""Per-task state carried by the orchestrator loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from tabagent.api.governor import IterationGovernor
from tabagent.api.models import Message
from tabagent.api.pending import PendingRegistry

logger = logging.getLogger(__name__)


class TaskOutcome(Enum):
    DONE = "done"
    STOPPED = "stopped"  # user stopped at the iteration limit, no summary
    SUMMARIZED = "summarized"  # user stopped at the iteration limit, summary produced
    HARD_CAP = "hard_cap"
    CANCELLED = "cancelled"
    ERROR = "error"


class TaskState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_ITERATION_DECISION = "awaiting_iteration_decision"
    SUMMARIZING = "summarizing"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATES = frozenset({TaskState.DONE, TaskState.CANCELLED, TaskState.ERROR})


@dataclass
class Task:
    """One user request through to a final answer or terminal stop."""

    tab_id: str
    user_message: str
    conversation: list[Message]
    governor: IterationGovernor
    tab_url: str | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    confirmations: PendingRegistry[bool] = field(
        default_factory=lambda: PendingRegistry("tool-confirmation")
    )
    iteration_prompts: PendingRegistry[int] = field(
        default_factory=lambda: PendingRegistry("iteration-prompt")
    )
    continuation_count: int = 0
    state: TaskState = TaskState.IDLE

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def transition(self, state: TaskState) -> None:
        if state is not self.state:
            logger.debug("Task %s: %s -> %s", self.tab_id, self.state.value, state.value)
            self.state = state
