"""Iteration governor -- per-task tool-call accounting.

The soft limit is user-adjustable mid-task through the iteration
prompt; the hard cap is not, and wins over any "unlimited" choice.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)

HARD_TOOL_CALL_CAP = 200


class IterationChoice(Enum):
    """How the user answered an iteration-limit prompt."""

    MORE = "more"
    UNLIMITED = "unlimited"
    STOP = "stop"
    SUMMARIZE = "summarize"

    @classmethod
    def from_response(cls, value: int) -> IterationChoice:
        """Map the raw prompt answer: N>0, -1 unlimited, -2 stop, else summarize."""
        if value > 0:
            return cls.MORE
        if value == -1:
            return cls.UNLIMITED
        if value == -2:
            return cls.STOP
        return cls.SUMMARIZE


class IterationGovernor:
    """Tracks tool calls for one task against a soft limit and a hard cap."""

    def __init__(self, default_limit: int, hard_cap: int = HARD_TOOL_CALL_CAP) -> None:
        self.hard_cap = hard_cap
        self.default_limit = min(default_limit, hard_cap)
        self.tool_call_count = 0
        self.effective_limit = self.default_limit

    def reset(self) -> None:
        """Start a new task: zero the counter, restore the configured limit."""
        self.tool_call_count = 0
        self.effective_limit = self.default_limit

    def record_call(self) -> int:
        self.tool_call_count += 1
        logger.debug("Tool call count: %d/%d", self.tool_call_count, self.effective_limit)
        return self.tool_call_count

    @property
    def hard_cap_reached(self) -> bool:
        return self.tool_call_count >= self.hard_cap

    @property
    def soft_limit_reached(self) -> bool:
        # Checked before each model call, so the call that brings the count
        # to exactly effective_limit has already executed.
        return self.tool_call_count >= self.effective_limit

    def apply(self, response: int) -> IterationChoice:
        """Apply a prompt answer to the effective limit and return its meaning."""
        choice = IterationChoice.from_response(response)
        if choice is IterationChoice.UNLIMITED:
            self.effective_limit = self.hard_cap
            logger.info("Unlimited tool calls enabled (capped at %d)", self.hard_cap)
        elif choice is IterationChoice.MORE:
            self.effective_limit = min(self.tool_call_count + response, self.hard_cap)
            logger.info(
                "User allowed %d more tool calls (limit now %d)", response, self.effective_limit
            )
        return choice
