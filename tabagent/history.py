"""Task history -- sliding window of recently completed tasks.

Shared across tabs. The model reaches it through the request_history
tool; the orchestrator appends to it when a task finishes cleanly.
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MAX_TASK_HISTORY = 5
RECENT_TASKS = 3
USER_MESSAGE_MAX_CHARS = 500
RESPONSE_MAX_CHARS = 1000

_WORK_NOTES_RE = re.compile(r"<work>[\s\S]*?</work>", re.IGNORECASE)


def strip_work_notes(text: str) -> str:
    """Remove <work>...</work> working notes, keeping the final answer."""
    return _WORK_NOTES_RE.sub("", text).strip()


@dataclass
class TaskRecord:
    user_message: str
    assistant_response: str
    timestamp: float = field(default_factory=time.time)


class TaskHistory:
    """Append-only window of the last MAX_TASK_HISTORY tasks."""

    def __init__(self, capacity: int = MAX_TASK_HISTORY) -> None:
        self._tasks: deque[TaskRecord] = deque(maxlen=capacity)

    def record(self, user_message: str | None, assistant_text: str | None) -> TaskRecord | None:
        """Store a finished task. Skips entries with nothing worth keeping."""
        if not user_message or not assistant_text:
            logger.warning("Missing user message or assistant response, not recording task")
            return None

        response = strip_work_notes(assistant_text)
        if not response:
            logger.warning("Response empty after stripping work notes, not recording task")
            return None

        entry = TaskRecord(
            user_message=user_message[:USER_MESSAGE_MAX_CHARS],
            assistant_response=response[:RESPONSE_MAX_CHARS],
        )
        self._tasks.append(entry)
        logger.info("Recorded task: %.50s (%d total)", entry.user_message, len(self._tasks))
        return entry

    def recent(self, count: int = RECENT_TASKS) -> list[TaskRecord]:
        """Most recent tasks first."""
        return list(reversed(self._tasks))[:count]

    def all(self) -> list[TaskRecord]:
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)
