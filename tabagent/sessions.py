"""Per-tab session registry.

Each browser tab gets a TabSession holding its autonomy mode, its
iteration governor and the task currently in flight, if any. Tasks on
different tabs run concurrently; a tab runs at most one task at a time.

The SessionManager is also the task boundary: whatever escapes the
orchestrator is turned into exactly one stream_error notification here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from tabagent.api.errors import is_token_overflow
from tabagent.api.governor import IterationGovernor
from tabagent.api.models import Message, sanitize_conversation
from tabagent.api.runner import ConversationOrchestrator
from tabagent.api.task import TERMINAL_STATES, Task, TaskOutcome, TaskState
from tabagent.config import Settings
from tabagent.events import NotificationBus, NotificationType

logger = logging.getLogger(__name__)

AUTONOMY_MODES = ("ask", "auto")

TOKEN_OVERFLOW_MESSAGE = (
    "Context too large. Try clearing the chat and starting fresh, "
    "or ask for smaller chunks of data."
)


class TaskAlreadyRunning(RuntimeError):
    def __init__(self, tab_id: str) -> None:
        super().__init__(f"A task is already running in tab {tab_id}")
        self.tab_id = tab_id


@dataclass
class TabSession:
    tab_id: str
    governor: IterationGovernor
    autonomy_mode: str | None = None  # None -> global default
    task: Task | None = None
    tasks_run: int = 0
    last_outcome: TaskOutcome | None = None

    @property
    def busy(self) -> bool:
        return self.task is not None and self.task.state not in TERMINAL_STATES


def last_user_text(conversation: list[Message]) -> str:
    """Text of the most recent user message that carries any."""
    for msg in reversed(conversation):
        if msg.role == "user":
            text = msg.text()
            if text.strip():
                return text
    return ""


class SessionManager:
    """Owns every tab's session and routes external responses to tasks."""

    def __init__(
        self,
        settings: Settings,
        bus: NotificationBus,
        orchestrator: ConversationOrchestrator | None = None,
    ) -> None:
        self._settings = settings
        self._bus = bus
        self._orchestrator = orchestrator
        self._sessions: dict[str, TabSession] = {}
        self.default_autonomy_mode = settings.default_autonomy_mode

    def set_orchestrator(self, orchestrator: ConversationOrchestrator) -> None:
        """Attach the orchestrator (created after the gate, which needs us)."""
        self._orchestrator = orchestrator

    def session(self, tab_id: str) -> TabSession:
        session = self._sessions.get(tab_id)
        if session is None:
            session = TabSession(
                tab_id=tab_id,
                governor=IterationGovernor(self._settings.max_tool_iterations),
            )
            self._sessions[tab_id] = session
        return session

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._sessions

    # ------------------------------------------------------------------
    # Autonomy mode
    # ------------------------------------------------------------------

    def set_autonomy_mode(self, tab_id: str, mode: str) -> None:
        if mode not in AUTONOMY_MODES:
            raise ValueError(f"Invalid autonomy mode: {mode!r}")
        self.session(tab_id).autonomy_mode = mode
        logger.info("Autonomy mode for tab %s: %s", tab_id, mode)

    def autonomy_mode(self, tab_id: str | None) -> str:
        session = self._sessions.get(tab_id) if tab_id is not None else None
        if session is not None and session.autonomy_mode:
            return session.autonomy_mode
        return self.default_autonomy_mode

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def start_task(
        self,
        tab_id: str,
        conversation: list[dict[str, Any]] | list[Message],
        tab_url: str | None = None,
        autonomy_mode: str | None = None,
    ) -> TaskOutcome:
        """Run one task to completion in the given tab.

        Raises TaskAlreadyRunning when the tab is busy and ValueError
        when the conversation has nothing to send. Errors raised while
        the task runs are reported as a stream_error, never re-raised.
        """
        if self._orchestrator is None:
            raise RuntimeError("No orchestrator set -- call set_orchestrator() first")

        session = self.session(tab_id)
        if session.busy:
            raise TaskAlreadyRunning(tab_id)

        messages = sanitize_conversation(conversation)
        if not messages:
            raise ValueError("Conversation is empty after sanitization")
        if autonomy_mode:
            self.set_autonomy_mode(tab_id, autonomy_mode)

        session.governor.reset()
        task = Task(
            tab_id=tab_id,
            user_message=last_user_text(messages),
            conversation=messages,
            governor=session.governor,
            tab_url=tab_url,
        )
        session.task = task
        session.tasks_run += 1
        logger.info(
            "Starting task in tab %s (%d messages, mode=%s)",
            tab_id, len(messages), self.autonomy_mode(tab_id),
        )

        try:
            outcome = await self._orchestrator.run_task(task)
        except Exception as e:
            await self._report_error(task, e)
            outcome = TaskOutcome.ERROR
        finally:
            task.confirmations.cancel_all()
            task.iteration_prompts.cancel_all()
            if task.state not in TERMINAL_STATES:
                task.transition(TaskState.CANCELLED)

        session.last_outcome = outcome
        logger.info("Task in tab %s finished: %s", tab_id, outcome.value)
        return outcome

    async def _report_error(self, task: Task, error: Exception) -> None:
        if getattr(error, "notified", False):
            logger.error("Task failed in tab %s after in-stream error: %s", task.tab_id, error)
            return
        if is_token_overflow(error):
            message = TOKEN_OVERFLOW_MESSAGE
        else:
            message = str(error) or type(error).__name__
        logger.error("Task failed in tab %s: %s", task.tab_id, error)
        await self._bus.notify(NotificationType.STREAM_ERROR, task.tab_id, error=message)

    def resolve_confirmation(self, tool_use_id: str, approved: bool) -> bool:
        for session in self._sessions.values():
            if session.task is not None and tool_use_id in session.task.confirmations:
                return session.task.confirmations.resolve(tool_use_id, bool(approved))
        logger.warning("No pending confirmation for tool %s", tool_use_id)
        return False

    def resolve_iteration_prompt(self, prompt_id: str, choice: int) -> bool:
        for session in self._sessions.values():
            if session.task is not None and prompt_id in session.task.iteration_prompts:
                return session.task.iteration_prompts.resolve(prompt_id, int(choice))
        logger.warning("No pending iteration prompt %s", prompt_id)
        return False

    def cancel(self, tab_id: str) -> bool:
        """Set the tab's cancel signal. Returns False when nothing is running."""
        session = self._sessions.get(tab_id)
        if session is None or not session.busy:
            return False
        session.task.cancel()
        logger.info("Cancel requested for tab %s", tab_id)
        return True

    def close_tab(self, tab_id: str) -> None:
        """Cancel the tab's task, drop its pending handles and forget the tab."""
        session = self._sessions.pop(tab_id, None)
        if session is None:
            return
        if session.task is not None:
            session.task.cancel()
            dropped = session.task.confirmations.cancel_all() + session.task.iteration_prompts.cancel_all()
            if dropped:
                logger.info("Dropped %d pending handles for closed tab %s", dropped, tab_id)
        logger.info("Closed tab %s", tab_id)

    def state(self) -> dict[str, Any]:
        """Debug snapshot of every session."""
        tabs = {}
        for tab_id, session in self._sessions.items():
            task = session.task
            tabs[tab_id] = {
                "autonomy_mode": self.autonomy_mode(tab_id),
                "busy": session.busy,
                "state": task.state.value if task else None,
                "tool_calls": session.governor.tool_call_count,
                "limit": session.governor.effective_limit,
                "continuations": task.continuation_count if task else 0,
                "pending_confirmations": len(task.confirmations) if task else 0,
                "pending_prompts": len(task.iteration_prompts) if task else 0,
                "tasks_run": session.tasks_run,
                "last_outcome": session.last_outcome.value if session.last_outcome else None,
            }
        return {"default_autonomy_mode": self.default_autonomy_mode, "tabs": tabs}
