"""Conversation orchestrator -- the streaming tool loop for one task.

One run_task() call drives a task from the user's message to a final
answer or a terminal stop. Each iteration of the loop:
1. Compresses the working conversation if it is near the context limit
2. Enforces the hard cap and the user-adjustable soft limit
3. Streams one model call, forwarding every event to the UI
4. Auto-continues truncated responses (bounded)
5. Runs requested tools through the gate and appends their results

Failures of the model call right after a tool round get one local
retry when they are token overflow or network errors.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from tabagent.api.compaction import ContextCompressor, shrink_oversized_results
from tabagent.api.errors import TaskCancelled, is_network_error, is_token_overflow
from tabagent.api.gate import ToolGate
from tabagent.api.governor import IterationChoice
from tabagent.api.models import ContentBlock, Message, TextBlock, ToolResultBlock, ToolUseBlock
from tabagent.api.pending import iterate_or_cancel, wait_or_cancel
from tabagent.api.stream import StreamEvent, TurnAccumulator, notification_for_event
from tabagent.api.task import Task, TaskOutcome, TaskState
from tabagent.api.transport import ModelTransport
from tabagent.events import NotificationBus, NotificationType
from tabagent.history import TaskHistory, strip_work_notes
from tabagent.prompts import SystemPromptBuilder

logger = logging.getLogger(__name__)

MAX_CONTINUATIONS = 3

HARD_CAP_NOTICE = (
    "\n\n⚠️ **Hard limit reached ({cap} tool calls).** Task force-stopped to prevent "
    "runaway costs. Please break your request into smaller parts.\n\n"
)
TRUNCATION_NOTICE = "\n\n⚠️ *Response truncated at {tokens} tokens. Auto-continuing...*\n\n"
TRUNCATION_EXHAUSTED_NOTICE = (
    "\n\n❌ *Response truncated after {max} continuation attempts. "
    "Try breaking your request into smaller parts.*\n\n"
)
TRUNCATED_PLACEHOLDER = "[Response truncated]"

SUMMARY_REQUEST = (
    "SYSTEM: The user has stopped the tool loop after {count} tool calls. "
    "Please provide a final summary of what you accomplished and any partial results "
    "you collected. If you found some data but not all requested, share what you have."
)
SUMMARY_FAILED_NOTICE = "\n\n⚠️ *Stopped after {count} tool calls. Could not generate summary.*"

NETWORK_ERROR_RESULT = (
    "Network error occurred: {error}. The previous action may not have completed. "
    "Please acknowledge this error and either retry the action or proceed with an "
    "alternative approach."
)

# Working notes longer than this with no final answer are cut to a preview
_WORK_NOTES_MAX_CHARS = 500
_WORK_NOTES_PREVIEW_CHARS = 200


def continuation_message(tool: ToolUseBlock | None, partial_json: str) -> str:
    """User turn that resumes a response cut off by the output token limit."""
    message = "Your previous response was truncated due to length limits. "
    if tool is None:
        return message + "Please continue exactly where you left off."
    message += f'You were in the middle of calling the "{tool.name}" tool. '
    if not partial_json:
        return message + "Please complete this tool call now."
    return (
        message
        + f"The partial JSON input so far was:\n```json\n{partial_json}\n```\n"
        + "Please complete this tool call by outputting ONLY the remaining JSON "
        "(starting exactly where you left off), then close the tool call. "
        "Do not restart the tool call from the beginning."
    )


def strip_assistant_content(blocks: list[ContentBlock]) -> list[ContentBlock]:
    """Drop <work> notes from assistant text before it re-enters history."""
    stripped: list[ContentBlock] = []
    for block in blocks:
        if isinstance(block, TextBlock) and block.text:
            text = strip_work_notes(block.text)
            if text:
                block = TextBlock(text)
            elif len(block.text) > _WORK_NOTES_MAX_CHARS:
                block = TextBlock(block.text[:_WORK_NOTES_PREVIEW_CHARS] + "...")
        stripped.append(block)
    return stripped


@dataclass
class _RecoveryContext:
    """What is needed to redo the model call that follows a tool round."""

    conversation: list[Message]  # history before the round, uncompressed
    assistant: Message
    results: list[ToolResultBlock]
    tool_uses: list[ToolUseBlock]

    def rebuild(self, error: Exception) -> list[Message] | None:
        """Conversation for the retry, or None when the error is not recoverable."""
        if getattr(error, "notified", False):
            return None
        if is_token_overflow(error):
            logger.warning("Token overflow detected, feeding error back to the model")
            results = shrink_oversized_results(self.results)
        elif is_network_error(error):
            logger.warning("Network error during streaming, feeding back to the model for recovery")
            results = [
                ToolResultBlock(
                    tool_use_id=tool_use.id,
                    content=NETWORK_ERROR_RESULT.format(error=error),
                    is_error=True,
                )
                for tool_use in self.tool_uses
            ]
        else:
            return None
        return [*self.conversation, self.assistant, Message(role="user", content=results)]


class ConversationOrchestrator:
    """Runs tasks against the model, one explicit loop per task."""

    def __init__(
        self,
        transport: ModelTransport,
        gate: ToolGate,
        compressor: ContextCompressor,
        bus: NotificationBus,
        history: TaskHistory,
        prompts: SystemPromptBuilder,
        tools: list[dict[str, Any]] | None = None,
    ) -> None:
        self._transport = transport
        self._gate = gate
        self._compressor = compressor
        self._bus = bus
        self._history = history
        self._prompts = prompts
        self._tools = tools or []

    async def run_task(self, task: Task) -> TaskOutcome:
        """Drive the task to a terminal outcome.

        Cancellation ends the task with a cancelled stream_end. Any other
        escaping exception leaves the task in the ERROR state and is
        re-raised for the caller to report.
        """
        try:
            outcome = await self._loop(task)
        except TaskCancelled:
            logger.info("Task cancelled (tab=%s)", task.tab_id)
            task.transition(TaskState.CANCELLED)
            await self._bus.notify(NotificationType.STREAM_END, task.tab_id, cancelled=True)
            return TaskOutcome.CANCELLED
        except Exception:
            task.transition(TaskState.ERROR)
            raise
        task.transition(TaskState.DONE)
        await self._bus.notify(NotificationType.STREAM_END, task.tab_id)
        return outcome

    async def _loop(self, task: Task) -> TaskOutcome:
        governor = task.governor
        conversation = task.conversation
        recovery: _RecoveryContext | None = None

        while True:
            self._check_cancelled(task)
            conversation = self._compressor.maybe_compress(conversation)
            task.conversation = conversation

            if governor.hard_cap_reached:
                logger.error("Hard cap reached (%d tool calls), force stopping", governor.hard_cap)
                await self._text(task, HARD_CAP_NOTICE.format(cap=governor.hard_cap))
                return TaskOutcome.HARD_CAP

            if governor.soft_limit_reached:
                choice = await self._ask_for_more(task)
                if choice is IterationChoice.STOP:
                    logger.info("User chose immediate stop (no summary)")
                    return TaskOutcome.STOPPED
                if choice is IterationChoice.SUMMARIZE:
                    logger.info("User chose to stop, generating summary")
                    await self._summarize(task, conversation)
                    return TaskOutcome.SUMMARIZED

            if governor.tool_call_count > 0:
                logger.debug(
                    "Tool calls so far: %d/%d", governor.tool_call_count, governor.effective_limit
                )

            try:
                turn = await self._stream_turn(task, conversation)
            except TaskCancelled:
                raise
            except Exception as e:
                if task.cancelled:
                    raise TaskCancelled(task.tab_id) from e
                retry = recovery.rebuild(e) if recovery is not None else None
                if retry is None:
                    raise
                logger.info("Retrying model call after %s", type(e).__name__)
                recovery = None
                conversation = retry
                continue
            recovery = None

            logger.info(
                "Stream ended: stop_reason=%s output_tokens=%d tools=%d continuation=%d",
                turn.stop_reason,
                turn.output_tokens,
                len(turn.tool_uses),
                task.continuation_count,
            )

            if turn.truncated:
                if task.continuation_count < MAX_CONTINUATIONS:
                    task.continuation_count += 1
                    logger.warning(
                        "Response truncated at %d tokens, auto-continuing (%d/%d)",
                        turn.output_tokens,
                        task.continuation_count,
                        MAX_CONTINUATIONS,
                    )
                    await self._text(task, TRUNCATION_NOTICE.format(tokens=turn.output_tokens))
                    conversation = [
                        *conversation,
                        Message(role="assistant", content=self._partial_content(turn)),
                        Message(
                            role="user",
                            content=continuation_message(turn.partial_tool, turn.partial_tool_json),
                        ),
                    ]
                    continue
                logger.error(
                    "Response still truncated after %d continuations, giving up", MAX_CONTINUATIONS
                )
                await self._text(task, TRUNCATION_EXHAUSTED_NOTICE.format(max=MAX_CONTINUATIONS))

            tool_uses = turn.tool_uses
            if not tool_uses:
                self._history.record(task.user_message, turn.text())
                return TaskOutcome.DONE

            results: list[ToolResultBlock] = []
            for tool_use in tool_uses:
                self._check_cancelled(task)
                results.append(await self._gate.execute(task, tool_use))
            self._check_cancelled(task)

            assistant = Message(role="assistant", content=strip_assistant_content(turn.blocks))
            recovery = _RecoveryContext(conversation, assistant, results, tool_uses)
            conversation = [
                *self._compressor.maybe_compress(self._compressor.compress_history(conversation)),
                assistant,
                Message(role="user", content=results),
            ]
            task.continuation_count = 0

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _stream_turn(self, task: Task, conversation: list[Message]) -> TurnAccumulator:
        """Stream one model call, forwarding events and accumulating the turn."""
        system = await self._prompts.build(task.tab_id, task.tab_url)
        task.transition(TaskState.STREAMING)
        turn = TurnAccumulator()
        stream = self._transport.stream_message(conversation, self._tools, system)
        events = iterate_or_cancel(stream, task.cancel_event, task.tab_id)
        try:
            async for event in events:
                self._check_cancelled(task)
                await self._forward(task, event)
                turn.feed(event)
        finally:
            await events.aclose()
            await _close(stream)
        return turn

    async def _forward(self, task: Task, event: StreamEvent) -> None:
        notification = notification_for_event(event, task.tab_id)
        if notification is not None:
            await self._bus.emit(notification)

    @staticmethod
    def _partial_content(turn: TurnAccumulator) -> list[ContentBlock]:
        # Completed tool uses are left out: a tool_use needs a matching
        # tool_result in the next turn, and the next turn is plain text.
        content: list[ContentBlock] = [b for b in turn.blocks if isinstance(b, TextBlock)]
        partial_text = turn.partial_text
        if partial_text.strip():
            content.append(TextBlock(partial_text))
        return content or [TextBlock(TRUNCATED_PLACEHOLDER)]

    async def _ask_for_more(self, task: Task) -> IterationChoice:
        governor = task.governor
        logger.warning(
            "Reached max tool calls (%d/%d), asking user",
            governor.tool_call_count,
            governor.effective_limit,
        )
        task.transition(TaskState.AWAITING_ITERATION_DECISION)
        prompt_id, future = task.iteration_prompts.create()
        await self._bus.notify(
            NotificationType.ITERATION_LIMIT_REACHED,
            task.tab_id,
            prompt_id=prompt_id,
            current_iteration=governor.tool_call_count,
            limit=governor.effective_limit,
        )
        response = await task.iteration_prompts.wait(
            prompt_id, future, task.cancel_event, task.tab_id
        )
        return governor.apply(response)

    async def _summarize(self, task: Task, conversation: list[Message]) -> None:
        """Closing summary: one tool-free call, streamed to the UI as text."""
        task.transition(TaskState.SUMMARIZING)
        count = task.governor.tool_call_count
        request = [*conversation, Message(role="user", content=SUMMARY_REQUEST.format(count=count))]
        text = ""
        try:
            system = await self._prompts.build(task.tab_id, task.tab_url)
            response = await wait_or_cancel(
                self._transport.send_message(request, None, system),
                task.cancel_event,
                task.tab_id,
            )
            text = response.text()
        except TaskCancelled:
            raise
        except Exception as e:
            logger.error("Error getting summary: %s", e)
        await self._text(task, text or SUMMARY_FAILED_NOTICE.format(count=count))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _text(self, task: Task, text: str) -> None:
        await self._bus.notify(NotificationType.TEXT_DELTA, task.tab_id, text=text)

    @staticmethod
    def _check_cancelled(task: Task) -> None:
        if task.cancelled:
            raise TaskCancelled(task.tab_id)


async def _close(stream: AsyncIterator[StreamEvent]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
