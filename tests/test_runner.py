"""Tests for ConversationOrchestrator.run_task().

The model is a FakeTransport replaying scripted stream events; tools are
a real ToolDispatcher with fake handlers. Each test drives one task to a
terminal outcome and inspects the notifications and the requests the
model would have received.
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import Harness, text_turn, tool_turn, truncated_tool_turn

from tabagent.api.errors import ApiError, ContextOverflowError, ModelStreamError, TransportError
from tabagent.api.models import TextBlock, ToolUseBlock
from tabagent.api.runner import MAX_CONTINUATIONS, continuation_message, strip_assistant_content
from tabagent.api.stream import StreamEvent
from tabagent.api.task import TaskOutcome, TaskState
from tabagent.events import NotificationType


class TestSimpleTurns:
    """Turns without tools."""

    @pytest.mark.asyncio
    async def test_text_answer_finishes_task(self, make_harness, recorder, history):
        """A tool-free turn ends the task with stream_end and a history entry."""
        h = make_harness([text_turn("<work>thinking</work>The price is $5.")])
        task, outcome = await h.run()

        assert outcome is TaskOutcome.DONE
        assert task.state is TaskState.DONE
        assert recorder.types()[-1] == NotificationType.STREAM_END
        assert recorder.texts() == ["<work>thinking</work>The price is $5."]
        assert history.recent()[0].assistant_response == "The price is $5."
        assert history.recent()[0].user_message == "Find the price"

    @pytest.mark.asyncio
    async def test_every_event_forwarded(self, make_harness, recorder):
        """Token usage, block stop and text deltas reach the UI."""
        h = make_harness([text_turn("hi")])
        await h.run()

        types = recorder.types()
        assert types.count(NotificationType.TOKEN_USAGE) == 2
        assert NotificationType.BLOCK_STOP in types
        assert NotificationType.TEXT_DELTA in types

    @pytest.mark.asyncio
    async def test_system_prompt_carries_mode(self, make_harness):
        """System blocks end with the autonomy mode line."""
        h = make_harness([text_turn("hi")], mode="ask")
        await h.run()

        system = h.transport.calls[0]["system"]
        assert system[0]["cache_control"] == {"type": "ephemeral"}
        assert "Mode: CONFIRM" in system[-1]["text"]

    @pytest.mark.asyncio
    async def test_unclassified_error_propagates(self, make_harness):
        """Errors before any tool round have no recovery."""
        h = make_harness([ApiError("Rate limit exceeded", status_code=429)])
        task = h.task()
        with pytest.raises(ApiError):
            await h.orchestrator.run_task(task)
        assert task.state is TaskState.ERROR

    @pytest.mark.asyncio
    async def test_in_stream_error_notified_once(self, make_harness, recorder):
        """An SSE error event is forwarded once and ends the task."""
        h = make_harness([[
            StreamEvent(type="message_start", usage={"input_tokens": 10}),
            StreamEvent(type="error", error_type="overloaded_error", error_message="Overloaded"),
        ]])
        with pytest.raises(ModelStreamError) as exc_info:
            await h.run()

        assert exc_info.value.notified
        errors = recorder.of(NotificationType.STREAM_ERROR)
        assert len(errors) == 1
        assert errors[0].data["error"] == "Overloaded"
        assert NotificationType.STREAM_END not in recorder.types()


class TestToolRounds:
    """Tool execution and conversation growth."""

    @pytest.mark.asyncio
    async def test_tool_result_fed_back(self, make_harness, recorder):
        """Results go back as one user message after the assistant tool_use turn."""
        h = make_harness([
            tool_turn(("toolu_1", "get_page_text", {"selector": "h1"}), text="Let me look."),
            text_turn("Done."),
        ])
        task, outcome = await h.run()

        assert outcome is TaskOutcome.DONE
        assert task.governor.tool_call_count == 1
        messages = h.transport.calls[1]["messages"]
        assert [m.role for m in messages] == ["user", "assistant", "user"]
        assert messages[1].tool_uses[0].input == {"selector": "h1"}
        result = messages[2].tool_results[0]
        assert result.tool_use_id == "toolu_1"
        assert result.content == '{"text":"content of h1"}'
        assert not result.is_error

        tool_results = recorder.of(NotificationType.TOOL_RESULT)
        assert tool_results[0].data["result"] == {"text": "content of h1"}

    @pytest.mark.asyncio
    async def test_tool_failure_becomes_error_result(self, make_harness, recorder):
        """A raising tool yields an is_error result and the loop continues."""
        h = make_harness([tool_turn(("toolu_1", "boom", {})), text_turn("It failed.")])
        task, outcome = await h.run()

        assert outcome is TaskOutcome.DONE
        result = h.transport.calls[1]["messages"][-1].tool_results[0]
        assert result.is_error
        assert result.content == '{"error":"boom"}'
        assert task.governor.tool_call_count == 1
        assert recorder.of(NotificationType.TOOL_RESULT)[0].data["is_error"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool_reported_to_model(self, make_harness):
        h = make_harness([tool_turn(("toolu_1", "no_such_tool", {})), text_turn("ok")])
        await h.run()

        result = h.transport.calls[1]["messages"][-1].tool_results[0]
        assert result.is_error
        assert "Unknown tool: no_such_tool" in result.content

    @pytest.mark.asyncio
    async def test_tools_run_in_order(self, make_harness, recorder):
        h = make_harness([
            tool_turn(
                ("toolu_1", "get_page_text", {"selector": "a"}),
                ("toolu_2", "get_page_text", {"selector": "b"}),
            ),
            text_turn("ok"),
        ])
        await h.run()

        ids = [n.data["tool_id"] for n in recorder.of(NotificationType.TOOL_USE)]
        assert ids == ["toolu_1", "toolu_2"]
        results = h.transport.calls[1]["messages"][-1].tool_results
        assert [r.tool_use_id for r in results] == ["toolu_1", "toolu_2"]

    @pytest.mark.asyncio
    async def test_work_notes_stripped_from_history(self, make_harness):
        h = make_harness([
            tool_turn(("toolu_1", "get_page_text", {}), text="<work>plan</work>Checking."),
            text_turn("ok"),
        ])
        await h.run()

        assistant = h.transport.calls[1]["messages"][1]
        assert assistant.content[0] == TextBlock("Checking.")


class TestConfirmation:
    """High-risk tools under ask mode."""

    @pytest.mark.asyncio
    async def test_approved_navigation_counts(self, make_harness, bus, recorder):
        """Approval runs the tool and counts it exactly once."""
        h = make_harness(
            [tool_turn(("toolu_nav", "navigate", {"url": "https://example.com"})), text_turn("ok")],
            mode="ask",
        )
        task = h.task()

        async def approve(notification):
            task.confirmations.resolve(notification.data["tool_id"], True)

        bus.on(NotificationType.CONFIRM_TOOL, approve)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.DONE
        assert task.governor.tool_call_count == 1
        types = recorder.types()
        assert types.index(NotificationType.CONFIRM_TOOL) < types.index(NotificationType.TOOL_USE)
        result = h.transport.calls[1]["messages"][-1].tool_results[0]
        assert result.content == '{"navigated":"https://example.com"}'

    @pytest.mark.asyncio
    async def test_rejected_tool_not_counted(self, make_harness, bus, recorder):
        h = make_harness(
            [tool_turn(("toolu_nav", "navigate", {"url": "https://example.com"})), text_turn("ok")],
            mode="ask",
        )
        task = h.task()

        async def reject(notification):
            task.confirmations.resolve(notification.data["tool_id"], False)

        bus.on(NotificationType.CONFIRM_TOOL, reject)
        await h.run(task)

        assert task.governor.tool_call_count == 0
        result = h.transport.calls[1]["messages"][-1].tool_results[0]
        assert result.content == "User cancelled this action."
        assert recorder.of(NotificationType.TOOL_RESULT)[0].data["result"] == {"cancelled": True}

    @pytest.mark.asyncio
    async def test_auto_mode_skips_confirmation(self, make_harness, recorder):
        h = make_harness(
            [tool_turn(("toolu_nav", "navigate", {"url": "https://example.com"})), text_turn("ok")],
            mode="auto",
        )
        task, _ = await h.run()

        assert NotificationType.CONFIRM_TOOL not in recorder.types()
        assert task.governor.tool_call_count == 1

    @pytest.mark.asyncio
    async def test_low_risk_tool_never_confirmed(self, make_harness, recorder):
        h = make_harness([tool_turn(("toolu_1", "get_page_text", {})), text_turn("ok")], mode="ask")
        await h.run()
        assert NotificationType.CONFIRM_TOOL not in recorder.types()


class TestTruncation:
    """Auto-continuation of responses cut off by max_tokens."""

    @pytest.mark.asyncio
    async def test_three_continuations_then_notice(self, make_harness, recorder):
        """Four truncated turns in a row: exactly 3 continuations, then a terminal notice."""
        partial = '{"fields": [{"name": "email", "val'
        h = make_harness([truncated_tool_turn("toolu_f", "fill_form", partial) for _ in range(4)])
        task, outcome = await h.run()

        assert outcome is TaskOutcome.DONE
        assert len(h.transport.calls) == MAX_CONTINUATIONS + 1
        texts = recorder.texts()
        assert sum("Auto-continuing" in t for t in texts) == 3
        assert "continuation attempts" in texts[-1]
        assert recorder.types()[-1] == NotificationType.STREAM_END

    @pytest.mark.asyncio
    async def test_continuation_carries_partial_json(self, make_harness):
        partial = '{"selector": "#main", "te'
        h = make_harness([truncated_tool_turn("toolu_t", "type_text", partial), text_turn("ok")])
        await h.run()

        messages = h.transport.calls[1]["messages"]
        assert messages[-2].role == "assistant"
        assert messages[-2].content == [TextBlock("[Response truncated]")]
        continuation = messages[-1].content
        assert 'calling the "type_text" tool' in continuation
        assert partial in continuation

    @pytest.mark.asyncio
    async def test_truncated_text_continues(self, make_harness):
        h = make_harness([text_turn("Part one", stop_reason="max_tokens"), text_turn(" part two")])
        await h.run()

        messages = h.transport.calls[1]["messages"]
        assert messages[-2].content == [TextBlock("Part one")]
        assert messages[-1].content.endswith("Please continue exactly where you left off.")

    def test_continuation_without_json(self):
        tool = ToolUseBlock(id="t", name="navigate")
        assert continuation_message(tool, "").endswith("Please complete this tool call now.")


class TestIterationLimit:
    """Soft limit prompt and hard cap."""

    def _answer(self, bus, task, value):
        async def respond(notification):
            task.iteration_prompts.resolve(notification.data["prompt_id"], value)

        bus.on(NotificationType.ITERATION_LIMIT_REACHED, respond)

    @pytest.mark.asyncio
    async def test_call_reaching_limit_still_executes(self, make_harness, bus, recorder):
        """With limit 2, a turn asking for 2 tools runs both before the prompt."""
        h = make_harness(
            [tool_turn(("toolu_1", "get_page_text", {}), ("toolu_2", "get_page_text", {}))],
            max_iterations=2,
        )
        task = h.task()
        self._answer(bus, task, -2)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.STOPPED
        assert task.governor.tool_call_count == 2
        assert len(h.transport.calls) == 1
        prompt = recorder.of(NotificationType.ITERATION_LIMIT_REACHED)[0]
        assert prompt.data["current_iteration"] == 2
        assert recorder.types()[-1] == NotificationType.STREAM_END

    @pytest.mark.asyncio
    async def test_more_iterations_raise_limit(self, make_harness, bus):
        h = make_harness(
            [tool_turn(("toolu_1", "get_page_text", {})), text_turn("done")],
            max_iterations=1,
        )
        task = h.task()
        self._answer(bus, task, 5)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.DONE
        assert task.governor.effective_limit == 6

    @pytest.mark.asyncio
    async def test_unlimited_capped(self, make_harness, bus):
        h = make_harness(
            [tool_turn(("toolu_1", "get_page_text", {})), text_turn("done")],
            max_iterations=1,
        )
        task = h.task()
        self._answer(bus, task, -1)
        await h.run(task)
        assert task.governor.effective_limit == 200

    @pytest.mark.asyncio
    async def test_stop_with_summary(self, make_harness, bus, recorder):
        h = make_harness(
            [tool_turn(("toolu_1", "get_page_text", {}))],
            max_iterations=1,
            summary="Found the header text.",
        )
        task = h.task()
        self._answer(bus, task, 0)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.SUMMARIZED
        call = h.transport.one_shot_calls[0]
        assert call["tools"] is None
        assert call["messages"][-1].content.startswith(
            "SYSTEM: The user has stopped the tool loop after 1 tool calls."
        )
        assert recorder.texts()[-1] == "Found the header text."
        assert recorder.types()[-1] == NotificationType.STREAM_END

    @pytest.mark.asyncio
    async def test_summary_failure_notice(self, make_harness, bus, recorder):
        h = make_harness(
            [tool_turn(("toolu_1", "get_page_text", {}))],
            max_iterations=1,
            summary=RuntimeError("API down"),
        )
        task = h.task()
        self._answer(bus, task, 0)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.SUMMARIZED
        assert "Could not generate summary" in recorder.texts()[-1]

    @pytest.mark.asyncio
    async def test_hard_cap_stops_before_model_call(self, make_harness, recorder):
        h = make_harness([text_turn("never")])
        task = h.task()
        task.governor.apply(-1)
        task.governor.tool_call_count = 200
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.HARD_CAP
        assert h.transport.calls == []
        assert "Hard limit reached (200 tool calls)" in recorder.texts()[0]


class TestRecovery:
    """One local retry after token overflow or network failure."""

    @pytest.mark.asyncio
    async def test_token_overflow_shrinks_results(self, make_harness, dispatcher):
        async def dump() -> dict:
            return {"data": "x" * 5000}

        dispatcher.register("dump", dump, {"type": "object"})
        h = make_harness([
            tool_turn(("toolu_1", "dump", {})),
            ContextOverflowError("prompt is too long: 250000 tokens > 200000 maximum", status_code=400),
            text_turn("Trying a smaller query."),
        ])
        task, outcome = await h.run()

        assert outcome is TaskOutcome.DONE
        assert len(h.transport.calls) == 3
        result = h.transport.calls[2]["messages"][-1].tool_results[0]
        assert result.is_error
        assert result.content.startswith("Error: Tool result was too large (5KB)")
        assert task.governor.tool_call_count == 1

    @pytest.mark.asyncio
    async def test_network_error_synthesizes_results(self, make_harness):
        h = make_harness([
            tool_turn(("toolu_1", "get_page_text", {}), ("toolu_2", "get_page_text", {})),
            TransportError("connection reset"),
            text_turn("Retrying."),
        ])
        _, outcome = await h.run()

        assert outcome is TaskOutcome.DONE
        results = h.transport.calls[2]["messages"][-1].tool_results
        assert [r.tool_use_id for r in results] == ["toolu_1", "toolu_2"]
        assert all(r.is_error and "connection reset" in r.content for r in results)

    @pytest.mark.asyncio
    async def test_second_failure_propagates(self, make_harness):
        h = make_harness([
            tool_turn(("toolu_1", "get_page_text", {})),
            TransportError("connection reset"),
            TransportError("connection reset again"),
        ])
        task = h.task()
        with pytest.raises(TransportError):
            await h.orchestrator.run_task(task)
        assert len(h.transport.calls) == 3
        assert task.state is TaskState.ERROR

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, make_harness):
        h = make_harness([
            tool_turn(("toolu_1", "get_page_text", {})),
            ApiError("Invalid API key", status_code=401),
        ])
        with pytest.raises(ApiError):
            await h.run()
        assert len(h.transport.calls) == 2


class StalledTransport:
    """Model stream that sends message_start and then never produces another event."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.aborted = False

    async def stream_message(self, messages, tools=None, system=None):
        yield StreamEvent(type="message_start", usage={"input_tokens": 10})
        try:
            self.started.set()
            await asyncio.Event().wait()
        finally:
            self.aborted = True


class FailsOnCancelTransport:
    """Model stream whose connection drops right as the user cancels."""

    task = None

    async def stream_message(self, messages, tools=None, system=None):
        self.task.cancel()
        raise TransportError("connection reset")
        yield  # makes this an async generator


class TestCancellation:
    """Cooperative cancellation at every suspension point."""

    @pytest.mark.asyncio
    async def test_cancel_during_confirmation(self, make_harness, bus, recorder):
        h = make_harness([tool_turn(("toolu_nav", "navigate", {"url": "x"}))], mode="ask")
        task = h.task()

        async def cancel(notification):
            task.cancel()

        bus.on(NotificationType.CONFIRM_TOOL, cancel)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.CANCELLED
        assert task.state is TaskState.CANCELLED
        assert task.governor.tool_call_count == 0
        end = recorder.of(NotificationType.STREAM_END)
        assert len(end) == 1 and end[0].data["cancelled"] is True
        assert len(task.confirmations) == 0

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, make_harness, bus, recorder):
        h = make_harness([text_turn("partial answer")])
        task = h.task()

        async def cancel(notification):
            task.cancel()

        bus.on(NotificationType.TEXT_DELTA, cancel)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.CANCELLED
        # block_stop and later events are never forwarded
        assert NotificationType.BLOCK_STOP not in recorder.types()

    @pytest.mark.asyncio
    async def test_cancel_during_iteration_prompt(self, make_harness, bus):
        h = make_harness([tool_turn(("toolu_1", "get_page_text", {}))], max_iterations=1)
        task = h.task()

        async def cancel(notification):
            task.cancel()

        bus.on(NotificationType.ITERATION_LIMIT_REACHED, cancel)
        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.CANCELLED
        assert len(task.iteration_prompts) == 0

    @pytest.mark.asyncio
    async def test_cancel_while_stream_stalls(self, bus, dispatcher, history, recorder):
        """A stream that stops sending events is aborted as soon as the task is cancelled."""
        transport = StalledTransport()
        h = Harness(transport, bus, dispatcher, history)
        task = h.task()
        running = asyncio.create_task(h.orchestrator.run_task(task))
        await asyncio.wait_for(transport.started.wait(), timeout=1)

        task.cancel()
        outcome = await asyncio.wait_for(running, timeout=2)

        assert outcome is TaskOutcome.CANCELLED
        assert task.state is TaskState.CANCELLED
        assert transport.aborted
        assert recorder.of(NotificationType.STREAM_END)[-1].data == {"cancelled": True}
        assert NotificationType.STREAM_ERROR not in recorder.types()

    @pytest.mark.asyncio
    async def test_error_after_cancel_is_cancellation(self, bus, dispatcher, history, recorder):
        """A transport failure surfacing after cancel ends the task as cancelled, not failed."""
        transport = FailsOnCancelTransport()
        h = Harness(transport, bus, dispatcher, history)
        task = h.task()
        transport.task = task

        _, outcome = await h.run(task)

        assert outcome is TaskOutcome.CANCELLED
        assert task.state is TaskState.CANCELLED
        assert recorder.of(NotificationType.STREAM_END)[-1].data == {"cancelled": True}


class TestStripAssistantContent:
    def test_long_notes_without_answer_truncated(self):
        notes = "<work>" + "a" * 600 + "</work>"
        stripped = strip_assistant_content([TextBlock(notes)])
        assert stripped[0].text == notes[:200] + "..."

    def test_short_notes_kept(self):
        stripped = strip_assistant_content([TextBlock("<work>x</work>")])
        assert stripped[0].text == "<work>x</work>"

    def test_tool_uses_untouched(self):
        block = ToolUseBlock(id="t", name="navigate", input={"url": "u"})
        assert strip_assistant_content([block]) == [block]
