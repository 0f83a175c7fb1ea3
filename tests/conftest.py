"""Shared fixtures: scripted model transport, recording bus, tool dispatcher."""

from __future__ import annotations

import json
from typing import Any

import pytest

from tabagent.api.compaction import ContextCompressor
from tabagent.api.gate import ToolGate
from tabagent.api.governor import IterationGovernor
from tabagent.api.models import ApiResponse, Message
from tabagent.api.runner import ConversationOrchestrator
from tabagent.api.stream import StreamEvent
from tabagent.api.task import Task
from tabagent.api.tools import ToolDispatcher
from tabagent.config import Settings
from tabagent.events import Notification, NotificationBus, NotificationType
from tabagent.history import TaskHistory
from tabagent.prompts import PromptLoader, SystemPromptBuilder

# ---------------------------------------------------------------------------
# Scripted stream helpers
# ---------------------------------------------------------------------------


def text_turn(text: str, stop_reason: str = "end_turn", output_tokens: int = 12) -> list[StreamEvent]:
    """Events of a model turn that answers with one text block."""
    return [
        StreamEvent(type="message_start", usage={"input_tokens": 100}),
        StreamEvent(type="content_block_start", index=0, block_type="text"),
        StreamEvent(type="content_block_delta", index=0, delta_type="text_delta", text=text),
        StreamEvent(type="content_block_stop", index=0),
        StreamEvent(type="message_delta", stop_reason=stop_reason, usage={"output_tokens": output_tokens}),
        StreamEvent(type="message_stop"),
    ]


def tool_turn(
    *calls: tuple[str, str, dict[str, Any]],
    text: str = "",
) -> list[StreamEvent]:
    """Events of a model turn requesting (tool_id, name, input) calls."""
    events = [StreamEvent(type="message_start", usage={"input_tokens": 100})]
    index = 0
    if text:
        events += [
            StreamEvent(type="content_block_start", index=0, block_type="text"),
            StreamEvent(type="content_block_delta", index=0, delta_type="text_delta", text=text),
            StreamEvent(type="content_block_stop", index=0),
        ]
        index = 1
    for tool_id, name, tool_input in calls:
        raw = json.dumps(tool_input)
        events += [
            StreamEvent(
                type="content_block_start", index=index, block_type="tool_use",
                tool_id=tool_id, tool_name=name,
            ),
            StreamEvent(
                type="content_block_delta", index=index, delta_type="input_json_delta",
                partial_json=raw[: len(raw) // 2],
            ),
            StreamEvent(
                type="content_block_delta", index=index, delta_type="input_json_delta",
                partial_json=raw[len(raw) // 2:],
            ),
            StreamEvent(type="content_block_stop", index=index),
        ]
        index += 1
    events += [
        StreamEvent(type="message_delta", stop_reason="tool_use", usage={"output_tokens": 30}),
        StreamEvent(type="message_stop"),
    ]
    return events


def truncated_tool_turn(tool_id: str, name: str, partial_json: str) -> list[StreamEvent]:
    """A turn cut off by max_tokens in the middle of a tool argument."""
    return [
        StreamEvent(type="message_start", usage={"input_tokens": 100}),
        StreamEvent(
            type="content_block_start", index=0, block_type="tool_use",
            tool_id=tool_id, tool_name=name,
        ),
        StreamEvent(
            type="content_block_delta", index=0, delta_type="input_json_delta",
            partial_json=partial_json,
        ),
        StreamEvent(type="message_delta", stop_reason="max_tokens", usage={"output_tokens": 8192}),
        StreamEvent(type="message_stop"),
    ]


class FakeTransport:
    """ModelTransport that replays scripted turns.

    Each script entry is a list of StreamEvents, or an exception raised
    when the call is made. Calls are recorded for inspection.
    """

    def __init__(self, turns: list[Any] | None = None, summary: Any = None) -> None:
        self.turns = list(turns or [])
        self.summary = summary
        self.calls: list[dict[str, Any]] = []
        self.one_shot_calls: list[dict[str, Any]] = []

    async def stream_message(self, messages, tools=None, system=None):
        self.calls.append({"messages": list(messages), "tools": tools, "system": system})
        if not self.turns:
            raise AssertionError("No scripted turn left")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        for event in turn:
            yield event

    async def send_message(self, messages, tools=None, system=None):
        self.one_shot_calls.append({"messages": list(messages), "tools": tools, "system": system})
        if isinstance(self.summary, Exception):
            raise self.summary
        if self.summary is None:
            return ApiResponse(content=[], stop_reason="end_turn")
        return ApiResponse(content=[{"type": "text", "text": self.summary}], stop_reason="end_turn")


class Recorder:
    """Collects every notification emitted on a bus."""

    def __init__(self, bus: NotificationBus) -> None:
        self.notifications: list[Notification] = []
        bus.on_any(self._record)

    async def _record(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def types(self) -> list[NotificationType]:
        return [n.type for n in self.notifications]

    def of(self, kind: NotificationType) -> list[Notification]:
        return [n for n in self.notifications if n.type == kind]

    def texts(self) -> list[str]:
        return [n.data["text"] for n in self.of(NotificationType.TEXT_DELTA)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(ANTHROPIC_API_KEY="sk-ant-test-key", _env_file=None)


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def recorder(bus) -> Recorder:
    return Recorder(bus)


@pytest.fixture
def history() -> TaskHistory:
    return TaskHistory()


@pytest.fixture
def dispatcher() -> ToolDispatcher:
    """Dispatcher with a handful of fake browser tools."""
    d = ToolDispatcher()

    async def get_page_text(selector: str = "body") -> dict:
        return {"text": f"content of {selector}"}

    async def navigate(url: str) -> dict:
        return {"navigated": url}

    async def boom() -> dict:
        raise RuntimeError("boom")

    d.register("get_page_text", get_page_text, {"type": "object", "description": "Read text"})
    d.register("navigate", navigate, {"type": "object", "description": "Go to a URL"})
    d.register("boom", boom, {"type": "object", "description": "Always fails"})
    return d


class Harness:
    """An orchestrator wired to fakes, plus helpers to run one task."""

    def __init__(self, transport, bus, dispatcher, history, mode="auto", max_iterations=15) -> None:
        self.transport = transport
        self.bus = bus
        self.mode = mode
        self.max_iterations = max_iterations
        self.gate = ToolGate(
            dispatcher, bus, ["navigate", "click_element"], lambda tab_id: self.mode
        )
        prompts = SystemPromptBuilder(PromptLoader(), "missing-prompt.txt", lambda tab_id: self.mode)
        self.orchestrator = ConversationOrchestrator(
            transport=transport,
            gate=self.gate,
            compressor=ContextCompressor(),
            bus=bus,
            history=history,
            prompts=prompts,
            tools=dispatcher.tool_definitions(),
        )

    def task(self, text: str = "Find the price", tab_id: str = "tab-1") -> Task:
        return Task(
            tab_id=tab_id,
            user_message=text,
            conversation=[Message(role="user", content=text)],
            governor=IterationGovernor(self.max_iterations),
        )

    async def run(self, task: Task | None = None):
        task = task or self.task()
        return task, await self.orchestrator.run_task(task)


@pytest.fixture
def make_harness(bus, dispatcher, history):
    def _make(turns, mode="auto", summary=None, max_iterations=15) -> Harness:
        return Harness(
            FakeTransport(turns, summary=summary), bus, dispatcher, history,
            mode=mode, max_iterations=max_iterations,
        )

    return _make
