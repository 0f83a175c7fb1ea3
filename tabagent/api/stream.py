"""Event stream adapter and content accumulator.

The transport yields StreamEvent objects parsed from Anthropic SSE
payloads. Two independent consumers read each event: TurnAccumulator
assembles the turn's content blocks, and notification_for_event()
turns the same event into a UI notification.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from tabagent.api.errors import ModelStreamError
from tabagent.api.models import ContentBlock, TextBlock, ToolUseBlock
from tabagent.events import Notification, NotificationType

logger = logging.getLogger(__name__)

STOP_MAX_TOKENS = "max_tokens"


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # message_start, content_block_start/delta/stop, message_delta, message_stop, error
    index: int = 0
    block_type: str = ""  # text | tool_use (content_block_start)
    delta_type: str = ""  # text_delta | input_json_delta (content_block_delta)
    text: str = ""
    partial_json: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    error_type: str = ""
    error_message: str = ""


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE payload into a StreamEvent.

    ping and unknown event types return None. stop_reason lives in
    message_delta.delta, usage of the input side in message_start.
    """
    event_type = data.get("type")

    if event_type == "message_start":
        usage = (data.get("message") or {}).get("usage") or {}
        return StreamEvent(type="message_start", usage=dict(usage))

    if event_type == "content_block_start":
        block = data.get("content_block") or {}
        return StreamEvent(
            type="content_block_start",
            index=data.get("index", 0),
            block_type=block.get("type", ""),
            tool_id=block.get("id", ""),
            tool_name=block.get("name", ""),
        )

    if event_type == "content_block_delta":
        delta = data.get("delta") or {}
        return StreamEvent(
            type="content_block_delta",
            index=data.get("index", 0),
            delta_type=delta.get("type", ""),
            text=delta.get("text") or "",
            partial_json=delta.get("partial_json") or "",
        )

    if event_type == "content_block_stop":
        return StreamEvent(type="content_block_stop", index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="message_delta",
            stop_reason=(data.get("delta") or {}).get("stop_reason") or "",
            usage=dict(data.get("usage") or {}),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    if event_type == "error":
        error = data.get("error") or {}
        return StreamEvent(
            type="error",
            error_type=error.get("type", "unknown"),
            error_message=error.get("message", "Stream error"),
        )

    return None


def notification_for_event(event: StreamEvent, tab_id: str | None = None) -> Notification | None:
    """Translate a stream event into a UI notification (None when silent)."""

    def make(kind: NotificationType, **data: Any) -> Notification:
        return Notification(type=kind, tab_id=tab_id, data=data)

    if event.type == "message_start" and event.usage:
        return make(
            NotificationType.TOKEN_USAGE,
            input_tokens=event.usage.get("input_tokens", 0),
            cache_creation_tokens=event.usage.get("cache_creation_input_tokens", 0),
            cache_read_tokens=event.usage.get("cache_read_input_tokens", 0),
        )
    if event.type == "content_block_start" and event.block_type == "tool_use":
        return make(NotificationType.TOOL_USE_START, tool_id=event.tool_id, tool_name=event.tool_name)
    if event.type == "content_block_delta":
        if event.delta_type == "text_delta":
            return make(NotificationType.TEXT_DELTA, text=event.text)
        if event.delta_type == "input_json_delta":
            return make(NotificationType.TOOL_INPUT_DELTA, partial_json=event.partial_json)
        return None
    if event.type == "content_block_stop":
        return make(NotificationType.BLOCK_STOP, index=event.index)
    if event.type == "message_delta" and event.usage.get("output_tokens"):
        return make(NotificationType.TOKEN_USAGE, output_tokens=event.usage["output_tokens"])
    if event.type == "error":
        return make(NotificationType.STREAM_ERROR, error=event.error_message or "Stream error")
    return None


class TurnAccumulator:
    """Streaming turn state: assembles deltas into complete content blocks.

    One instance per model call. Text deltas concatenate per block
    index; tool input JSON is kept as a raw string until its block
    stops, then parsed (a parse failure degrades to an empty object).
    """

    def __init__(self) -> None:
        self.blocks: list[ContentBlock] = []
        self.stop_reason: str = ""
        self.output_tokens: int = 0
        self.input_tokens: int = 0
        self._text: dict[int, str] = {}
        self._tool: dict[int, ToolUseBlock] = {}
        self._tool_json: dict[int, str] = {}

    def feed(self, event: StreamEvent) -> None:
        if event.type == "message_start":
            self.input_tokens = event.usage.get("input_tokens", 0)

        elif event.type == "content_block_start":
            if event.block_type == "tool_use":
                self._tool[event.index] = ToolUseBlock(id=event.tool_id, name=event.tool_name)
                self._tool_json[event.index] = ""
            else:
                self._text[event.index] = ""

        elif event.type == "content_block_delta":
            if event.delta_type == "text_delta":
                self._text[event.index] = self._text.get(event.index, "") + event.text
            elif event.delta_type == "input_json_delta" and event.index in self._tool:
                self._tool_json[event.index] += event.partial_json

        elif event.type == "content_block_stop":
            self._close_block(event.index)

        elif event.type == "message_delta":
            if event.stop_reason:
                self.stop_reason = event.stop_reason
            if event.usage.get("output_tokens"):
                self.output_tokens = event.usage["output_tokens"]

        elif event.type == "error":
            raise ModelStreamError(event.error_type, event.error_message)

    def _close_block(self, index: int) -> None:
        text = self._text.pop(index, None)
        if text:
            self.blocks.append(TextBlock(text))
        tool = self._tool.pop(index, None)
        if tool is not None:
            raw = self._tool_json.pop(index, "")
            try:
                parsed = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                logger.warning("Failed to parse tool input JSON for %s: %.200s", tool.name, raw)
                parsed = {}
            tool.input = parsed if isinstance(parsed, dict) else {}
            self.blocks.append(tool)

    # ------------------------------------------------------------------
    # Turn inspection
    # ------------------------------------------------------------------

    @property
    def truncated(self) -> bool:
        return self.stop_reason == STOP_MAX_TOKENS

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def partial_tool(self) -> ToolUseBlock | None:
        """Tool use whose block never stopped (cut off mid-argument)."""
        if not self._tool:
            return None
        return self._tool[max(self._tool)]

    @property
    def partial_tool_json(self) -> str:
        if not self._tool_json:
            return ""
        return self._tool_json[max(self._tool_json)]

    @property
    def partial_text(self) -> str:
        """Text of blocks that never stopped."""
        return "".join(self._text[i] for i in sorted(self._text))

    def text(self) -> str:
        return "\n".join(b.text for b in self.blocks if isinstance(b, TextBlock))
