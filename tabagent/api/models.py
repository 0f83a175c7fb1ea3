"""Shared data models for the API layer.

Content blocks mirror the Anthropic Messages wire format one-to-one.
Every block converts to its wire dict via to_api() and back via
block_from_api(), so the rest of the package never handles raw dicts
for conversation content.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)


@dataclass
class TextBlock:
    text: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ImageBlock:
    media_type: str  # e.g. image/png, image/jpeg
    data: str  # base64 payload without the data: URL prefix

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str | list[TextBlock | ImageBlock] = ""
    is_error: bool = False

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "tool_result", "tool_use_id": self.tool_use_id}
        if isinstance(self.content, str):
            data["content"] = self.content
        else:
            data["content"] = [block.to_api() for block in self.content]
        if self.is_error:
            data["is_error"] = True
        return data

    @property
    def has_image(self) -> bool:
        return isinstance(self.content, list) and any(
            isinstance(block, ImageBlock) for block in self.content
        )


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "user" or "assistant"
    content: str | list[ContentBlock]

    def to_api(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_api() for block in self.content]}

    @property
    def blocks(self) -> list[ContentBlock]:
        """Content as a block list (string content becomes one TextBlock)."""
        if isinstance(self.content, str):
            return [TextBlock(self.content)] if self.content else []
        return self.content

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def text(self, separator: str = "\n") -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return separator.join(b.text for b in self.content if isinstance(b, TextBlock))

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Message:
        content = data.get("content", "")
        if isinstance(content, str):
            return cls(role=data["role"], content=content)
        blocks = [b for b in (block_from_api(item) for item in content) if b is not None]
        return cls(role=data["role"], content=blocks)


@dataclass
class ApiResponse:
    """Parsed non-streaming response from the Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None

    def text(self) -> str:
        return "".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )


def block_from_api(data: dict[str, Any]) -> ContentBlock | None:
    """Parse one wire dict into a content block. Unknown types return None."""
    if not isinstance(data, dict):
        return None
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text") or "")
    if block_type == "image":
        source = data.get("source") or {}
        return ImageBlock(media_type=source.get("media_type", ""), data=source.get("data", ""))
    if block_type == "tool_use":
        return ToolUseBlock(
            id=data.get("id") or "",
            name=data.get("name") or "",
            input=data.get("input") or {},
        )
    if block_type == "tool_result":
        raw = data.get("content", "")
        if isinstance(raw, list):
            content: str | list[TextBlock | ImageBlock] = [
                b for b in (block_from_api(item) for item in raw)
                if isinstance(b, (TextBlock, ImageBlock))
            ]
        else:
            content = raw if isinstance(raw, str) else str(raw)
        return ToolResultBlock(
            tool_use_id=data.get("tool_use_id") or "",
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    return None


def _valid_block(block: ContentBlock) -> bool:
    if isinstance(block, TextBlock):
        return bool(block.text and block.text.strip())
    if isinstance(block, ToolUseBlock):
        return bool(block.id and block.name)
    if isinstance(block, ToolResultBlock):
        return bool(block.tool_use_id)
    return True


def sanitize_conversation(raw: list[dict[str, Any]] | list[Message] | None) -> list[Message]:
    """Drop content the API rejects: blank messages, blank text blocks,
    tool blocks missing their ids, and messages left with no blocks.

    Accepts wire dicts (from the sidebar) or Message objects.
    """
    if not raw:
        return []

    sanitized: list[Message] = []
    for item in raw:
        if isinstance(item, Message):
            msg = item
        elif isinstance(item, dict) and item.get("role") in ("user", "assistant"):
            content = item.get("content")
            if not isinstance(content, (str, list)):
                logger.warning("Skipping message with invalid content type: %s", type(content).__name__)
                continue
            msg = Message.from_api(item)
        else:
            logger.warning("Skipping message without a valid role")
            continue

        if isinstance(msg.content, str):
            if msg.content.strip():
                sanitized.append(msg)
            continue

        blocks = [b for b in msg.content if _valid_block(b)]
        if blocks:
            sanitized.append(Message(role=msg.role, content=blocks))

    for i in range(1, len(sanitized)):
        if sanitized[i].role == "user" and sanitized[i - 1].role == "user":
            logger.warning("Consecutive user messages at index %d", i)

    return sanitized
