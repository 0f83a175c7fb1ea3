"""Conversation compaction -- tool result shrinking and history folding.

Two tiers, neither of which calls the model:
  Basic: prior-turn tool results become short previews before the
         history re-enters a model call.
  Aggressive: above the token threshold, everything but the most recent
         turns is folded into one synthesized summary pair.

summarize_context() is the separate, LLM-powered summary used when the
sidebar exports a conversation for a fresh start.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Awaitable, Callable

from tabagent.api.models import (
    ApiResponse,
    ContentBlock,
    ImageBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

MAX_CONTEXT_TOKENS = 200_000
COMPRESSION_THRESHOLD = 0.80
KEEP_RECENT_TURNS = 4

CHARS_PER_TOKEN = 4
TOOL_USE_OVERHEAD_CHARS = 50
IMAGE_CHARS = 1_000

# Basic tier
PREVIOUS_RESULT_MAX_CHARS = 500
PREVIOUS_RESULT_PREVIEW_CHARS = 200
SCREENSHOT_PLACEHOLDER = "[Previous result: screenshot captured]"

# Aggressive tier
RECENT_RESULT_MAX_CHARS = 2_000
RECENT_TRUNCATION_MARKER = "\n[... truncated ...]"
SUMMARY_LINE_CHARS = 100
HISTORY_HEADER = "[COMPRESSED CONVERSATION HISTORY - {count} earlier exchanges]"
HISTORY_FOOTER = "[END COMPRESSED HISTORY]"
HISTORY_ACK = "I understand the conversation history. Continuing from where we left off."

_HEADER_RE = re.compile(r"^\[COMPRESSED CONVERSATION HISTORY - \d+ earlier exchanges\]")
_ANSWER_RE = re.compile(r"<answer>([\s\S]*?)</answer>")

SUMMARY_REQUEST = (
    "Summarize this conversation history in 2-3 sentences, "
    "noting key actions taken and results:\n\n"
)
FALLBACK_SUMMARY = "Previous conversation about browser automation tasks."

OneShotCaller = Callable[[list[Message]], Awaitable[ApiResponse]]


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Fixed chars/4 heuristic over conversation content.

    Images are charged a flat amount instead of measuring their
    payload; tool uses pay for their serialized input plus overhead.
    """

    def estimate(self, text: str) -> int:
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def count_chars(self, conversation: list[Message]) -> int:
        total = 0
        for msg in conversation:
            if isinstance(msg.content, str):
                total += len(msg.content)
                continue
            for block in msg.content:
                total += self._block_chars(block)
        return total

    def estimate_conversation(self, conversation: list[Message]) -> int:
        return math.ceil(self.count_chars(conversation) / CHARS_PER_TOKEN)

    @staticmethod
    def _block_chars(block: ContentBlock) -> int:
        if isinstance(block, TextBlock):
            return len(block.text)
        if isinstance(block, ToolUseBlock):
            return len(json.dumps(block.input or {}, separators=(",", ":"))) + TOOL_USE_OVERHEAD_CHARS
        if isinstance(block, ToolResultBlock):
            if isinstance(block.content, str):
                return len(block.content)
            return IMAGE_CHARS
        if isinstance(block, ImageBlock):
            return IMAGE_CHARS
        return 0


# ------------------------------------------------------------------
# Context Compressor
# ------------------------------------------------------------------


class ContextCompressor:
    """Keeps the conversation under the model's context budget.

    All methods return new lists and never mutate the messages they
    are given, so the orchestrator can keep the uncompressed history
    around for error recovery.
    """

    def __init__(
        self,
        max_context_tokens: int = MAX_CONTEXT_TOKENS,
        threshold: float = COMPRESSION_THRESHOLD,
        keep_recent_turns: int = KEEP_RECENT_TURNS,
    ) -> None:
        self.estimator = TokenEstimator()
        self.max_context_tokens = max_context_tokens
        self.threshold = threshold
        self.keep_recent_turns = keep_recent_turns

    @property
    def token_limit(self) -> float:
        return self.max_context_tokens * self.threshold

    def maybe_compress(self, conversation: list[Message]) -> list[Message]:
        """Aggressively compress when over threshold, else return as-is."""
        estimated = self.estimator.estimate_conversation(conversation)
        logger.debug("Estimated tokens: %d, threshold: %.0f", estimated, self.token_limit)
        if estimated > self.token_limit:
            logger.info("Triggering compression (%d > %.0f)", estimated, self.token_limit)
            return self.aggressive_compress(conversation)
        return conversation

    # ------------------------------------------------------------------
    # Basic tier
    # ------------------------------------------------------------------

    @staticmethod
    def is_tool_result_message(msg: Message) -> bool:
        return msg.role == "user" and bool(msg.tool_results)

    def compress_history(self, conversation: list[Message]) -> list[Message]:
        """Replace every tool result in the given history with a short preview."""
        compressed = []
        for msg in conversation:
            if not self.is_tool_result_message(msg):
                compressed.append(msg)
                continue
            blocks = [
                self._shrink_previous(b) if isinstance(b, ToolResultBlock) else b
                for b in msg.blocks
            ]
            compressed.append(Message(role=msg.role, content=blocks))
        return compressed

    @staticmethod
    def _shrink_previous(block: ToolResultBlock) -> ToolResultBlock:
        content = block.content
        if isinstance(content, str):
            if len(content) > PREVIOUS_RESULT_MAX_CHARS:
                content = f"[Previous result: {content[:PREVIOUS_RESULT_PREVIEW_CHARS]}...]"
        elif block.has_image:
            content = SCREENSHOT_PLACEHOLDER
        return ToolResultBlock(tool_use_id=block.tool_use_id, content=content, is_error=block.is_error)

    # ------------------------------------------------------------------
    # Aggressive tier
    # ------------------------------------------------------------------

    def aggressive_compress(
        self,
        conversation: list[Message],
        keep_recent_turns: int | None = None,
    ) -> list[Message]:
        """Fold everything but the last keep_recent_turns turns into a summary pair."""
        keep = self.keep_recent_turns if keep_recent_turns is None else keep_recent_turns
        keep_messages = keep * 2
        if len(conversation) <= keep_messages:
            # Nothing old enough to fold. The basic tier applies to every
            # message here, including the current turn's tool results.
            return self.compress_history(conversation)

        recent_start = len(conversation) - keep_messages
        old, recent = conversation[:recent_start], conversation[recent_start:]

        summaries: list[str] = []
        for msg in old:
            summaries.extend(self._summarize_message(msg))

        compressed: list[Message] = []
        if summaries:
            header = HISTORY_HEADER.format(count=len(summaries))
            body = "\n".join(summaries)
            compressed.append(Message(role="user", content=f"{header}\n{body}\n{HISTORY_FOOTER}"))
            compressed.append(Message(role="assistant", content=HISTORY_ACK))

        folded_ids = {tu.id for msg in old for tu in msg.tool_uses}
        for i, msg in enumerate(recent):
            if i == 0:
                msg = self._orphaned_results_to_text(msg, folded_ids)
            compressed.append(self._truncate_recent(msg))

        logger.info(
            "Compressed %d messages to %d (kept %d recent turns)",
            len(conversation),
            len(compressed),
            keep,
        )
        return compressed

    def _summarize_message(self, msg: Message) -> list[str]:
        """One line per old message; earlier summary blocks carry over verbatim."""
        if msg.role == "user":
            text = msg.content if isinstance(msg.content, str) else self._first_text(msg)
            if text is None:
                return []  # only tool results
            if _HEADER_RE.match(text):
                return self._carried_lines(text)
            return [f"User: {self._clip(text)}"]

        if isinstance(msg.content, str):
            if msg.content == HISTORY_ACK:
                return []
            summary = msg.content[:SUMMARY_LINE_CHARS]
        else:
            tool_uses = msg.tool_uses
            text = self._first_text(msg)
            if tool_uses:
                summary = f"[Used: {', '.join(t.name for t in tool_uses)}]"
            elif text:
                match = _ANSWER_RE.search(text)
                summary = (match.group(1) if match else text)[:SUMMARY_LINE_CHARS]
            else:
                summary = ""
        summary = summary.replace("\n", " ")
        if not summary:
            return []
        suffix = "..." if len(summary) >= SUMMARY_LINE_CHARS else ""
        return [f"Assistant: {summary}{suffix}"]

    @staticmethod
    def _carried_lines(text: str) -> list[str]:
        lines = text.split("\n")[1:]
        if lines and lines[-1] == HISTORY_FOOTER:
            lines = lines[:-1]
        return lines

    @staticmethod
    def _first_text(msg: Message) -> str | None:
        for block in msg.blocks:
            if isinstance(block, TextBlock):
                return block.text
        return None

    @staticmethod
    def _clip(text: str) -> str:
        text = text.replace("\n", " ")
        if len(text) > SUMMARY_LINE_CHARS:
            return text[:SUMMARY_LINE_CHARS] + "..."
        return text

    @staticmethod
    def _orphaned_results_to_text(msg: Message, folded_ids: set[str]) -> Message:
        """Tool results whose tool_use was folded away become plain content."""
        if msg.role != "user" or not any(r.tool_use_id in folded_ids for r in msg.tool_results):
            return msg
        blocks: list[ContentBlock] = []
        for block in msg.blocks:
            if not (isinstance(block, ToolResultBlock) and block.tool_use_id in folded_ids):
                blocks.append(block)
                continue
            label = "[Earlier tool error]" if block.is_error else "[Earlier tool result]"
            if isinstance(block.content, str):
                blocks.append(TextBlock(f"{label}\n{block.content}" if block.content else label))
            else:
                blocks.append(TextBlock(label))
                blocks.extend(block.content)
        return Message(role=msg.role, content=blocks)

    @staticmethod
    def _truncate_recent(msg: Message) -> Message:
        if msg.role != "user" or not any(
            isinstance(r.content, str) and len(r.content) > RECENT_RESULT_MAX_CHARS
            for r in msg.tool_results
        ):
            return msg
        blocks: list[ContentBlock] = []
        for block in msg.blocks:
            if (
                isinstance(block, ToolResultBlock)
                and isinstance(block.content, str)
                and len(block.content) > RECENT_RESULT_MAX_CHARS
            ):
                block = ToolResultBlock(
                    tool_use_id=block.tool_use_id,
                    content=block.content[:RECENT_RESULT_MAX_CHARS] + RECENT_TRUNCATION_MARKER,
                    is_error=block.is_error,
                )
            blocks.append(block)
        return Message(role=msg.role, content=blocks)


# ------------------------------------------------------------------
# LLM-powered context summary
# ------------------------------------------------------------------


def build_summary_text(conversation: list[Message]) -> str:
    """Serialize a conversation as a summarization request."""
    parts = [SUMMARY_REQUEST]
    for msg in conversation:
        role = "User" if msg.role == "user" else "Assistant"
        if isinstance(msg.content, str):
            content = msg.content[:500]
        else:
            content = ""
            for block in msg.content:
                if isinstance(block, TextBlock):
                    content += block.text[:200]
                elif isinstance(block, ToolUseBlock):
                    content += f"[Tool: {block.name}] "
                elif isinstance(block, ToolResultBlock):
                    content += "[Tool result] "
        if len(content) > 500:
            content = content[:500] + "..."
        parts.append(f"{role}: {content}\n\n")
    return "".join(parts)


async def summarize_context(text: str, call_one_shot: OneShotCaller | None) -> str:
    """Ask the model for a short summary; never raises."""
    if call_one_shot is None:
        return FALLBACK_SUMMARY
    try:
        response = await call_one_shot([Message(role="user", content=text)])
    except Exception as e:
        logger.error("Context summarization failed: %s", e)
        return FALLBACK_SUMMARY
    for block in response.content:
        if block.get("type") == "text" and block.get("text"):
            return block["text"]
    return FALLBACK_SUMMARY


def shrink_oversized_results(results: list[ToolResultBlock], max_chars: int = 1_000) -> list[ToolResultBlock]:
    """Replace results too large for the context window with an explanation."""
    shrunk = []
    for result in results:
        raw: Any = result.content
        if isinstance(raw, str):
            size = len(raw)
        else:
            size = len(json.dumps([b.to_api() for b in raw]))
        if size > max_chars:
            shrunk.append(ToolResultBlock(
                tool_use_id=result.tool_use_id,
                content=(
                    f"Error: Tool result was too large ({round(size / 1024)}KB) and caused "
                    "context overflow. The data was not included. Please try a different "
                    "approach - use more targeted queries, smaller data extractions, or "
                    "avoid screenshots for element location."
                ),
                is_error=True,
            ))
        else:
            shrunk.append(result)
    return shrunk
