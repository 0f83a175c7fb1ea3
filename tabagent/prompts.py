"""System prompt assembly.

The static base prompt is loaded from a template file once and cached;
the dynamic part (site context, autonomy mode) is rebuilt per model
call. Both are returned as Anthropic system blocks marked for prompt
caching.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

FALLBACK_PROMPT = "You are a browser automation assistant with tools to control the browser."

AUTO_MODE_LINE = "\n\nMode: AUTO - Tools execute immediately."
CONFIRM_MODE_LINE = "\n\nMode: CONFIRM - User sees confirmation dialog before tool execution."

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def render_template(template: str, context: dict[str, Any] | None = None) -> str:
    """Replace {{key}} placeholders; unknown keys are left as-is."""
    if not context:
        return template
    return _PLACEHOLDER_RE.sub(
        lambda m: str(context[m.group(1)]) if m.group(1) in context else m.group(0),
        template,
    )


class PromptLoader:
    """Loads prompt templates from disk and caches them by path."""

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir) if base_dir else Path.cwd()
        self._cache: dict[str, str] = {}

    def load(self, filename: str) -> str | None:
        if filename in self._cache:
            return self._cache[filename]
        path = Path(filename)
        if not path.is_absolute():
            path = self._base_dir / path
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Failed to load prompt %s: %s", path, e)
            return None
        self._cache[filename] = content
        logger.info("Loaded prompt: %s", filename)
        return content

    def get(self, filename: str, context: dict[str, Any] | None = None) -> str:
        template = self.load(filename)
        if template is None:
            logger.warning("Prompt %s not loaded, using fallback", filename)
            return FALLBACK_PROMPT
        return render_template(template, context)


class ContextProvider(Protocol):
    """External source of per-site context (site knowledge, observed APIs)."""

    async def format_for_prompt(self, tab_url: str) -> str: ...


class SystemPromptBuilder:
    """Builds the structured system prompt for one model call."""

    def __init__(
        self,
        loader: PromptLoader,
        prompt_path: str,
        autonomy_mode: Callable[[str | None], str],
        providers: Iterable[ContextProvider] = (),
    ) -> None:
        self._loader = loader
        self._prompt_path = prompt_path
        self._autonomy_mode = autonomy_mode
        self._providers = list(providers)

    def add_provider(self, provider: ContextProvider) -> None:
        self._providers.append(provider)

    async def build(self, tab_id: str | None, tab_url: str | None = None) -> list[dict[str, Any]]:
        dynamic = ""
        if tab_url:
            for provider in self._providers:
                try:
                    dynamic += await provider.format_for_prompt(tab_url) or ""
                except Exception as e:
                    logger.warning("Context provider %s failed: %s", type(provider).__name__, e)

        if self._autonomy_mode(tab_id) == "auto":
            dynamic += AUTO_MODE_LINE
        else:
            dynamic += CONFIRM_MODE_LINE

        base = self._loader.get(self._prompt_path)
        blocks = [{"type": "text", "text": base, "cache_control": {"type": "ephemeral"}}]
        if dynamic.strip():
            blocks.append({"type": "text", "text": dynamic, "cache_control": {"type": "ephemeral"}})

        logger.debug(
            "Built system prompt: %d blocks, static=%d chars, dynamic=%d chars",
            len(blocks), len(base), len(dynamic),
        )
        return blocks
