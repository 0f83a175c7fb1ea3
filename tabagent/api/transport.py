"""Model transport -- direct httpx calls to the Anthropic Messages API.

stream_message() yields parsed StreamEvents from the SSE body;
send_message() is the one-shot call used for closing summaries and
context summaries. Failures surface as the exceptions in
tabagent.api.errors; this layer never retries.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from tabagent.api.errors import ApiError, ContextOverflowError, TransportError, is_token_overflow
from tabagent.api.models import ApiResponse, Message
from tabagent.api.stream import StreamEvent, parse_sse_event
from tabagent.config import Settings

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_PROMPT_CACHING_BETA = "prompt-caching-2024-07-31"

# Friendlier messages for common HTTP failures
_STATUS_MESSAGES = {
    401: "Invalid API key. Please check your Anthropic API key in the settings.",
    403: "Access forbidden. Your API key may not have access to this model.",
    429: "Rate limit exceeded. Please wait a moment before sending another message.",
    500: "Anthropic API is temporarily unavailable. Please try again in a moment.",
    502: "Anthropic API is temporarily unavailable. Please try again in a moment.",
    503: "Anthropic API is temporarily unavailable. Please try again in a moment.",
}

SystemPrompt = str | list[dict[str, Any]]


class ModelTransport(Protocol):
    """What the orchestrator needs from a model client."""

    def stream_message(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: SystemPrompt | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def send_message(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: SystemPrompt | None = None,
    ) -> ApiResponse: ...


class AnthropicTransport:
    """Streaming Anthropic client over a shared httpx.AsyncClient."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = client
        self._owns_client = client is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        if not settings.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=self._headers(),
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("httpx client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    def _headers(self) -> dict[str, str]:
        return {
            "anthropic-version": _API_VERSION,
            "anthropic-beta": _PROMPT_CACHING_BETA,
            "content-type": "application/json",
            "x-api-key": self._settings.anthropic_api_key,
        }

    def build_payload(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: SystemPrompt | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build the Messages API request body.

        The last tool carries cache_control so the whole tool list is
        cached together with the system prompt.
        """
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "temperature": self._settings.temperature,
            "messages": [m.to_api() for m in messages],
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {**tool, "cache_control": {"type": "ephemeral"}} if i == len(tools) - 1 else tool
                for i, tool in enumerate(tools)
            ]
        if stream:
            payload["stream"] = True

        logger.info(
            "Request: model=%s max_tokens=%d tools=%d messages=%d",
            self._settings.model,
            self._settings.max_tokens,
            len(tools or []),
            len(messages),
        )
        if self._settings.debug_mode:
            logger.debug("Full request payload: %s", json.dumps(payload)[:200_000])
        return payload

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    async def stream_message(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: SystemPrompt | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield StreamEvents for one streamed model call."""
        payload = self.build_payload(messages, tools, system, stream=True)
        try:
            async with self._client().stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise _api_error(response.status_code, body)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        return
                    try:
                        parsed = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse SSE data: %.200s", data)
                        continue
                    event = parse_sse_event(parsed)
                    if event is not None:
                        yield event
        except httpx.TransportError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def send_message(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        system: SystemPrompt | None = None,
    ) -> ApiResponse:
        """One-shot (non-streaming) call."""
        payload = self.build_payload(messages, tools, system)
        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TransportError as e:
            raise TransportError(str(e) or type(e).__name__) from e

        if response.status_code != 200:
            raise _api_error(response.status_code, response.content)

        data = response.json()
        return ApiResponse(
            content=data.get("content", []),
            stop_reason=data.get("stop_reason") or "",
            usage=data.get("usage"),
        )


def _api_error(status_code: int, body: bytes) -> ApiError:
    """Map an error response to ApiError / ContextOverflowError."""
    error_type = "http_error"
    try:
        error = json.loads(body).get("error", {})
        error_type = error.get("type", error_type)
        detail = f"API error: {error_type} - {error.get('message', 'unknown error')}"
    except (json.JSONDecodeError, AttributeError):
        detail = f"API error: {status_code} {body[:500].decode(errors='replace')}"

    if status_code in (400, 413) and is_token_overflow(ApiError(detail)):
        return ContextOverflowError(detail, status_code=status_code, error_type=error_type)

    message = _STATUS_MESSAGES.get(status_code, detail)
    return ApiError(message, status_code=status_code, error_type=error_type)
