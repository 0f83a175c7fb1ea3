"""REST API for the tabagent sidebar.

Endpoints:
  POST   /chat/stream             - Run a task, stream its notifications (SSE)
  POST   /tools/confirm           - Answer a tool confirmation request
  POST   /iterations/respond      - Answer an iteration-limit prompt
  POST   /tabs/{tab_id}/cancel    - Cancel the tab's running task
  PUT    /tabs/{tab_id}/autonomy  - Set the tab's autonomy mode
  DELETE /tabs/{tab_id}           - Tab closed: cancel and forget it
  GET    /history                 - Recent completed tasks
  POST   /context/summarize       - LLM summary of an exported conversation
  GET    /status                  - Sessions and configuration snapshot
  GET    /health                  - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from tabagent.api.compaction import build_summary_text, summarize_context
from tabagent.api.models import sanitize_conversation
from tabagent.api.transport import ModelTransport
from tabagent.config import Settings
from tabagent.events import Notification, NotificationBus, NotificationType
from tabagent.history import TaskHistory
from tabagent.sessions import SessionManager, TaskAlreadyRunning

logger = logging.getLogger(__name__)


def sse_data(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def create_app(
    sessions: SessionManager,
    bus: NotificationBus,
    history: TaskHistory,
    settings: Settings,
    transport: ModelTransport | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # Keeps running task objects referenced until they finish
    running: set[asyncio.Task] = set()

    async def _json_body(request: Request) -> dict[str, Any] | None:
        try:
            body = await request.json()
        except Exception:
            return None
        return body if isinstance(body, dict) else None

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - Start a task in a tab and stream its notifications."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        tab_id = body.get("tab_id")
        if not tab_id:
            return JSONResponse({"error": "Missing required field: tab_id"}, status_code=400)
        tab_id = str(tab_id)

        conversation = body.get("conversation")
        if not isinstance(conversation, list) or not sanitize_conversation(conversation):
            return JSONResponse(
                {"error": "Missing required field: conversation"}, status_code=400
            )
        autonomy_mode = body.get("autonomy_mode")
        if autonomy_mode is not None and autonomy_mode not in ("ask", "auto"):
            return JSONResponse({"error": f"Invalid autonomy mode: {autonomy_mode}"}, status_code=400)
        if tab_id in sessions and sessions.session(tab_id).busy:
            return JSONResponse({"error": f"A task is already running in tab {tab_id}"}, status_code=409)

        queue: asyncio.Queue[Notification] = asyncio.Queue()

        async def forward(notification: Notification) -> None:
            if notification.tab_id == tab_id:
                queue.put_nowait(notification)

        async def run() -> None:
            try:
                await sessions.start_task(
                    tab_id, conversation, tab_url=body.get("tab_url"), autonomy_mode=autonomy_mode
                )
            except (TaskAlreadyRunning, ValueError) as e:
                queue.put_nowait(
                    Notification(NotificationType.STREAM_ERROR, tab_id, {"error": str(e)})
                )

        bus.on_any(forward)
        task = asyncio.create_task(run())
        running.add(task)
        task.add_done_callback(running.discard)

        async def event_generator():
            finished = False
            try:
                while True:
                    try:
                        notification = await asyncio.wait_for(
                            queue.get(), timeout=settings.sse_keepalive_interval
                        )
                    except TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield sse_data(notification.to_dict())
                    if notification.terminal:
                        finished = True
                        break
            finally:
                bus.off(forward)
                if not finished and not task.done():
                    logger.info("Stream for tab %s closed early, cancelling task", tab_id)
                    sessions.cancel(tab_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def confirm_tool(request: Request) -> JSONResponse:
        """POST /tools/confirm - {tool_id, approved}."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        tool_id = body.get("tool_id")
        if not tool_id or "approved" not in body:
            return JSONResponse(
                {"error": "Missing required fields: tool_id, approved"}, status_code=400
            )
        if not sessions.resolve_confirmation(str(tool_id), bool(body["approved"])):
            return JSONResponse({"error": f"No pending confirmation for {tool_id}"}, status_code=404)
        return JSONResponse({"status": "resolved", "tool_id": tool_id})

    async def respond_iteration(request: Request) -> JSONResponse:
        """POST /iterations/respond - {prompt_id, choice}; -1 unlimited, -2 stop, 0 summary, N more."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        prompt_id = body.get("prompt_id")
        try:
            choice = int(body.get("choice"))
        except (TypeError, ValueError):
            return JSONResponse({"error": "choice must be an integer"}, status_code=400)
        if not prompt_id:
            return JSONResponse({"error": "Missing required field: prompt_id"}, status_code=400)
        if not sessions.resolve_iteration_prompt(str(prompt_id), choice):
            return JSONResponse({"error": f"No pending iteration prompt {prompt_id}"}, status_code=404)
        return JSONResponse({"status": "resolved", "prompt_id": prompt_id, "choice": choice})

    async def cancel_tab(request: Request) -> JSONResponse:
        """POST /tabs/{tab_id}/cancel - Cancel the running task."""
        tab_id = request.path_params["tab_id"]
        cancelled = sessions.cancel(tab_id)
        return JSONResponse({"tab_id": tab_id, "cancelled": cancelled})

    async def set_autonomy(request: Request) -> JSONResponse:
        """PUT /tabs/{tab_id}/autonomy - {mode: "ask" | "auto"}."""
        tab_id = request.path_params["tab_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            sessions.set_autonomy_mode(tab_id, str(body.get("mode")))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({"tab_id": tab_id, "autonomy_mode": sessions.autonomy_mode(tab_id)})

    async def close_tab(request: Request) -> JSONResponse:
        """DELETE /tabs/{tab_id} - Tab closed."""
        tab_id = request.path_params["tab_id"]
        sessions.close_tab(tab_id)
        return JSONResponse({"status": "closed", "tab_id": tab_id})

    async def get_history(request: Request) -> JSONResponse:
        """GET /history - Most recent completed tasks, newest first."""
        return JSONResponse({
            "tasks": [
                {
                    "user_message": entry.user_message,
                    "assistant_response": entry.assistant_response,
                    "timestamp": datetime.fromtimestamp(entry.timestamp, UTC).isoformat(),
                }
                for entry in history.recent()
            ],
            "total": len(history),
        })

    async def summarize(request: Request) -> JSONResponse:
        """POST /context/summarize - {conversation}; summary for a fresh start."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        conversation = sanitize_conversation(body.get("conversation") or [])
        if not conversation:
            return JSONResponse({"error": "Missing required field: conversation"}, status_code=400)
        one_shot = transport.send_message if transport is not None else None
        summary = await summarize_context(build_summary_text(conversation), one_shot)
        return JSONResponse({"summary": summary, "messages": len(conversation)})

    async def status(request: Request) -> JSONResponse:
        """GET /status - Configuration and session overview."""
        return JSONResponse({
            "model": settings.model,
            "api_configured": settings.api_configured,
            "max_tool_iterations": settings.max_tool_iterations,
            "high_risk_tools": settings.high_risk_tools,
            "sessions": sessions.state(),
            "history_size": len(history),
            "running_tasks": len(running),
        })

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if not settings.anthropic_api_key:
            return JSONResponse({"status": "degraded", "error": "API key not configured"})
        return JSONResponse({"status": "healthy"})

    routes = [
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/tools/confirm", confirm_tool, methods=["POST"]),
        Route("/iterations/respond", respond_iteration, methods=["POST"]),
        Route("/tabs/{tab_id}/cancel", cancel_tab, methods=["POST"]),
        Route("/tabs/{tab_id}/autonomy", set_autonomy, methods=["PUT"]),
        Route("/tabs/{tab_id}", close_tab, methods=["DELETE"]),
        Route("/history", get_history),
        Route("/context/summarize", summarize, methods=["POST"]),
        Route("/status", status),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
