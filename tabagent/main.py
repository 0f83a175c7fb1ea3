"""tabagent entry point.

Initializes all components and starts the server:
  Settings -> Transport -> Tools -> Gate -> Orchestrator -> Sessions -> App -> Uvicorn

Uses Starlette lifespan to open and close the model client on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from starlette.applications import Starlette

from tabagent.api.compaction import ContextCompressor
from tabagent.api.gate import ToolGate
from tabagent.api.rest import create_app
from tabagent.api.runner import ConversationOrchestrator
from tabagent.api.tools import ToolDispatcher, register_history_tool
from tabagent.api.transport import AnthropicTransport
from tabagent.config import Settings
from tabagent.events import NotificationBus
from tabagent.history import TaskHistory
from tabagent.prompts import PromptLoader, SystemPromptBuilder
from tabagent.sessions import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    transport: AnthropicTransport
    dispatcher: ToolDispatcher
    bus: NotificationBus
    history: TaskHistory
    sessions: SessionManager
    orchestrator: ConversationOrchestrator


def create_components(settings: Settings, dispatcher: ToolDispatcher | None = None) -> Components:
    """Wire all components in dependency order.

    Browser tools are registered on the dispatcher by the embedder;
    request_history is always available.
    """
    bus = NotificationBus()
    history = TaskHistory()
    transport = AnthropicTransport(settings)

    dispatcher = dispatcher or ToolDispatcher()
    register_history_tool(dispatcher, history)

    sessions = SessionManager(settings, bus)
    gate = ToolGate(dispatcher, bus, settings.high_risk_tools, sessions.autonomy_mode)
    prompts = SystemPromptBuilder(
        PromptLoader(), settings.system_prompt_path, sessions.autonomy_mode
    )
    orchestrator = ConversationOrchestrator(
        transport=transport,
        gate=gate,
        compressor=ContextCompressor(),
        bus=bus,
        history=history,
        prompts=prompts,
        tools=dispatcher.tool_definitions(),
    )
    sessions.set_orchestrator(orchestrator)

    return Components(
        settings=settings,
        transport=transport,
        dispatcher=dispatcher,
        bus=bus,
        history=history,
        sessions=sessions,
        orchestrator=orchestrator,
    )


def build_app(settings: Settings, dispatcher: ToolDispatcher | None = None) -> Starlette:
    """Build the Starlette app; the model client lives for the lifespan."""
    components = create_components(settings, dispatcher)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await components.transport.start()
        logger.info("tabagent started (%d tools)", len(components.dispatcher.tool_definitions()))
        try:
            yield
        finally:
            logger.info("Shutting down tabagent...")
            await components.transport.close()
            logger.info("tabagent shutdown complete.")

    app = create_app(
        sessions=components.sessions,
        bus=components.bus,
        history=components.history,
        settings=settings,
        transport=components.transport,
        lifespan=lifespan,
    )
    app.state.components = components
    return app


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug_mode else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting tabagent on %s:%d", settings.host, settings.port)
    logger.info("Model: %s (max_tokens=%d)", settings.model, settings.max_tokens)
    logger.info(
        "Autonomy: %s, max tool iterations: %d",
        settings.default_autonomy_mode, settings.max_tool_iterations,
    )
    if not settings.api_configured:
        logger.warning("ANTHROPIC_API_KEY is missing or malformed -- /chat/stream will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
