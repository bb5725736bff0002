"""
Map Bot Backend - Main FastAPI Application.

Bridges the web client's chat WebSocket, a tool-calling LLM agent, and an
MCP tool server (geocoding, routing, nearby search over OpenStreetMap).

Run with:
    uvicorn mapbot.main:app --reload --port 3001
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from mapbot.agents.graph import build_agent_graph
from mapbot.agents.orchestrator import StreamingAgentOrchestrator
from mapbot.api.v1.chat import router as chat_router
from mapbot.config import get_settings
from mapbot.constants import API_TITLE, API_VERSION
from mapbot.logging_config import setup_logging
from mapbot.services.mcp_transport import create_transport
from mapbot.services.session_store import SessionStore
from mapbot.services.tool_bridge import ToolBridge

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Propagate LangSmith settings into os.environ so the SDK can find them.
# pydantic-settings reads .env into the Settings model but does NOT inject
# values into os.environ, which is where langsmith looks.
if settings.langchain_tracing_v2 and settings.langsmith_api_key:
    os.environ["LANGCHAIN_TRACING_V2"] = "true"
    os.environ["LANGSMITH_API_KEY"] = settings.langsmith_api_key
    os.environ["LANGSMITH_PROJECT"] = settings.langsmith_project

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan event handler for startup and shutdown.

    The tool server is required: if it cannot be reached or its tools cannot
    be listed, ToolBridgeStartupError propagates and the server does not start.
    """
    logger.info("api_startup", model=settings.agent.model, tool_transport=settings.tool_server.transport)

    bridge = ToolBridge(
        create_transport(settings.tool_server),
        call_timeout=settings.tool_server.call_timeout_seconds,
    )
    await bridge.start()

    graph = build_agent_graph(settings, bridge.as_langchain_tools())

    _app.state.tool_bridge = bridge
    _app.state.sessions = SessionStore(history_window=settings.agent.history_window)
    _app.state.orchestrator = StreamingAgentOrchestrator(
        graph, recursion_limit=settings.agent.recursion_limit
    )

    logger.info("services_initialized")

    yield

    await bridge.close()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Conversational map assistant: chat over WebSocket with an agent that "
        "searches places, geocodes addresses and plans routes on OpenStreetMap."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(chat_router)


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "websocket": "/ws",
        "docs": "/docs",
    }


@app.get("/health")
async def health(request: Request) -> dict:
    """Health check endpoint; reports whether the tool server connection is up."""
    bridge: ToolBridge | None = getattr(request.app.state, "tool_bridge", None)
    return {"status": "ok", "mcpConnected": bridge is not None and bridge.is_connected}
