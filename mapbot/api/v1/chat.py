"""
Chat WebSocket endpoint.

Provides the conversational interface to the map agent. Each connection
gets its own session; turns stream back as tagged JSON messages.

Endpoint:
    WS /ws  (also accepted at /)

Inbound:
    {"type": "chat", "content": "..."}

Outbound:
    {"type": "response", "content": "..."}                 greeting, once
    {"type": "thinking", "status": "..." | null}
    {"type": "map_action", "mapAction": {...}}
    {"type": "stream", "content": "..."}
    {"type": "stream_end", "content": "...", "mapAction": {...} | null}
    {"type": "error", "content": "..."}

A receive loop keeps reading while a separate worker runs turns one at a
time, so a disconnect is noticed immediately: the session is removed and
the in-flight turn finishes with its sends dropped.
"""

import asyncio

import structlog
from fastapi import APIRouter, WebSocket

from mapbot.agents.orchestrator import StreamingAgentOrchestrator
from mapbot.api.protocol import ClientProtocolAdapter, parse
from mapbot.constants import GREETING_MESSAGE
from mapbot.models.events import GreetingEvent
from mapbot.services.session_store import Session, SessionStore, new_session_id

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["chat"])


async def _turn_worker(
    orchestrator: StreamingAgentOrchestrator,
    session: Session,
    queue: "asyncio.Queue[str | None]",
) -> None:
    """Run queued user messages for one session, in order, until the None sentinel."""
    while True:
        user_text = await queue.get()
        if user_text is None:
            return
        await orchestrator.run_turn(session, user_text)


@router.websocket("/")
@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    """Conversational WebSocket for the map assistant."""
    await websocket.accept()

    orchestrator: StreamingAgentOrchestrator | None = getattr(websocket.app.state, "orchestrator", None)
    sessions: SessionStore | None = getattr(websocket.app.state, "sessions", None)
    if orchestrator is None or sessions is None:
        logger.error("chat_socket_unavailable")
        await websocket.close(code=1011, reason="Agent not available")
        return

    session_id = new_session_id()
    structlog.contextvars.bind_contextvars(session_id=session_id)

    adapter = ClientProtocolAdapter(websocket)
    session = sessions.create(session_id, adapter)
    logger.info("connection_opened")

    queue: asyncio.Queue[str | None] = asyncio.Queue()
    worker = asyncio.create_task(_turn_worker(orchestrator, session, queue))

    await adapter.send(GreetingEvent(content=GREETING_MESSAGE))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("connection_closed", code=message.get("code"))
                break

            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            if raw is None:
                continue

            request = parse(raw)
            if request is not None:
                logger.info("user_message_received", preview=request.content[:50])
                queue.put_nowait(request.content)
    except Exception:
        logger.exception("chat_socket_receive_failed")
    finally:
        adapter.close()
        sessions.remove(session_id)
        queue.put_nowait(None)
        # No cancellation: an in-flight turn completes with its sends dropped
        await worker
        structlog.contextvars.unbind_contextvars("session_id")
