"""
Client protocol adapter for the chat WebSocket.

Serializes outbound events to tagged JSON messages and parses inbound
messages. Once the socket is closed every send becomes a no-op, so a turn
that is still running after the client left can keep emitting safely.
"""

import json

import structlog
from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from mapbot.models.events import ChatRequest, OutboundEvent

logger = structlog.get_logger(__name__)


def serialize(event: OutboundEvent) -> dict:
    """Wire form of an outbound event (camelCase keys, explicit nulls)."""
    return event.model_dump(mode="json", by_alias=True)


def parse(raw: str | bytes) -> ChatRequest | None:
    """
    Parse an inbound message.

    Returns None for unknown message kinds (ignored) and for malformed
    payloads (logged and dropped).
    """
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        logger.warning("inbound_message_malformed", preview=str(raw)[:100])
        return None

    if not isinstance(data, dict):
        logger.warning("inbound_message_malformed", preview=str(raw)[:100])
        return None

    if data.get("type") != "chat":
        logger.debug("inbound_message_ignored", message_type=data.get("type"))
        return None

    try:
        return ChatRequest.model_validate(data)
    except ValidationError as e:
        logger.warning("inbound_message_malformed", errors=e.error_count())
        return None


class ClientProtocolAdapter:
    """Outbound side of one client connection."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._websocket.client_state != WebSocketState.CONNECTED

    def close(self) -> None:
        """Mark the transport closed; later sends are dropped."""
        self._closed = True

    async def send(self, event: OutboundEvent) -> None:
        """Write one event. Never raises: writes to a closed socket are dropped."""
        if self.closed:
            logger.debug("send_skipped_closed", event_type=event.type)
            return
        try:
            await self._websocket.send_text(json.dumps(serialize(event), ensure_ascii=False))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            logger.debug("send_failed_closed", event_type=event.type, error=str(e))

