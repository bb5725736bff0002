"""
Client protocol message models.

Outbound events are what the orchestrator emits during a turn; their
``type`` values and camelCase keys are the wire contract with the web
client. Inbound messages are parsed into ChatRequest.
"""

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from mapbot.models.map_actions import SideAction


class _Outbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class StatusEvent(_Outbound):
    """Thinking indicator. ``status=None`` clears it."""

    type: Literal["thinking"] = "thinking"
    status: str | None


class TokenEvent(_Outbound):
    """A streamed text fragment."""

    type: Literal["stream"] = "stream"
    content: str


class SideActionEvent(_Outbound):
    """A map update sent as soon as a tool produces it."""

    type: Literal["map_action"] = "map_action"
    map_action: SideAction = Field(alias="mapAction")

    @field_serializer("map_action")
    def _serialize_action(self, action):
        return action.to_wire()


class FinalEvent(_Outbound):
    """End of a turn: the full response text plus the turn's map action, if any."""

    type: Literal["stream_end"] = "stream_end"
    content: str
    map_action: SideAction | None = Field(default=None, alias="mapAction")

    @field_serializer("map_action")
    def _serialize_action(self, action):
        return action.to_wire() if action is not None else None


class ErrorEvent(_Outbound):
    """Orchestration-level failure. Tool failures never produce this."""

    type: Literal["error"] = "error"
    content: str


class GreetingEvent(_Outbound):
    """Non-streamed message sent once when a connection opens."""

    type: Literal["response"] = "response"
    content: str


OutboundEvent = Union[
    StatusEvent, TokenEvent, SideActionEvent, FinalEvent, ErrorEvent, GreetingEvent
]


class ChatRequest(BaseModel):
    """Inbound user chat message: {"type": "chat", "content": "..."}."""

    type: Literal["chat"] = "chat"
    content: str
