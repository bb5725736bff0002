"""
In-memory per-connection session state.

A Session lives exactly as long as its WebSocket connection. Only the
connection's own turn worker mutates its history, so no locking is needed.
"""

import uuid
from typing import Any, Literal

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from pydantic import BaseModel, ConfigDict, Field

from mapbot.constants import DEFAULT_HISTORY_WINDOW

logger = structlog.get_logger(__name__)


class Turn(BaseModel):
    """One stored chat message."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    text: str

    def to_message(self) -> BaseMessage:
        if self.role == "user":
            return HumanMessage(content=self.text)
        return AIMessage(content=self.text)


class Session(BaseModel):
    """Chat history and transport handle for one connection."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    transport: Any = Field(exclude=True, description="ClientProtocolAdapter for this connection")
    history: list[Turn] = Field(default_factory=list)
    history_window: int = DEFAULT_HISTORY_WINDOW

    def record_exchange(self, user_text: str, assistant_text: str) -> None:
        """Append the finished exchange, then evict the oldest turns past the window."""
        if user_text.strip():
            self.history.append(Turn(role="user", text=user_text))
        if assistant_text.strip():
            self.history.append(Turn(role="assistant", text=assistant_text))
        if len(self.history) > self.history_window:
            del self.history[: len(self.history) - self.history_window]

    def chat_history(self) -> list[BaseMessage]:
        """History as LangChain messages, oldest first."""
        return [turn.to_message() for turn in self.history]


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


class SessionStore:
    """Registry of live sessions keyed by session id."""

    def __init__(self, history_window: int = DEFAULT_HISTORY_WINDOW):
        self._history_window = history_window
        self._sessions: dict[str, Session] = {}

    def create(self, session_id: str, transport: Any) -> Session:
        if session_id in self._sessions:
            raise ValueError(f"Session '{session_id}' already exists")
        session = Session(id=session_id, transport=transport, history_window=self._history_window)
        self._sessions[session_id] = session
        logger.info("session_created", session_id=session_id, active=len(self._sessions))
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.info("session_removed", session_id=session_id, active=len(self._sessions))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
