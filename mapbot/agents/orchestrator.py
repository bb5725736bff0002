"""
Streaming agent orchestrator.

Drives the agent graph for one user turn and turns its activity into the
client event stream:

    thinking("Thinking...")
    thinking("Using <tool>...")        per tool start
    map_action(...)                    first valid map action of the turn
    thinking("Generating response...") per tool end
    thinking(null)                     once, when text starts streaming
    stream(...)*                       text fragments
    stream_end(text, mapAction)        or error(...) on failure
    thinking(null)                     always last

Agent activity arrives through two channels that overlap: the LangChain
callback handler (token/tool callbacks) and the ``astream_events`` log.
Each channel keeps a cursor (characters of text seen, tool starts seen,
tool ends seen) and only the part of a channel's output that lies beyond
what the turn has already forwarded is emitted. Deduplication is therefore
by position, not content, so legitimately repeated words are kept.

Turn lifecycle: Idle → Dispatched → Streaming → Finalizing → Idle,
or → Failed → Idle. A failed turn never closes the connection.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog
from langchain_core.callbacks import AsyncCallbackHandler
from langchain_core.messages import HumanMessage

from mapbot.agents.normalizer import extract, extract_final_output
from mapbot.constants import (
    GENERIC_ERROR_MESSAGE,
    STATUS_GENERATING,
    STATUS_THINKING,
    tool_status,
)
from mapbot.models.events import (
    ErrorEvent,
    FinalEvent,
    OutboundEvent,
    SideActionEvent,
    StatusEvent,
    TokenEvent,
)
from mapbot.models.map_actions import SideAction
from mapbot.services.session_store import Session

logger = structlog.get_logger(__name__)

Emit = Callable[[OutboundEvent], Awaitable[None]]

CALLBACK_CHANNEL = "callback"
EVENT_LOG_CHANNEL = "event_log"


class TurnState(str, Enum):
    """Orchestrator state for a single turn."""

    IDLE = "idle"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    FAILED = "failed"


@dataclass
class StreamAccumulator:
    """Per-turn state. Created at turn start, dropped when the turn ends."""

    text: str = ""
    stream_started: bool = False
    tools_used: list[str] = field(default_factory=list)
    tool_ends: int = 0
    side_action: SideAction | None = None
    # Non-streamed final answer from the run's completion event
    fallback_text: str = ""


@dataclass
class _ChannelCursor:
    text_pos: int = 0
    tool_starts: int = 0
    tool_ends: int = 0


class _TurnRun:
    """Merges both event channels of one turn into a single ordered emission."""

    def __init__(self, emit: Emit):
        self.emit = emit
        self.state = TurnState.DISPATCHED
        self.acc = StreamAccumulator()
        self._cursors: dict[str, _ChannelCursor] = {}

    def _cursor(self, channel: str) -> _ChannelCursor:
        return self._cursors.setdefault(channel, _ChannelCursor())

    async def on_text(self, channel: str, fragment: str) -> None:
        if not fragment:
            return
        cursor = self._cursor(channel)
        start = cursor.text_pos
        cursor.text_pos += len(fragment)

        forwarded = len(self.acc.text)
        if cursor.text_pos <= forwarded:
            return
        new_text = fragment[max(forwarded - start, 0):]

        if not self.acc.stream_started:
            self.acc.stream_started = True
            self.state = TurnState.STREAMING
            logger.info("stream_started", channel=channel)
            await self.emit(StatusEvent(status=None))

        self.acc.text += new_text
        await self.emit(TokenEvent(content=new_text))

    async def on_tool_start(self, channel: str, tool_name: str | None) -> None:
        cursor = self._cursor(channel)
        ordinal = cursor.tool_starts
        cursor.tool_starts += 1
        if ordinal < len(self.acc.tools_used):
            return

        name = tool_name or "tool"
        self.acc.tools_used.append(name)
        logger.info("tool_start", tool=name, channel=channel)
        await self.emit(StatusEvent(status=tool_status(name)))

    async def on_tool_end(self, channel: str, output: Any) -> None:
        cursor = self._cursor(channel)
        ordinal = cursor.tool_ends
        cursor.tool_ends += 1
        if ordinal < self.acc.tool_ends:
            return
        self.acc.tool_ends += 1

        side_action = extract(output, tool_output=True).side_action
        if side_action is not None and self.acc.side_action is None:
            self.acc.side_action = side_action
            logger.info("map_action_sent", action_type=side_action.type)
            await self.emit(SideActionEvent(map_action=side_action))
        await self.emit(StatusEvent(status=STATUS_GENERATING))

    async def on_event(self, event: dict[str, Any]) -> None:
        """Handle one ``astream_events`` (v2) record."""
        kind = event.get("event")
        data = event.get("data") or {}

        if kind == "on_chat_model_stream":
            await self.on_text(EVENT_LOG_CHANNEL, extract(data.get("chunk")).text)
        elif kind == "on_tool_start":
            await self.on_tool_start(EVENT_LOG_CHANNEL, event.get("name"))
        elif kind == "on_tool_end":
            await self.on_tool_end(EVENT_LOG_CHANNEL, data.get("output"))
        elif kind == "on_chain_end" and not event.get("parent_ids"):
            output = extract_final_output(data.get("output"))
            if output:
                self.acc.fallback_text = output

    def response_text(self) -> str:
        """Streamed text, or the non-streamed final answer when nothing streamed."""
        if self.acc.text:
            return self.acc.text
        if self.acc.fallback_text:
            logger.info("non_streaming_response_received")
        return self.acc.fallback_text


class TurnCallbackHandler(AsyncCallbackHandler):
    """LangChain callback channel feeding a turn."""

    raise_error = True

    def __init__(self, run: _TurnRun):
        self._run = run

    async def on_llm_new_token(self, token: str, *, chunk: Any = None, **kwargs: Any) -> None:
        text = token if isinstance(token, str) and token else extract(chunk).text
        await self._run.on_text(CALLBACK_CHANNEL, text)

    async def on_tool_start(
        self, serialized: dict[str, Any] | None, input_str: str, **kwargs: Any
    ) -> None:
        name = kwargs.get("name") or (serialized or {}).get("name")
        await self._run.on_tool_start(CALLBACK_CHANNEL, name)

    async def on_tool_end(self, output: Any, **kwargs: Any) -> None:
        await self._run.on_tool_end(CALLBACK_CHANNEL, output)


class StreamingAgentOrchestrator:
    """Runs user turns against a compiled agent graph and streams the results."""

    def __init__(self, agent: Any, recursion_limit: int = 25):
        """
        Args:
            agent:           Runnable exposing ``astream_events`` (the compiled graph).
            recursion_limit: Max graph steps per turn.
        """
        self._agent = agent
        self._recursion_limit = recursion_limit

    async def run_turn(self, session: Session, user_text: str) -> TurnState:
        """
        Service one user turn for ``session``.

        Never raises for agent failures: they become a single ``error`` event
        and the session stays usable. Returns the state the turn ended in
        (FINALIZING on success, FAILED otherwise) for logging and tests.
        """
        emit: Emit = session.transport.send
        run = _TurnRun(emit)
        start = time.monotonic()
        logger.info("turn_started", user_message=user_text[:100])

        await emit(StatusEvent(status=STATUS_THINKING))
        try:
            inputs = {"messages": [*session.chat_history(), HumanMessage(content=user_text)]}
            config = {
                "callbacks": [TurnCallbackHandler(run)],
                "recursion_limit": self._recursion_limit,
            }
            async for event in self._agent.astream_events(inputs, config=config, version="v2"):
                await run.on_event(event)

            run.state = TurnState.FINALIZING
            response = run.response_text()
            await emit(FinalEvent(content=response, map_action=run.acc.side_action))
            session.record_exchange(user_text, response)

            logger.info(
                "turn_completed",
                duration_ms=int((time.monotonic() - start) * 1000),
                tools=len(run.acc.tools_used),
                streamed=run.acc.stream_started,
            )
        except Exception:
            run.state = TurnState.FAILED
            logger.exception("turn_failed", duration_ms=int((time.monotonic() - start) * 1000))
            await emit(ErrorEvent(content=GENERIC_ERROR_MESSAGE))
        finally:
            await emit(StatusEvent(status=None))

        return run.state
