"""
Shared test fixtures for the Map Bot backend test suite.
"""

import json
import uuid
from types import SimpleNamespace
from typing import Any

import pytest
import structlog
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, ToolMessage

from mapbot.api.protocol import serialize
from mapbot.services.session_store import Session


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    # Disable LangSmith tracing in tests
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application (lifespan not run)."""
    # Clear the lru_cache so settings pick up test env vars
    from mapbot.config import get_settings

    get_settings.cache_clear()

    from mapbot.main import app

    return TestClient(app)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingTransport:
    """Session transport that records every event in wire form."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, event) -> None:
        self.sent.append(serialize(event))

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def tokens(self) -> list[str]:
        return [m["content"] for m in self.sent if m["type"] == "stream"]

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == message_type]


class ScriptedAgent:
    """
    Stand-in for the compiled agent graph.

    Replays a script through both channels the orchestrator listens to:
    ``("event", {...})`` is yielded from astream_events, while
    ``("token", text)``, ``("tool_start", name)`` and ``("tool_end", output)``
    are delivered through the callback handler passed in the config.
    ``("raise", exc)`` fails the run at that point.
    """

    def __init__(self, script: list[tuple]):
        self.script = script
        self.inputs: list[dict] = []

    async def astream_events(self, inputs: dict, config: dict | None = None, version: str = "v2"):
        self.inputs.append(inputs)
        handler = (config or {}).get("callbacks", [None])[0]
        for step in self.script:
            kind, payload = step
            if kind == "event":
                yield payload
            elif kind == "token":
                await handler.on_llm_new_token(payload, run_id=uuid.uuid4())
            elif kind == "tool_start":
                await handler.on_tool_start({"name": payload}, "{}", run_id=uuid.uuid4())
            elif kind == "tool_end":
                await handler.on_tool_end(payload, run_id=uuid.uuid4())
            elif kind == "raise":
                raise payload


def stream_event(chunk: Any) -> dict:
    return {"event": "on_chat_model_stream", "name": "ChatOpenAI", "data": {"chunk": chunk}, "parent_ids": ["root"]}


def tool_start_event(name: str, args: dict | None = None) -> dict:
    return {"event": "on_tool_start", "name": name, "data": {"input": args or {}}, "parent_ids": ["root"]}


def tool_end_event(name: str, output: Any) -> dict:
    return {"event": "on_tool_end", "name": name, "data": {"output": output}, "parent_ids": ["root"]}


def final_event(answer: str) -> dict:
    messages = [HumanMessage(content="question"), AIMessage(content=answer)]
    return {"event": "on_chain_end", "name": "LangGraph", "data": {"output": {"messages": messages}}, "parent_ids": []}


def tool_message(payload: dict, name: str = "search_places") -> ToolMessage:
    return ToolMessage(content=json.dumps(payload), name=name, tool_call_id=f"call-{name}")


def markers_payload(title: str = "Blue Bottle Coffee") -> dict:
    return {
        "result": [{"name": title, "address": "1 Times Sq, New York"}],
        "mapAction": {
            "type": "SHOW_MARKERS",
            "markers": [
                {"position": [40.758, -73.9855], "title": title, "info": f"{title}\n1 Times Sq"}
            ],
            "fitBounds": True,
        },
    }


@pytest.fixture
def fakes() -> SimpleNamespace:
    """Fake agent/transport classes and astream_events record builders."""
    return SimpleNamespace(
        RecordingTransport=RecordingTransport,
        ScriptedAgent=ScriptedAgent,
        stream_event=stream_event,
        tool_start_event=tool_start_event,
        tool_end_event=tool_end_event,
        final_event=final_event,
        tool_message=tool_message,
        markers_payload=markers_payload,
        chunk=AIMessageChunk,
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def session(transport: RecordingTransport) -> Session:
    """A session with the default retention window and a recording transport."""
    return Session(id="sess-1", transport=transport)
