"""
Integration tests for the chat WebSocket.

The orchestrator is real; the agent graph is replaced by a scripted agent
so no model or tool server is involved.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from mapbot.agents.orchestrator import StreamingAgentOrchestrator
from mapbot.constants import GREETING_MESSAGE
from mapbot.services.session_store import SessionStore


def _read_turn(ws) -> list[dict]:
    """Read one turn's messages, through the trailing thinking(null)."""
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["type"] in ("stream_end", "error"):
            messages.append(ws.receive_json())
            return messages


@pytest.fixture
def cafe_agent(fakes):
    return fakes.ScriptedAgent([
        ("event", fakes.tool_start_event("search_places", {"query": "cafes near Times Square"})),
        ("event", fakes.tool_end_event("search_places", fakes.tool_message(fakes.markers_payload()))),
        ("event", fakes.stream_event(fakes.chunk(content="Found "))),
        ("event", fakes.stream_event(fakes.chunk(content="one cafe."))),
        ("event", fakes.final_event("Found one cafe.")),
    ])


@pytest.fixture
def sessions() -> SessionStore:
    return SessionStore(history_window=20)


@pytest.fixture
def live_client(client: TestClient, monkeypatch: pytest.MonkeyPatch, cafe_agent, sessions):
    """TestClient whose app.state carries a scripted orchestrator and a session store."""
    monkeypatch.setattr(client.app.state, "orchestrator", StreamingAgentOrchestrator(cafe_agent), raising=False)
    monkeypatch.setattr(client.app.state, "sessions", sessions, raising=False)
    return client


class TestChatSocket:
    def test_greeting_on_connect(self, live_client: TestClient):
        with live_client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "response", "content": GREETING_MESSAGE}

    @pytest.mark.parametrize("path", ["/ws", "/"])
    def test_full_turn(self, live_client: TestClient, path):
        with live_client.websocket_connect(path) as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "Find cafes near Times Square"})
            messages = _read_turn(ws)

        assert [m["type"] for m in messages] == [
            "thinking",
            "thinking",
            "map_action",
            "thinking",
            "thinking",
            "stream",
            "stream",
            "stream_end",
            "thinking",
        ]
        assert [m.get("status") for m in messages if m["type"] == "thinking"] == [
            "Thinking...",
            "Using search places...",
            "Generating response...",
            None,
            None,
        ]
        assert messages[2]["mapAction"]["type"] == "SHOW_MARKERS"
        assert messages[2]["mapAction"]["fitBounds"] is True
        assert messages[7]["content"] == "Found one cafe."
        assert messages[7]["mapAction"] == messages[2]["mapAction"]

    def test_unknown_and_malformed_messages_ignored(self, live_client: TestClient):
        with live_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("this is not json")
            ws.send_json({"type": "ping"})
            ws.send_json({"type": "chat"})
            ws.send_json({"type": "chat", "content": "hello"})
            messages = _read_turn(ws)

        assert messages[0] == {"type": "thinking", "status": "Thinking..."}
        assert messages[-2]["type"] == "stream_end"

    def test_turns_run_in_order(self, live_client: TestClient, cafe_agent):
        with live_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "first"})
            ws.send_json({"type": "chat", "content": "second"})
            first = _read_turn(ws)
            second = _read_turn(ws)

        assert first[0]["status"] == "Thinking..."
        assert second[0]["status"] == "Thinking..."
        # The second turn sees the first exchange as history
        history = cafe_agent.inputs[1]["messages"]
        assert [m.content for m in history] == ["first", "Found one cafe.", "second"]

    def test_session_removed_on_disconnect(self, live_client: TestClient, sessions: SessionStore):
        with live_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert len(sessions) == 1

        assert len(sessions) == 0

    def test_connections_do_not_share_history(self, live_client: TestClient, cafe_agent):
        with live_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "first"})
            _read_turn(ws)

        with live_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "fresh"})
            _read_turn(ws)

        assert [m.content for m in cafe_agent.inputs[1]["messages"]] == ["fresh"]

    def test_agent_failure_keeps_connection_open(self, live_client: TestClient, cafe_agent):
        cafe_agent.script = [("raise", RuntimeError("model unavailable"))]

        with live_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "Find cafes"})
            failed = _read_turn(ws)
            ws.send_json({"type": "chat", "content": "Find cafes again"})
            retried = _read_turn(ws)

        assert [m["type"] for m in failed] == ["thinking", "error", "thinking"]
        assert [m["type"] for m in retried] == ["thinking", "error", "thinking"]


def test_socket_closed_when_agent_unavailable(client: TestClient):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
    assert exc_info.value.code == 1011
