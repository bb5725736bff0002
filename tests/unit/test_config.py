"""Unit tests for the pydantic-settings configuration."""

import pytest

from mapbot.config import Settings, get_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.openai_api_key == "sk-test-fake-key-for-testing"
        assert settings.openai_base_url is None
        assert settings.agent.model == "gpt-4o-mini"
        assert settings.agent.history_window == 20
        assert settings.tool_server.transport == "stdio"
        assert settings.tool_server.command == ["node", "mcp-server/src/index.js"]
        assert settings.tool_server.stdio_line_limit_bytes == 16 * 1024 * 1024

    def test_nested_env_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("AGENT__MODEL", "mistral-large-latest")
        monkeypatch.setenv("AGENT__HISTORY_WINDOW", "30")
        monkeypatch.setenv("TOOL_SERVER__TRANSPORT", "http")
        monkeypatch.setenv("TOOL_SERVER__URL", "http://osm-mcp:9000")
        monkeypatch.setenv("OPENAI_BASE_URL", "https://api.mistral.ai/v1")

        settings = Settings(_env_file=None)

        assert settings.agent.model == "mistral-large-latest"
        assert settings.agent.history_window == 30
        assert settings.tool_server.transport == "http"
        assert settings.tool_server.url == "http://osm-mcp:9000"
        assert settings.openai_base_url == "https://api.mistral.ai/v1"

    def test_unknown_transport_rejected(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TOOL_SERVER__TRANSPORT", "carrier-pigeon")
        with pytest.raises(ValueError):
            Settings(_env_file=None)

    def test_history_window_must_be_positive(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("AGENT__HISTORY_WINDOW", "0")
        with pytest.raises(ValueError):
            Settings(_env_file=None)

    def test_stdio_line_limit_floor(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TOOL_SERVER__STDIO_LINE_LIMIT_BYTES", "4096")
        with pytest.raises(ValueError):
            Settings(_env_file=None)

    def test_api_key_required(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("OPENAI_API_KEY")
        with pytest.raises(ValueError):
            Settings(_env_file=None)


def test_get_settings_is_cached():
    get_settings.cache_clear()
    assert get_settings() is get_settings()
    get_settings.cache_clear()
