"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (AgentConfig, ToolServerConfig) are env-overridable
via the double-underscore delimiter, e.g.:
    AGENT__MODEL=mistral-large-latest
    AGENT__HISTORY_WINDOW=30
    TOOL_SERVER__TRANSPORT=http
    TOOL_SERVER__URL=http://osm-mcp:9000
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mapbot.constants import DEFAULT_HISTORY_WINDOW


class AgentConfig(BaseModel):
    """Tool-calling agent parameters."""

    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    # Messages (user + assistant) kept per session between turns
    history_window: int = Field(default=DEFAULT_HISTORY_WINDOW, ge=1)
    # Upper bound on agent ⟷ tools round trips in one turn
    recursion_limit: int = 25


class ToolServerConfig(BaseModel):
    """Tool-execution endpoint (MCP server) connection parameters."""

    transport: Literal["stdio", "http"] = "stdio"
    command: list[str] = ["node", "mcp-server/src/index.js"]
    url: str = "http://localhost:9000"
    request_timeout_seconds: float = 30.0
    init_timeout_seconds: float = 10.0
    # Hard ceiling for a single tool call, independent of the server's own timeout
    call_timeout_seconds: float = 45.0
    # Longest single JSON-RPC line accepted from a stdio server (full route geometries run large)
    stdio_line_limit_bytes: int = Field(default=16 * 1024 * 1024, ge=64 * 1024)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # API Keys
    openai_api_key: str
    # Any OpenAI-compatible endpoint (e.g. https://api.mistral.ai/v1)
    openai_base_url: str | None = None

    # LangSmith / Observability
    langsmith_api_key: str = ""
    langsmith_project: str = "mapbot"
    langchain_tracing_v2: bool = False  # Explicit opt-in

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tool_server: ToolServerConfig = Field(default_factory=ToolServerConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
