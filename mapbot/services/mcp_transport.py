"""
JSON-RPC transports to the tool-execution endpoint (an MCP server).

Two transports are supported:

    StdioTransport — spawns the server as a subprocess and speaks
                     newline-delimited JSON-RPC over stdin/stdout.
    HttpTransport  — POSTs JSON-RPC to ``<url>/mcp`` (plain JSON or
                     single-event SSE responses).

Both expose the same small surface: connect(), disconnect(), list_tools(),
call_tool() and is_connected. One transport instance is shared by every
session, so requests on the stdio pipe are serialized with a lock.

Usage:
    transport = create_transport(settings.tool_server)
    await transport.connect()
    tools = await transport.list_tools()
    result = await transport.call_tool("geocode", {"address": "Times Square"})
    await transport.disconnect()
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from mapbot.config import ToolServerConfig
from mapbot.constants import API_VERSION, MCP_CLIENT_NAME, MCP_PROTOCOL_VERSION

logger = structlog.get_logger(__name__)

DEFAULT_STDIO_LINE_LIMIT = 16 * 1024 * 1024


class McpTransportError(Exception):
    """Base exception for transport-level failures."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class McpConnectionError(McpTransportError):
    """Not connected, or the connection was lost."""


class McpProtocolError(McpTransportError):
    """Invalid or error JSON-RPC response."""


class McpTimeoutError(McpTransportError):
    """The server did not answer in time."""


def _initialize_params() -> dict[str, Any]:
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": {"name": MCP_CLIENT_NAME, "version": API_VERSION},
    }


class McpTransport(ABC):
    """Common interface for tool-execution endpoint transports."""

    def __init__(self, timeout: float, init_timeout: float):
        self._timeout = timeout
        self._init_timeout = init_timeout
        self._request_id = 0

    def _build_request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Build a JSON-RPC 2.0 request object with a fresh id."""
        self._request_id += 1
        request: dict[str, Any] = {"jsonrpc": "2.0", "id": self._request_id, "method": method}
        if params is not None:
            request["params"] = params
        return request

    @staticmethod
    def _unwrap(response: dict[str, Any]) -> dict[str, Any]:
        """Return the ``result`` of a JSON-RPC response or raise on ``error``."""
        if not isinstance(response, dict):
            raise McpProtocolError(f"Unexpected JSON-RPC payload: {str(response)[:200]}")
        error = response.get("error")
        if error:
            raise McpProtocolError(
                f"MCP error {error.get('code', 'unknown')}: {error.get('message', 'Unknown error')}"
            )
        return response.get("result") or {}

    @abstractmethod
    async def connect(self) -> dict[str, Any]:
        """Open the channel and perform the initialize handshake. Returns serverInfo."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the channel. Idempotent."""

    @abstractmethod
    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        """Send a request and return its ``result``."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the channel is usable."""

    async def list_tools(self) -> list[dict[str, Any]]:
        """Raw tool definitions from ``tools/list``."""
        result = await self.request("tools/list", {})
        tools = result.get("tools")
        if not isinstance(tools, list):
            raise McpProtocolError("tools/list response has no 'tools' array")
        return tools

    async def call_tool(
        self, name: str, arguments: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        """Raw ``tools/call`` result: {"content": [...], "isError": bool}."""
        return await self.request(
            "tools/call", {"name": name, "arguments": arguments}, timeout=timeout
        )


class StdioTransport(McpTransport):
    """MCP server as a child process, JSON-RPC lines over stdin/stdout."""

    def __init__(
        self,
        command: list[str],
        environment: dict[str, str] | None = None,
        timeout: float = 30.0,
        init_timeout: float = 10.0,
        line_limit: int = DEFAULT_STDIO_LINE_LIMIT,
    ):
        if not command:
            raise ValueError("Command cannot be empty")
        super().__init__(timeout, init_timeout)
        self._command = command
        self._environment = environment or {}
        self._line_limit = line_limit
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        # One request in flight at a time on the shared pipe
        self._lock = asyncio.Lock()

    async def connect(self) -> dict[str, Any]:
        if self._process is not None:
            raise McpConnectionError("Transport already connected")

        logger.info("mcp_server_spawning", command=" ".join(self._command))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self._environment},
                limit=self._line_limit,
            )
        except FileNotFoundError as e:
            raise McpConnectionError(f"MCP server command not found: {self._command[0]}", e) from e
        except OSError as e:
            raise McpConnectionError(f"Failed to spawn MCP server: {e}", e) from e

        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            result = await self.request("initialize", _initialize_params(), timeout=self._init_timeout)
            await self._write({"jsonrpc": "2.0", "method": "notifications/initialized"})
        except Exception:
            await self.disconnect()
            raise

        return result.get("serverInfo") or {}

    async def disconnect(self) -> None:
        if self._stderr_task:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None

        if self._process:
            try:
                self._process.terminate()
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=2.0)
                except asyncio.TimeoutError:
                    self._process.kill()
                    await self._process.wait()
            except ProcessLookupError:
                pass
            finally:
                self._process = None
                logger.info("mcp_server_stopped")

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _write(self, message: dict[str, Any]) -> None:
        if not self._process or not self._process.stdin:
            raise McpConnectionError("Transport not connected")
        try:
            self._process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise McpConnectionError("MCP server connection lost", e) from e

    async def _readline(self, stdout: asyncio.StreamReader) -> bytes:
        """
        Read one newline-terminated line (partial or empty at EOF).

        A line longer than the limit is drained up to and including its
        newline, so the next read starts on a message boundary.
        """
        try:
            return await stdout.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            return e.partial
        except asyncio.LimitOverrunError as e:
            consumed = e.consumed

        while True:
            await stdout.read(consumed)
            try:
                await stdout.readuntil(b"\n")
                break
            except asyncio.IncompleteReadError:
                break
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed
        raise McpProtocolError(f"MCP server response exceeds the {self._line_limit} byte line limit")

    async def _read_response(self, request_id: int) -> dict[str, Any]:
        """Read lines until the response matching ``request_id`` arrives."""
        if not self._process or not self._process.stdout:
            raise McpConnectionError("Transport not connected")
        while True:
            line = await self._readline(self._process.stdout)
            if not line:
                if self._process.returncode is not None:
                    raise McpConnectionError(
                        f"MCP server exited with code {self._process.returncode}"
                    )
                raise McpConnectionError("MCP server closed connection unexpectedly")
            try:
                message = json.loads(line.decode("utf-8"))
            except json.JSONDecodeError as e:
                raise McpProtocolError(f"Invalid JSON from MCP server: {line[:100]!r}", e) from e
            # Server-initiated notifications and log messages carry no matching id
            if isinstance(message, dict) and message.get("id") == request_id:
                return message

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        if not self.is_connected:
            raise McpConnectionError("Transport not connected")

        effective_timeout = timeout or self._timeout
        async with self._lock:
            request = self._build_request(method, params)
            logger.debug("mcp_request", method=method, request_id=request["id"])
            await self._write(request)
            try:
                response = await asyncio.wait_for(
                    self._read_response(request["id"]), timeout=effective_timeout
                )
            except asyncio.TimeoutError as e:
                raise McpTimeoutError(
                    f"MCP server did not respond to {method} within {effective_timeout}s", e
                ) from e

        return self._unwrap(response)

    async def _read_stderr(self) -> None:
        """Forward the server's stderr (its log channel) into our logs."""
        if not self._process or not self._process.stderr:
            return
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            logger.info("mcp_server_log", line=line.decode("utf-8", errors="replace").rstrip())


class HttpTransport(McpTransport):
    """Remote MCP server speaking JSON-RPC over HTTP POST."""

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        init_timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(timeout, init_timeout)
        self._server_url = server_url.rstrip("/")
        self._headers = headers or {}
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None
        self._connected = False

    @property
    def endpoint(self) -> str:
        return f"{self._server_url}/mcp"

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        """Decode a plain JSON body or the first ``data:`` line of an SSE body."""
        content_type = response.headers.get("content-type", "")
        text = response.text
        if "text/event-stream" in content_type or text.startswith("event:"):
            for line in text.splitlines():
                line = line.strip()
                if line.startswith("data:") and line[5:].strip():
                    try:
                        return json.loads(line[5:].strip())
                    except json.JSONDecodeError as e:
                        raise McpProtocolError(f"Failed to parse SSE JSON data: {e}", e) from e
            raise McpProtocolError(f"No data found in SSE response: {text[:200]}")
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise McpProtocolError(f"Invalid JSON response: {text[:200]}", e) from e

    def _request_headers(self) -> dict[str, str]:
        return {"Mcp-Session-Id": self._session_id} if self._session_id else {}

    async def connect(self) -> dict[str, Any]:
        if self._connected:
            return {}

        logger.info("mcp_server_connecting", url=self._server_url)
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
                **self._headers,
            },
            timeout=self._timeout,
            transport=self._http_transport,
        )
        self._connected = True
        try:
            result = await self.request("initialize", _initialize_params(), timeout=self._init_timeout)
            await self._client.post(
                self.endpoint,
                json={"jsonrpc": "2.0", "method": "notifications/initialized"},
                headers=self._request_headers(),
            )
        except Exception as e:
            await self.disconnect()
            if isinstance(e, McpTransportError):
                raise
            raise McpConnectionError(f"Failed to connect to MCP server: {e}", e) from e

        return result.get("serverInfo") or {}

    async def disconnect(self) -> None:
        self._connected = False
        self._session_id = None
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        if not self._client or not self._connected:
            raise McpConnectionError("Not connected to MCP server")

        effective_timeout = timeout or self._timeout
        request = self._build_request(method, params)
        logger.debug("mcp_request", method=method, request_id=request["id"])
        try:
            response = await self._client.post(
                self.endpoint,
                json=request,
                headers=self._request_headers(),
                timeout=effective_timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise McpTimeoutError(f"{method} timed out after {effective_timeout}s", e) from e
        except httpx.HTTPStatusError as e:
            raise McpProtocolError(
                f"HTTP error {e.response.status_code}: {e.response.text[:200]}", e
            ) from e
        except httpx.RequestError as e:
            raise McpConnectionError(f"Connection error: {e}", e) from e

        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id

        return self._unwrap(self._parse_body(response))


def create_transport(config: ToolServerConfig) -> McpTransport:
    """Build the transport selected by ``TOOL_SERVER__TRANSPORT``."""
    if config.transport == "http":
        return HttpTransport(
            config.url,
            timeout=config.request_timeout_seconds,
            init_timeout=config.init_timeout_seconds,
        )
    return StdioTransport(
        config.command,
        timeout=config.request_timeout_seconds,
        init_timeout=config.init_timeout_seconds,
        line_limit=config.stdio_line_limit_bytes,
    )
