"""
Bridge between the tool-execution endpoint and the LangChain agent.

The bridge owns the single long-lived MCP connection. It is started once in
the FastAPI lifespan, lists the server's tools exactly once, and turns each
descriptor into a StructuredTool whose args schema is a generated pydantic
model. Tool calls never raise: failures come back as a JSON error body the
agent can read and explain to the user.

Usage:
    bridge = ToolBridge(create_transport(settings.tool_server), call_timeout=45.0)
    await bridge.start()            # raises ToolBridgeStartupError
    tools = bridge.as_langchain_tools()
    result = await bridge.invoke("geocode", {"address": "Times Square"})
    await bridge.close()
"""

import asyncio
import json
import time
from typing import Any, Literal, Optional

import structlog
from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field, create_model

from mapbot.models.tools import ParameterSpec, ToolDescriptor, ToolResult
from mapbot.services.mcp_transport import McpTransport

logger = structlog.get_logger(__name__)


class ToolBridgeError(Exception):
    """Base error for the tool bridge."""


class ToolBridgeStartupError(ToolBridgeError):
    """The endpoint could not be reached or its tools could not be listed."""


_PRIMITIVE_TYPES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}


def _python_type(spec: ParameterSpec) -> Any:
    """Map a parameter spec to a type annotation. Unknown types become Any."""
    if spec.enum:
        return Literal[spec.enum]
    return _PRIMITIVE_TYPES.get(spec.type or "", Any)


def _model_name(tool_name: str) -> str:
    return "".join(part.capitalize() for part in tool_name.replace("-", "_").split("_")) + "Input"


def build_args_schema(descriptor: ToolDescriptor) -> type[BaseModel]:
    """Generate the pydantic args model the agent validates tool calls against."""
    fields: dict[str, Any] = {}
    for name, spec in descriptor.parameters.items():
        annotation = _python_type(spec)
        if spec.required:
            fields[name] = (annotation, Field(..., description=spec.description))
        else:
            fields[name] = (Optional[annotation], Field(default=None, description=spec.description))
    return create_model(_model_name(descriptor.name), **fields)


def _result_text(raw: dict[str, Any]) -> str:
    """Concatenate the text items of an MCP tools/call result."""
    parts = [
        item.get("text") or ""
        for item in raw.get("content") or []
        if isinstance(item, dict) and item.get("type", "text") == "text"
    ]
    return "".join(parts)


def _error_body(name: str, arguments: dict[str, Any], message: str) -> str:
    return json.dumps({"error": message, "tool": name, "args": arguments}, default=str)


class ToolBridge:
    """Owns the tool-execution connection and the cached tool descriptors."""

    def __init__(self, transport: McpTransport, call_timeout: float = 45.0):
        """
        Args:
            transport:    Unconnected MCP transport.
            call_timeout: Upper bound in seconds for any single tool call.
        """
        self._transport = transport
        self._call_timeout = call_timeout
        self._descriptors: list[ToolDescriptor] | None = None
        self._langchain_tools: list[BaseTool] | None = None
        self._start_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Health signal: whether the endpoint connection is currently up."""
        return self._descriptors is not None and self._transport.is_connected

    async def start(self) -> list[ToolDescriptor]:
        """
        Connect and list the tools. Runs once; later calls return the cache.

        Raises:
            ToolBridgeStartupError: If the endpoint is unreachable or listing fails.
        """
        async with self._start_lock:
            if self._descriptors is not None:
                return self._descriptors

            try:
                server_info = await self._transport.connect()
                raw_tools = await self._transport.list_tools()
                descriptors = [ToolDescriptor.from_mcp(tool) for tool in raw_tools]
            except Exception as e:
                logger.exception("tool_bridge_start_failed")
                await self._transport.disconnect()
                raise ToolBridgeStartupError(f"Tool server unavailable: {e}") from e

            self._descriptors = descriptors
            logger.info(
                "tool_bridge_started",
                server=server_info.get("name"),
                tools=[d.name for d in descriptors],
            )
            return descriptors

    def list_tools(self) -> list[ToolDescriptor]:
        """Cached descriptors. ``start()`` must have succeeded."""
        if self._descriptors is None:
            raise ToolBridgeError("ToolBridge.start() has not completed")
        return list(self._descriptors)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """
        Call a tool. Never raises for call failures.

        A transport error, timeout or server-side error comes back as
        ``ToolResult(is_error=True)`` whose text is ``{"error": ...}`` JSON.
        """
        log = logger.bind(tool=name)
        log.info("tool_call_started", args=arguments)
        start = time.monotonic()

        try:
            raw = await asyncio.wait_for(
                self._transport.call_tool(name, arguments, timeout=self._call_timeout),
                timeout=self._call_timeout,
            )
            text = _result_text(raw)
            is_error = bool(raw.get("isError"))
        except asyncio.TimeoutError:
            text = _error_body(name, arguments, f"Tool call timed out after {self._call_timeout}s")
            is_error = True
        except Exception as e:
            log.exception("tool_call_exception")
            text = _error_body(name, arguments, str(e) or type(e).__name__)
            is_error = True

        duration_ms = int((time.monotonic() - start) * 1000)
        is_error = self._log_outcome(log, text, is_error, duration_ms)
        return ToolResult(text=text, is_error=is_error, duration_ms=duration_ms)

    @staticmethod
    def _log_outcome(log, text: str, is_error: bool, duration_ms: int) -> bool:
        """Log the call outcome; a JSON body with an ``error`` key also counts as an error."""
        try:
            parsed = json.loads(text)
        except (ValueError, TypeError):
            parsed = None

        if isinstance(parsed, dict) and parsed.get("error"):
            log.error("tool_call_failed", duration_ms=duration_ms, error=parsed["error"])
            return True
        if is_error:
            log.error("tool_call_failed", duration_ms=duration_ms, error=text[:200])
            return True

        result = parsed.get("result") if isinstance(parsed, dict) else None
        result_count = len(result) if isinstance(result, list) else 1
        log.info("tool_call_ok", duration_ms=duration_ms, result_count=result_count)
        return False

    def _make_tool(self, descriptor: ToolDescriptor) -> BaseTool:
        async def _call(**kwargs: Any) -> str:
            arguments = {k: v for k, v in kwargs.items() if v is not None}
            result = await self.invoke(descriptor.name, arguments)
            return result.text

        return StructuredTool.from_function(
            coroutine=_call,
            name=descriptor.name,
            description=descriptor.description or descriptor.name,
            args_schema=build_args_schema(descriptor),
        )

    def as_langchain_tools(self) -> list[BaseTool]:
        """StructuredTools for the agent, built once from the cached descriptors."""
        if self._langchain_tools is None:
            self._langchain_tools = [self._make_tool(d) for d in self.list_tools()]
        return self._langchain_tools

    async def close(self) -> None:
        """Shut down the endpoint connection."""
        await self._transport.disconnect()
        logger.info("tool_bridge_closed")
