"""
Tool descriptor models.

Descriptors are read once from the tool-execution endpoint's ``tools/list``
response and never change afterwards.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


_LITERAL_TYPES = (str, int, bool)


def _literal_values(enum: Any) -> tuple[Any, ...] | None:
    """Declared enum values usable as Literal members; None if there are none or any is not a scalar."""
    if not isinstance(enum, list) or not enum:
        return None
    if not all(isinstance(v, _LITERAL_TYPES) for v in enum):
        return None
    return tuple(enum)


class ParameterSpec(BaseModel):
    """One declared tool parameter."""

    model_config = ConfigDict(frozen=True)

    type: str | None = Field(default=None, description="JSON Schema primitive type name")
    enum: tuple[Any, ...] | None = Field(default=None, description="Allowed literal values, as declared")
    required: bool = False
    description: str = ""


class ToolDescriptor(BaseModel):
    """A named, schema-described operation exposed by the tool-execution endpoint."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)

    @classmethod
    def from_mcp(cls, tool: dict[str, Any]) -> "ToolDescriptor":
        """
        Build a descriptor from an MCP tool definition.

        Optional-ness comes from the schema's ``required`` list only; a
        ``default`` on a property does not make it optional or required.
        """
        schema = tool.get("inputSchema") or {}
        properties = schema.get("properties") or {}
        required = set(schema.get("required") or [])

        parameters: dict[str, ParameterSpec] = {}
        for param_name, prop in properties.items():
            prop = prop if isinstance(prop, dict) else {}
            enum = prop.get("enum")
            param_type = prop.get("type")
            parameters[param_name] = ParameterSpec(
                type=param_type if isinstance(param_type, str) else None,
                enum=_literal_values(enum),
                required=param_name in required,
                description=prop.get("description") or "",
            )

        return cls(
            name=tool["name"],
            description=tool.get("description") or "",
            parameters=parameters,
        )


class ToolResult(BaseModel):
    """Raw outcome of one tool call: the text blob and whether it reports an error."""

    text: str
    is_error: bool = False
    duration_ms: int = 0
