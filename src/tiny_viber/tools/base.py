from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from tiny_viber.observability.structured_log import log_json

logger = logging.getLogger(__name__)

RESULT_SUCCESS = "success"
RESULT_FAILED = "failed"


@dataclass(frozen=True)
class ToolRequest:
    name: str
    args: Dict[str, object]


@dataclass(frozen=True)
class ToolContext:
    # Becomes the status document id for tools that create one.
    invocation_id: str = ""
    session_id: str = ""
    user_id: str = ""
    user_name: str = ""


@dataclass(frozen=True)
class ToolResult:
    ok: bool
    output: Dict[str, Any] = field(default_factory=dict)


class ToolInput(BaseModel):
    """Tool arguments; camelCase and snake_case keys are both accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Tool(Protocol):
    name: str
    description: str
    input_model: Type[ToolInput]

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        ...


def success(**fields: Any) -> ToolResult:
    return ToolResult(ok=True, output={"status": RESULT_SUCCESS, **fields})


def failure(error: str, **fields: Any) -> ToolResult:
    return ToolResult(ok=False, output={"status": RESULT_FAILED, "error": error, **fields})


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc") or ()) or "input"
        parts.append(f"{location}: {err.get('msg')}")
    return "Invalid tool input: " + "; ".join(parts)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        name = (getattr(tool, "name", "") or "").strip().lower()
        if not name:
            raise ValueError("Tool name is required.")
        self._tools[name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get((name or "").strip().lower())

    def names(self) -> List[str]:
        return sorted(self._tools.keys())

    def tool_schemas(self) -> List[Dict[str, Any]]:
        """Anthropic-style tool definitions, input schemas generated from the models."""
        schemas: List[Dict[str, Any]] = []
        for name in sorted(self._tools.keys()):
            tool = self._tools[name]
            schemas.append(
                {
                    "name": name,
                    "description": tool.description,
                    "input_schema": tool.input_model.model_json_schema(by_alias=True),
                }
            )
        return schemas

    async def invoke(self, name: str, args: Dict[str, object], context: ToolContext) -> ToolResult:
        """Run a tool by name. Never raises; failures come back as results."""
        tool = self.get(name)
        if tool is None:
            return failure(f"Unknown tool: {name}. Available: {', '.join(self.names())}")
        request = ToolRequest(name=tool.name, args=dict(args or {}))
        try:
            return await tool.arun(request, context)
        except ValidationError as exc:
            return failure(format_validation_error(exc))
        except Exception as exc:
            log_json(
                logger,
                "tool.crashed",
                level="error",
                tool=tool.name,
                invocation_id=context.invocation_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            return failure(str(exc) or type(exc).__name__)
