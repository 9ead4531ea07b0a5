"""Server-side tools the model may call during a chat turn."""

from __future__ import annotations

import httpx

from ..config import Settings
from .builtin import register_builtin_tools
from .registry import (
    RAW_ARGUMENTS_KEY,
    ToolDefinition,
    ToolInputError,
    ToolRegistry,
    ToolResult,
    parse_tool_arguments,
)
from .web import WebTools


def build_default_registry(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> tuple[ToolRegistry, WebTools]:
    """Register every built-in tool and return the frozen registry."""

    registry = ToolRegistry()
    register_builtin_tools(registry)
    web_tools = WebTools(settings, http_client=http_client)
    web_tools.register(registry)
    return registry.freeze(), web_tools


__all__ = [
    "RAW_ARGUMENTS_KEY",
    "ToolDefinition",
    "ToolInputError",
    "ToolRegistry",
    "ToolResult",
    "WebTools",
    "build_default_registry",
    "parse_tool_arguments",
]
