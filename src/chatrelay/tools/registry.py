"""Registry and executor for server-side tools exposed to the model."""

from __future__ import annotations

import copy
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union

logger = logging.getLogger(__name__)

RAW_ARGUMENTS_KEY = "_raw"

UNKNOWN_TOOL = "UnknownTool"
TOOL_EXECUTION_ERROR = "ToolExecutionError"
TOOL_ARGUMENT_ERROR = "ToolArgumentParseError"

ToolHandler = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolInputError(ValueError):
    """Raised by handlers when arguments are missing or out of range."""


@dataclass(frozen=True)
class ToolDefinition:
    """Name, description, and JSON schema advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {
            "type": "object",
            "properties": {},
            "additionalProperties": False,
        }
    )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": copy.deepcopy(self.parameters),
            },
        }


@dataclass(frozen=True)
class ToolResult:
    """Structured outcome of a tool call; always JSON serialisable."""

    ok: bool
    value: Any = None
    error: str | None = None
    error_type: str | None = None
    tool: str | None = None

    @classmethod
    def success(cls, tool: str, value: Any) -> "ToolResult":
        return cls(ok=True, value=value, tool=tool)

    @classmethod
    def failure(cls, tool: str, error: str, error_type: str) -> "ToolResult":
        return cls(ok=False, error=error, error_type=error_type, tool=tool)

    def to_payload(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {
            "ok": False,
            "error": self.error,
            "error_type": self.error_type,
            "tool": self.tool,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, default=str)


def parse_tool_arguments(raw: str | Mapping[str, Any] | None) -> dict[str, Any]:
    """Parse untrusted model arguments; malformed text lands under ``_raw``."""

    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Tool argument parse failure: %s", exc)
        return {RAW_ARGUMENTS_KEY: raw}
    if not isinstance(parsed, dict):
        return {RAW_ARGUMENTS_KEY: raw}
    return parsed


class ToolRegistry:
    """Hold tool definitions; read-only once :meth:`freeze` is called."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[ToolDefinition, ToolHandler]] = {}
        self._frozen = False

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen; register tools at start-up")
        if definition.name in self._entries:
            raise ValueError(f"Tool already registered: {definition.name}")
        self._entries[definition.name] = (definition, handler)

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> list[str]:
        return list(self._entries)

    def list_for_model(self) -> list[dict[str, Any]]:
        """Return OpenAI-style tool declarations in registration order."""

        return [definition.to_openai() for definition, _ in self._entries.values()]

    async def execute(
        self, name: str, arguments: str | Mapping[str, Any] | None
    ) -> ToolResult:
        """Run a tool; never raises for unknown tools or handler failures."""

        entry = self._entries.get(name)
        if entry is None:
            logger.warning("Model requested unknown tool %s", name)
            return ToolResult.failure(name, f"Unknown tool: {name}", UNKNOWN_TOOL)

        _, handler = entry
        args = parse_tool_arguments(arguments)
        try:
            result = handler(args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("Tool '%s' failed: %s", name, exc)
            error_type = (
                TOOL_ARGUMENT_ERROR if RAW_ARGUMENTS_KEY in args else TOOL_EXECUTION_ERROR
            )
            return ToolResult.failure(name, str(exc) or type(exc).__name__, error_type)

        try:
            json.dumps(result, default=str)
        except (TypeError, ValueError) as exc:
            return ToolResult.failure(
                name, f"Tool returned a non-serialisable value: {exc}", TOOL_EXECUTION_ERROR
            )
        return ToolResult.success(name, result)


__all__ = [
    "RAW_ARGUMENTS_KEY",
    "TOOL_ARGUMENT_ERROR",
    "TOOL_EXECUTION_ERROR",
    "UNKNOWN_TOOL",
    "ToolDefinition",
    "ToolHandler",
    "ToolInputError",
    "ToolRegistry",
    "ToolResult",
    "parse_tool_arguments",
]
