"""Pydantic models for chat requests and transcripts."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    raw_arguments: str = ""

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_openai(cls, payload: Any) -> Optional["ToolCall"]:
        """Build from an OpenAI-style ``tool_calls`` entry, or ``None`` if unusable."""

        if not isinstance(payload, dict):
            return None
        function = payload.get("function")
        if not isinstance(function, dict):
            return None
        name = function.get("name")
        call_id = payload.get("id")
        if not (isinstance(name, str) and name.strip()):
            return None
        if not (isinstance(call_id, str) and call_id.strip()):
            return None
        arguments = function.get("arguments")
        if isinstance(arguments, (dict, list)):
            arguments = json.dumps(arguments, ensure_ascii=False)
        elif not isinstance(arguments, str):
            arguments = ""
        return cls(id=call_id, name=name.strip(), raw_arguments=arguments)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


class ChatMessage(BaseModel):
    """Represents a single chat message."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_openai(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message


class ChatTurnRequest(BaseModel):
    """Incoming chat turn from the browser."""

    messages: List[ChatMessage]
    character_id: Optional[str] = Field(default=None, alias="characterId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def build_completion_payload(
    *,
    model: str,
    messages: List[ChatMessage],
    stream: bool,
    max_tokens: int,
    temperature: float,
    top_p: float,
    tools: Optional[List[Dict[str, Any]]] = None,
    tool_choice: Optional[Literal["auto", "none"]] = None,
) -> Dict[str, Any]:
    """Serialize a chat completion request for the upstream provider."""

    payload: Dict[str, Any] = {
        "model": model,
        "messages": [message.to_openai() for message in messages],
        "stream": stream,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "top_p": top_p,
    }
    if tools:
        payload["tools"] = tools
        payload["tool_choice"] = tool_choice or "auto"
    return payload


__all__ = [
    "ChatMessage",
    "ChatTurnRequest",
    "ToolCall",
    "build_completion_payload",
]
