"""Chat orchestrator running the tool-augmented two-pass completion protocol."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Literal, Optional, Sequence

from ..config import Settings
from ..schemas.chat import ChatMessage, ToolCall, build_completion_payload
from ..tools import ToolRegistry, ToolResult
from ..upstream import UpstreamClient, UpstreamRequest
from .personas import Persona, SourceRequestPolicy
from .sanitize import sanitize_assistant_text
from .sse import iter_content_deltas

logger = logging.getLogger(__name__)

PRE_SEARCH_TOOL = "web_search"
PRE_SEARCH_QUERY_CHARS = 200
PRE_SEARCH_CONTEXT_CHARS = 6000
FALLBACK_SOURCE_LIMIT = 5
FALLBACK_TOOL_SOURCE_LIMIT = 3
LAST_RESORT_ANSWER = "Sorry, I couldn't produce an answer just now. Please try again shortly."

TurnEventKind = Literal["delta", "tool_call", "tool_result", "answer"]


@dataclass(frozen=True)
class TurnEvent:
    """One observable step of a chat turn.

    ``delta`` carries streamed text, ``tool_call`` and ``tool_result`` bracket
    each tool execution, and ``answer`` carries the final sanitised message
    (always the last event).
    """

    kind: TurnEventKind
    text: str = ""
    tool: Optional[str] = None
    ok: Optional[bool] = None
    fallback: bool = False


@dataclass
class _ExecutedTool:
    name: str
    result: ToolResult


@dataclass
class _TurnContext:
    persona: Persona
    transcript: list[ChatMessage]
    last_user_text: Optional[str]
    wants_sources: bool = False
    pre_search: Optional[dict[str, Any]] = None
    executed: list[_ExecutedTool] = field(default_factory=list)


def compose_transcript(
    persona: Persona,
    history: Sequence[ChatMessage],
    *,
    limit: int,
) -> list[ChatMessage]:
    """Return a new transcript: system prompt, trimmed history, latest message.

    Only user and assistant text messages from the client are relayed. The last
    message is always kept even when older ones are trimmed.
    """

    relayed = [
        ChatMessage(role=message.role, content=message.content)
        for message in history
        if message.role in ("user", "assistant") and isinstance(message.content, str)
    ]
    if relayed and relayed[-1].role == "user":
        kept = relayed[:-1][-limit:] + [relayed[-1]] if limit > 0 else [relayed[-1]]
    else:
        kept = relayed[-limit:] if limit > 0 else []
    return [ChatMessage(role="system", content=persona.system_prompt), *kept]


def _last_user_text(history: Sequence[ChatMessage]) -> Optional[str]:
    for message in reversed(history):
        if message.role == "user" and isinstance(message.content, str):
            return message.content
    return None


def _first_message(payload: dict[str, Any]) -> dict[str, Any]:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        if isinstance(choice, dict) and isinstance(choice.get("message"), dict):
            return choice["message"]
    return {}


def _search_results(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, dict):
        return []
    results = value.get("results")
    if not isinstance(results, list):
        return []
    return [item for item in results if isinstance(item, dict)]


def compose_fallback_answer(
    *,
    pre_search: Optional[dict[str, Any]],
    executed: Sequence[_ExecutedTool] = (),
    wants_sources: bool = False,
) -> str:
    """Build a useful, never-empty reply when the model returned no text."""

    parts = [
        "Sorry, the model didn't return a usable answer this time, most likely "
        "because of a network hiccup or timeout upstream."
    ]

    sources = [
        f"- {item.get('title') or 'Source'}: {item.get('link') or ''}"
        for item in _search_results(pre_search)[:FALLBACK_SOURCE_LIMIT]
    ]
    tool_lines: list[str] = []
    for entry in executed:
        if entry.name != PRE_SEARCH_TOOL or not entry.result.ok:
            continue
        for item in _search_results(entry.result.value)[:FALLBACK_TOOL_SOURCE_LIMIT]:
            tool_lines.append(f"- {item.get('title') or ''}: {item.get('link') or ''}")

    if wants_sources and sources:
        parts.append("Here are the sources found so far:\n" + "\n".join(sources))
    elif tool_lines:
        parts.append("Here is what the tools returned:\n" + "\n".join(tool_lines))

    advice = [
        "1) Resend the message; a second attempt usually works.",
        "2) Split the question into one or two smaller parts.",
    ]
    if wants_sources:
        advice.append("3) If you need links, ask explicitly for sources in your question.")
    parts.append("Suggestions:\n" + "\n".join(advice))

    return "\n\n".join(parts).strip() or LAST_RESORT_ANSWER


class ChatOrchestrator:
    """Coordinate one chat turn across the upstream model and the tool registry."""

    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamClient,
        registry: ToolRegistry,
        *,
        source_policy: SourceRequestPolicy | None = None,
    ):
        self._settings = settings
        self._upstream = upstream
        self._registry = registry
        self._source_policy = source_policy or SourceRequestPolicy(
            settings.source_request_keywords
        )

    def _payload(
        self,
        messages: list[ChatMessage],
        *,
        stream: bool,
        tools: Optional[list[dict[str, Any]]] = None,
        tool_choice: Optional[Literal["auto", "none"]] = None,
    ) -> dict[str, Any]:
        return build_completion_payload(
            model=self._settings.chat_model,
            messages=messages,
            stream=stream,
            max_tokens=self._settings.max_tokens,
            temperature=self._settings.temperature,
            top_p=self._settings.top_p,
            tools=tools,
            tool_choice=tool_choice,
        )

    async def respond(
        self,
        history: Sequence[ChatMessage],
        persona: Persona,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run one turn and yield its events; the final event is the answer.

        Raises :class:`UpstreamError` when the upstream call cannot be completed.
        """

        context = _TurnContext(
            persona=persona,
            transcript=compose_transcript(
                persona, history, limit=self._settings.history_limit
            ),
            last_user_text=_last_user_text(history),
        )

        if not persona.tools_enabled:
            async for event in self._respond_streaming(context):
                yield event
            return

        async for event in self._respond_with_tools(context):
            yield event

    async def respond_text(
        self, history: Sequence[ChatMessage], persona: Persona
    ) -> str:
        """Run a turn to completion and return only the final answer."""

        answer = ""
        async for event in self.respond(history, persona):
            if event.kind == "answer":
                answer = event.text
        return answer

    async def _respond_streaming(
        self, context: _TurnContext
    ) -> AsyncGenerator[TurnEvent, None]:
        payload = self._payload(context.transcript, stream=True)
        request = UpstreamRequest(
            "POST",
            self._settings.chat_completions_url,
            json=payload,
            headers={"Accept": "text/event-stream"},
        )
        collected: list[str] = []
        async with self._upstream.stream(request) as response:
            async for delta in iter_content_deltas(response.aiter_bytes()):
                collected.append(delta)
                yield TurnEvent(kind="delta", text=delta)

        answer = sanitize_assistant_text("".join(collected))
        if answer:
            yield TurnEvent(kind="answer", text=answer)
            return
        logger.warning("Streaming completion for %s produced no text", context.persona.id)
        yield TurnEvent(
            kind="answer",
            text=compose_fallback_answer(pre_search=None),
            fallback=True,
        )

    async def _pre_search(self, context: _TurnContext) -> None:
        if PRE_SEARCH_TOOL not in self._registry:
            return
        query = (context.last_user_text or "")[:PRE_SEARCH_QUERY_CHARS]
        result = await self._registry.execute(
            PRE_SEARCH_TOOL,
            {"query": query, "num_results": 8, "freshness": "oneYear", "summary": True},
        )
        if not result.ok:
            logger.warning("Pre-search failed (continuing without it): %s", result.error)
            return

        context.pre_search = result.value
        packed = json.dumps(result.value, ensure_ascii=False, default=str)
        context.transcript = [
            *context.transcript,
            ChatMessage(
                role="system",
                content=(
                    "Web search results (JSON) follow. Base the answer on them first "
                    "and finish with a sources list (title and link).\nSEARCH_RESULTS="
                    + packed[:PRE_SEARCH_CONTEXT_CHARS]
                ),
            ),
        ]
        logger.info(
            "Pre-search injected %d result(s)", len(_search_results(result.value))
        )

    async def _respond_with_tools(
        self, context: _TurnContext
    ) -> AsyncGenerator[TurnEvent, None]:
        context.wants_sources = self._source_policy.wants_sources(context.last_user_text)
        if context.wants_sources:
            await self._pre_search(context)

        tools = self._registry.list_for_model()
        first = await self._upstream.post_json(
            self._settings.chat_completions_url,
            self._payload(
                context.transcript, stream=False, tools=tools, tool_choice="auto"
            ),
        )
        message = _first_message(first)

        raw_calls = message.get("tool_calls")
        calls: list[ToolCall] = []
        for raw in raw_calls if isinstance(raw_calls, list) else []:
            call = ToolCall.from_openai(raw)
            if call is None:
                logger.warning("Skipping tool call without id or name: %r", raw)
                continue
            calls.append(call)

        if not calls:
            yield self._final_answer(message.get("content"), context)
            return

        logger.info(
            "Executing %d tool call(s): %s",
            len(calls),
            ", ".join(call.name for call in calls),
        )
        transcript = [
            *context.transcript,
            ChatMessage(role="assistant", content=None, tool_calls=calls),
        ]
        for call in calls:
            yield TurnEvent(kind="tool_call", tool=call.name)
            result = await self._registry.execute(call.name, call.raw_arguments)
            context.executed.append(_ExecutedTool(call.name, result))
            transcript.append(
                ChatMessage(role="tool", tool_call_id=call.id, content=result.to_json())
            )
            yield TurnEvent(kind="tool_result", tool=call.name, ok=result.ok)

        second = await self._upstream.post_json(
            self._settings.chat_completions_url,
            self._payload(transcript, stream=False, tools=tools, tool_choice="none"),
        )
        yield self._final_answer(_first_message(second).get("content"), context)

    def _final_answer(self, content: Any, context: _TurnContext) -> TurnEvent:
        answer = sanitize_assistant_text(content if isinstance(content, str) else None)
        if answer:
            return TurnEvent(kind="answer", text=answer)

        logger.warning(
            "Completion returned no visible text after %d tool call(s); using fallback",
            len(context.executed),
        )
        return TurnEvent(
            kind="answer",
            text=compose_fallback_answer(
                pre_search=context.pre_search,
                executed=context.executed,
                wants_sources=context.wants_sources,
            ),
            fallback=True,
        )


__all__ = [
    "ChatOrchestrator",
    "TurnEvent",
    "compose_fallback_answer",
    "compose_transcript",
]
