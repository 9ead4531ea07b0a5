from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from chatrelay.chat.orchestrator import (
    ChatOrchestrator,
    compose_fallback_answer,
    compose_transcript,
)
from chatrelay.chat.personas import Persona, default_persona
from chatrelay.schemas.chat import ChatMessage
from chatrelay.tools.registry import ToolDefinition, ToolRegistry
from chatrelay.upstream import RetryPolicy, UpstreamClient, UpstreamError

from conftest import make_settings

pytestmark = pytest.mark.anyio

TOOL_PERSONA = Persona(
    id="agent-1",
    name="Helper",
    description="a research assistant",
    instructions="Use tools when useful.",
    tools_enabled=True,
    is_custom=True,
)


def sse_body(*pieces: str) -> bytes:
    frames = [
        "data: " + json.dumps({"choices": [{"delta": {"content": piece}}]}) + "\n\n"
        for piece in pieces
    ]
    return ("".join(frames) + "data: [DONE]\n\n").encode()


def completion(content: Any = None, tool_calls: list[dict] | None = None) -> dict:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message}]}


def tool_call(call_id: str, name: str, arguments: str) -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


class ScriptedUpstream:
    """MockTransport handler replaying canned responses and recording bodies."""

    def __init__(self, *responses: httpx.Response):
        self._responses = list(responses)
        self.bodies: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        self.headers.append(request.headers)
        return self._responses.pop(0)


def make_registry(*, search_results: list[dict] | None = None, fail_search: bool = False):
    registry = ToolRegistry()
    searches: list[dict] = []

    def add(args):
        return {"sum": args["a"] + args["b"]}

    def web_search(args):
        searches.append(args)
        if fail_search:
            raise RuntimeError("search down")
        return {"query": args["query"], "results": search_results or []}

    registry.register(ToolDefinition("add", "Add two numbers"), add)
    registry.register(ToolDefinition("web_search", "Search"), web_search)
    return registry.freeze(), searches


def make_orchestrator(handler, registry=None, **overrides):
    settings = make_settings(**overrides)
    upstream = UpstreamClient(
        settings,
        policy=RetryPolicy(max_retries=0, timeout=5.0, base_backoff=0.0),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    if registry is None:
        registry, _ = make_registry()
    return ChatOrchestrator(settings, upstream, registry)


async def collect(orchestrator, history, persona):
    return [event async for event in orchestrator.respond(history, persona)]


def user(text: str) -> ChatMessage:
    return ChatMessage(role="user", content=text)


def test_compose_transcript_trims_and_keeps_latest_message() -> None:
    persona = default_persona()
    history = [
        user("one"),
        ChatMessage(role="assistant", content="two"),
        ChatMessage(role="system", content="ignored"),
        ChatMessage(role="tool", content="ignored", tool_call_id="x"),
        user("three"),
        ChatMessage(role="assistant", content="four"),
        user("latest"),
    ]

    transcript = compose_transcript(persona, history, limit=2)

    assert transcript[0].role == "system"
    assert transcript[0].content == persona.system_prompt
    assert [m.content for m in transcript[1:]] == ["three", "four", "latest"]
    assert len(history) == 7


def test_fallback_answer_lists_sources_when_requested() -> None:
    pre_search = {
        "results": [{"title": f"T{i}", "link": f"https://s{i}.example"} for i in range(8)]
    }

    text = compose_fallback_answer(pre_search=pre_search, wants_sources=True)

    assert "- T0: https://s0.example" in text
    assert "T5" not in text
    assert "3) " in text


async def test_streaming_persona_forwards_deltas_and_sanitises_answer() -> None:
    upstream = ScriptedUpstream(
        httpx.Response(
            200,
            content=sse_body("Hi ", "there <|DSML|invoke>x</|DSML|invoke>"),
            headers={"content-type": "text/event-stream"},
        )
    )
    orchestrator = make_orchestrator(upstream)

    events = await collect(orchestrator, [user("hello")], default_persona())

    assert [e.kind for e in events] == ["delta", "delta", "answer"]
    assert [e.text for e in events[:2]] == ["Hi ", "there <|DSML|invoke>x</|DSML|invoke>"]
    assert events[-1].text == "Hi there"
    assert events[-1].fallback is False
    body = upstream.bodies[0]
    assert body["stream"] is True
    assert "tools" not in body
    assert upstream.headers[0]["accept"] == "text/event-stream"


async def test_streaming_persona_with_empty_output_falls_back() -> None:
    upstream = ScriptedUpstream(httpx.Response(200, content=sse_body()))
    orchestrator = make_orchestrator(upstream)

    events = await collect(orchestrator, [user("hello")], default_persona())

    assert [e.kind for e in events] == ["answer"]
    assert events[0].fallback is True
    assert events[0].text


async def test_tool_calls_are_executed_in_order_and_answered_once() -> None:
    upstream = ScriptedUpstream(
        httpx.Response(
            200,
            json=completion(
                tool_calls=[
                    tool_call("c1", "add", '{"a": 1, "b": 2}'),
                    tool_call("c2", "missing_tool", "{}"),
                ]
            ),
        ),
        httpx.Response(200, json=completion("The sum is 3.")),
    )
    orchestrator = make_orchestrator(upstream)

    events = await collect(orchestrator, [user("add 1 and 2")], TOOL_PERSONA)

    assert [(e.kind, e.tool, e.ok) for e in events] == [
        ("tool_call", "add", None),
        ("tool_result", "add", True),
        ("tool_call", "missing_tool", None),
        ("tool_result", "missing_tool", False),
        ("answer", None, None),
    ]
    assert events[-1].text == "The sum is 3."

    first, second = upstream.bodies
    assert first["stream"] is False
    assert first["tool_choice"] == "auto"
    assert [tool["function"]["name"] for tool in first["tools"]] == ["add", "web_search"]
    assert second["tool_choice"] == "none"

    messages = second["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "tool"]
    assert [c["id"] for c in messages[2]["tool_calls"]] == ["c1", "c2"]
    assert [m["tool_call_id"] for m in messages[3:]] == ["c1", "c2"]
    assert json.loads(messages[3]["content"]) == {"ok": True, "value": {"sum": 3}}
    assert json.loads(messages[4]["content"])["error_type"] == "UnknownTool"


async def test_invalid_tool_calls_are_skipped() -> None:
    upstream = ScriptedUpstream(
        httpx.Response(
            200,
            json=completion(
                "Direct answer.",
                tool_calls=[{"id": "", "function": {"name": "add"}}, {"id": "x"}],
            ),
        )
    )
    orchestrator = make_orchestrator(upstream)

    events = await collect(orchestrator, [user("hi")], TOOL_PERSONA)

    assert [e.kind for e in events] == ["answer"]
    assert events[0].text == "Direct answer."
    assert len(upstream.bodies) == 1


async def test_empty_second_answer_uses_fallback_with_tool_sources() -> None:
    registry, _ = make_registry(
        search_results=[{"title": "Guide", "link": "https://nhc.gov.cn/g"}]
    )
    upstream = ScriptedUpstream(
        httpx.Response(
            200,
            json=completion(tool_calls=[tool_call("c1", "web_search", '{"query": "sleep"}')]),
        ),
        httpx.Response(200, json=completion("<|DSML|function_calls></|DSML|function_calls>")),
    )
    orchestrator = make_orchestrator(upstream, registry)

    events = await collect(orchestrator, [user("how much sleep")], TOOL_PERSONA)

    answer = events[-1]
    assert answer.kind == "answer"
    assert answer.fallback is True
    assert "- Guide: https://nhc.gov.cn/g" in answer.text


async def test_source_request_triggers_pre_search_injection() -> None:
    registry, searches = make_registry(
        search_results=[{"title": "WHO", "link": "https://who.int/x"}]
    )
    upstream = ScriptedUpstream(httpx.Response(200, json=completion("Answer with sources.")))
    orchestrator = make_orchestrator(upstream, registry)

    text = await orchestrator.respond_text(
        [user("Please give me a source for this")], TOOL_PERSONA
    )

    assert text == "Answer with sources."
    assert searches[0]["query"] == "Please give me a source for this"
    assert searches[0]["freshness"] == "oneYear"
    injected = upstream.bodies[0]["messages"][-1]
    assert injected["role"] == "system"
    assert "SEARCH_RESULTS=" in injected["content"]
    assert "https://who.int/x" in injected["content"]


async def test_failed_pre_search_does_not_block_the_turn() -> None:
    registry, searches = make_registry(fail_search=True)
    upstream = ScriptedUpstream(httpx.Response(200, json=completion("Still here.")))
    orchestrator = make_orchestrator(upstream, registry)

    text = await orchestrator.respond_text([user("any citation?")], TOOL_PERSONA)

    assert text == "Still here."
    assert len(searches) == 1
    assert [m["role"] for m in upstream.bodies[0]["messages"]] == ["system", "user"]


async def test_upstream_failure_surfaces_as_upstream_error() -> None:
    upstream = ScriptedUpstream(httpx.Response(500, json={"error": {"message": "boom"}}))
    orchestrator = make_orchestrator(upstream)

    with pytest.raises(UpstreamError) as excinfo:
        await collect(orchestrator, [user("hi")], TOOL_PERSONA)

    assert excinfo.value.status_code == 500
