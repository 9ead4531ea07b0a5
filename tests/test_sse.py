from __future__ import annotations

import json

import pytest

from chatrelay.chat.sse import SseDeltaDecoder, iter_content_deltas, parse_sse_line

pytestmark = pytest.mark.anyio


def frame(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n\n"


BODY = (frame("你好") + frame(", wor") + frame("ld 👋") + "data: [DONE]\n\n").encode("utf-8")


async def chunks_of(data: bytes, *split_points: int):
    previous = 0
    for point in split_points:
        yield data[previous:point]
        previous = point
    yield data[previous:]


async def collect(iterator) -> list[str]:
    return [item async for item in iterator]


async def test_reassembles_at_every_split_point() -> None:
    expected = ["你好", ", wor", "ld 👋"]

    for split in range(1, len(BODY)):
        deltas = await collect(iter_content_deltas(chunks_of(BODY, split)))
        assert deltas == expected, f"split at byte {split}"


async def test_reassembles_byte_by_byte() -> None:
    deltas = await collect(
        iter_content_deltas(chunks_of(BODY, *range(1, len(BODY))))
    )

    assert "".join(deltas) == "你好, world 👋"


async def test_malformed_frames_and_noise_are_dropped() -> None:
    body = (
        ": keep-alive comment\n"
        "event: ping\n"
        "data: {not json}\n"
        + frame("ok")
        + 'data: {"choices": [{"delta": {"role": "assistant"}}]}\n'
        + "data: [DONE]\n"
    ).encode()

    deltas = await collect(iter_content_deltas(chunks_of(body, 7, 30)))

    assert deltas == ["ok"]


async def test_trailing_partial_line_is_discarded() -> None:
    body = (frame("complete") + 'data: {"choices": [{"delta": {"content": "lost"').encode()

    deltas = await collect(iter_content_deltas(chunks_of(body)))

    assert deltas == ["complete"]


def test_decoder_keeps_partial_line_pending() -> None:
    decoder = SseDeltaDecoder()

    assert decoder.feed(b'data: {"choices": [{"delta": {"con') == []
    assert decoder.pending.startswith("data:")
    assert decoder.feed(b'tent": "hi"}}]}\r\n') == ["hi"]
    assert decoder.pending == ""


def test_parse_sse_line_handles_done_and_empty_content() -> None:
    assert parse_sse_line("data: [DONE]") is None
    assert parse_sse_line("") is None
    assert parse_sse_line('data: {"choices": [{"delta": {"content": ""}}]}') is None
    assert parse_sse_line('data:{"choices": [{"delta": {"content": "x"}}]}') == "x"
