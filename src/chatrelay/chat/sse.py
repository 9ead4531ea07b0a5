"""Incremental parsing of chat completion SSE bodies into content deltas."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


def extract_delta_content(chunk: Any) -> Optional[str]:
    """Return ``choices[0].delta.content`` when it is a string."""

    if not isinstance(chunk, Mapping):
        return None
    choices = chunk.get("choices")
    if not isinstance(choices, Sequence) or isinstance(choices, str) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, Mapping):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, Mapping):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def parse_sse_line(line: str) -> Optional[str]:
    """Decode a single complete SSE line into a content delta, if any."""

    line = line.rstrip("\r")
    if not line.strip():
        return None
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX) :].strip()
    if payload == DONE_MARKER:
        return None
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed SSE frame: %r", payload[:200])
        return None

    content = extract_delta_content(chunk)
    return content or None


class SseDeltaDecoder:
    """Rolling-buffer decoder; only complete lines are ever parsed."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Trailing partial line not yet terminated by a newline."""

        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []

        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        deltas: list[str] = []
        for line in lines:
            delta = parse_sse_line(line)
            if delta is not None:
                deltas.append(delta)
        return deltas


async def iter_content_deltas(
    chunks: AsyncIterable[bytes | str],
) -> AsyncIterator[str]:
    """Yield content deltas in arrival order until the transport ends."""

    decoder = SseDeltaDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta

    if decoder.pending.strip():
        logger.debug(
            "Discarding incomplete trailing SSE line (%d chars)",
            len(decoder.pending),
        )


__all__ = [
    "DONE_MARKER",
    "SseDeltaDecoder",
    "extract_delta_content",
    "iter_content_deltas",
    "parse_sse_line",
]
