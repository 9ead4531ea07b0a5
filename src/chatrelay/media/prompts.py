"""Rewrite a media prompt using the surrounding conversation."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence

from ..config import Settings
from ..upstream import RetryPolicy, UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

_OPTIMIZER_SYSTEM_PROMPT = (
    "You are a professional {medium}-generation prompt writer who refines prompts "
    "using the conversation that led to them."
)
_OPTIMIZER_MAX_TOKENS = 500


def _render_context(messages: Sequence[Mapping[str, Any]]) -> str:
    lines = []
    for message in messages:
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        speaker = "User" if message.get("role") == "user" else "Assistant"
        lines.append(f"{speaker}: {content.strip()}")
    return "\n".join(lines)


async def optimize_prompt_with_context(
    upstream: UpstreamClient,
    settings: Settings,
    prompt: str,
    messages: Optional[Sequence[Mapping[str, Any]]],
    *,
    medium: str = "video",
) -> str:
    """Return an improved prompt, or ``prompt`` unchanged on any failure.

    Only conversations with more than one message are considered; the last
    message is the current request and is excluded from the context.
    """

    if not messages or len(messages) <= 1:
        return prompt
    context = _render_context(messages[:-1])
    if not context:
        return prompt

    request = (
        "Conversation so far:\n"
        f"{context}\n\n"
        f"Current {medium} request: {prompt}\n\n"
        f"Refine the {medium} prompt using the conversation. If the user asks to "
        "regenerate, is unhappy, or wants another style, adjust style, angle, or "
        "details while keeping the core subject. Return only the refined prompt "
        "without explanation; return the request unchanged if it is already complete."
    )
    body = {
        "model": settings.prompt_optimization_model,
        "messages": [
            {"role": "system", "content": _OPTIMIZER_SYSTEM_PROMPT.format(medium=medium)},
            {"role": "user", "content": request},
        ],
        "temperature": settings.temperature,
        "max_tokens": _OPTIMIZER_MAX_TOKENS,
        "stream": False,
    }
    try:
        payload = await upstream.post_json(
            settings.chat_completions_url,
            body,
            policy=RetryPolicy(max_retries=1, timeout=30.0, base_backoff=1.0),
        )
    except UpstreamError as exc:
        logger.warning("Prompt optimisation failed, using original prompt: %s", exc)
        return prompt

    choices = payload.get("choices")
    content = None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            content = message.get("content")
    optimized = content.strip() if isinstance(content, str) else ""
    if not optimized:
        return prompt
    logger.debug("Optimised %s prompt %r -> %r", medium, prompt, optimized)
    return optimized


__all__ = ["optimize_prompt_with_context"]
