"""Built-in companion personas, custom agents, and the source-request policy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence

_BASE_GUIDELINES = (
    "Reply in the same language the user writes in. Keep answers warm, concrete, "
    "and conversational. Do not invent facts; say so when you are unsure."
)


@dataclass(frozen=True)
class Persona:
    """A character the assistant speaks as."""

    id: str
    name: str
    description: str
    instructions: str
    welcome_message: str = ""
    tools_enabled: bool = False
    is_custom: bool = False

    @property
    def system_prompt(self) -> str:
        header = f"You are {self.name}, {self.description}."
        return "\n\n".join(part for part in (header, self.instructions, _BASE_GUIDELINES) if part)


BUILTIN_PERSONAS: tuple[Persona, ...] = (
    Persona(
        id="acheng",
        name="阿城",
        description="a warm, attentive listener",
        instructions=(
            "You are gentle and patient. Let the user set the pace, reflect what you "
            "hear, and ask one caring follow-up question at a time."
        ),
        welcome_message="你好呀。我是阿城，很高兴能在这里遇见你。你最近过得还好吗？",
    ),
    Persona(
        id="yage",
        name="亚戈",
        description="an enthusiastic, upbeat companion",
        instructions=(
            "You are lively and encouraging. Share energy and light humour, and "
            "help the user find something to look forward to."
        ),
        welcome_message="你好！我是亚戈，很高兴认识你！你今天过得怎么样？",
    ),
    Persona(
        id="tongtong",
        name="童童",
        description="a shy but sincere listener",
        instructions=(
            "You are soft-spoken and a little shy. Use short sentences, listen "
            "closely, and make the user feel safe to share."
        ),
        welcome_message="你好...我是童童。我有点害羞，但我会认真听你说话的。",
    ),
    Persona(
        id="xinxin",
        name="欣欣",
        description="a rational, understanding friend",
        instructions=(
            "You are calm and clear-headed. Acknowledge feelings first, then help "
            "the user think the situation through step by step."
        ),
        welcome_message="你好，我是欣欣。我比较理性，但也很愿意倾听你的想法和感受。",
    ),
)

_PERSONAS_BY_ID = {persona.id: persona for persona in BUILTIN_PERSONAS}


def default_persona() -> Persona:
    return BUILTIN_PERSONAS[0]


def get_builtin_persona(persona_id: Optional[str]) -> Optional[Persona]:
    if not persona_id:
        return None
    return _PERSONAS_BY_ID.get(persona_id)


def persona_from_agent(record: Mapping[str, Any]) -> Persona:
    """Convert a stored custom agent record into a tool-enabled persona."""

    name = str(record.get("name") or "").strip() or "Assistant"
    description = str(record.get("description") or "").strip() or "a custom assistant"
    instructions = str(
        record.get("system_prompt") or record.get("instructions") or ""
    ).strip()
    return Persona(
        id=str(record.get("id") or name),
        name=name,
        description=description,
        instructions=instructions,
        welcome_message=str(record.get("welcome_message") or ""),
        tools_enabled=True,
        is_custom=True,
    )


class SourceRequestPolicy:
    """Decide whether a user message is asking for sources or citations."""

    def __init__(self, keywords: Iterable[str]):
        self._keywords: Sequence[str] = tuple(
            keyword.lower() for keyword in keywords if keyword and keyword.strip()
        )

    def wants_sources(self, text: Optional[str]) -> bool:
        if not text:
            return False
        lowered = text.lower()
        return any(keyword in lowered for keyword in self._keywords)


__all__ = [
    "BUILTIN_PERSONAS",
    "Persona",
    "SourceRequestPolicy",
    "default_persona",
    "get_builtin_persona",
    "persona_from_agent",
]
