"""Chat streaming API routes."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from sse_starlette.sse import EventSourceResponse

from ..chat import ChatOrchestrator, ConversationBusyError, SessionRegistry
from ..chat.personas import (
    Persona,
    default_persona,
    get_builtin_persona,
    persona_from_agent,
)
from ..schemas.chat import ChatMessage, ChatTurnRequest
from ..services.history import HistoryStore
from ..services.identity import DailyUsageCounter, IdentityProvider, QuotaExceededError
from ..upstream import UpstreamError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

UPSTREAM_APOLOGY = (
    "Sorry, I couldn't reach the model just now. Please try again in a moment."
)


async def _resolve_persona(
    character_id: Optional[str], history: Optional[HistoryStore]
) -> Persona:
    persona = get_builtin_persona(character_id)
    if persona is not None:
        return persona
    if character_id and history is not None:
        record = await history.get_agent(character_id)
        if record is not None:
            return persona_from_agent(record)
        logger.info("Unknown character %s; using default persona", character_id)
    return default_persona()


def _sse(event: str, data: Any) -> dict[str, str]:
    return {"event": event, "data": json.dumps(data, ensure_ascii=False)}


@router.post("/chat", response_model=None, status_code=200)
async def chat_turn(payload: ChatTurnRequest, request: Request) -> EventSourceResponse:
    """Run one chat turn and stream its progress through Server-Sent Events."""

    if not payload.messages:
        raise HTTPException(status_code=400, detail="At least one message is required")

    state = request.app.state
    orchestrator: ChatOrchestrator = state.chat_orchestrator
    sessions: SessionRegistry = state.session_registry
    identity_provider: IdentityProvider = state.identity_provider
    usage: DailyUsageCounter = state.usage_counter
    history: Optional[HistoryStore] = getattr(state, "history_store", None)

    client_host = request.client.host if request.client is not None else None
    identity = await identity_provider.identify(request.headers, client_host)
    conversation_id = payload.conversation_id or uuid.uuid4().hex

    try:
        session = sessions.acquire(conversation_id)
    except ConversationBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    turn = session.turn

    try:
        await usage.consume(identity)
        persona = await _resolve_persona(payload.character_id, history)
    except QuotaExceededError as exc:
        sessions.release(conversation_id, turn)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)
        ) from exc
    except Exception:
        sessions.release(conversation_id, turn)
        raise

    async def event_publisher():
        answer: Optional[str] = None
        try:
            async for event in orchestrator.respond(payload.messages, persona):
                if event.kind == "delta":
                    yield _sse("delta", {"content": event.text})
                elif event.kind == "tool_call":
                    sessions.mark_awaiting_tool(conversation_id, turn)
                    yield _sse("tool", {"name": event.tool, "status": "started"})
                elif event.kind == "tool_result":
                    sessions.mark_sending(conversation_id, turn)
                    yield _sse(
                        "tool",
                        {"name": event.tool, "status": "ok" if event.ok else "error"},
                    )
                else:
                    answer = event.text
                    yield _sse(
                        "message",
                        {
                            "content": event.text,
                            "fallback": event.fallback,
                            "conversationId": conversation_id,
                            "characterId": persona.id,
                        },
                    )
        except UpstreamError as exc:
            logger.warning(
                "Chat turn for %s failed upstream (%s): %s",
                conversation_id,
                exc.status_code,
                exc.message,
            )
            yield _sse(
                "error",
                {
                    "content": UPSTREAM_APOLOGY,
                    "detail": exc.message,
                    "status": exc.status_code,
                },
            )
        except Exception as exc:  # pragma: no cover
            logger.exception("Chat turn for %s failed: %s", conversation_id, exc)
            yield _sse("error", {"content": UPSTREAM_APOLOGY, "status": 500})
        finally:
            sessions.release(conversation_id, turn)

        if answer is not None and history is not None:
            try:
                await history.append_messages(
                    conversation_id,
                    [
                        payload.messages[-1],
                        ChatMessage(role="assistant", content=answer),
                    ],
                    user_id=identity.user_id,
                )
            except Exception as exc:
                logger.warning("Failed to persist chat history: %s", exc)
        yield {"event": "done", "data": "[DONE]"}

    return EventSourceResponse(event_publisher())


@router.get("/chat/{conversation_id}/messages")
async def get_conversation_messages(
    conversation_id: str, request: Request
) -> dict[str, Any]:
    history: Optional[HistoryStore] = getattr(request.app.state, "history_store", None)
    if history is None:
        return {"conversationId": conversation_id, "messages": []}
    messages = await history.get_messages(conversation_id)
    return {
        "conversationId": conversation_id,
        "messages": [message.to_openai() for message in messages],
    }


@router.get("/chat/{conversation_id}/state")
async def get_conversation_state(conversation_id: str, request: Request) -> dict[str, str]:
    sessions: SessionRegistry = request.app.state.session_registry
    return {
        "conversationId": conversation_id,
        "state": sessions.state_of(conversation_id).value,
    }


@router.delete("/chat/{conversation_id}", status_code=204)
async def clear_conversation(conversation_id: str, request: Request) -> Response:
    history: Optional[HistoryStore] = getattr(request.app.state, "history_store", None)
    if history is not None:
        await history.clear(conversation_id)
    return Response(status_code=204)


__all__ = ["router"]
