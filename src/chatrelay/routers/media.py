"""Media generation job routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from ..chat import ConversationBusyError, SessionRegistry
from ..config import Settings
from ..media import (
    JobOutcome,
    MediaJobError,
    ResumableJobPoller,
    SiliconFlowMediaAdapter,
    optimize_prompt_with_context,
)
from ..schemas.media import ImageGenerationRequest, MediaJobRequest, VisibilityUpdate
from ..upstream import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/media", tags=["media"])


def _get_poller(request: Request, kind: str) -> ResumableJobPoller:
    poller: ResumableJobPoller = request.app.state.media_poller
    if kind != poller.kind:
        raise HTTPException(status_code=404, detail=f"Unknown job kind: {kind}")
    return poller


@router.post("/jobs", status_code=202)
async def submit_media_job(payload: MediaJobRequest, request: Request) -> dict[str, Any]:
    """Submit a generation job, replacing any job already in progress."""

    state = request.app.state
    settings: Settings = state.settings
    upstream: UpstreamClient = state.upstream_client
    adapter: SiliconFlowMediaAdapter = state.media_adapter
    poller: ResumableJobPoller = state.media_poller
    sessions: SessionRegistry = state.session_registry

    conversation_id = payload.conversation_id
    if conversation_id and sessions.get(conversation_id).send_locked:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Conversation {conversation_id} has a chat turn in flight",
        )

    prompt = await optimize_prompt_with_context(
        upstream, settings, payload.prompt, payload.messages
    )
    body = adapter.build_submit_body(
        prompt,
        image_size=payload.image_size,
        negative_prompt=payload.negative_prompt,
        seed=payload.seed,
        image=payload.image_url,
        duration=payload.duration,
    )

    try:
        result = await poller.submit(body, correlation_id=conversation_id)
    except MediaJobError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    except UpstreamError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    if isinstance(result, JobOutcome):
        return {**poller.snapshot(), "prompt": prompt}

    if conversation_id:
        try:
            sessions.start_polling(conversation_id)
        except ConversationBusyError as exc:
            logger.warning("Could not mark conversation as polling: %s", exc)
    return {**poller.snapshot(), "prompt": prompt}


@router.post("/images")
async def generate_image(payload: ImageGenerationRequest, request: Request) -> dict[str, Any]:
    """Generate an image synchronously; no job is persisted or polled."""

    state = request.app.state
    settings: Settings = state.settings
    upstream: UpstreamClient = state.upstream_client
    adapter: SiliconFlowMediaAdapter = state.media_adapter

    prompt = await optimize_prompt_with_context(
        upstream, settings, payload.prompt, payload.messages, medium="image"
    )
    body = adapter.build_image_body(
        prompt,
        image_size=payload.image_size,
        batch_size=payload.batch_size,
        negative_prompt=payload.negative_prompt,
        seed=payload.seed,
        num_inference_steps=payload.num_inference_steps,
        guidance_scale=payload.guidance_scale,
        cfg=payload.cfg,
        reference_images=(payload.image, payload.image2, payload.image3),
    )
    logger.info("Generating image with model %s", body["model"])

    try:
        image_url = await adapter.generate_image(body)
    except MediaJobError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return {"imageUrl": image_url, "prompt": prompt}


@router.get("/jobs/{kind}")
async def get_media_job(kind: str, request: Request) -> dict[str, Any]:
    return _get_poller(request, kind).snapshot()


@router.delete("/jobs/{kind}")
async def cancel_media_job(kind: str, request: Request) -> dict[str, Any]:
    poller = _get_poller(request, kind)
    cancelled = await poller.cancel()
    return {**poller.snapshot(), "cancelled": cancelled}


@router.post("/visibility")
async def update_visibility(payload: VisibilityUpdate, request: Request) -> dict[str, Any]:
    """Pause or resume status polling while the client page is hidden."""

    poller: ResumableJobPoller = request.app.state.media_poller
    poller.set_visibility(payload.hidden)
    return poller.snapshot()


__all__ = ["router"]
