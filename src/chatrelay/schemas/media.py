"""Pydantic models for media generation jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

JobKind = Literal["media"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobDescriptor(BaseModel):
    """Minimal persisted record that is sufficient to resume polling a job."""

    request_id: str = Field(alias="requestId")
    correlation_id: str = Field(alias="correlationId")
    attempts_made: int = Field(default=0, ge=0, alias="attemptsMade")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    kind: JobKind = "media"

    model_config = ConfigDict(populate_by_name=True)

    def age(self, now: datetime | None = None) -> float:
        """Return the descriptor age in seconds."""

        current = now or _utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (current - created).total_seconds()

    def with_attempt(self) -> "JobDescriptor":
        return self.model_copy(update={"attempts_made": self.attempts_made + 1})


class MediaJobRequest(BaseModel):
    """Incoming media (video) generation request."""

    prompt: str = Field(min_length=1)
    messages: Optional[List[Dict[str, Any]]] = None
    negative_prompt: Optional[str] = None
    image_size: Optional[str] = None
    seed: Optional[int] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    duration: Optional[int] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ImageGenerationRequest(BaseModel):
    """Synchronous image generation request."""

    prompt: str = Field(min_length=1)
    messages: Optional[List[Dict[str, Any]]] = None
    negative_prompt: Optional[str] = None
    image_size: Optional[str] = None
    batch_size: Optional[int] = Field(default=None, ge=1, le=4)
    seed: Optional[int] = None
    num_inference_steps: Optional[int] = Field(default=None, ge=1, le=100)
    guidance_scale: Optional[float] = None
    cfg: Optional[float] = None
    image: Optional[str] = None
    image2: Optional[str] = None
    image3: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class VisibilityUpdate(BaseModel):
    """Report whether the client page is currently backgrounded."""

    hidden: bool


__all__ = [
    "ImageGenerationRequest",
    "JobDescriptor",
    "JobKind",
    "MediaJobRequest",
    "VisibilityUpdate",
]
