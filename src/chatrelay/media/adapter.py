"""Provider adapter mapping SiliconFlow media payloads to results and statuses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Union

from fastapi import status

from ..config import Settings
from ..upstream import UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_CODE = 30001
INSUFFICIENT_BALANCE_MESSAGE = (
    "The media provider account balance is insufficient. Top up the account "
    "or contact an administrator."
)

_SUCCESS = frozenset({"succeed", "succeeded", "success", "completed", "complete", "done"})
_FAILURE = frozenset({"failed", "failure", "error", "cancelled", "canceled"})
_RUNNING = frozenset({"inprogress", "in_progress", "running", "processing"})
_QUEUED = frozenset({"inqueue", "in_queue", "queued", "pending", "submitted"})


@dataclass(frozen=True)
class Queued:
    pass


@dataclass(frozen=True)
class Running:
    pass


@dataclass(frozen=True)
class Succeeded:
    result_url: str


@dataclass(frozen=True)
class Failed:
    reason: str


@dataclass(frozen=True)
class TimedOut:
    attempts: int


JobStatus = Union[Queued, Running, Succeeded, Failed, TimedOut]


@dataclass(frozen=True)
class Submission:
    """Outcome of a submit call: an immediate result or a job to poll."""

    request_id: Optional[str] = None
    result_url: Optional[str] = None


class MediaJobError(Exception):
    """Raised when the provider rejects a submission or status query."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


def _dig(payload: Any, path: Sequence[Union[str, int]]) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
    return current


def _first_string(payload: Any, paths: Sequence[Sequence[Union[str, int]]]) -> Optional[str]:
    for path in paths:
        value = _dig(payload, path)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


_RESULT_URL_PATHS: tuple[tuple[Union[str, int], ...], ...] = (
    ("video_url",),
    ("videoUrl",),
    ("url",),
    ("video",),
    ("result", "video_url"),
    ("result", "videoUrl"),
    ("data", "video_url"),
    ("results", "videos", 0, "url"),
    ("results", "video_url"),
    ("data", "results", "videos", 0, "url"),
)

_IMAGE_URL_PATHS: tuple[tuple[Union[str, int], ...], ...] = (
    ("images", 0, "url"),
    ("data", 0, "url"),
)

_REQUEST_ID_PATHS: tuple[tuple[Union[str, int], ...], ...] = (
    ("requestId",),
    ("request_id",),
    ("task_id",),
    ("taskId",),
    ("id",),
    ("task", "id"),
    ("result", "task_id"),
    ("result", "taskId"),
    ("data", "requestId"),
)

_REASON_PATHS: tuple[tuple[Union[str, int], ...], ...] = (
    ("reason",),
    ("error",),
    ("message",),
    ("data", "reason"),
)


def _error_code(detail: Any) -> Optional[int]:
    code = detail.get("code") if isinstance(detail, Mapping) else None
    return code if isinstance(code, int) else None


class SiliconFlowMediaAdapter:
    """Call the provider's media endpoints and normalise their response shapes."""

    def __init__(self, settings: Settings, upstream: UpstreamClient):
        self._settings = settings
        self._upstream = upstream

    def build_submit_body(
        self,
        prompt: str,
        *,
        image_size: Optional[str] = None,
        negative_prompt: Optional[str] = None,
        seed: Optional[int] = None,
        image: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._settings.video_model,
            "prompt": prompt,
            "image_size": image_size or self._settings.default_image_size,
        }
        if negative_prompt:
            body["negative_prompt"] = negative_prompt
        if seed is not None:
            body["seed"] = seed
        if image:
            body["image"] = image
        if duration is not None:
            body["duration"] = duration
        return body

    def build_image_body(
        self,
        prompt: str,
        *,
        image_size: Optional[str] = None,
        batch_size: Optional[int] = None,
        negative_prompt: Optional[str] = None,
        seed: Optional[int] = None,
        num_inference_steps: Optional[int] = None,
        guidance_scale: Optional[float] = None,
        cfg: Optional[float] = None,
        reference_images: Sequence[Optional[str]] = (),
    ) -> dict[str, Any]:
        """Build an ``/images/generations`` body; up to three reference images."""

        body: dict[str, Any] = {
            "model": self._settings.image_model,
            "prompt": prompt,
            "image_size": image_size or self._settings.default_picture_size,
            "batch_size": batch_size or 1,
            "num_inference_steps": num_inference_steps or 20,
            "guidance_scale": guidance_scale or 7.5,
            "cfg": cfg or 10.05,
        }
        if negative_prompt:
            body["negative_prompt"] = negative_prompt
        if seed:
            body["seed"] = seed
        keys = ("image", "image2", "image3")
        for key, image in zip(keys, reference_images):
            if image:
                body[key] = image
        return body

    async def generate_image(self, body: dict[str, Any]) -> str:
        """Generate an image synchronously and return its URL."""

        try:
            payload = await self._upstream.post_json(
                self._upstream.url_for("images/generations"), body
            )
        except UpstreamError as exc:
            raise self._translate(exc) from exc
        image_url = _first_string(payload, _IMAGE_URL_PATHS)
        if image_url is None:
            logger.error("Image generation response had no URL: %s", payload)
            raise MediaJobError(
                status.HTTP_502_BAD_GATEWAY, "No image URL found in the provider response"
            )
        return image_url

    async def submit(self, body: dict[str, Any]) -> Submission:
        try:
            payload = await self._upstream.post_json(
                self._upstream.url_for("video/submit"), body
            )
        except UpstreamError as exc:
            raise self._translate(exc) from exc
        submission = self.parse_submission(payload)
        if submission is None:
            logger.error("Video submission response had no result or id: %s", payload)
            raise MediaJobError(
                status.HTTP_502_BAD_GATEWAY,
                "No video URL or request id found in the provider response",
            )
        return submission

    async def status(self, request_id: str) -> JobStatus:
        try:
            payload = await self._upstream.post_json(
                self._upstream.url_for("video/status"), {"requestId": request_id}
            )
        except UpstreamError as exc:
            raise self._translate(exc) from exc
        return self.parse_status(payload)

    @staticmethod
    def parse_submission(payload: Mapping[str, Any]) -> Optional[Submission]:
        result_url = _first_string(payload, _RESULT_URL_PATHS)
        if result_url:
            return Submission(result_url=result_url)
        request_id = _first_string(payload, _REQUEST_ID_PATHS)
        if request_id:
            return Submission(request_id=request_id)
        return None

    @staticmethod
    def parse_status(payload: Mapping[str, Any]) -> JobStatus:
        raw_status = _first_string(payload, (("status",), ("data", "status")))
        normalized = (raw_status or "").replace(" ", "").lower()
        result_url = _first_string(payload, _RESULT_URL_PATHS)

        if normalized in _SUCCESS:
            if result_url:
                return Succeeded(result_url)
            return Failed("Job finished without a result URL")
        if normalized in _FAILURE:
            return Failed(_first_string(payload, _REASON_PATHS) or "Generation failed")
        if normalized in _RUNNING:
            return Running()
        if normalized in _QUEUED:
            return Queued()
        if result_url:
            return Succeeded(result_url)
        logger.debug("Unrecognised job status %r; treating as running", raw_status)
        return Running()

    @staticmethod
    def _translate(exc: UpstreamError) -> MediaJobError:
        detail = exc.detail
        code = _error_code(detail)
        message = exc.message
        lowered = message.lower()
        if (
            code == INSUFFICIENT_BALANCE_CODE
            or "balance is insufficient" in lowered
            or "余额不足" in message
        ):
            return MediaJobError(exc.status_code, INSUFFICIENT_BALANCE_MESSAGE)
        if code is not None:
            return MediaJobError(exc.status_code, f"[error code {code}] {message}")
        return MediaJobError(exc.status_code, message if message else detail)


__all__ = [
    "Failed",
    "JobStatus",
    "MediaJobError",
    "Queued",
    "Running",
    "SiliconFlowMediaAdapter",
    "Submission",
    "Succeeded",
    "TimedOut",
]
