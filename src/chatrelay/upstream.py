"""Resilient HTTP client for the upstream completion and media endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)

RETRIABLE_STATUS_CODES = frozenset({429, 503})
CONNECT_TIMEOUT_BACKOFF_FACTOR = 1.5

Sleeper = Callable[[float], Awaitable[Any]]


class UpstreamError(Exception):
    """Wrap transport or API failures when communicating with the upstream."""

    def __init__(self, status_code: int, detail: Any, *, attempts: int = 1):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail
        self.attempts = attempts

    @property
    def message(self) -> str:
        detail = self.detail
        if isinstance(detail, dict):
            for key in ("message", "error", "detail"):
                value = detail.get(key)
                if isinstance(value, str) and value:
                    return value
            return json.dumps(detail, ensure_ascii=False)
        return str(detail)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry settings applied to a single logical upstream call."""

    max_retries: int = 4
    timeout: float = 90.0
    base_backoff: float = 2.0

    def delay_for(self, attempt: int, *, connect_timeout: bool = False) -> float:
        """Return the pause before the attempt following ``attempt``."""

        delay = self.base_backoff * (attempt + 1)
        if connect_timeout:
            delay *= CONNECT_TIMEOUT_BACKOFF_FACTOR
        return delay


@dataclass
class UpstreamRequest:
    """A single logical request, retried as a unit."""

    method: str
    url: str
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    policy: Optional[RetryPolicy] = None


class UpstreamClient:
    """Perform upstream HTTP calls with retries, backoff, and per-attempt timeouts."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[str, httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._settings = settings
        self._policy = policy or RetryPolicy(
            max_retries=settings.upstream_max_retries,
            timeout=settings.upstream_timeout,
            base_backoff=settings.upstream_base_backoff,
        )
        self._http_client = http_client
        self._sleep = sleep

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._settings.base_url
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(limits=limits, http2=True)
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.siliconflow_api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }

    def url_for(self, path: str) -> str:
        return f"{self._settings.base_url}/{path.lstrip('/')}"

    async def call(self, request: UpstreamRequest) -> httpx.Response:
        """Send ``request`` and return the first non-retriable response."""

        return await self._send(request, stream=False)

    @asynccontextmanager
    async def stream(self, request: UpstreamRequest) -> AsyncIterator[httpx.Response]:
        """Open a streaming response; retries only cover establishing it."""

        response = await self._send(request, stream=True)
        try:
            if response.status_code >= 400:
                body = await response.aread()
                raise UpstreamError(
                    response.status_code, self._extract_error_detail(body)
                )
            yield response
        finally:
            await response.aclose()

    async def post_json(
        self,
        url: str,
        body: dict[str, Any],
        *,
        policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        """POST ``body`` and return the decoded JSON object, raising on failure."""

        response = await self.call(
            UpstreamRequest("POST", url, json=body, policy=policy)
        )
        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise UpstreamError(response.status_code, detail)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(
                status.HTTP_502_BAD_GATEWAY, "Upstream returned a non-object payload"
            )
        return payload

    async def _send(self, request: UpstreamRequest, *, stream: bool) -> httpx.Response:
        policy = request.policy or self._policy
        client = await self._get_http_client()
        headers = dict(self._headers)
        headers.update(request.headers)
        last_error: Exception | None = None
        attempts = policy.max_retries + 1

        for attempt in range(attempts):
            is_last = attempt == policy.max_retries
            http_request = client.build_request(
                request.method,
                request.url,
                headers=headers,
                json=request.json,
                timeout=httpx.Timeout(policy.timeout, connect=min(10.0, policy.timeout)),
            )
            try:
                response = await asyncio.wait_for(
                    client.send(http_request, stream=stream), timeout=policy.timeout
                )
            except (asyncio.TimeoutError, httpx.TransportError) as exc:
                last_error = exc
                connect_timeout = isinstance(exc, httpx.ConnectTimeout)
                delay = policy.delay_for(attempt, connect_timeout=connect_timeout)
                logger.warning(
                    "Upstream %s %s failed (attempt %d/%d, %s: %s)%s",
                    request.method,
                    request.url,
                    attempt + 1,
                    attempts,
                    type(exc).__name__,
                    exc,
                    "" if is_last else f"; retrying in {delay:.1f}s",
                )
                if is_last:
                    break
                await self._sleep(delay)
                continue

            if response.status_code in RETRIABLE_STATUS_CODES and not is_last:
                await response.aclose()
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Upstream returned %d (attempt %d/%d); retrying in %.1fs",
                    response.status_code,
                    attempt + 1,
                    attempts,
                    delay,
                )
                await self._sleep(delay)
                continue
            return response

        detail = str(last_error) or type(last_error).__name__
        raise UpstreamError(
            status.HTTP_502_BAD_GATEWAY, detail, attempts=attempts
        ) from last_error

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            return
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                pass

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Upstream returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and "code" not in error and "code" in payload:
                error = dict(error, code=payload["code"])
            return error or payload
        return payload


__all__ = [
    "RETRIABLE_STATUS_CODES",
    "RetryPolicy",
    "UpstreamClient",
    "UpstreamError",
    "UpstreamRequest",
]
