"""Identity and daily message entitlement collaborators."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Mapping, Optional, Protocol

GUEST_USER_ID = "guest"


def guest_user_id(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """Key anonymous callers by client id header, falling back to their address."""

    client_id = (headers.get("x-client-id") or "").strip()[:128]
    if client_id:
        return f"{GUEST_USER_ID}:{client_id}"
    if client_host:
        return f"{GUEST_USER_ID}@{client_host}"
    return GUEST_USER_ID


@dataclass(frozen=True)
class Entitlement:
    """Daily message allowance; ``daily_limit`` of ``None`` means unlimited."""

    plan: str
    daily_limit: Optional[int] = None

    @property
    def unlimited(self) -> bool:
        return self.daily_limit is None


@dataclass(frozen=True)
class Identity:
    user_id: str
    entitlement: Entitlement


class IdentityProvider(Protocol):
    """Resolve the caller of a request into an identity with an entitlement."""

    async def identify(
        self, headers: Mapping[str, str], client_host: Optional[str] = None
    ) -> Identity:
        ...


class HeaderIdentityProvider:
    """Trust ``X-User-Id`` / ``X-User-Plan`` headers set by an upstream gateway."""

    def __init__(self, *, guest_quota: int = 3, free_quota: int = 10):
        self._quotas: dict[str, Optional[int]] = {
            "guest": guest_quota,
            "free": free_quota,
            "member": None,
            "lifetime": None,
        }

    async def identify(
        self, headers: Mapping[str, str], client_host: Optional[str] = None
    ) -> Identity:
        user_id = (headers.get("x-user-id") or "").strip()
        if not user_id:
            return Identity(
                guest_user_id(headers, client_host),
                Entitlement("guest", self._quotas["guest"]),
            )

        plan = (headers.get("x-user-plan") or "free").strip().lower()
        if plan not in self._quotas or plan == "guest":
            plan = "free"
        return Identity(user_id, Entitlement(plan, self._quotas[plan]))


class QuotaExceededError(RuntimeError):
    """Raised when a user has no messages left for today."""

    def __init__(self, user_id: str, limit: int):
        super().__init__(f"Daily message limit of {limit} reached")
        self.user_id = user_id
        self.limit = limit


class DailyUsageCounter:
    """In-process per-user daily message counter."""

    def __init__(self, *, today: Callable[[], date] | None = None):
        self._today = today or (lambda: datetime.now(timezone.utc).date())
        self._counts: dict[str, int] = {}
        self._day: Optional[date] = None
        self._lock = asyncio.Lock()

    def _roll(self) -> None:
        today = self._today()
        if today != self._day:
            self._day = today
            self._counts.clear()

    async def used(self, user_id: str) -> int:
        async with self._lock:
            self._roll()
            return self._counts.get(user_id, 0)

    async def consume(self, identity: Identity) -> int:
        """Count one message; raises :class:`QuotaExceededError` past the limit."""

        async with self._lock:
            self._roll()
            used = self._counts.get(identity.user_id, 0)
            limit = identity.entitlement.daily_limit
            if limit is not None and used >= limit:
                raise QuotaExceededError(identity.user_id, limit)
            self._counts[identity.user_id] = used + 1
            return used + 1


__all__ = [
    "DailyUsageCounter",
    "Entitlement",
    "HeaderIdentityProvider",
    "Identity",
    "IdentityProvider",
    "QuotaExceededError",
    "guest_user_id",
]
