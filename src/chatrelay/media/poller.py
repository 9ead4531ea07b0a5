"""Resumable polling loop for long-running media generation jobs."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from ..schemas.media import JobDescriptor
from ..upstream import UpstreamError
from .adapter import (
    Failed,
    MediaJobError,
    SiliconFlowMediaAdapter,
    Succeeded,
    TimedOut,
)
from .store import DescriptorStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PollerState(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Cancelled:
    reason: str = "Cancelled by request"


TerminalStatus = Union[Succeeded, Failed, TimedOut, Cancelled]

_TERMINAL_STATES: dict[type, PollerState] = {
    Succeeded: PollerState.SUCCEEDED,
    Failed: PollerState.FAILED,
    TimedOut: PollerState.TIMED_OUT,
    Cancelled: PollerState.CANCELLED,
}


@dataclass(frozen=True)
class JobOutcome:
    """Terminal result of a job, delivered once to every listener."""

    kind: str
    correlation_id: str
    status: TerminalStatus
    request_id: Optional[str] = None
    attempts: int = 0
    finished_at: datetime = field(default_factory=_utcnow)

    @property
    def state(self) -> PollerState:
        return _TERMINAL_STATES[type(self.status)]

    @property
    def result_url(self) -> Optional[str]:
        return self.status.result_url if isinstance(self.status, Succeeded) else None

    @property
    def message(self) -> str:
        status = self.status
        if isinstance(status, Succeeded):
            return "Media generation finished"
        if isinstance(status, Failed):
            return f"Media generation failed: {status.reason}"
        if isinstance(status, TimedOut):
            return (
                f"Media generation timed out after {status.attempts} status checks; "
                "please try again later"
            )
        return status.reason


OutcomeListener = Callable[[JobOutcome], Union[None, Awaitable[None]]]


class ResumableJobPoller:
    """Drive one job kind from submission to a terminal outcome.

    The descriptor is persisted before the first poll and rewritten on every
    tick, so a restarted process can pick the job up with :meth:`resume`.
    Only one job per kind is active; a new submission replaces the old one.
    """

    def __init__(
        self,
        adapter: SiliconFlowMediaAdapter,
        store: DescriptorStore,
        *,
        kind: str = "media",
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        stale_after: timedelta = timedelta(minutes=5),
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = _utcnow,
    ):
        self._adapter = adapter
        self._store = store
        self._kind = kind
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._stale_after = stale_after
        self._sleep = sleep
        self._clock = clock

        self._state = PollerState.IDLE
        self._descriptor: Optional[JobDescriptor] = None
        self._outcome: Optional[JobOutcome] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._hidden = False
        self._listeners: list[OutcomeListener] = []

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def descriptor(self) -> Optional[JobDescriptor]:
        return self._descriptor

    @property
    def outcome(self) -> Optional[JobOutcome]:
        return self._outcome

    @property
    def hidden(self) -> bool:
        return self._hidden

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    def set_visibility(self, hidden: bool) -> None:
        """Pause status queries while the client is backgrounded."""

        if hidden != self._hidden:
            logger.debug("Poller %s visibility: hidden=%s", self._kind, hidden)
        self._hidden = hidden

    async def submit(
        self,
        body: dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
    ) -> Union[JobDescriptor, JobOutcome]:
        """Submit a job; returns the descriptor to poll or an immediate outcome."""

        if self.active:
            logger.info("New %s submission replaces the active job", self._kind)
            await self.cancel()
        self._outcome = None
        self._descriptor = None
        self._state = PollerState.SUBMITTED
        correlation = correlation_id or uuid.uuid4().hex

        try:
            submission = await self._adapter.submit(body)
        except (MediaJobError, UpstreamError):
            self._state = PollerState.IDLE
            await self._store.delete(self._kind)
            raise

        if submission.result_url:
            await self._store.delete(self._kind)
            return await self._finish(
                Succeeded(submission.result_url),
                correlation_id=correlation,
                request_id=None,
                attempts=0,
            )

        descriptor = JobDescriptor(
            request_id=submission.request_id,
            correlation_id=correlation,
            attempts_made=0,
            created_at=self._clock(),
            kind=self._kind,
        )
        await self._store.save(descriptor)
        logger.info(
            "Submitted %s job %s (correlation %s)",
            self._kind,
            descriptor.request_id,
            descriptor.correlation_id,
        )
        self._start(descriptor)
        return descriptor

    async def resume(self, descriptor: Optional[JobDescriptor] = None) -> bool:
        """Continue polling a persisted job; stale descriptors are discarded."""

        if self.active:
            return True
        if descriptor is None:
            descriptor = await self._store.load(self._kind)
        if descriptor is None:
            return False

        age = descriptor.age(self._clock())
        if age > self._stale_after.total_seconds():
            logger.info(
                "Discarding stale %s job %s (age %.0fs)",
                self._kind,
                descriptor.request_id,
                age,
            )
            await self._store.delete(self._kind)
            return False

        logger.info(
            "Resuming %s job %s after %d attempt(s)",
            self._kind,
            descriptor.request_id,
            descriptor.attempts_made,
        )
        self._outcome = None
        self._start(descriptor)
        return True

    async def cancel(self) -> bool:
        """Stop the active job and clear its descriptor."""

        descriptor = self._descriptor
        was_active = self.active
        await self._stop_loop()
        await self._store.delete(self._kind)
        if descriptor is None or not was_active:
            self._descriptor = None
            if self._state not in _TERMINAL_STATES.values():
                self._state = PollerState.IDLE
            return False
        await self._finish(
            Cancelled(),
            correlation_id=descriptor.correlation_id,
            request_id=descriptor.request_id,
            attempts=descriptor.attempts_made,
        )
        return True

    async def wait(self) -> Optional[JobOutcome]:
        """Wait for the active loop (if any) and return the latest outcome."""

        task = self._task
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        return self._outcome

    async def aclose(self) -> None:
        """Stop polling without touching the persisted descriptor."""

        await self._stop_loop()

    def snapshot(self) -> dict[str, Any]:
        descriptor = self._descriptor
        outcome = self._outcome
        return {
            "kind": self._kind,
            "state": self._state.value,
            "hidden": self._hidden,
            "job": descriptor.model_dump(mode="json", by_alias=True)
            if descriptor is not None
            else None,
            "result_url": outcome.result_url if outcome is not None else None,
            "message": outcome.message if outcome is not None else None,
        }

    def _start(self, descriptor: JobDescriptor) -> None:
        self._descriptor = descriptor
        self._state = PollerState.POLLING
        self._task = asyncio.create_task(
            self._poll_loop(descriptor), name=f"poll-{self._kind}"
        )

    async def _stop_loop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _poll_loop(self, descriptor: JobDescriptor) -> None:
        try:
            await self._poll_until_done(descriptor)
        except Exception as exc:
            # Any escape still ends in a terminal outcome for the listeners
            current = self._descriptor or descriptor
            logger.exception(
                "Polling %s job %s stopped unexpectedly", self._kind, current.request_id
            )
            try:
                await self._store.delete(self._kind)
            except Exception as store_exc:
                logger.warning("Could not clear %s job descriptor: %s", self._kind, store_exc)
            await self._finish(
                Failed(f"Polling stopped: {exc}"),
                correlation_id=current.correlation_id,
                request_id=current.request_id,
                attempts=current.attempts_made,
            )

    async def _poll_until_done(self, descriptor: JobDescriptor) -> None:
        while True:
            await self._sleep(self._poll_interval)
            if self._hidden:
                continue

            descriptor = descriptor.with_attempt()
            self._descriptor = descriptor
            await self._store.save(descriptor)

            try:
                status = await self._adapter.status(descriptor.request_id)
            except (MediaJobError, UpstreamError) as exc:
                logger.warning(
                    "Status check %d for %s job %s failed: %s",
                    descriptor.attempts_made,
                    self._kind,
                    descriptor.request_id,
                    exc,
                )
                status = None

            if isinstance(status, (Succeeded, Failed)):
                await self._conclude(status, descriptor)
                return
            if descriptor.attempts_made >= self._max_attempts:
                await self._conclude(TimedOut(descriptor.attempts_made), descriptor)
                return

    async def _conclude(self, status: TerminalStatus, descriptor: JobDescriptor) -> None:
        await self._store.delete(self._kind)
        await self._finish(
            status,
            correlation_id=descriptor.correlation_id,
            request_id=descriptor.request_id,
            attempts=descriptor.attempts_made,
        )

    async def _finish(
        self,
        status: TerminalStatus,
        *,
        correlation_id: str,
        request_id: Optional[str],
        attempts: int,
    ) -> JobOutcome:
        outcome = JobOutcome(
            kind=self._kind,
            correlation_id=correlation_id,
            status=status,
            request_id=request_id,
            attempts=attempts,
            finished_at=self._clock(),
        )
        self._descriptor = None
        self._outcome = outcome
        self._state = outcome.state
        logger.info(
            "%s job %s finished: %s",
            self._kind,
            request_id or "(immediate)",
            outcome.state.value,
        )
        for listener in list(self._listeners):
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("Job outcome listener failed: %s", exc)
        return outcome


__all__ = [
    "Cancelled",
    "JobOutcome",
    "OutcomeListener",
    "PollerState",
    "ResumableJobPoller",
    "TerminalStatus",
]
