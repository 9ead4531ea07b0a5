"""Per-conversation state machine guarding in-flight chat turns."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_TOOL = "awaiting_tool"
    POLLING = "polling"


_LOCKED_STATES = frozenset({ConversationState.SENDING, ConversationState.AWAITING_TOOL})

_ALLOWED_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    ConversationState.IDLE: frozenset(
        {ConversationState.SENDING, ConversationState.POLLING}
    ),
    ConversationState.SENDING: frozenset(
        {ConversationState.AWAITING_TOOL, ConversationState.IDLE}
    ),
    ConversationState.AWAITING_TOOL: frozenset(
        {ConversationState.SENDING, ConversationState.IDLE}
    ),
    ConversationState.POLLING: frozenset({ConversationState.IDLE}),
}


class ConversationBusyError(RuntimeError):
    """Raised when a conversation cannot accept a new turn."""

    def __init__(self, conversation_id: str, state: ConversationState):
        super().__init__(
            f"Conversation {conversation_id} is busy ({state.value})"
        )
        self.conversation_id = conversation_id
        self.state = state


class InvalidTransitionError(RuntimeError):
    """Raised for transitions the state machine does not allow."""


class ConversationSession:
    """Current state of a single conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.state = ConversationState.IDLE
        self.locked_at: Optional[float] = None
        self.turn = 0
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def send_locked(self) -> bool:
        return self.state in _LOCKED_STATES

    def transition(self, target: ConversationState) -> None:
        if target == self.state:
            return
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Cannot move conversation {self.conversation_id} "
                f"from {self.state.value} to {target.value}"
            )
        self.state = target

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class SessionRegistry:
    """Track conversation sessions and force-release stale send locks.

    A send lock is released by whichever comes first: the turn finishing, the
    per-turn ``call_later`` timer, or :meth:`sweep` (run periodically from the
    application lifespan).
    """

    def __init__(
        self,
        lock_timeout: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self._turn_ids = itertools.count(1)

    @property
    def lock_timeout(self) -> float:
        return self._lock_timeout

    def get(self, conversation_id: str) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ConversationSession(conversation_id)
            self._sessions[conversation_id] = session
        return session

    def state_of(self, conversation_id: str) -> ConversationState:
        session = self._sessions.get(conversation_id)
        return session.state if session is not None else ConversationState.IDLE

    def acquire(self, conversation_id: str) -> ConversationSession:
        """Move an idle conversation to ``SENDING`` and arm the lock timer."""

        session = self.get(conversation_id)
        if session.send_locked and self._expired(session):
            self._force_release(session, reason="expired before new turn")
        if session.state != ConversationState.IDLE:
            raise ConversationBusyError(conversation_id, session.state)

        session.transition(ConversationState.SENDING)
        session.turn = next(self._turn_ids)
        session.locked_at = self._clock()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            session._timer = loop.call_later(
                self._lock_timeout, self._on_timer, conversation_id, session.turn
            )
        return session

    def mark_awaiting_tool(self, conversation_id: str, turn: Optional[int] = None) -> None:
        session = self._current(conversation_id, turn)
        if session is not None:
            session.transition(ConversationState.AWAITING_TOOL)

    def mark_sending(self, conversation_id: str, turn: Optional[int] = None) -> None:
        session = self._current(conversation_id, turn)
        if session is not None:
            session.transition(ConversationState.SENDING)

    def _current(
        self, conversation_id: str, turn: Optional[int]
    ) -> Optional[ConversationSession]:
        session = self._sessions.get(conversation_id)
        if session is None or not session.send_locked:
            return None
        if turn is not None and turn != session.turn:
            return None
        return session

    def release(self, conversation_id: str, turn: Optional[int] = None) -> None:
        """End a turn; a stale ``turn`` number leaves a newer turn untouched."""

        session = self._current(conversation_id, turn)
        if session is None:
            return
        session._cancel_timer()
        session.locked_at = None
        session.transition(ConversationState.IDLE)

    def start_polling(self, conversation_id: str) -> None:
        session = self.get(conversation_id)
        if session.state != ConversationState.IDLE:
            raise ConversationBusyError(conversation_id, session.state)
        session.transition(ConversationState.POLLING)

    def stop_polling(self, conversation_id: str) -> None:
        session = self._sessions.get(conversation_id)
        if session is not None and session.state == ConversationState.POLLING:
            session.transition(ConversationState.IDLE)

    @asynccontextmanager
    async def turn(self, conversation_id: str) -> AsyncIterator[ConversationSession]:
        """Hold the send lock for the duration of the block."""

        session = self.acquire(conversation_id)
        turn = session.turn
        try:
            yield session
        finally:
            self.release(conversation_id, turn)

    def _expired(self, session: ConversationSession, now: Optional[float] = None) -> bool:
        if session.locked_at is None:
            return False
        current = self._clock() if now is None else now
        return current - session.locked_at >= self._lock_timeout

    def _force_release(self, session: ConversationSession, *, reason: str) -> None:
        logger.warning(
            "Force-releasing send lock for conversation %s (%s)",
            session.conversation_id,
            reason,
        )
        session._cancel_timer()
        session.locked_at = None
        session.state = ConversationState.IDLE

    def _on_timer(self, conversation_id: str, turn: int) -> None:
        session = self._sessions.get(conversation_id)
        if session is None or session.turn != turn or not session.send_locked:
            return
        session._timer = None
        self._force_release(session, reason="lock timeout")

    def sweep(self, now: Optional[float] = None) -> int:
        """Release every expired send lock and drop idle sessions."""

        released = 0
        for conversation_id, session in list(self._sessions.items()):
            if session.send_locked and self._expired(session, now):
                self._force_release(session, reason="sweep")
                released += 1
            if session.state == ConversationState.IDLE:
                del self._sessions[conversation_id]
        return released

    async def run_sweeper(self, interval: float) -> None:
        """Periodically sweep until cancelled."""

        while True:
            await asyncio.sleep(interval)
            try:
                released = self.sweep()
            except Exception as exc:  # pragma: no cover
                logger.warning("Session sweep failed: %s", exc)
                continue
            if released:
                logger.info("Session sweep released %d stale lock(s)", released)


__all__ = [
    "ConversationBusyError",
    "ConversationSession",
    "ConversationState",
    "InvalidTransitionError",
    "SessionRegistry",
]
