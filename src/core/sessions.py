"""
Team Presence Bot — Conversation sessions.

One session per chat, tracking a multi-step interaction in progress
(select person → enter description → confirm). Sessions are kept in
memory only and evicted after a period of inactivity.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterator

logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = "idle"
    AWAITING_LEAVE_SELECTION = "awaiting_leave_selection"
    AWAITING_ACTIVITY_PERSON_SELECTION = "awaiting_activity_person_selection"
    AWAITING_ACTIVITY_DESCRIPTION = "awaiting_activity_description"
    AWAITING_DISAMBIGUATION = "awaiting_disambiguation"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


@dataclass(frozen=True)
class PendingLeave:
    time: datetime


@dataclass(frozen=True)
class PendingActivity:
    time: datetime
    description: str = ""


PendingAction = PendingLeave | PendingActivity


@dataclass
class Session:
    """Per-chat conversation state.

    `pending` is set in the disambiguation, description and confirmation
    states; `person_id` once a person has been chosen; `candidates` holds
    the ids offered in the last selection prompt.
    """

    state: State
    pending: PendingAction | None = None
    person_id: int | None = None
    candidates: list[int] = field(default_factory=list)
    touched_at: float = 0.0


class SessionStore:
    """Chat id → Session, with TTL eviction and per-chat exclusive sections.

    An evicted session leaves a tombstone (eviction time and the state it
    was in) for another TTL period, so the follow-up event that arrives
    too late can be told apart from a new request.
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl.total_seconds()
        self._clock = clock
        self._sessions: dict[int, Session] = {}
        self._tombstones: dict[int, tuple[float, State]] = {}
        self._locks: dict[int, threading.Lock] = {}
        self._lock_users: dict[int, int] = {}
        self._guard = threading.Lock()

    @contextmanager
    def lock(self, chat_id: int) -> Iterator[None]:
        """Exclusive section for one chat; other chats proceed in parallel."""
        with self._guard:
            chat_lock = self._locks.setdefault(chat_id, threading.Lock())
            self._lock_users[chat_id] = self._lock_users.get(chat_id, 0) + 1
        try:
            with chat_lock:
                yield
        finally:
            with self._guard:
                self._lock_users[chat_id] -= 1
                if not self._lock_users[chat_id]:
                    del self._lock_users[chat_id]

    def get(self, chat_id: int) -> Session | None:
        """Return the live session, evicting it first if it has expired."""
        with self._guard:
            session = self._sessions.get(chat_id)
            if session is None:
                return None
            now = self._clock()
            if now - session.touched_at > self._ttl:
                del self._sessions[chat_id]
                self._tombstones[chat_id] = (now, session.state)
                logger.info("Session for chat %d expired in state %s", chat_id, session.state.value)
                return None
            return session

    def put(self, chat_id: int, session: Session) -> None:
        """Start or replace the session of a chat."""
        with self._guard:
            session.touched_at = self._clock()
            self._sessions[chat_id] = session
            self._tombstones.pop(chat_id, None)

    def clear(self, chat_id: int) -> None:
        with self._guard:
            self._sessions.pop(chat_id, None)
            self._tombstones.pop(chat_id, None)

    def pop_expired(self, chat_id: int) -> State | None:
        """The state the chat's session was in when evicted for inactivity.

        Reported once; None if nothing expired.
        """
        self.get(chat_id)
        with self._guard:
            tombstone = self._tombstones.pop(chat_id, None)
        return tombstone[1] if tombstone else None

    def purge_expired(self) -> int:
        """Evict every expired session, forget old tombstones and idle locks."""
        with self._guard:
            now = self._clock()
            expired = [
                (chat_id, s) for chat_id, s in self._sessions.items()
                if now - s.touched_at > self._ttl
            ]
            for chat_id, session in expired:
                del self._sessions[chat_id]
                self._tombstones[chat_id] = (now, session.state)
            stale = [
                chat_id for chat_id, (at, _) in self._tombstones.items()
                if now - at > self._ttl
            ]
            for chat_id in stale:
                del self._tombstones[chat_id]
            idle = [
                chat_id for chat_id in self._locks
                if chat_id not in self._lock_users
                and chat_id not in self._sessions
                and chat_id not in self._tombstones
            ]
            for chat_id in idle:
                del self._locks[chat_id]
        if expired:
            logger.info("Purged %d expired session(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
