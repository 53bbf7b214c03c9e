"""In-process session store: time- and turn-bounded working memory per (user, channel).

Sessions are never persisted. Every operation on a key runs under that
key's lock; operations on different keys never coordinate.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable, Hashable
from dataclasses import dataclass, field

from .provider import ChatMessage, ChatRole

logger = logging.getLogger(__name__)

SessionKey = tuple[str, str]  # (user_id, channel_id)


@dataclass
class Session:
    """Ephemeral working set of recent turns for one (user, channel) pair."""

    key: SessionKey
    created_at: float
    last_activity: float
    turns: list[ChatMessage] = field(default_factory=list)
    turn_count: int = 0

    def is_expired(self, now: float, timeout: float) -> bool:
        return now - self.last_activity > timeout

    def seconds_remaining(self, now: float, timeout: float) -> int:
        return max(0, int(timeout - (now - self.last_activity)))

    def snapshot(self) -> list[ChatMessage]:
        return list(self.turns)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLocks:
    """One asyncio lock per key, reference-counted so idle keys can be dropped."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, _KeyLock] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def is_idle(self, key: Hashable) -> bool:
        """True when no coroutine holds or waits for *key*."""
        entry = self._locks.get(key)
        return entry is None or entry.users == 0

    def __len__(self) -> int:
        return len(self._locks)


class SessionStore:
    """Keyed session cache with expiry, turn bounding and a background sweep.

    ``get_or_create`` is the authoritative expiry check; the sweep only
    reclaims memory for abandoned sessions.
    """

    def __init__(
        self,
        timeout: float = 600.0,
        max_turns: int = 10,
        window: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window >= max_turns:
            msg = "window must be smaller than max_turns"
            raise ValueError(msg)
        self.timeout = timeout
        self.max_turns = max_turns
        self.window = window
        self._clock = clock
        self._sessions: dict[SessionKey, Session] = {}
        self._locks = KeyedLocks()
        self._sweeper: asyncio.Task[None] | None = None

    # -- core operations ----------------------------------------------------

    async def get_or_create(self, user_id: str, channel_id: str) -> Session:
        key = (user_id, channel_id)
        async with self._locks.hold(key):
            return self._get_or_create_locked(key)

    async def append(self, session: Session, role: ChatRole, content: str) -> Session:
        """Append a turn, compacting when the exchange count exceeds ``max_turns``.

        A user turn opens a new exchange and increments ``turn_count``. If
        *session* expired in the meantime the turn lands in its replacement,
        which is returned.
        """
        key = session.key
        async with self._locks.hold(key):
            session = self._get_or_create_locked(key)
            self._append_locked(session, role, content)
            return session

    async def append_user_turn(
        self, user_id: str, channel_id: str, content: str
    ) -> tuple[Session, list[ChatMessage]]:
        """Append a user turn and return the session plus a history snapshot."""
        key = (user_id, channel_id)
        async with self._locks.hold(key):
            session = self._get_or_create_locked(key)
            self._append_locked(session, ChatRole.USER, content)
            return session, session.snapshot()

    async def history(self, user_id: str, channel_id: str) -> list[ChatMessage]:
        key = (user_id, channel_id)
        async with self._locks.hold(key):
            session = self._sessions.get(key)
            if session is None or session.is_expired(self._clock(), self.timeout):
                return []
            return session.snapshot()

    async def clear(self, user_id: str, channel_id: str) -> bool:
        key = (user_id, channel_id)
        async with self._locks.hold(key):
            return self._sessions.pop(key, None) is not None

    def seconds_remaining(self, session: Session) -> int:
        return session.seconds_remaining(self._clock(), self.timeout)

    def evict_expired(self) -> int:
        """Remove expired sessions whose key is not in use. Returns count removed.

        Runs without awaiting, so no coroutine can take a key's lock between
        the idle check and the removal.
        """
        now = self._clock()
        expired = [
            key
            for key, session in self._sessions.items()
            if session.is_expired(now, self.timeout) and self._locks.is_idle(key)
        ]
        for key in expired:
            del self._sessions[key]
        if expired:
            logger.debug("Evicted %d expired sessions", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    # -- background sweep ---------------------------------------------------

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Run :meth:`evict_expired` every *interval* seconds on one task."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop(interval), name="chatgate-session-sweeper"
        )

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()

    # -- internals (caller holds the key lock) -------------------------------

    def _get_or_create_locked(self, key: SessionKey) -> Session:
        now = self._clock()
        session = self._sessions.get(key)
        if session is None or session.is_expired(now, self.timeout):
            if session is not None:
                logger.debug("Session %s expired; starting fresh", key)
            session = Session(key=key, created_at=now, last_activity=now)
            self._sessions[key] = session
        return session

    def _append_locked(self, session: Session, role: ChatRole, content: str) -> None:
        session.turns.append(ChatMessage(role=ChatRole(role), content=content))
        if role == ChatRole.USER:
            session.turn_count += 1
        if session.turn_count > self.max_turns:
            session.turns = session.turns[-self.window :]
            session.turn_count = self.window
        session.last_activity = self._clock()
