"""Live session registry with per-session serialization."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Callable, Optional

from shopchat.config import SessionConfig
from shopchat.core.models import Session, SessionSnapshot, utcnow
from shopchat.core.types import SessionStatus
from shopchat.errors import RateLimitedError, SessionClosedError
from shopchat.log import get_logger

logger = get_logger(__name__)

RATE_LIMIT_WINDOW = 60.0
RETIRED_IDS_LIMIT = 10_000


class SessionManager:
    """Owns live sessions keyed by session id.

    ``acquire`` is the serialization boundary: at most one turn mutates a
    given session at a time, while different sessions proceed independently.
    """

    def __init__(self, config: SessionConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self._config = config or SessionConfig()
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._rate_windows: dict[str, tuple[float, int]] = {}
        self._retired: OrderedDict[str, None] = OrderedDict()

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(
        self,
        session_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        cart_id: Optional[str] = None,
    ) -> Session:
        """Return the open session for *session_id*, creating it on first use."""
        if session_id and session_id in self._retired:
            raise SessionClosedError(f"session {session_id} is archived")
        if session_id and session_id in self._sessions:
            session = self._sessions[session_id]
            if not session.is_open:
                raise SessionClosedError(f"session {session_id} is {session.status}")
            if customer_id and not session.customer_id:
                session.customer_id = customer_id
            if cart_id:
                session.cart_id = cart_id
            return session

        session = Session(
            session_id=session_id or uuid.uuid4().hex[:12],
            customer_id=customer_id,
            cart_id=cart_id,
        )
        self._sessions[session.session_id] = session
        logger.info("session_created", session_id=session.session_id, customer_id=customer_id)
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def acquire(self, session_id: str) -> AsyncIterator[Session]:
        """Hold the session's lock for the duration of the block."""
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(f"unknown session {session_id}")
            yield session

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def check_rate_limit(self, session_id: str) -> None:
        """Count one turn against the session's fixed one-minute window."""
        limit = self._config.rate_limit_per_minute
        if limit <= 0:
            return
        now = self._clock()
        started, count = self._rate_windows.get(session_id, (now, 0))
        if now - started > RATE_LIMIT_WINDOW:
            started, count = now, 0
        if count >= limit:
            logger.warning("session_rate_limited", session_id=session_id, limit=limit)
            raise RateLimitedError(f"more than {limit} messages per minute")
        self._rate_windows[session_id] = (started, count + 1)

    async def close(self, session_id: str, reason: str = "explicit") -> SessionSnapshot | None:
        """Mark a session closed and return its final snapshot."""
        if session_id not in self._sessions:
            return None
        async with self.acquire(session_id) as session:
            if session.status != SessionStatus.OPEN:
                return None
            session.status = SessionStatus.CLOSED
            logger.info("session_closed", session_id=session_id, reason=reason, messages=len(session.messages))
            return session.snapshot()

    async def close_idle(self) -> list[SessionSnapshot]:
        """Close every open session idle for longer than the inactivity timeout."""
        cutoff = utcnow() - timedelta(seconds=self._config.inactivity_timeout)
        idle = [
            s.session_id
            for s in self._sessions.values()
            if s.is_open and s.last_activity < cutoff and not self.is_busy(s.session_id)
        ]
        snapshots = []
        for session_id in idle:
            snapshot = await self.close(session_id, reason="inactivity")
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def on_archived(self, snapshot: SessionSnapshot) -> None:
        """Evict a closed session once its final snapshot is durable."""
        session = self._sessions.get(snapshot.session_id)
        if session is None or snapshot.status != SessionStatus.CLOSED:
            return
        if session.status != SessionStatus.CLOSED or self.is_busy(session.session_id):
            return
        last_live = session.messages[-1].seq if session.messages else -1
        last_archived = snapshot.messages[-1].seq if snapshot.messages else -1
        if last_live != last_archived:
            return
        session.status = SessionStatus.ARCHIVED
        self.evict(session.session_id)

    def evict(self, session_id: str) -> None:
        """Forget a session. The most recent RETIRED_IDS_LIMIT evicted ids are refused on reuse
        so their archived sequence numbers are not written over.
        """
        self._retired[session_id] = None
        while len(self._retired) > RETIRED_IDS_LIMIT:
            self._retired.popitem(last=False)
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        self._rate_windows.pop(session_id, None)
        logger.info("session_evicted", session_id=session_id)

    def ids(self) -> list[str]:
        return list(self._sessions.keys())

    def __len__(self) -> int:
        return len(self._sessions)
