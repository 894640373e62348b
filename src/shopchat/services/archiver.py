"""Session archiver: copies session snapshots into the archive out-of-band."""

from __future__ import annotations

import asyncio
import random
import sqlite3
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import aiosqlite

from shopchat.config import ArchiverConfig
from shopchat.core.models import SessionSnapshot
from shopchat.core.retry import RetryPolicy
from shopchat.core.types import ErrorClass
from shopchat.errors import TransientError
from shopchat.log import get_logger
from shopchat.storage.archive_repo import ArchiveRepository
from shopchat.storage.models import ArchiveBatch

logger = get_logger(__name__)


_TRANSIENT_SQLITE_CODES = frozenset({sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED, sqlite3.SQLITE_IOERR})
_TRANSIENT_SQLITE_HINTS = ("locked", "busy", "disk i/o")


def _is_transient_sqlite(error: aiosqlite.OperationalError) -> bool:
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None:
        # extended result codes keep the primary code in the low byte
        return (code & 0xFF) in _TRANSIENT_SQLITE_CODES
    message = str(error).lower()
    return any(hint in message for hint in _TRANSIENT_SQLITE_HINTS)


def classify_storage_error(error: BaseException) -> ErrorClass:
    """Locked/busy database and I/O failures are transient.

    Schema mismatches (``no such table``, missing columns) and constraint
    errors are fatal: retrying them would only hold up the rest of the queue.
    """
    if isinstance(error, aiosqlite.OperationalError):
        return ErrorClass.TRANSIENT if _is_transient_sqlite(error) else ErrorClass.FATAL
    if isinstance(error, (TransientError, OSError, asyncio.TimeoutError)):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


@dataclass
class ArchiverStats:
    submitted: int = 0
    archived: int = 0
    rows_written: int = 0
    dropped: int = 0
    failed: int = 0
    requeued: int = 0
    pending: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class SessionArchiver:
    """Bounded queue of pending snapshots, drained on an interval or on demand.

    ``submit`` never blocks and never raises: when the queue is full the
    oldest pending snapshot is dropped and counted. Writes are idempotent,
    so replaying a snapshot that was already written is harmless.
    """

    def __init__(
        self,
        repo: ArchiveRepository,
        config: ArchiverConfig | None = None,
        on_archived: Optional[Callable[[SessionSnapshot], None]] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self._repo = repo
        self._config = config or ArchiverConfig()
        self._policy = RetryPolicy.from_config(self._config.retry)
        self._on_archived = on_archived
        self._sleep = sleep
        self._rng = rng
        self._queue: deque[SessionSnapshot] = deque()
        self._pass_lock = asyncio.Lock()
        self._stats = ArchiverStats()
        self._running = False

    @property
    def service_name(self) -> str:
        return "archiver"

    @property
    def stats(self) -> ArchiverStats:
        self._stats.pending = len(self._queue)
        return self._stats

    @property
    def pending(self) -> int:
        return len(self._queue)

    def set_on_archived(self, callback: Callable[[SessionSnapshot], None]) -> None:
        self._on_archived = callback

    def submit(self, snapshot: SessionSnapshot) -> bool:
        """Queue *snapshot* for archival. Returns False if an older batch had to be dropped."""
        self._stats.submitted += 1
        return self._enqueue(snapshot)

    def _enqueue(self, snapshot: SessionSnapshot, front: bool = False) -> bool:
        kept = True
        if len(self._queue) >= self._config.queue_size:
            oldest = self._queue.popleft()
            self._stats.dropped += 1
            kept = False
            logger.warning(
                "archive_batch_dropped",
                session_id=oldest.session_id,
                messages=len(oldest.messages),
                dropped_total=self._stats.dropped,
            )
        if front:
            self._queue.appendleft(snapshot)
        else:
            self._queue.append(snapshot)
        return kept

    async def run_pass(self) -> int:
        """Drain the queue once. Returns the number of snapshots archived.

        A transient failure that survives every retry puts the snapshot back at
        the head of the queue and ends the pass; the next pass picks it up.
        """
        archived = 0
        async with self._pass_lock:
            while self._queue:
                snapshot = self._queue.popleft()
                batch = ArchiveBatch.from_snapshot(snapshot)
                outcome = await self._policy.run(
                    lambda: self._repo.write_batch(batch),
                    classify_storage_error,
                    sleep=self._sleep,
                    rng=self._rng,
                )
                if outcome.ok:
                    archived += 1
                    self._stats.archived += 1
                    self._stats.rows_written += outcome.value or 0
                    logger.debug(
                        "session_archived",
                        session_id=snapshot.session_id,
                        new_rows=outcome.value,
                        attempts=outcome.attempts,
                    )
                    self._notify(snapshot)
                    continue

                if outcome.exhausted:
                    self._stats.requeued += 1
                    logger.warning(
                        "archive_write_deferred",
                        session_id=snapshot.session_id,
                        attempts=outcome.attempts,
                        error=str(outcome.last_error),
                    )
                    self._enqueue(snapshot, front=True)
                    break

                self._stats.failed += 1
                logger.error(
                    "archive_write_failed",
                    session_id=snapshot.session_id,
                    error=str(outcome.error),
                    error_type=type(outcome.error).__name__,
                )
        return archived

    def _notify(self, snapshot: SessionSnapshot) -> None:
        if self._on_archived is None:
            return
        try:
            self._on_archived(snapshot)
        except Exception as e:
            logger.error("archive_callback_failed", session_id=snapshot.session_id, error=str(e))

    async def flush(self) -> int:
        """Run passes until the queue is empty or a pass makes no progress."""
        total = 0
        while self._queue:
            archived = await self.run_pass()
            total += archived
            if archived == 0:
                break
        return total

    async def start(self) -> None:
        self._running = True
        logger.info("archiver_started", interval=self._config.interval, queue_size=self._config.queue_size)

    async def stop(self) -> None:
        """Final flush; whatever still cannot be written is reported, not raised."""
        self._running = False
        await self.flush()
        if self._queue:
            logger.warning("archiver_stopped_with_pending", pending=len(self._queue))
        logger.info("archiver_stopped", **self.stats.to_dict())

    async def health_check(self) -> bool:
        return self._running and len(self._queue) < self._config.queue_size
