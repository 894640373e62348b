"""Archive repository: idempotent upserts keyed by (session_id, seq) and read-back queries."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from shopchat.log import get_logger
from shopchat.storage.database import Database
from shopchat.storage.models import ArchiveBatch, ArchivedSession, MessageRow, ToolCallRow

logger = get_logger(__name__)

ARCHIVE_TABLES = ("sessions", "messages", "tool_calls", "usage")


async def _insert_many(conn: aiosqlite.Connection, sql: str, rows: list[tuple]) -> int:
    """Run an idempotent insert for *rows*; returns how many were new."""
    if not rows:
        return 0
    cursor = await conn.executemany(sql, rows)
    return max(cursor.rowcount, 0)


class ArchiveRepository:
    """Append/upsert-only writes plus queries over the archive."""

    def __init__(self, db: Database):
        self._db = db

    async def write_batch(self, batch: ArchiveBatch) -> int:
        """Write *batch* in one transaction and return the number of new rows.

        Rows already present for the same (session_id, seq) are left untouched,
        so replaying an overlapping window creates no duplicates.
        """
        conn = self._db.conn
        s = batch.session
        inserted = 0
        try:
            await conn.execute(
                """INSERT INTO sessions
                   (session_id, customer_id, cart_id, status, degraded, created_at, last_activity)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET
                       customer_id   = COALESCE(excluded.customer_id, sessions.customer_id),
                       cart_id       = COALESCE(excluded.cart_id, sessions.cart_id),
                       status        = CASE WHEN sessions.status = 'open' THEN excluded.status
                                            ELSE sessions.status END,
                       degraded      = MAX(sessions.degraded, excluded.degraded),
                       last_activity = MAX(sessions.last_activity, excluded.last_activity)""",
                (
                    s.session_id,
                    s.customer_id,
                    s.cart_id,
                    s.status,
                    int(s.degraded),
                    s.created_at.isoformat(),
                    s.last_activity.isoformat(),
                ),
            )
            inserted += await _insert_many(
                conn,
                """INSERT INTO messages
                   (session_id, seq, role, content, tool_calls_json, tool_call_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id, seq) DO NOTHING""",
                [
                    (
                        m.session_id,
                        m.seq,
                        m.role,
                        m.content,
                        m.tool_calls_json,
                        m.tool_call_id,
                        m.created_at.isoformat() if m.created_at else datetime.now().isoformat(),
                    )
                    for m in batch.messages
                ],
            )
            inserted += await _insert_many(
                conn,
                """INSERT INTO tool_calls
                   (session_id, seq, invocation_id, tool_name, arguments_json, status,
                    attempts, duration_ms, result_json, error_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id, seq) DO NOTHING""",
                [
                    (
                        t.session_id,
                        t.seq,
                        t.invocation_id,
                        t.tool_name,
                        t.arguments_json,
                        t.status,
                        t.attempts,
                        t.duration_ms,
                        t.result_json,
                        t.error_json,
                    )
                    for t in batch.tool_calls
                ],
            )
            inserted += await _insert_many(
                conn,
                """INSERT INTO usage
                   (session_id, seq, model, prompt_tokens, completion_tokens, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id, seq) DO NOTHING""",
                [
                    (u.session_id, u.seq, u.model, u.prompt_tokens, u.completion_tokens, u.created_at.isoformat())
                    for u in batch.usage
                ],
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
        logger.debug("archive_batch_written", session_id=batch.session_id, new_rows=inserted)
        return inserted

    async def get_messages(self, session_id: str, limit: int = 1000) -> list[MessageRow]:
        """Archived messages of a session, in sequence order."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM messages WHERE session_id = ?
               ORDER BY seq ASC
               LIMIT ?""",
            (session_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            MessageRow(
                session_id=row["session_id"],
                seq=row["seq"],
                role=row["role"],
                content=row["content"],
                tool_calls_json=row["tool_calls_json"],
                tool_call_id=row["tool_call_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def get_tool_calls(self, session_id: str) -> list[ToolCallRow]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM tool_calls WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            ToolCallRow(
                session_id=row["session_id"],
                seq=row["seq"],
                invocation_id=row["invocation_id"],
                tool_name=row["tool_name"],
                arguments_json=row["arguments_json"],
                status=row["status"],
                attempts=row["attempts"],
                duration_ms=row["duration_ms"],
                result_json=row["result_json"],
                error_json=row["error_json"],
            )
            for row in rows
        ]

    async def get_session(self, session_id: str) -> Optional[ArchivedSession]:
        sessions = await self.list_sessions(session_id=session_id)
        return sessions[0] if sessions else None

    async def list_sessions(self, limit: int = 50, session_id: Optional[str] = None) -> list[ArchivedSession]:
        """Archived sessions, most recently active first."""
        query = """SELECT s.*, (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.session_id) AS message_count
                   FROM sessions s"""
        params: tuple = ()
        if session_id:
            query += " WHERE s.session_id = ?"
            params = (session_id,)
        query += " ORDER BY s.last_activity DESC LIMIT ?"
        cursor = await self._db.conn.execute(query, (*params, limit))
        rows = await cursor.fetchall()
        return [
            ArchivedSession(
                session_id=row["session_id"],
                customer_id=row["customer_id"],
                cart_id=row["cart_id"],
                status=row["status"],
                degraded=bool(row["degraded"]),
                created_at=datetime.fromisoformat(row["created_at"]),
                last_activity=datetime.fromisoformat(row["last_activity"]),
                message_count=row["message_count"],
            )
            for row in rows
        ]

    async def search(self, query: str, limit: int = 20) -> list[MessageRow]:
        """Full-text search across archived message content."""
        cursor = await self._db.conn.execute(
            """SELECT m.* FROM messages m
               JOIN messages_fts f ON m.rowid = f.rowid
               WHERE messages_fts MATCH ?
               ORDER BY rank
               LIMIT ?""",
            (query, limit),
        )
        rows = await cursor.fetchall()
        return [
            MessageRow(
                session_id=row["session_id"],
                seq=row["seq"],
                role=row["role"],
                content=row["content"],
                tool_calls_json=row["tool_calls_json"],
                tool_call_id=row["tool_call_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def count_rows(self) -> dict[str, int]:
        counts = {}
        for table in ARCHIVE_TABLES:
            cursor = await self._db.conn.execute(f"SELECT COUNT(*) FROM {table}")
            row = await cursor.fetchone()
            counts[table] = row[0]
        return counts
