"""SQLite archive connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from shopchat.errors import StorageError
from shopchat.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id      TEXT PRIMARY KEY,
    customer_id     TEXT,
    cart_id         TEXT,
    status          TEXT NOT NULL CHECK(status IN ('open','closed','archived')),
    degraded        INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    last_activity   TEXT NOT NULL,
    archived_at     TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE TABLE IF NOT EXISTS messages (
    session_id      TEXT    NOT NULL,
    seq             INTEGER NOT NULL,
    role            TEXT    NOT NULL CHECK(role IN ('user','assistant','system','tool')),
    content         TEXT    NOT NULL,
    tool_calls_json TEXT    NOT NULL DEFAULT '[]',
    tool_call_id    TEXT,
    created_at      TEXT    NOT NULL,
    PRIMARY KEY (session_id, seq)
);

CREATE TABLE IF NOT EXISTS tool_calls (
    session_id      TEXT    NOT NULL,
    seq             INTEGER NOT NULL,
    invocation_id   TEXT    NOT NULL,
    tool_name       TEXT    NOT NULL,
    arguments_json  TEXT    NOT NULL DEFAULT '{}',
    status          TEXT    NOT NULL CHECK(status IN ('success','error','timeout')),
    attempts        INTEGER NOT NULL DEFAULT 0,
    duration_ms     INTEGER NOT NULL DEFAULT 0,
    result_json     TEXT,
    error_json      TEXT,
    PRIMARY KEY (session_id, seq)
);

CREATE TABLE IF NOT EXISTS usage (
    session_id          TEXT    NOT NULL,
    seq                 INTEGER NOT NULL,
    model               TEXT    NOT NULL DEFAULT '',
    prompt_tokens       INTEGER NOT NULL DEFAULT 0,
    completion_tokens   INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT    NOT NULL,
    PRIMARY KEY (session_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_tool_calls_name
    ON tool_calls(tool_name, status);

CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    content,
    content='messages',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS trg_messages_fts_insert AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
END;
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
