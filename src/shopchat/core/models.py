"""Live session data model: sessions, messages, tool invocations and results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from shopchat.core.types import Role, SessionStatus, ToolStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """One structured call extracted from model output."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_client(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of one ToolInvocation. Never mutated after creation."""

    invocation_id: str
    tool_name: str
    status: ToolStatus
    duration_ms: int = 0
    attempts: int = 0
    payload: Any = None
    error: Optional[dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == ToolStatus.SUCCESS

    def to_content(self) -> str:
        """Serialize for the tool-role message the model reads next."""
        body: dict[str, Any] = {
            "tool": self.tool_name,
            "id": self.invocation_id,
            "status": str(self.status),
        }
        if self.ok:
            body["result"] = self.payload
        else:
            body["error"] = self.error or {"message": "unknown error"}
        return json.dumps(body, ensure_ascii=False, default=str)


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: tuple[ToolInvocation, ...] = ()
    tool_call_id: Optional[str] = None
    name: Optional[str] = None  # tool name on tool-role messages
    result: Optional[ToolResult] = None
    timestamp: datetime = field(default_factory=utcnow)
    seq: int = -1


@dataclass(frozen=True, slots=True)
class UsageRecord:
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    seq: int = -1


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only copy of a session handed to the archiver."""

    session_id: str
    customer_id: Optional[str]
    cart_id: Optional[str]
    status: SessionStatus
    created_at: datetime
    last_activity: datetime
    degraded: bool
    messages: tuple[Message, ...]
    usage: tuple[UsageRecord, ...]


@dataclass
class Session:
    """A live conversation. Mutated only by the conversation manager."""

    session_id: str
    customer_id: Optional[str] = None
    cart_id: Optional[str] = None
    status: SessionStatus = SessionStatus.OPEN
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    degraded: bool = False
    messages: list[Message] = field(default_factory=list)
    usage: list[UsageRecord] = field(default_factory=list)
    _next_seq: int = 0
    _next_usage_seq: int = 0

    def append(self, message: Message) -> Message:
        """Assign the next sequence number and add *message* to the log."""
        stored = replace(message, seq=self._next_seq)
        self._next_seq += 1
        self.messages.append(stored)
        self.last_activity = stored.timestamp
        return stored

    def record_usage(self, model: str, prompt_tokens: int, completion_tokens: int) -> UsageRecord:
        record = UsageRecord(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            seq=self._next_usage_seq,
        )
        self._next_usage_seq += 1
        self.usage.append(record)
        return record

    def trim(self, max_messages: int) -> int:
        """Drop the oldest in-memory messages and usage records beyond *max_messages*.

        Sequence numbers keep counting. Returns the number of messages dropped.
        """
        if max_messages <= 0:
            return 0
        if len(self.usage) > max_messages:
            del self.usage[: len(self.usage) - max_messages]
        excess = len(self.messages) - max_messages
        if excess <= 0:
            return 0
        del self.messages[:excess]
        return excess

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            customer_id=self.customer_id,
            cart_id=self.cart_id,
            status=self.status,
            created_at=self.created_at,
            last_activity=self.last_activity,
            degraded=self.degraded,
            messages=tuple(self.messages),
            usage=tuple(self.usage),
        )
