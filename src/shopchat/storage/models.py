"""Archive rows projected from a session snapshot."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from shopchat.core.models import SessionSnapshot
from shopchat.core.types import Role


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass
class SessionRow:
    session_id: str
    customer_id: Optional[str]
    cart_id: Optional[str]
    status: str
    degraded: bool
    created_at: datetime
    last_activity: datetime


@dataclass
class MessageRow:
    session_id: str
    seq: int
    role: str
    content: str
    tool_calls_json: str = "[]"
    tool_call_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ToolCallRow:
    session_id: str
    seq: int
    invocation_id: str
    tool_name: str
    arguments_json: str
    status: str
    attempts: int = 0
    duration_ms: int = 0
    result_json: Optional[str] = None
    error_json: Optional[str] = None


@dataclass
class UsageRow:
    session_id: str
    seq: int
    model: str
    prompt_tokens: int
    completion_tokens: int
    created_at: datetime


@dataclass
class ArchiveBatch:
    """Everything one archival pass writes for a session, keyed by (session_id, seq)."""

    session: SessionRow
    messages: list[MessageRow] = field(default_factory=list)
    tool_calls: list[ToolCallRow] = field(default_factory=list)
    usage: list[UsageRow] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def row_count(self) -> int:
        return 1 + len(self.messages) + len(self.tool_calls) + len(self.usage)

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> ArchiveBatch:
        sid = snapshot.session_id
        batch = cls(
            session=SessionRow(
                session_id=sid,
                customer_id=snapshot.customer_id,
                cart_id=snapshot.cart_id,
                status=str(snapshot.status),
                degraded=snapshot.degraded,
                created_at=snapshot.created_at,
                last_activity=snapshot.last_activity,
            )
        )

        arguments: dict[str, dict[str, Any]] = {}
        for message in snapshot.messages:
            for inv in message.tool_calls:
                arguments[inv.id] = inv.arguments

            batch.messages.append(
                MessageRow(
                    session_id=sid,
                    seq=message.seq,
                    role=str(message.role),
                    content=message.content,
                    tool_calls_json=_dumps([inv.to_client() for inv in message.tool_calls]),
                    tool_call_id=message.tool_call_id,
                    created_at=message.timestamp,
                )
            )

            result = message.result
            if message.role == Role.TOOL and result is not None:
                batch.tool_calls.append(
                    ToolCallRow(
                        session_id=sid,
                        seq=message.seq,
                        invocation_id=result.invocation_id,
                        tool_name=result.tool_name,
                        arguments_json=_dumps(arguments.get(result.invocation_id, {})),
                        status=str(result.status),
                        attempts=result.attempts,
                        duration_ms=result.duration_ms,
                        result_json=_dumps(result.payload) if result.ok else None,
                        error_json=_dumps(result.error) if result.error is not None else None,
                    )
                )

        for usage in snapshot.usage:
            batch.usage.append(
                UsageRow(
                    session_id=sid,
                    seq=usage.seq,
                    model=usage.model,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    created_at=usage.timestamp,
                )
            )
        return batch


@dataclass
class ArchivedSession:
    session_id: str
    customer_id: Optional[str]
    cart_id: Optional[str]
    status: str
    degraded: bool
    created_at: datetime
    last_activity: datetime
    message_count: int = 0
