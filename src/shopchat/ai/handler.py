"""Conversation state manager: session -> history -> model -> tools -> sanitized transcript."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from shopchat.ai.conversation import build_system_prompt
from shopchat.ai.protocol import sanitize_display_text
from shopchat.ai.tool_runner import TextCallback, TurnRunner, append_checked
from shopchat.ai.tools.registry import ToolRegistry
from shopchat.config import ConversationConfig, ModelConfig, SessionConfig
from shopchat.core.models import Message, Session, SessionSnapshot
from shopchat.core.session import SessionManager
from shopchat.core.types import Role
from shopchat.errors import FatalError, ModelError, RateLimitedError, SessionClosedError
from shopchat.log import bind_session, get_logger

logger = get_logger(__name__)

ERROR_TEXT = "Sorry, something went wrong on our side. Please try again in a moment."
RATE_LIMITED_TEXT = "You're sending messages too quickly. Please wait a moment and try again."
CLOSED_TEXT = "This conversation has ended. Please start a new one."


class SnapshotSink(Protocol):
    def submit(self, snapshot: SessionSnapshot) -> bool: ...


@dataclass(frozen=True, slots=True)
class ClientMessage:
    """A message as a client may render it: sanitized text plus structured tool calls."""

    role: str
    text: str
    tool_calls: tuple[dict[str, Any], ...] = ()
    timestamp: datetime | None = None
    seq: int = -1

    @classmethod
    def from_message(cls, message: Message) -> ClientMessage:
        text = message.content
        if message.role == Role.ASSISTANT:
            text = sanitize_display_text(text)
        return cls(
            role=str(message.role),
            text=text,
            tool_calls=tuple(inv.to_client() for inv in message.tool_calls),
            timestamp=message.timestamp,
            seq=message.seq,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "text": self.text, "toolCalls": list(self.tool_calls)}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class TranscriptDelta:
    """What a turn added to the client-visible transcript."""

    session_id: str
    messages: list[ClientMessage] = field(default_factory=list)
    text: str = ""
    rounds: int = 0
    round_limit_reached: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
            "text": self.text,
            "rounds": self.rounds,
            "roundLimitReached": self.round_limit_reached,
            "cancelled": self.cancelled,
        }
        if self.error:
            data["error"] = self.error
        return data


class ChatRequest(BaseModel):
    """Inbound chat request from a client."""

    session_id: Optional[str] = None
    user_message: str = Field(min_length=1)
    customer_id: Optional[str] = None
    cart_id: Optional[str] = None


def client_view(messages: list[Message]) -> list[ClientMessage]:
    """Project stored messages onto the client transcript. Tool-role entries stay internal."""
    view = []
    for message in messages:
        if message.role not in (Role.USER, Role.ASSISTANT):
            continue
        client = ClientMessage.from_message(message)
        if client.text or client.tool_calls:
            view.append(client)
    return view


class ConversationManager:
    """Owns every live session's message log and runs turns against it."""

    def __init__(
        self,
        sessions: SessionManager,
        runner: TurnRunner,
        registry: ToolRegistry,
        model_config: ModelConfig | None = None,
        conversation_config: ConversationConfig | None = None,
        session_config: SessionConfig | None = None,
        archiver: SnapshotSink | None = None,
    ):
        self._sessions = sessions
        self._runner = runner
        self._registry = registry
        self._model_config = model_config or ModelConfig()
        self._conversation_config = conversation_config or ConversationConfig()
        self._session_config = session_config or SessionConfig()
        self._archiver = archiver

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    async def start_turn(
        self,
        session: Session | str,
        user_message: str,
        cancel_event: asyncio.Event | None = None,
        on_text: Optional[TextCallback] = None,
    ) -> TranscriptDelta:
        """Run one user turn to completion and return what it added to the transcript.

        Turns on the same session are serialized. Raises RateLimitedError or
        SessionClosedError before anything is appended, ModelError when the
        model is unreachable, and FatalError for anything unexpected (the
        session is then marked degraded).
        """
        session_id = session if isinstance(session, str) else session.session_id
        self._sessions.check_rate_limit(session_id)

        async with self._sessions.acquire(session_id) as live:
            if not live.is_open:
                raise SessionClosedError(f"session {session_id} is {live.status}")

            with bind_session(session_id):
                user = live.append(Message(role=Role.USER, content=user_message.strip()))
                turn_start = len(live.messages) - 1
                tools = self._registry.get_tools_by_names(self._conversation_config.tools)
                system = build_system_prompt(self._model_config.system_prompt, tools, live)
                logger.info("turn_started", seq=user.seq, tools=len(tools))

                try:
                    outcome = await self._runner.run(live, system, turn_start, cancel_event, on_text)
                except (ModelError, asyncio.CancelledError):
                    self._checkpoint(live)
                    raise
                except Exception as e:
                    live.degraded = True
                    logger.exception("turn_failed", error=str(e))
                    self._checkpoint(live)
                    raise FatalError(f"turn failed: {e}") from e

                logger.info(
                    "turn_finished",
                    rounds=outcome.rounds,
                    tool_calls=len(outcome.tool_results),
                    round_limit_reached=outcome.round_limit_reached,
                    cancelled=outcome.cancelled,
                    diagnostics=len(outcome.diagnostics),
                )
                self._checkpoint(live)

            return TranscriptDelta(
                session_id=session_id,
                messages=client_view([user, *outcome.appended]),
                text=outcome.text,
                rounds=outcome.rounds,
                round_limit_reached=outcome.round_limit_reached,
                cancelled=outcome.cancelled,
            )

    def get_transcript(self, session: Session | str) -> list[ClientMessage]:
        """Ordered, sanitized client view of a live session."""
        live = self._sessions.get(session) if isinstance(session, str) else session
        if live is None:
            raise KeyError(f"unknown session {session}")
        return client_view(live.messages)

    def append(self, session: Session, message: Message) -> Message | None:
        """Append outside a turn, re-checking assistant content like the turn loop does."""
        return append_checked(session, message)

    async def handle(
        self,
        request: ChatRequest,
        cancel_event: asyncio.Event | None = None,
        on_text: Optional[TextCallback] = None,
    ) -> TranscriptDelta:
        """Process an inbound request end-to-end, always returning a well-formed delta."""
        try:
            session = self._sessions.get_or_create(request.session_id, request.customer_id, request.cart_id)
        except SessionClosedError:
            return TranscriptDelta(session_id=request.session_id or "", text=CLOSED_TEXT, error="session_closed")

        try:
            return await self.start_turn(session, request.user_message, cancel_event, on_text)
        except RateLimitedError:
            return TranscriptDelta(session_id=session.session_id, text=RATE_LIMITED_TEXT, error="rate_limited")
        except SessionClosedError:
            return TranscriptDelta(session_id=session.session_id, text=CLOSED_TEXT, error="session_closed")
        except (ModelError, FatalError) as e:
            logger.error("chat_error", session_id=session.session_id, error=str(e))
            return TranscriptDelta(session_id=session.session_id, text=ERROR_TEXT, error=type(e).__name__)

    async def close(self, session_id: str, reason: str = "explicit") -> SessionSnapshot | None:
        snapshot = await self._sessions.close(session_id, reason)
        if snapshot is not None and self._archiver is not None:
            self._archiver.submit(snapshot)
        return snapshot

    async def close_idle(self) -> int:
        """Close idle sessions and hand their final snapshots to the archiver."""
        snapshots = await self._sessions.close_idle()
        for snapshot in snapshots:
            if self._archiver is not None:
                self._archiver.submit(snapshot)
        if snapshots:
            logger.info("idle_sessions_closed", count=len(snapshots))
        return len(snapshots)

    def _checkpoint(self, session: Session) -> None:
        """Hand the session to the archiver, then drop entries beyond the live cap."""
        if self._archiver is not None:
            self._archiver.submit(session.snapshot())
        dropped = session.trim(self._session_config.max_messages)
        if dropped:
            logger.debug("session_trimmed", dropped=dropped)
