"""Bounded generate → detect tool calls → dispatch → re-generate loop for one turn."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional, Sequence

from shopchat.ai.client import ModelClient
from shopchat.ai.conversation import build_messages
from shopchat.ai.dispatcher import ToolDispatcher
from shopchat.ai.protocol import (
    DEFAULT_MAX_BLOCK_CHARS,
    ParseDiagnostic,
    ParseResult,
    StreamParser,
    sanitize_display_text,
)
from shopchat.core.models import Message, Session, ToolInvocation, ToolResult
from shopchat.core.types import Role, TurnState
from shopchat.errors import ModelError
from shopchat.log import get_logger

logger = get_logger(__name__)

MAX_TOOL_ROUNDS = 5
ROUND_LIMIT_TEXT = "Sorry, I couldn't finish that request. Could you try asking in a different way?"

TextCallback = Callable[[str], Awaitable[None]]


@dataclass
class TurnOutcome:
    text: str = ""
    state: TurnState = TurnState.AWAITING_MODEL
    rounds: int = 0
    appended: list[Message] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    diagnostics: list[ParseDiagnostic] = field(default_factory=list)
    round_limit_reached: bool = False
    cancelled: bool = False


class TurnRunner:
    """Runs the per-turn state machine against one session.

    AWAITING_MODEL: stream a generation through the protocol parser.
    No invocations -> FINALIZED. Invocations -> DISPATCHING, one tool-role
    message per result, then back to AWAITING_MODEL. After ``max_rounds``
    dispatch rounds the next request for tools forces FINALIZED.
    """

    def __init__(
        self,
        model: ModelClient,
        dispatcher: ToolDispatcher,
        max_rounds: int = MAX_TOOL_ROUNDS,
        history_limit: int = 20,
        max_block_chars: int = DEFAULT_MAX_BLOCK_CHARS,
        generation_timeout: float = 60.0,
    ):
        self._model = model
        self._dispatcher = dispatcher
        self._max_rounds = max_rounds
        self._history_limit = history_limit
        self._max_block_chars = max_block_chars
        self._generation_timeout = generation_timeout

    async def run(
        self,
        session: Session,
        system: str,
        turn_start: int,
        cancel_event: asyncio.Event | None = None,
        on_text: Optional[TextCallback] = None,
    ) -> TurnOutcome:
        """Drive the turn whose user message sits at index *turn_start* of the log."""
        outcome = TurnOutcome()

        while True:
            outcome.state = TurnState.AWAITING_MODEL
            if cancel_event and cancel_event.is_set():
                logger.info("turn_cancelled", round=outcome.rounds)
                outcome.cancelled = True
                break

            messages = build_messages(session.messages, self._history_limit, turn_start)
            parsed = await self._generate(session, system, messages, cancel_event, on_text)
            if parsed is None:
                outcome.cancelled = True
                break
            outcome.diagnostics.extend(parsed.diagnostics)

            if not parsed.invocations:
                outcome.text = self._append_assistant(session, outcome, parsed.cleaned_text, (), parsed.raw_blocks)
                break

            if outcome.rounds >= self._max_rounds:
                logger.warning(
                    "tool_round_limit_reached",
                    rounds=outcome.rounds,
                    dropped=[inv.name for inv in parsed.invocations],
                )
                outcome.round_limit_reached = True
                text = parsed.cleaned_text or ROUND_LIMIT_TEXT
                outcome.text = self._append_assistant(session, outcome, text, (), parsed.raw_blocks)
                break

            outcome.state = TurnState.DISPATCHING
            self._append_assistant(session, outcome, parsed.cleaned_text, parsed.invocations, parsed.raw_blocks)
            await self._dispatch(session, outcome, parsed.invocations)
            outcome.rounds += 1

        outcome.state = TurnState.FINALIZED
        return outcome

    async def _generate(
        self,
        session: Session,
        system: str,
        messages: list[dict],
        cancel_event: asyncio.Event | None,
        on_text: Optional[TextCallback],
    ) -> ParseResult | None:
        try:
            return await asyncio.wait_for(
                self._stream(session, system, messages, cancel_event, on_text),
                timeout=self._generation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ModelError(f"model did not answer within {self._generation_timeout}s") from e

    async def _stream(
        self,
        session: Session,
        system: str,
        messages: list[dict],
        cancel_event: asyncio.Event | None,
        on_text: Optional[TextCallback],
    ) -> ParseResult | None:
        parser = StreamParser(max_block_chars=self._max_block_chars)
        result = ParseResult()

        async with aclosing(self._model.stream(system, messages)) as events:
            async for event in events:
                if cancel_event and cancel_event.is_set():
                    logger.info("generation_cancelled")
                    return None
                if event.type == "usage":
                    session.record_usage(self._model.model_name, event.prompt_tokens, event.completion_tokens)
                    continue
                part = parser.feed(event.text)
                result.extend(part)
                if on_text and part.cleaned_text:
                    await on_text(part.cleaned_text)

        tail = parser.finish()
        result.extend(tail)
        if on_text and tail.cleaned_text:
            await on_text(tail.cleaned_text)
        result.cleaned_text = result.cleaned_text.strip()
        return result

    async def _dispatch(
        self,
        session: Session,
        outcome: TurnOutcome,
        invocations: Sequence[ToolInvocation],
    ) -> None:
        task = asyncio.ensure_future(self._dispatcher.dispatch(invocations))
        try:
            results = await asyncio.shield(task)
        except asyncio.CancelledError:
            # Dispatched calls run to completion and are kept for audit.
            logger.info("turn_cancelled_during_dispatch", pending=len(invocations))
            results = await task
            self._append_results(session, outcome, results)
            raise
        self._append_results(session, outcome, results)

    def _append_results(self, session: Session, outcome: TurnOutcome, results: Sequence[ToolResult]) -> None:
        for result in results:
            outcome.tool_results.append(result)
            outcome.appended.append(
                session.append(
                    Message(
                        role=Role.TOOL,
                        content=result.to_content(),
                        tool_call_id=result.invocation_id,
                        name=result.tool_name,
                        result=result,
                    )
                )
            )

    def _append_assistant(
        self,
        session: Session,
        outcome: TurnOutcome,
        text: str,
        invocations: Sequence[ToolInvocation],
        raw_blocks: Sequence[str],
    ) -> str:
        message = Message(role=Role.ASSISTANT, content=text, tool_calls=tuple(invocations))
        stored = append_checked(session, message, raw_blocks)
        if stored is not None:
            outcome.appended.append(stored)
            return stored.content
        return ""


def append_checked(session: Session, message: Message, raw_blocks: Sequence[str] = ()) -> Message | None:
    """Append an assistant message only after its display content has been re-sanitized.

    Returns None (nothing appended) for an assistant message with neither
    text nor tool calls.
    """
    if message.role == Role.ASSISTANT:
        clean = sanitize_display_text(message.content, raw_blocks)
        if clean != message.content:
            logger.warning("assistant_content_sanitized", removed=len(message.content) - len(clean))
            message = replace(message, content=clean)
        if not message.content and not message.tool_calls:
            return None
    return session.append(message)
