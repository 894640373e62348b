"""Streaming parser that separates display text from ``<|call|> … <|end|>`` tool blocks.

The model speaks plain text interleaved with blocks of the form::

    <|call|>{"name": "get_cart", "arguments": {}}<|end|>

``StreamParser`` is a two-state scanner (SCANNING / IN_BLOCK). It can be fed
arbitrary chunks of a stream; a marker split across chunks is held back
until the next chunk decides what it is, so display text handed out never
contains a start or end marker.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterable, Optional

from shopchat.ai.tools.results import safe_json_parse
from shopchat.core.models import ToolInvocation
from shopchat.log import get_logger

logger = get_logger(__name__)

CALL_START = "<|call|>"
CALL_END = "<|end|>"
DEFAULT_MAX_BLOCK_CHARS = 16384


class ScanState(StrEnum):
    SCANNING = "scanning"
    IN_BLOCK = "in_block"


@dataclass(frozen=True, slots=True)
class ParseDiagnostic:
    reason: str  # malformed_json | not_an_object | missing_name | invalid_arguments | block_too_large | unterminated_block | orphan_end_marker
    preview: str = ""


@dataclass
class ParseResult:
    cleaned_text: str = ""
    invocations: list[ToolInvocation] = field(default_factory=list)
    trailing_partial: str = ""
    diagnostics: list[ParseDiagnostic] = field(default_factory=list)
    raw_blocks: list[str] = field(default_factory=list)

    def extend(self, other: ParseResult) -> None:
        self.cleaned_text += other.cleaned_text
        self.invocations.extend(other.invocations)
        self.diagnostics.extend(other.diagnostics)
        self.raw_blocks.extend(other.raw_blocks)
        self.trailing_partial = other.trailing_partial


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def _partial_marker_len(text: str, markers: Iterable[str]) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of any marker."""
    best = 0
    for marker in markers:
        for size in range(min(len(marker) - 1, len(text)), best, -1):
            if text.endswith(marker[:size]):
                best = size
                break
    return best


class StreamParser:
    """Incremental tool-call block parser. Never raises on bad model output."""

    def __init__(
        self,
        max_block_chars: int = DEFAULT_MAX_BLOCK_CHARS,
        id_factory: Callable[[], str] = new_call_id,
        start_marker: str = CALL_START,
        end_marker: str = CALL_END,
    ):
        self._max_block_chars = max_block_chars
        self._id_factory = id_factory
        self._start = start_marker
        self._end = end_marker
        self._state = ScanState.SCANNING
        self._block = ""  # confirmed block content
        self._held = ""  # possible partial marker at the end of the last chunk
        self._in_string = False  # inside a JSON string literal of the open block
        self._escaped = False
        self._overflowed = False

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def trailing_partial(self) -> str:
        return self._block + self._held

    def feed(self, chunk: str) -> ParseResult:
        """Scan *chunk* (prefixed by anything held back) and return what it yields."""
        result = ParseResult()
        buf = self._held + chunk
        self._held = ""
        out: list[str] = []
        i = 0

        while i < len(buf):
            if self._state == ScanState.SCANNING:
                start_at = buf.find(self._start, i)
                end_at = buf.find(self._end, i)

                if start_at != -1 and (end_at == -1 or start_at < end_at):
                    out.append(buf[i:start_at])
                    i = start_at + len(self._start)
                    self._state = ScanState.IN_BLOCK
                    self._block = ""
                    self._overflowed = False
                    self._in_string = False
                    self._escaped = False
                    continue

                if end_at != -1:
                    # End marker with no open block: strip it, keep the text around it.
                    out.append(buf[i:end_at])
                    self._diagnose(result, "orphan_end_marker", buf[max(0, end_at - 40):end_at])
                    i = end_at + len(self._end)
                    continue

                tail = buf[i:]
                hold = _partial_marker_len(tail, (self._start, self._end))
                out.append(tail[: len(tail) - hold])
                self._held = tail[len(tail) - hold:] if hold else ""
                break

            end_at = self._find_end(buf, i)
            if end_at != -1:
                span = self._block + buf[i:end_at]
                i = end_at + len(self._end)
                self._state = ScanState.SCANNING
                self._block = ""
                if self._overflowed:
                    self._overflowed = False
                elif len(span) > self._max_block_chars:
                    self._diagnose(result, "block_too_large", span[:80])
                else:
                    self._close_block(span, result)
                continue

            tail = buf[i:]
            hold = 0 if self._in_string else _partial_marker_len(tail, (self._end,))
            self._held = tail[len(tail) - hold:] if hold else ""
            if not self._overflowed:
                self._block += tail[: len(tail) - hold]
                if len(self._block) > self._max_block_chars:
                    self._diagnose(result, "block_too_large", self._block[:80])
                    self._block = ""
                    self._overflowed = True
            break

        result.cleaned_text = "".join(out)
        result.trailing_partial = self.trailing_partial
        return result

    def finish(self) -> ParseResult:
        """Flush at end of stream. An unterminated block is dropped."""
        result = ParseResult()
        if self._state == ScanState.SCANNING:
            # Only a proper prefix of a marker can be held here, never a whole one.
            result.cleaned_text = self._held
        elif not self._overflowed:
            self._diagnose(result, "unterminated_block", (self._block + self._held)[:80])

        self._state = ScanState.SCANNING
        self._block = ""
        self._held = ""
        self._overflowed = False
        self._in_string = False
        self._escaped = False
        return result

    def _find_end(self, buf: str, start: int) -> int:
        """Index of the first end marker at or after *start* that sits outside a JSON string.

        String and escape state carry over between chunks, so a marker quoted
        inside an argument value never closes the block.
        """
        for j in range(start, len(buf)):
            ch = buf[j]
            if self._escaped:
                self._escaped = False
            elif self._in_string:
                if ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif buf.startswith(self._end, j):
                return j
        return -1

    def _close_block(self, span: str, result: ParseResult) -> None:
        payload = span.strip()
        try:
            obj: Any = json.loads(payload)
        except json.JSONDecodeError:
            self._diagnose(result, "malformed_json", payload[:80])
            return

        if not isinstance(obj, dict):
            self._diagnose(result, "not_an_object", payload[:80])
            return

        name = obj.get("name")
        if not isinstance(name, str) or not name.strip():
            self._diagnose(result, "missing_name", payload[:80])
            return

        arguments = obj.get("arguments")
        if arguments is None:
            arguments = {}
        arguments = safe_json_parse(arguments)
        if not isinstance(arguments, dict):
            self._diagnose(result, "invalid_arguments", payload[:80])
            return

        result.invocations.append(ToolInvocation(id=self._id_factory(), name=name.strip(), arguments=arguments))
        result.raw_blocks.append(span)

    @staticmethod
    def _diagnose(result: ParseResult, reason: str, preview: str) -> None:
        result.diagnostics.append(ParseDiagnostic(reason=reason, preview=preview))
        logger.warning("protocol_diagnostic", reason=reason, preview=preview)


def parse(text: str, max_block_chars: int = DEFAULT_MAX_BLOCK_CHARS, **kwargs: Any) -> ParseResult:
    """Parse a complete model output in one go; cleaned text comes back trimmed."""
    parser = StreamParser(max_block_chars=max_block_chars, **kwargs)
    result = parser.feed(text)
    result.extend(parser.finish())
    result.cleaned_text = strip_markers(result.cleaned_text).strip()
    result.trailing_partial = ""
    return result


def contains_protocol_syntax(text: str) -> bool:
    return CALL_START in text or CALL_END in text


def strip_markers(text: str) -> str:
    """Remove markers until none remain; removing one can join its neighbours into another."""
    while contains_protocol_syntax(text):
        text = text.replace(CALL_START, "").replace(CALL_END, "")
    return text


def sanitize_display_text(text: str, raw_blocks: Optional[Iterable[str]] = None) -> str:
    """Final guard before display text is stored: strip markers and any raw tool payloads."""
    cleaned = text
    if contains_protocol_syntax(cleaned):
        logger.warning("display_text_contained_markers")
        cleaned = parse(cleaned).cleaned_text
    for raw in raw_blocks or ():
        payload = raw.strip()
        if payload and payload in cleaned:
            logger.warning("display_text_contained_tool_payload")
            cleaned = cleaned.replace(payload, "")
    return strip_markers(cleaned).strip()
