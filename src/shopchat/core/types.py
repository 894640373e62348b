"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class SessionStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"
    ARCHIVED = "archived"


class ToolStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class ErrorClass(StrEnum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class TurnState(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    FINALIZED = "finalized"
