"""Convert a session's message log into model context."""

from __future__ import annotations

import json
from typing import Any, Sequence

from shopchat.ai.protocol import CALL_END, CALL_START
from shopchat.ai.tools.base import ToolSchema
from shopchat.core.models import Message, Session, ToolInvocation
from shopchat.core.types import Role


def render_invocation(invocation: ToolInvocation) -> str:
    """Render an invocation back into the block syntax the model speaks."""
    payload = json.dumps({"name": invocation.name, "arguments": invocation.arguments}, ensure_ascii=False)
    return f"{CALL_START}{payload}{CALL_END}"


def build_tool_system_prompt(tools: Sequence[ToolSchema]) -> str:
    """Describe the available tools and the call syntax for the system prompt."""
    if not tools:
        return ""

    lines = [
        "\n\n--- Available Tools ---",
        "You can call the following tools. To call a tool, output EXACTLY this format:",
        f'{CALL_START}{{"name": "tool_name", "arguments": {{"param1": "value1"}}}}{CALL_END}',
        "",
        "You may call several tools in one response. Wait for the tool results before answering.",
        f"When you have the final answer, reply with plain text WITHOUT any {CALL_START} blocks.",
        "",
        "Tools:",
    ]
    for tool in tools:
        schema = tool.input_schema
        lines.append(f"\n### {tool.name}")
        lines.append(f"Description: {tool.description}")
        props = schema.get("properties", {})
        if props:
            lines.append(f"Arguments schema: {json.dumps(schema, ensure_ascii=False)}")
        else:
            lines.append("Arguments: none")
        required = schema.get("required", [])
        if required:
            lines.append(f"Required: {', '.join(required)}")

    return "\n".join(lines)


def build_session_context(session: Session) -> str:
    notes = []
    if session.cart_id:
        notes.append(f"Session context: the current cart_id is {session.cart_id}.")
    if session.customer_id:
        notes.append(f"Session context: the customer is signed in (customer id {session.customer_id}).")
    return "\n".join(notes)


def build_system_prompt(base: str, tools: Sequence[ToolSchema], session: Session) -> str:
    parts = [base.strip()] if base.strip() else []
    tool_prompt = build_tool_system_prompt(tools).strip()
    if tool_prompt:
        parts.append(tool_prompt)
    context = build_session_context(session)
    if context:
        parts.append(context)
    return "\n\n".join(parts)


def history_window(history: Sequence[Message], limit: int, pinned: int | None = None) -> list[Message]:
    """Last *limit* messages, widened back to a user message so tool results keep their request.

    *pinned* is an index that must stay inside the window (the current turn's user message).
    """
    if limit <= 0 or len(history) <= limit:
        start = 0
    else:
        start = len(history) - limit
        if pinned is not None:
            start = min(start, max(0, pinned))
        # Widen back to the user message that opened the exchange.
        while start > 0 and history[start].role != Role.USER:
            start -= 1
    window = list(history[start:])
    # The model API expects the conversation to open with a user message.
    while window and window[0].role != Role.USER:
        window.pop(0)
    return window


def build_messages(history: Sequence[Message], limit: int = 0, pinned: int | None = None) -> list[dict[str, Any]]:
    """Convert stored messages into alternating user/assistant API messages.

    Assistant tool calls are re-rendered as blocks and tool results are fed
    back as user-side ``[Tool Result]`` entries, grouped with their neighbours.
    """
    messages: list[dict[str, Any]] = []

    for record in history_window(history, limit, pinned):
        if record.role == Role.USER:
            role, content = "user", record.content
        elif record.role == Role.ASSISTANT:
            blocks = [render_invocation(inv) for inv in record.tool_calls]
            content = "\n".join(part for part in [record.content, *blocks] if part)
            role = "assistant"
        elif record.role == Role.TOOL:
            role = "user"
            content = f"[Tool Result: {record.name or 'unknown'} {record.tool_call_id or ''}]\n{record.content}"
        else:
            continue

        if not content:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})

    return messages
