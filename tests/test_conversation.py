from __future__ import annotations

from shopchat.ai.conversation import build_messages, build_system_prompt, history_window
from shopchat.core.models import Message, Session, ToolInvocation
from shopchat.core.types import Role


def _session_with_tool_round() -> Session:
    session = Session(session_id="s1", cart_id="cart-9")
    session.append(Message(role=Role.USER, content="what's in my cart?"))
    session.append(
        Message(
            role=Role.ASSISTANT,
            content="Let me check.",
            tool_calls=(ToolInvocation("c1", "get_cart", {}),),
        )
    )
    session.append(Message(role=Role.TOOL, content='{"status": "success"}', tool_call_id="c1", name="get_cart"))
    session.append(Message(role=Role.ASSISTANT, content="Your cart is empty."))
    return session


def test_tool_calls_are_rendered_back_as_blocks() -> None:
    messages = build_messages(_session_with_tool_round().messages)

    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[1]["content"] == 'Let me check.\n<|call|>{"name": "get_cart", "arguments": {}}<|end|>'
    assert messages[2]["content"].startswith("[Tool Result: get_cart c1]\n")


def test_consecutive_same_role_entries_are_merged() -> None:
    session = Session(session_id="s1")
    session.append(Message(role=Role.USER, content="first"))
    session.append(Message(role=Role.USER, content="second"))

    assert build_messages(session.messages) == [{"role": "user", "content": "first\n\nsecond"}]


def test_window_never_separates_tool_results_from_their_request() -> None:
    history = _session_with_tool_round().messages

    window = history_window(history, limit=2)

    assert [m.role for m in window] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]


def test_window_keeps_pinned_turn_start() -> None:
    session = Session(session_id="s1")
    for i in range(10):
        session.append(Message(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"m{i}"))

    window = history_window(session.messages, limit=2, pinned=4)

    assert window[0].content == "m4"
    assert len(window) == 6


def test_window_widens_back_to_a_user_message() -> None:
    session = Session(session_id="s1")
    for i in range(6):
        session.append(Message(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"m{i}"))

    window = history_window(session.messages, limit=3)

    assert window[0].role == Role.USER
    assert [m.content for m in window] == ["m2", "m3", "m4", "m5"]


def test_system_prompt_includes_session_context(registry) -> None:
    session = Session(session_id="s1", customer_id="cust-1", cart_id="cart-9")

    prompt = build_system_prompt("You are a shop assistant.", registry.get_tools_by_names(["get_cart"]), session)

    assert prompt.startswith("You are a shop assistant.")
    assert "### get_cart" in prompt
    assert "update_cart" not in prompt
    assert "cart_id is cart-9" in prompt
    assert "cust-1" in prompt
