from __future__ import annotations

import asyncio

import pytest

from conftest import FakeExecutor, ScriptedModel
from shopchat.ai.tool_runner import ROUND_LIMIT_TEXT, TurnRunner, append_checked
from shopchat.core.models import Message, Session
from shopchat.core.types import Role, ToolStatus, TurnState
from shopchat.errors import ModelError

CART_CALL = '<|call|>{"name":"get_cart","arguments":{}}<|end|>'
CART = {"id": "cart-1", "lines": []}


def _start(session: Session, text: str = "what's in my cart?") -> int:
    session.append(Message(role=Role.USER, content=text))
    return len(session.messages) - 1


@pytest.mark.asyncio
async def test_turn_without_tool_calls_finalizes_immediately(make_dispatcher) -> None:
    model = ScriptedModel(["Hello! How can I help?"])
    runner = TurnRunner(model, make_dispatcher(FakeExecutor()))
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session, "hi"))

    assert outcome.state == TurnState.FINALIZED
    assert outcome.rounds == 0
    assert outcome.text == "Hello! How can I help?"
    assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
    assert len(session.usage) == 1


@pytest.mark.asyncio
async def test_tool_round_then_final_answer(make_dispatcher) -> None:
    model = ScriptedModel([f"Let me check your cart. {CART_CALL}", "Your cart is empty."])
    executor = FakeExecutor({"get_cart": lambda a: CART})
    runner = TurnRunner(model, make_dispatcher(executor))
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session))

    assert outcome.rounds == 1
    assert outcome.text == "Your cart is empty."
    assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

    request = session.messages[1]
    assert request.content == "Let me check your cart."
    assert [inv.name for inv in request.tool_calls] == ["get_cart"]

    tool_message = session.messages[2]
    assert tool_message.tool_call_id == request.tool_calls[0].id
    assert tool_message.result.status == ToolStatus.SUCCESS

    # The second generation sees the tool result.
    second_call_messages = model.calls[1][1]
    assert "[Tool Result: get_cart" in second_call_messages[-1]["content"]
    assert executor.calls == [("get_cart", {})]
    assert len(session.usage) == 2


@pytest.mark.asyncio
async def test_round_cap_forces_finalization(make_dispatcher) -> None:
    model = ScriptedModel([CART_CALL] * 10)
    runner = TurnRunner(model, make_dispatcher(FakeExecutor({"get_cart": lambda a: CART})), max_rounds=2)
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session))

    assert outcome.state == TurnState.FINALIZED
    assert outcome.rounds == 2
    assert outcome.round_limit_reached
    assert outcome.text == ROUND_LIMIT_TEXT
    assert len(model.calls) == 3
    assert session.messages[-1].role == Role.ASSISTANT
    assert session.messages[-1].tool_calls == ()


@pytest.mark.asyncio
async def test_tool_failures_become_tool_messages_not_a_broken_turn(make_dispatcher) -> None:
    def broken(arguments):
        raise RuntimeError("kaboom")

    model = ScriptedModel([CART_CALL, "Sorry, I couldn't load your cart."])
    runner = TurnRunner(model, make_dispatcher(FakeExecutor({"get_cart": broken})))
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session))

    assert outcome.text == "Sorry, I couldn't load your cart."
    assert outcome.tool_results[0].status == ToolStatus.ERROR
    assert '"status": "error"' in session.messages[2].content


@pytest.mark.asyncio
async def test_streamed_chunks_with_split_markers(make_dispatcher) -> None:
    chunks = ["Checking <|ca", 'll|>{"name":"get_', 'cart","arguments":{}}<|e', "nd|>"]
    model = ScriptedModel([chunks, ["All ", "done."]])
    seen: list[str] = []

    async def on_text(text: str) -> None:
        seen.append(text)

    runner = TurnRunner(model, make_dispatcher(FakeExecutor({"get_cart": lambda a: CART})))
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session), on_text=on_text)

    assert outcome.rounds == 1
    assert outcome.text == "All done."
    assert "".join(seen) == "Checking All done."
    assert all("<|" not in part for part in seen)


@pytest.mark.asyncio
async def test_malformed_block_is_dropped_and_turn_finishes(make_dispatcher) -> None:
    model = ScriptedModel(["Here you go <|call|>{broken<|end|>"])
    runner = TurnRunner(model, make_dispatcher(FakeExecutor()))
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session))

    assert outcome.text == "Here you go"
    assert [d.reason for d in outcome.diagnostics] == ["malformed_json"]
    assert outcome.rounds == 0


@pytest.mark.asyncio
async def test_cancel_before_generation(make_dispatcher) -> None:
    model = ScriptedModel(["never used"])
    runner = TurnRunner(model, make_dispatcher(FakeExecutor()))
    session = Session(session_id="s1")
    cancel = asyncio.Event()
    cancel.set()

    outcome = await runner.run(session, "system", _start(session), cancel_event=cancel)

    assert outcome.cancelled
    assert model.calls == []
    assert [m.role for m in session.messages] == [Role.USER]


@pytest.mark.asyncio
async def test_cancel_after_dispatch_keeps_tool_results(make_dispatcher) -> None:
    cancel = asyncio.Event()

    def get_cart(arguments):
        cancel.set()
        return CART

    model = ScriptedModel([CART_CALL, "not reached"])
    runner = TurnRunner(model, make_dispatcher(FakeExecutor({"get_cart": get_cart})))
    session = Session(session_id="s1")

    outcome = await runner.run(session, "system", _start(session), cancel_event=cancel)

    assert outcome.cancelled
    assert len(model.calls) == 1
    assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL]
    assert session.messages[-1].result.ok


@pytest.mark.asyncio
async def test_task_cancelled_during_dispatch_still_records_results(make_dispatcher) -> None:
    started = asyncio.Event()

    async def slow_cart(arguments):
        started.set()
        await asyncio.sleep(0.05)
        return CART

    model = ScriptedModel([CART_CALL, "not reached"])
    runner = TurnRunner(model, make_dispatcher(FakeExecutor({"get_cart": slow_cart})))
    session = Session(session_id="s1")

    task = asyncio.create_task(runner.run(session, "system", _start(session)))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL]
    assert session.messages[-1].result.ok


@pytest.mark.asyncio
async def test_model_failure_raises_model_error(make_dispatcher) -> None:
    runner = TurnRunner(ScriptedModel([]), make_dispatcher(FakeExecutor()))
    session = Session(session_id="s1")

    with pytest.raises(ModelError):
        await runner.run(session, "system", _start(session))


def test_append_checked_strips_leaked_markers() -> None:
    session = Session(session_id="s1")

    stored = append_checked(session, Message(role=Role.ASSISTANT, content='ok <|call|>{"name":"x"}<|end|>'))

    assert stored.content == "ok"
    assert "<|" not in session.messages[0].content


def test_append_checked_skips_empty_assistant_messages() -> None:
    session = Session(session_id="s1")

    assert append_checked(session, Message(role=Role.ASSISTANT, content="<|end|>")) is None
    assert session.messages == []
