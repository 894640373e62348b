from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeExecutor
from shopchat.ai.dispatcher import ToolDispatcher
from shopchat.core.models import ToolInvocation
from shopchat.core.types import ToolStatus
from shopchat.errors import ConfigurationError, ToolServiceError, ToolTimeoutError

CART = {"id": "cart-1", "lines": [{"variant_id": "v1", "quantity": 1}]}
UPDATE_ARGS = {"cart_id": "cart-1", "lines": [{"variant_id": "v1", "quantity": 2}]}


def _failing_then(failures: int, error_factory, value):
    calls = {"n": 0}

    def handler(arguments):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error_factory()
        return value

    return handler, calls


@pytest.mark.asyncio
async def test_update_cart_succeeds_on_third_attempt(make_dispatcher) -> None:
    handler, calls = _failing_then(2, lambda: ToolTimeoutError("slow"), CART)
    dispatcher = make_dispatcher(FakeExecutor({"update_cart": handler}), max_attempts=3)

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "update_cart", UPDATE_ARGS))

    assert result.status == ToolStatus.SUCCESS
    assert result.attempts == 3
    assert calls["n"] == 3
    assert result.payload["id"] == "cart-1"


@pytest.mark.asyncio
async def test_catalog_search_times_out_after_exactly_max_attempts(make_dispatcher) -> None:
    handler, calls = _failing_then(5, lambda: ToolTimeoutError("slow"), [])
    dispatcher = make_dispatcher(FakeExecutor({"search_shop_catalog": handler}), max_attempts=3)

    result = await dispatcher.dispatch_one(
        ToolInvocation("c1", "search_shop_catalog", {"query": {"type": "ring"}})
    )

    assert result.status == ToolStatus.TIMEOUT
    assert result.attempts == 3
    assert calls["n"] == 3
    assert result.error["kind"] == "timeout"
    assert result.payload is None


@pytest.mark.asyncio
async def test_per_attempt_timeout_is_enforced(make_dispatcher) -> None:
    calls = {"n": 0}

    async def slow_then_fast(arguments):
        calls["n"] += 1
        if calls["n"] == 1:
            await asyncio.sleep(5)
        return CART

    dispatcher = make_dispatcher(FakeExecutor({"get_cart": slow_then_fast}), attempt_timeout=0.05)

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "get_cart", {}))

    assert result.status == ToolStatus.SUCCESS
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_results_keep_invocation_order_when_completion_order_differs(make_dispatcher) -> None:
    finished: list[str] = []

    async def slow_cart(arguments):
        await asyncio.sleep(0.05)
        finished.append("get_cart")
        return CART

    async def fast_search(arguments):
        finished.append("search_shop_catalog")
        return {"products": [{"title": "Ring"}]}

    executor = FakeExecutor({"get_cart": slow_cart, "search_shop_catalog": fast_search})
    dispatcher = make_dispatcher(executor)

    results = await dispatcher.dispatch(
        [
            ToolInvocation("c1", "get_cart", {}),
            ToolInvocation("c2", "search_shop_catalog", {"query": {"type": "ring"}}),
        ]
    )

    assert finished == ["search_shop_catalog", "get_cart"]
    assert [r.tool_name for r in results] == ["get_cart", "search_shop_catalog"]
    assert [r.invocation_id for r in results] == ["c1", "c2"]
    assert all(r.ok for r in results)


@pytest.mark.asyncio
async def test_invalid_arguments_are_not_executed(make_dispatcher) -> None:
    executor = FakeExecutor()
    dispatcher = make_dispatcher(executor)

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "update_cart", {"cart_id": "x"}))

    assert result.status == ToolStatus.ERROR
    assert result.attempts == 0
    assert result.error["kind"] == "invalid_arguments"
    assert executor.calls == []


@pytest.mark.asyncio
async def test_unknown_tool_is_an_error_result(make_dispatcher) -> None:
    dispatcher = make_dispatcher(FakeExecutor())

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "refund_everything", {}))

    assert result.status == ToolStatus.ERROR
    assert "unknown tool" in result.error["message"]


@pytest.mark.asyncio
async def test_fatal_service_error_is_not_retried(make_dispatcher) -> None:
    handler, calls = _failing_then(9, lambda: ToolServiceError("invalid cart_id", status=400), CART)
    dispatcher = make_dispatcher(FakeExecutor({"get_cart": handler}))

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "get_cart", {}))

    assert result.status == ToolStatus.ERROR
    assert calls["n"] == 1
    assert result.attempts == 1
    assert result.error["kind"] == "cart_unavailable"
    assert result.error["status"] == 400


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_siblings(make_dispatcher) -> None:
    def broken(arguments):
        raise ToolServiceError("boom", status=500)

    executor = FakeExecutor({"get_cart": broken, "get_order_status": lambda a: {"id": a["order_id"]}})
    dispatcher = make_dispatcher(executor, max_attempts=2)

    results = await dispatcher.dispatch(
        [
            ToolInvocation("c1", "get_cart", {}),
            ToolInvocation("c2", "get_order_status", {"order_id": "1001"}),
        ]
    )

    assert results[0].status == ToolStatus.ERROR
    assert results[0].attempts == 2
    assert results[1].ok
    assert results[1].payload == {"order_id": "1001"}


@pytest.mark.asyncio
async def test_malformed_payload_is_a_fatal_error(make_dispatcher) -> None:
    dispatcher = make_dispatcher(FakeExecutor({"get_cart": lambda a: {"lines": "nope"}}))

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "get_cart", {}))

    assert result.status == ToolStatus.ERROR
    assert result.attempts == 1
    assert result.error["kind"] == "malformed_response"


@pytest.mark.asyncio
async def test_double_encoded_payload_is_decoded_before_typing(make_dispatcher) -> None:
    raw = json.dumps(json.dumps({"id": "1001", "status": "shipped"}))
    dispatcher = make_dispatcher(FakeExecutor({"get_most_recent_order_status": lambda a: raw}))

    result = await dispatcher.dispatch_one(ToolInvocation("c1", "get_most_recent_order_status", {}))

    assert result.ok
    assert result.payload == {"order_id": "1001", "status": "shipped"}


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(make_dispatcher) -> None:
    running = {"now": 0, "peak": 0}

    async def tracked(arguments):
        running["now"] += 1
        running["peak"] = max(running["peak"], running["now"])
        await asyncio.sleep(0.01)
        running["now"] -= 1
        return CART

    dispatcher = make_dispatcher(FakeExecutor({"get_cart": tracked}), max_concurrency=2)

    results = await dispatcher.dispatch([ToolInvocation(f"c{i}", "get_cart", {}) for i in range(5)])

    assert len(results) == 5
    assert running["peak"] == 2


def test_missing_executor_fails_at_construction(registry) -> None:
    with pytest.raises(ConfigurationError):
        ToolDispatcher(registry, None)


@pytest.mark.asyncio
async def test_tool_result_content_is_json(make_dispatcher) -> None:
    dispatcher = make_dispatcher(FakeExecutor({"get_cart": lambda a: CART}))

    result = await dispatcher.dispatch_one(ToolInvocation("c9", "get_cart", {}))

    body = json.loads(result.to_content())
    assert body["tool"] == "get_cart"
    assert body["id"] == "c9"
    assert body["status"] == "success"
    assert body["result"]["id"] == "cart-1"
