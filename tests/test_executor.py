from __future__ import annotations

import json

import httpx
import pytest

from shopchat.ai.dispatcher import classify_tool_error
from shopchat.ai.tools.executor import HttpToolExecutor
from shopchat.config import ToolServiceConfig
from shopchat.core.types import ErrorClass
from shopchat.errors import ConfigurationError, ToolServiceError, ToolTimeoutError, TransientError


def _executor(handler) -> HttpToolExecutor:
    config = ToolServiceConfig(endpoint="http://tools.test/call", headers={"X-Shop": "demo"})
    return HttpToolExecutor(config, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_posts_tool_and_arguments() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["header"] = request.headers.get("X-Shop")
        return httpx.Response(200, json={"id": "cart-1", "lines": []})

    executor = _executor(handler)
    try:
        result = await executor.execute("get_cart", {})
    finally:
        await executor.aclose()

    assert seen["body"] == {"tool": "get_cart", "arguments": {}}
    assert seen["header"] == "demo"
    assert result == {"id": "cart-1", "lines": []}


@pytest.mark.asyncio
async def test_double_encoded_body_is_decoded() -> None:
    body = json.dumps(json.dumps({"status": "shipped"}))

    executor = _executor(lambda request: httpx.Response(200, text=body))
    try:
        result = await executor.execute("get_order_status", {"order_id": "1"})
    finally:
        await executor.aclose()

    assert result == {"status": "shipped"}


@pytest.mark.asyncio
async def test_server_error_is_transient() -> None:
    executor = _executor(lambda request: httpx.Response(503, json={"error": {"message": "down"}}))
    try:
        with pytest.raises(ToolServiceError) as exc:
            await executor.execute("get_cart", {})
    finally:
        await executor.aclose()

    assert exc.value.status == 503
    assert "down" in str(exc.value)
    assert classify_tool_error(exc.value) == ErrorClass.TRANSIENT


@pytest.mark.asyncio
async def test_client_error_is_fatal() -> None:
    executor = _executor(lambda request: httpx.Response(400, text="invalid cart_id"))
    try:
        with pytest.raises(ToolServiceError) as exc:
            await executor.execute("update_cart", {})
    finally:
        await executor.aclose()

    assert exc.value.status == 400
    assert classify_tool_error(exc.value) == ErrorClass.FATAL


@pytest.mark.asyncio
async def test_structured_error_body_with_ok_status() -> None:
    body = {"status": "error", "message": "order not found"}
    executor = _executor(lambda request: httpx.Response(200, json=body))
    try:
        with pytest.raises(ToolServiceError, match="order not found"):
            await executor.execute("get_order_status", {"order_id": "x"})
    finally:
        await executor.aclose()


@pytest.mark.asyncio
async def test_structured_timeout_status_is_transient() -> None:
    body = {"error": {"status": "timeout", "message": "backend slow"}}
    executor = _executor(lambda request: httpx.Response(200, json=body))
    try:
        with pytest.raises(ToolServiceError) as exc:
            await executor.execute("get_cart", {})
    finally:
        await executor.aclose()

    assert exc.value.status == "timeout"
    assert classify_tool_error(exc.value) == ErrorClass.TRANSIENT


@pytest.mark.asyncio
async def test_transport_failures_map_to_transient_errors() -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    executor = _executor(timeout)
    try:
        with pytest.raises(ToolTimeoutError):
            await executor.execute("get_cart", {})
    finally:
        await executor.aclose()

    executor = _executor(refused)
    try:
        with pytest.raises(TransientError):
            await executor.execute("get_cart", {})
    finally:
        await executor.aclose()


def test_missing_endpoint_fails_at_construction() -> None:
    with pytest.raises(ConfigurationError):
        HttpToolExecutor(ToolServiceConfig(endpoint=""))
