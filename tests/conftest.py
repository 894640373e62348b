from __future__ import annotations

import inspect
from typing import Any, AsyncIterator, Callable

import pytest

from shopchat.ai.client import ModelClient, ModelEvent
from shopchat.ai.dispatcher import ToolDispatcher
from shopchat.ai.tools.executor import ToolExecutor
from shopchat.ai.tools.registry import ToolRegistry
from shopchat.core.retry import RetryPolicy
from shopchat.errors import ModelError


class ScriptedModel(ModelClient):
    """Replays canned outputs; each output is a string or a list of stream chunks."""

    def __init__(self, outputs: list[str | list[str]], usage: tuple[int, int] = (10, 5)):
        self.outputs = list(outputs)
        self.usage = usage
        self.calls: list[tuple[str, list[dict[str, Any]]]] = []

    @property
    def model_name(self) -> str:
        return "scripted-model"

    async def stream(self, system: str, messages: list[dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        self.calls.append((system, [dict(m) for m in messages]))
        if not self.outputs:
            raise ModelError("no scripted output left")
        output = self.outputs.pop(0)
        for chunk in [output] if isinstance(output, str) else output:
            yield ModelEvent.delta(chunk)
        yield ModelEvent.usage(*self.usage)


class FakeExecutor(ToolExecutor):
    """Answers tool calls from per-tool handlers; unknown tools return an empty object."""

    def __init__(self, handlers: dict[str, Callable[[dict[str, Any]], Any]] | None = None):
        self.handlers = handlers or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, tool: str, arguments: dict[str, Any]) -> Any:
        self.calls.append((tool, arguments))
        handler = self.handlers.get(tool)
        if handler is None:
            return {}
        result = handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.discover_and_register()
    return reg


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_dispatcher(registry: ToolRegistry, sleep: RecordingSleep):
    def _make(executor: ToolExecutor, max_attempts: int = 3, **kwargs: Any) -> ToolDispatcher:
        return ToolDispatcher(
            registry,
            executor,
            retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.01, max_delay=0.05),
            sleep=sleep,
            rng=lambda: 0.5,
            **kwargs,
        )

    return _make
