"""Tool dispatcher: validate, execute with retries, and return results in invocation order."""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Sequence

import httpx
from pydantic import ValidationError

from shopchat.ai.tools.base import ToolSchema
from shopchat.ai.tools.executor import ToolExecutor
from shopchat.ai.tools.registry import ToolRegistry
from shopchat.ai.tools.results import decode_payload, to_typed
from shopchat.core.models import ToolInvocation, ToolResult
from shopchat.core.retry import RetryOutcome, RetryPolicy
from shopchat.core.types import ErrorClass, ToolStatus
from shopchat.errors import (
    ConfigurationError,
    FatalError,
    ToolServiceError,
    ToolTimeoutError,
    ToolValidationError,
    TransientError,
)
from shopchat.log import get_logger

logger = get_logger(__name__)

_CART_ERROR_HINTS = ("invalid cart_id", "cart not found", "invalid gid")


def classify_tool_error(error: BaseException) -> ErrorClass:
    """Transient: network failure, timeout, 5xx-equivalent. Everything else is fatal."""
    if isinstance(error, (TransientError, asyncio.TimeoutError, httpx.TransportError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, ToolServiceError):
        return ErrorClass.TRANSIENT if error.is_transient else ErrorClass.FATAL
    return ErrorClass.FATAL


def _is_timeout(error: BaseException | None) -> bool:
    if isinstance(error, (ToolTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return isinstance(error, ToolServiceError) and str(error.status).lower() == "timeout"


def describe_tool_error(tool: str, error: BaseException | None) -> tuple[str, str]:
    """Return (kind, user-facing message) for a failed tool call."""
    detail = str(error or "").lower()
    if isinstance(error, ToolValidationError):
        return "invalid_arguments", str(error)
    if any(hint in detail for hint in _CART_ERROR_HINTS):
        return "cart_unavailable", "I can't read the cart. Try refreshing the page or starting a new cart."
    if _is_timeout(error):
        return "timeout", "The operation is taking too long. The shop may be busy, try again in a moment."
    if isinstance(error, ValidationError):
        return "malformed_response", f'The shop returned an unexpected answer for "{tool}".'
    if isinstance(error, (TransientError, httpx.TransportError)):
        return "unavailable", "There was a connection problem reaching the shop. Try again shortly."
    if isinstance(error, ToolServiceError):
        if error.is_transient:
            return "unavailable", "The shop is temporarily unavailable. Try again in a few minutes."
        return "rejected", f'The shop rejected the "{tool}" request: {error}'
    return "internal", f'Could not run "{tool}". Try again or contact support.'


class ToolDispatcher:
    """Runs a turn's invocations against the tool-execution service.

    Independent invocations run concurrently, bounded by ``max_concurrency``
    (0 means one slot per invocation). Results always come back in the order
    of the invocations, whatever order they complete in.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        executor: ToolExecutor | None,
        retry: RetryPolicy | None = None,
        attempt_timeout: float = 10.0,
        max_concurrency: int = 0,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        if executor is None:
            raise ConfigurationError("ToolDispatcher requires a ToolExecutor")
        self._registry = registry
        self._executor = executor
        self._retry = retry or RetryPolicy()
        self._attempt_timeout = attempt_timeout
        self._max_concurrency = max_concurrency
        self._sleep = sleep
        self._rng = rng

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def dispatch(self, invocations: Sequence[ToolInvocation]) -> list[ToolResult]:
        if not invocations:
            return []

        semaphore = asyncio.Semaphore(self._max_concurrency or len(invocations))

        async def _bounded(invocation: ToolInvocation) -> ToolResult:
            async with semaphore:
                return await self.dispatch_one(invocation)

        # gather keeps argument order regardless of completion order
        results = await asyncio.gather(*(_bounded(inv) for inv in invocations))
        return list(results)

    async def dispatch_one(self, invocation: ToolInvocation) -> ToolResult:
        """Execute one invocation. Never raises except on cancellation."""
        started = time.monotonic()
        log = logger.bind(tool=invocation.name, invocation_id=invocation.id)

        try:
            schema = self._registry.require(invocation.name)
            schema.validate_arguments(invocation.arguments)
        except ToolValidationError as e:
            log.warning("tool_validation_failed", error=str(e))
            return self._failure(invocation, ToolStatus.ERROR, e, attempts=0, started=started)

        try:
            outcome = await self._retry.run(
                lambda: self._attempt(schema, invocation),
                classify_tool_error,
                sleep=self._sleep,
                rng=self._rng,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # classify() or the retry loop itself broke; keep it inside this invocation
            log.error("tool_dispatch_error", error=str(e))
            return self._failure(invocation, ToolStatus.ERROR, FatalError(str(e)), attempts=0, started=started)

        if outcome.ok:
            duration_ms = _elapsed_ms(started)
            log.info("tool_succeeded", attempts=outcome.attempts, duration_ms=duration_ms)
            return ToolResult(
                invocation_id=invocation.id,
                tool_name=invocation.name,
                status=ToolStatus.SUCCESS,
                duration_ms=duration_ms,
                attempts=outcome.attempts,
                payload=outcome.value,
            )

        status = self._failure_status(outcome)
        log.warning(
            "tool_failed",
            status=str(status),
            attempts=outcome.attempts,
            error=str(outcome.last_error),
        )
        return self._failure(invocation, status, outcome.last_error, outcome.attempts, started)

    async def _attempt(self, schema: ToolSchema, invocation: ToolInvocation) -> Any:
        try:
            raw = await asyncio.wait_for(
                self._executor.execute(invocation.name, invocation.arguments),
                timeout=self._attempt_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(
                f"{invocation.name}: no answer within {self._attempt_timeout}s"
            ) from e
        return to_typed(decode_payload(raw), schema.result_model)

    @staticmethod
    def _failure_status(outcome: RetryOutcome[Any]) -> ToolStatus:
        if outcome.exhausted and _is_timeout(outcome.last_error):
            return ToolStatus.TIMEOUT
        return ToolStatus.ERROR

    @staticmethod
    def _failure(
        invocation: ToolInvocation,
        status: ToolStatus,
        error: BaseException | None,
        attempts: int,
        started: float,
    ) -> ToolResult:
        kind, message = describe_tool_error(invocation.name, error)
        payload: dict[str, Any] = {"kind": kind, "message": message, "attempts": attempts}
        if isinstance(error, ToolServiceError) and error.status is not None:
            payload["status"] = error.status
        return ToolResult(
            invocation_id=invocation.id,
            tool_name=invocation.name,
            status=status,
            duration_ms=_elapsed_ms(started),
            attempts=attempts,
            error=payload,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
