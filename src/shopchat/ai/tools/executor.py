"""Client for the external tool-execution service."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from shopchat.ai.tools.results import safe_json_parse
from shopchat.config import ToolServiceConfig
from shopchat.errors import ConfigurationError, ToolServiceError, ToolTimeoutError, TransientError
from shopchat.log import get_logger

logger = get_logger(__name__)


class ToolExecutor(ABC):
    """Performs one tool call against whatever backend actually runs the tools."""

    @abstractmethod
    async def execute(self, tool: str, arguments: dict[str, Any]) -> Any:
        """Run *tool* and return its raw success payload.

        Raises ToolServiceError for structured/HTTP errors, TransientError
        for network failures and ToolTimeoutError when the call times out.
        """
        ...

    async def aclose(self) -> None:
        return None


class HttpToolExecutor(ToolExecutor):
    """POSTs ``{tool, arguments}`` to the tool-execution service endpoint."""

    def __init__(
        self,
        config: ToolServiceConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not config.endpoint:
            raise ConfigurationError("tool_service.endpoint is required")
        self._endpoint = config.endpoint
        self._client = httpx.AsyncClient(
            timeout=config.timeout,
            headers={"Content-Type": "application/json", **config.headers},
            transport=transport,
        )

    async def execute(self, tool: str, arguments: dict[str, Any]) -> Any:
        logger.debug("tool_request", tool=tool, endpoint=self._endpoint)
        try:
            response = await self._client.post(self._endpoint, json={"tool": tool, "arguments": arguments})
        except httpx.TimeoutException as e:
            raise ToolTimeoutError(f"{tool}: request timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"{tool}: network error: {e}") from e

        body = safe_json_parse(response.text)

        if response.status_code >= 400:
            message = _error_message(body) or f"HTTP {response.status_code}"
            raise ToolServiceError(f"{tool}: {message}", status=response.status_code, payload=body)

        error = _structured_error(body)
        if error is not None:
            raise ToolServiceError(
                f"{tool}: {error.get('message') or 'tool failed'}",
                status=error.get("status"),
                payload=error,
            )

        logger.debug("tool_response", tool=tool, status=response.status_code)
        return body

    async def aclose(self) -> None:
        await self._client.aclose()


def _structured_error(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, dict):
        return None
    if isinstance(body.get("error"), dict):
        return body["error"]
    if body.get("status") in ("error", "timeout") and "message" in body:
        return body
    return None


def _error_message(body: Any) -> str:
    error = _structured_error(body)
    if error is not None:
        return str(error.get("message", ""))
    if isinstance(body, str):
        return body[:200]
    return ""
