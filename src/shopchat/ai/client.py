"""Language model interface with a streaming Anthropic API backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

from shopchat.config import AnthropicConfig, ModelConfig
from shopchat.errors import ModelError
from shopchat.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ModelEvent:
    """One event from a streamed generation: a text delta or the final usage counters."""

    type: str  # "text" | "usage"
    text: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @classmethod
    def delta(cls, text: str) -> ModelEvent:
        return cls(type="text", text=text)

    @classmethod
    def usage(cls, prompt_tokens: int, completion_tokens: int) -> ModelEvent:
        return cls(type="usage", prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)


class ModelClient(ABC):
    """Abstract base class for model backends.

    The backend returns raw model output; tool-call blocks inside it are the
    caller's business.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    def stream(self, system: str, messages: list[dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        """Stream a completion for *messages* as ModelEvents. Raises ModelError on failure."""
        ...

    async def aclose(self) -> None:
        return None


class AnthropicClient(ModelClient):
    """Anthropic API backend using the official SDK's streaming helper."""

    def __init__(self, config: AnthropicConfig, model_config: ModelConfig):
        import anthropic

        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )
        self._model = model_config.model
        self._max_tokens = model_config.max_tokens
        self._temperature = model_config.temperature

    @property
    def model_name(self) -> str:
        return self._model

    async def stream(self, system: str, messages: list[dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        import anthropic

        logger.debug("api_request", model=self._model, message_count=len(messages))
        try:
            async with self._client.messages.stream(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system,
                messages=messages,
                temperature=self._temperature,
            ) as stream:
                async for text in stream.text_stream:
                    yield ModelEvent.delta(text)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            logger.error("api_error", model=self._model, error=str(e))
            raise ModelError(f"model request failed: {e}") from e

        logger.debug(
            "api_response",
            model=self._model,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
            stop_reason=final.stop_reason,
        )
        yield ModelEvent.usage(final.usage.input_tokens, final.usage.output_tokens)

    async def aclose(self) -> None:
        await self._client.close()
