"""Model gateway abstraction, bounded retry helper and OpenAI-backed implementation."""
from __future__ import annotations

import abc
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from conductor.config import OpenAIConfig
from conductor.core.errors import ModelUnavailable, OrchestrationError, RetryableModelError
from conductor.core.models import ModelResponse, StopReason, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

Message = Dict[str, Any]


class ModelGateway(abc.ABC):
    """Uniform interface to a text/tool-calling completion provider."""

    @abc.abstractmethod
    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
    ) -> ModelResponse:
        """Return either final text (END_TURN) or tool calls (TOOL_USE).

        Provider rate limits and transient network failures must be raised
        as :class:`RetryableModelError`.
        """

    async def aclose(self) -> None:
        return None


async def call_with_retry(
    gateway: ModelGateway,
    system_prompt: str,
    messages: Sequence[Message],
    tools: Sequence[ToolDefinition] = (),
    *,
    max_attempts: int = 3,
    backoff: float = 0.5,
    timeout: Optional[float] = None,
) -> ModelResponse:
    """Call the gateway, retrying transient failures with exponential backoff.

    A per-attempt ``timeout`` expiry counts as a transient failure.
    Exhausting ``max_attempts`` raises :class:`ModelUnavailable`.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            call = gateway.complete(system_prompt, list(messages), tools)
            if timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=timeout)
        except RetryableModelError as exc:
            last_error = exc
        except asyncio.TimeoutError as exc:
            last_error = RetryableModelError(f"model call exceeded {timeout:g}s", exc)
        except OrchestrationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Model gateway raised a non-retryable error: %s", exc)
            raise ModelUnavailable(attempt, exc) from exc

        if attempt < max_attempts:
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "Model call attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                max_attempts,
                last_error,
                delay,
            )
            await asyncio.sleep(delay)

    logger.error("Model gateway unavailable after %d attempts: %s", max_attempts, last_error)
    raise ModelUnavailable(max_attempts, last_error) from last_error


def tool_schemas(tools: Sequence[ToolDefinition]) -> List[Dict[str, Any]]:
    """Export tool contracts in OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.json_schema(),
            },
        }
        for tool in tools
    ]


class OpenAIGateway(ModelGateway):
    """Gateway over the OpenAI (or Azure OpenAI) chat completions API.

    Concurrency is limited by a semaphore; the client is created lazily on
    first use.
    """

    def __init__(self, config: OpenAIConfig, client: Any = None) -> None:
        self._config = config
        self._client = client
        self._semaphore = asyncio.Semaphore(config.max_concurrent)

    def _ensure_client(self) -> Any:
        if self._client is None:
            if self._config.endpoint:
                from openai import AsyncAzureOpenAI

                self._client = AsyncAzureOpenAI(
                    api_key=self._config.api_key,
                    api_version=self._config.api_version,
                    azure_endpoint=self._config.endpoint,
                )
            else:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=self._config.api_key)
        return self._client

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
    ) -> ModelResponse:
        import openai

        request: Dict[str, Any] = {
            "model": self._config.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": self._config.temperature,
        }
        if tools:
            request["tools"] = tool_schemas(tools)

        async with self._semaphore:
            client = self._ensure_client()
            try:
                response = await client.chat.completions.create(**request)
            except (
                openai.RateLimitError,
                openai.APITimeoutError,
                openai.APIConnectionError,
                openai.InternalServerError,
            ) as exc:
                raise RetryableModelError(str(exc), exc) from exc

        return parse_completion(response)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


def parse_completion(response: Any) -> ModelResponse:
    """Translate a chat completion object into a :class:`ModelResponse`."""
    choice = response.choices[0]
    message = choice.message
    raw_calls = getattr(message, "tool_calls", None) or []
    calls: List[ToolCall] = []
    for raw in raw_calls:
        try:
            arguments = json.loads(raw.function.arguments) if raw.function.arguments else {}
        except json.JSONDecodeError:
            arguments = {"_raw": raw.function.arguments}
        calls.append(ToolCall(id=raw.id, name=raw.function.name, arguments=arguments))
    if calls:
        return ModelResponse(stop_reason=StopReason.TOOL_USE, text=message.content or "", tool_calls=calls)
    return ModelResponse(stop_reason=StopReason.END_TURN, text=message.content or "")


def extract_json(content: str) -> Any:
    """Parse JSON from a model reply, tolerating markdown code fences."""
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0]
    elif "```" in content:
        content = content.split("```")[1].split("```")[0]
    return json.loads(content.strip())
