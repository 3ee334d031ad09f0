"""Provider variants behind the ``LLMProvider`` protocol.

* ``PydanticAIProvider`` drives any pydantic-ai model (Anthropic, Perplexity,
  Gemini, Azure OpenAI). In streaming mode text deltas are re-emitted as
  newline-delimited JSON progress lines so every variant feeds the aggregator
  the same shape.
* ``OllamaProvider`` talks to Ollama's native ``/api/chat`` endpoint, which
  already streams NDJSON.

SDK and transport errors are translated into the provider error taxonomy in
``map_provider_error``; nothing else in the pipeline sees SDK exceptions.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import anthropic
import httpx
import openai
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.models import Model
from pydantic_ai.settings import ModelSettings

from questiongen.core.config import Settings, get_settings
from questiongen.services.generation import model_factory
from questiongen.services.generation.exceptions import (
    ConfigurationMissing,
    ProviderError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnauthenticated,
    ProviderUnavailable,
    ProviderUnknownError,
)
from questiongen.services.generation.interfaces import LLMProvider, ProviderReply


logger = logging.getLogger(__name__)


def _error_for_status(status_code: int, detail: str) -> ProviderError:
    if status_code in (401, 403):
        return ProviderUnauthenticated(detail)
    if status_code == 429:
        return ProviderRateLimited(detail)
    if status_code in (408, 504):
        return ProviderTimeout(detail)
    if status_code >= 500:
        return ProviderUnavailable(detail)
    return ProviderUnknownError(detail)


def map_provider_error(provider: str, exc: BaseException) -> ProviderError:
    """Translate an SDK / transport exception into the provider taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, ModelHTTPError):
        return _error_for_status(
            exc.status_code, f"{provider} returned HTTP {exc.status_code}"
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return _error_for_status(
            exc.response.status_code,
            f"{provider} returned HTTP {exc.response.status_code}",
        )
    if isinstance(
        exc,
        httpx.TimeoutException | openai.APITimeoutError | anthropic.APITimeoutError | TimeoutError,
    ):
        return ProviderTimeout(f"{provider} request timed out")
    if isinstance(
        exc, httpx.TransportError | openai.APIConnectionError | anthropic.APIConnectionError
    ):
        return ProviderUnavailable(f"{provider} is unreachable: {exc}")
    if isinstance(exc, openai.APIStatusError | anthropic.APIStatusError):
        return _error_for_status(exc.status_code, f"{provider} returned HTTP {exc.status_code}")
    if isinstance(exc, UnexpectedModelBehavior):
        return ProviderUnknownError(f"{provider} behaved unexpectedly: {exc.message}")
    return ProviderUnknownError(f"{provider} call failed: {type(exc).__name__}: {exc}")


def _ndjson(payload: dict[str, Any]) -> str:
    return json.dumps(payload) + "\n"


class PydanticAIProvider:
    """Provider backed by a pydantic-ai model.

    ``model`` may be a ready ``Model`` (tests pass ``TestModel``/``FunctionModel``)
    or a zero-argument factory called on first use.
    """

    def __init__(
        self,
        name: str,
        model: Model | Callable[[], Model],
        configured: bool = True,
        streaming: bool = True,
        model_settings: ModelSettings | None = None,
    ):
        self.name = name
        self._model = model
        self._configured = configured
        self.streaming = streaming
        self.model_settings = model_settings

    def is_configured(self) -> bool:
        return self._configured

    def _get_model(self) -> Model:
        if not isinstance(self._model, Model):
            self._model = self._model()
        return self._model

    def _agent(self, system_prompt: str) -> Agent[None, str]:
        return Agent(
            self._get_model(),
            output_type=str,
            instructions=system_prompt,
            model_settings=self.model_settings,
        )

    async def call(self, system_prompt: str, user_prompt: str) -> ProviderReply:
        try:
            agent = self._agent(system_prompt)
        except ConfigurationMissing:
            raise
        except Exception as e:
            raise map_provider_error(self.name, e) from e

        if self.streaming:
            return self._stream(agent, user_prompt)

        try:
            result = await agent.run(user_prompt)
        except Exception as e:
            raise map_provider_error(self.name, e) from e
        return result.output

    async def _stream(self, agent: Agent[None, str], user_prompt: str) -> AsyncIterator[str]:
        try:
            async with agent.run_stream(user_prompt) as result:
                async for delta in result.stream_text(delta=True):
                    if delta:
                        yield _ndjson({"delta": delta, "done": False})
                usage = result.usage()
        except Exception as e:
            raise map_provider_error(self.name, e) from e
        yield _ndjson(
            {
                "done": True,
                "provider": self.name,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            }
        )


class OllamaProvider:
    """Provider for a local Ollama server using its native NDJSON chat API."""

    name = model_factory.OLLAMA

    def __init__(
        self,
        base_url: str | None,
        model: str,
        streaming: bool = True,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.model = model
        self.streaming = streaming
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._http_client = http_client

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _payload(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": self.streaming,
            "format": "json",
        }
        if options:
            payload["options"] = options
        return payload

    def _client(self) -> httpx.AsyncClient:
        return self._http_client or httpx.AsyncClient(timeout=self.timeout)

    async def _close(self, client: httpx.AsyncClient) -> None:
        if client is not self._http_client:
            await client.aclose()

    async def call(self, system_prompt: str, user_prompt: str) -> ProviderReply:
        payload = self._payload(system_prompt, user_prompt)
        if self.streaming:
            return self._stream(payload)

        client = self._client()
        try:
            response = await client.post(f"{self.base_url}/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()
        except Exception as e:
            raise map_provider_error(self.name, e) from e
        finally:
            await self._close(client)

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            raise ProviderUnknownError("ollama response has no message content")
        return message["content"]

    async def _stream(self, payload: dict[str, Any]) -> AsyncIterator[str]:
        client = self._client()
        try:
            async with client.stream(
                "POST", f"{self.base_url}/api/chat", json=payload
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise _error_for_status(
                        response.status_code,
                        f"ollama returned HTTP {response.status_code}",
                    )
                async for line in response.aiter_lines():
                    yield line + "\n"
        except ProviderError:
            raise
        except Exception as e:
            raise map_provider_error(self.name, e) from e
        finally:
            await self._close(client)


def build_provider(
    name: str,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> LLMProvider:
    """Select the provider variant for ``name`` from configuration."""
    settings = settings or get_settings()
    name = name.strip().lower()

    if name == model_factory.OLLAMA:
        return OllamaProvider(
            base_url=settings.OLLAMA_BASE_URL,
            model=settings.OLLAMA_MODEL,
            streaming=settings.LLM_STREAMING,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
            timeout=settings.GENERATION_PROVIDER_TIMEOUT_MS / 1000,
            http_client=http_client,
        )

    if name not in model_factory.PYDANTIC_AI_PROVIDERS:
        raise ConfigurationMissing(
            f"Unknown provider '{name}'. Expected one of: "
            + ", ".join(sorted(model_factory.KNOWN_PROVIDERS))
        )

    return PydanticAIProvider(
        name,
        model=lambda: model_factory.create_model(name, settings, http_client),
        configured=model_factory.is_provider_configured(name, settings),
        streaming=settings.LLM_STREAMING,
        model_settings=model_factory.get_model_settings(settings),
    )
