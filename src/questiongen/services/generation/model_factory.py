"""Centralized pydantic-ai model factory for the generation providers.

This module is the single source of truth for turning a provider name plus
settings into a pydantic-ai ``Model``. Providers are constructed lazily so an
unconfigured provider never instantiates its SDK client.

Usage:
    from questiongen.services.generation.model_factory import create_model

    model = create_model("anthropic")  # Returns pydantic-ai Model
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, cast

from pydantic_ai.models import Model
from pydantic_ai.models.anthropic import AnthropicModel
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.anthropic import AnthropicProvider
from pydantic_ai.providers.google import GoogleProvider
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from questiongen.core.config import Settings, get_settings
from questiongen.services.generation.exceptions import ConfigurationMissing


if TYPE_CHECKING:
    from httpx import AsyncClient

logger = logging.getLogger(__name__)

ANTHROPIC = "anthropic"
PERPLEXITY = "perplexity"
GEMINI = "gemini"
AZURE_OPENAI = "azure_openai"
OLLAMA = "ollama"

PYDANTIC_AI_PROVIDERS = frozenset({ANTHROPIC, PERPLEXITY, GEMINI, AZURE_OPENAI})
KNOWN_PROVIDERS = PYDANTIC_AI_PROVIDERS | {OLLAMA}


def _normalize_azure_endpoint(endpoint: str) -> str:
    """Normalize Azure OpenAI endpoint.

    Trailing slashes can lead to `//openai/...` URLs, which Azure may treat as a
    different path and return 404.
    """
    return endpoint.rstrip("/")


def is_provider_configured(name: str, settings: Settings | None = None) -> bool:
    """Return True when the credentials (or base URL) for ``name`` are present."""
    settings = settings or get_settings()
    if name == ANTHROPIC:
        return bool(settings.ANTHROPIC_API_KEY)
    if name == PERPLEXITY:
        return bool(settings.PERPLEXITY_API_KEY)
    if name == GEMINI:
        return bool(settings.GEMINI_API_KEY)
    if name == AZURE_OPENAI:
        return bool(
            settings.AZURE_OPENAI_ENDPOINT
            and settings.AZURE_OPENAI_API_KEY
            and settings.AZURE_OPENAI_API_VERSION
        )
    if name == OLLAMA:
        return bool(settings.OLLAMA_BASE_URL)
    return False


def get_model_name(name: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return {
        ANTHROPIC: settings.ANTHROPIC_MODEL,
        PERPLEXITY: settings.PERPLEXITY_MODEL,
        GEMINI: settings.GEMINI_MODEL,
        AZURE_OPENAI: settings.AZURE_OPENAI_MODEL,
        OLLAMA: settings.OLLAMA_MODEL,
    }.get(name, name)


def get_model_settings(settings: Settings | None = None) -> ModelSettings:
    """Sampling settings shared by every provider."""
    settings = settings or get_settings()
    return ModelSettings(
        max_tokens=settings.LLM_MAX_TOKENS,
        temperature=settings.LLM_TEMPERATURE,
    )


def _create_anthropic_model(settings: Settings, http_client: AsyncClient | None) -> Model:
    provider = AnthropicProvider(api_key=settings.ANTHROPIC_API_KEY, http_client=http_client)
    return AnthropicModel(settings.ANTHROPIC_MODEL, provider=provider)


def _create_perplexity_model(settings: Settings, http_client: AsyncClient | None) -> Model:
    # Perplexity exposes an OpenAI-compatible chat completions API.
    provider = OpenAIProvider(
        base_url=settings.PERPLEXITY_BASE_URL,
        api_key=settings.PERPLEXITY_API_KEY,
        http_client=http_client,
    )
    return OpenAIChatModel(settings.PERPLEXITY_MODEL, provider=provider)


def _create_gemini_model(settings: Settings, http_client: AsyncClient | None) -> Model:
    provider = GoogleProvider(api_key=settings.GEMINI_API_KEY, http_client=http_client)
    return cast(Model, GoogleModel(settings.GEMINI_MODEL, provider=provider))


def _create_azure_model(settings: Settings, http_client: AsyncClient | None) -> Model:
    from openai import AsyncAzureOpenAI

    azure_client = AsyncAzureOpenAI(
        azure_endpoint=_normalize_azure_endpoint(settings.AZURE_OPENAI_ENDPOINT or ""),
        api_key=settings.AZURE_OPENAI_API_KEY,
        api_version=settings.AZURE_OPENAI_API_VERSION,
        http_client=http_client,
    )
    provider = OpenAIProvider(openai_client=azure_client)
    return OpenAIChatModel(settings.AZURE_OPENAI_MODEL, provider=provider)


_FACTORIES = {
    ANTHROPIC: _create_anthropic_model,
    PERPLEXITY: _create_perplexity_model,
    GEMINI: _create_gemini_model,
    AZURE_OPENAI: _create_azure_model,
}


def create_model(
    name: str,
    settings: Settings | None = None,
    http_client: AsyncClient | None = None,
) -> Model:
    """Create the pydantic-ai model for provider ``name``.

    Raises:
        ConfigurationMissing: unknown provider, or its credentials are unset.
    """
    settings = settings or get_settings()
    factory = _FACTORIES.get(name)
    if factory is None:
        raise ConfigurationMissing(f"No pydantic-ai model for provider '{name}'")
    if not is_provider_configured(name, settings):
        raise ConfigurationMissing(f"Credentials for provider '{name}' are not configured")

    logger.info("Using %s model: %s", name, get_model_name(name, settings))
    return factory(settings, http_client)
