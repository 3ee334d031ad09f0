"""Application settings for the generation pipeline."""

import json
import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env"), env_file_encoding="utf-8", extra="ignore"
    )

    # App
    APP_NAME: str = "questiongen"
    ENVIRONMENT: str = "development"  # development | production | test

    # Provider cascade
    # Accept list or CSV/JSON string from env; normalized to list[str] by validators
    GENERATION_PROVIDERS: list[str] | str = ["anthropic", "perplexity"]

    # Retry / timing budgets (milliseconds)
    GENERATION_MAX_RETRIES: int = 2
    GENERATION_BASE_BACKOFF_MS: int = 1000
    GENERATION_MAX_BACKOFF_MS: int = 30_000
    GENERATION_PROVIDER_TIMEOUT_MS: int = 300_000
    GENERATION_OVERALL_DEADLINE_MS: int = 800_000

    # Soft validation bounds; mismatches are warnings only
    EXPECTED_SECTION_COUNT: int = 10
    MIN_QUESTIONS_PER_SECTION: int = 5
    MAX_QUESTIONS_PER_SECTION: int = 7

    # Sampling
    LLM_MAX_TOKENS: int = 16_000
    LLM_TEMPERATURE: float = 0.7
    LLM_STREAMING: bool = True

    # Anthropic (primary)
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-sonnet-4-5"

    # Perplexity (OpenAI-compatible API)
    PERPLEXITY_API_KEY: str | None = None
    PERPLEXITY_MODEL: str = "sonar-pro"
    PERPLEXITY_BASE_URL: str = "https://api.perplexity.ai"

    # Gemini
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # Azure OpenAI
    AZURE_OPENAI_ENDPOINT: str | None = None
    AZURE_OPENAI_API_KEY: str | None = None
    AZURE_OPENAI_API_VERSION: str | None = None
    AZURE_OPENAI_MODEL: str = "gpt-4o-mini"

    # Ollama (local, native NDJSON streaming)
    OLLAMA_BASE_URL: str | None = None
    OLLAMA_MODEL: str = "qwen3:30b"

    # Prompt templates; packaged defaults are used when unset
    PROMPT_TEMPLATE_DIR: str | None = None

    @field_validator("GENERATION_PROVIDERS", mode="before")
    @classmethod
    def assemble_providers(cls, v: object) -> list[str]:
        """Allow list, CSV string, or JSON array string for the provider order."""
        if isinstance(v, list):
            return [str(i).strip().lower() for i in v if str(i).strip()]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        "GENERATION_PROVIDERS must be a CSV list or JSON array string"
                    ) from e
                if not isinstance(parsed, list):
                    raise ValueError("GENERATION_PROVIDERS JSON must be a list")
                return [str(i).strip().lower() for i in parsed if str(i).strip()]
            # CSV fallback
            return [i.strip().lower() for i in s.split(",") if i.strip()]
        raise ValueError("Invalid GENERATION_PROVIDERS type; expected str or list[str]")

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        """Reject budgets that would make the retry loop meaningless."""
        if isinstance(self.GENERATION_PROVIDERS, str):
            self.GENERATION_PROVIDERS = self.assemble_providers(
                self.GENERATION_PROVIDERS
            )
        if self.GENERATION_MAX_RETRIES < 0:
            raise ValueError("GENERATION_MAX_RETRIES must be >= 0")
        for name in (
            "GENERATION_BASE_BACKOFF_MS",
            "GENERATION_MAX_BACKOFF_MS",
            "GENERATION_PROVIDER_TIMEOUT_MS",
            "GENERATION_OVERALL_DEADLINE_MS",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive number of milliseconds")
        if self.MIN_QUESTIONS_PER_SECTION > self.MAX_QUESTIONS_PER_SECTION:
            raise ValueError(
                "MIN_QUESTIONS_PER_SECTION must not exceed MAX_QUESTIONS_PER_SECTION"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in {"development", "production", "test"}:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    if env == "production":
        env_file = ".env.prod"
    elif env == "development":
        env_file = ".env.dev"
    else:
        # test environment - no env file needed, use defaults
        env_file = ""

    # The Settings initializer accepts a runtime-only `_env_file` kwarg used by
    # pydantic-settings; mypy's stub doesn't allow this call argument.
    return Settings(_env_file=env_file or None)  # type: ignore[call-arg]
