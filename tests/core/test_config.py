"""Unit tests for application settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from questiongen.core.config import Settings, get_settings


def test_defaults_match_generation_budget(settings: Settings) -> None:
    assert settings.GENERATION_PROVIDERS == ["anthropic", "perplexity"]
    assert settings.GENERATION_MAX_RETRIES == 2
    assert settings.GENERATION_BASE_BACKOFF_MS == 1000
    assert settings.EXPECTED_SECTION_COUNT == 10
    assert (settings.MIN_QUESTIONS_PER_SECTION, settings.MAX_QUESTIONS_PER_SECTION) == (5, 7)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("anthropic,perplexity", ["anthropic", "perplexity"]),
        (" Gemini , ollama ", ["gemini", "ollama"]),
        ('["azure_openai", "anthropic"]', ["azure_openai", "anthropic"]),
        ("", []),
    ],
)
def test_provider_order_from_env(
    monkeypatch: pytest.MonkeyPatch, raw: str, expected: list[str]
) -> None:
    monkeypatch.setenv("GENERATION_PROVIDERS", raw)
    assert get_settings().GENERATION_PROVIDERS == expected


def test_provider_order_rejects_json_object(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GENERATION_PROVIDERS", '[{"name": 1}')
    with pytest.raises(ValidationError):
        get_settings()


def test_rejects_non_positive_budgets() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, GENERATION_OVERALL_DEADLINE_MS=0)  # type: ignore[call-arg]
    with pytest.raises(ValidationError):
        Settings(_env_file=None, GENERATION_MAX_RETRIES=-1)  # type: ignore[call-arg]


def test_rejects_inverted_question_range() -> None:
    with pytest.raises(ValidationError):
        Settings(  # type: ignore[call-arg]
            _env_file=None, MIN_QUESTIONS_PER_SECTION=8, MAX_QUESTIONS_PER_SECTION=7
        )


def test_get_settings_rejects_unknown_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "staging")
    with pytest.raises(ValueError, match="ENVIRONMENT"):
        get_settings()
