"""Shared test fixtures for pytest.

Tests run with ENVIRONMENT=test so settings never read a .env file, and the
cached settings are rebuilt around every test so monkeypatched env vars take
effect.
"""

import os
from collections.abc import Callable, Generator

import pytest


os.environ["ENVIRONMENT"] = "test"

from questiongen.core.config import Settings, get_settings


_PROVIDER_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "PERPLEXITY_API_KEY",
    "GEMINI_API_KEY",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_API_VERSION",
    "OLLAMA_BASE_URL",
    "GENERATION_PROVIDERS",
    "PROMPT_TEMPLATE_DIR",
)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("ENVIRONMENT", "test")
    for name in _PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)  # type: ignore[call-arg]


def _make_document(sections: int = 10, questions: int = 5) -> dict:
    return {
        "sections": [
            {
                "id": f"s{s}",
                "title": f"Section {s}",
                "questions": [
                    {"id": f"s{s}_q{q}", "label": f"Question {q}", "type": "text"}
                    for q in range(1, questions + 1)
                ],
            }
            for s in range(1, sections + 1)
        ]
    }


@pytest.fixture
def make_document() -> Callable[..., dict]:
    """Factory for a structurally valid raw questionnaire payload."""
    return _make_document
