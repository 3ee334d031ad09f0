"""Typed contract objects for generation orchestration.

* GenerationOptions / GenerationRequest - immutable inputs of one run.
* ProviderAttempt / AttemptLog - request-scoped diagnostics, append-only.
* GenerationSuccess / GenerationFailure - the two outcomes of a run. No
  per-attempt error ever crosses the orchestrator boundary; a failure always
  carries a fallback document.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from questiongen.core.config import Settings, get_settings
from questiongen.schemas.questionnaire import GeneratedDocument


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    """Retry and timing budget for one run (all durations in milliseconds)."""

    max_retries: int = 2
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 30_000
    per_provider_timeout_ms: int = 300_000
    overall_deadline_ms: int = 800_000

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_backoff_ms < 0 or self.max_backoff_ms < 0:
            raise ValueError("backoff durations must be >= 0")
        if self.per_provider_timeout_ms <= 0 or self.overall_deadline_ms <= 0:
            raise ValueError("timeouts must be positive")

    @property
    def attempts_per_provider(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> GenerationOptions:
        settings = settings or get_settings()
        return cls(
            max_retries=settings.GENERATION_MAX_RETRIES,
            base_backoff_ms=settings.GENERATION_BASE_BACKOFF_MS,
            max_backoff_ms=settings.GENERATION_MAX_BACKOFF_MS,
            per_provider_timeout_ms=settings.GENERATION_PROVIDER_TIMEOUT_MS,
            overall_deadline_ms=settings.GENERATION_OVERALL_DEADLINE_MS,
        )


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    system: str
    user: str


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """Created once per generation; never mutated."""

    request_id: str
    context: Mapping[str, Any]
    providers: tuple[str, ...]
    options: GenerationOptions = field(default_factory=GenerationOptions)
    prompt: RenderedPrompt | None = None


class AttemptOutcome(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ErrorKind(StrEnum):
    PROVIDERS_EXHAUSTED = "providers_exhausted"
    NO_PROVIDER_CONFIGURED = "no_provider_configured"
    CONFIGURATION_MISSING = "configuration_missing"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(slots=True)
class ProviderAttempt:
    """Diagnostic record of a single provider call."""

    provider: str
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome
    raw_text: str = ""
    duration_ms: float = 0.0
    error_code: str | None = None
    error_message: str | None = None


class AttemptLog:
    """Append-only list of attempts owned by one orchestrator run."""

    def __init__(self) -> None:
        self._attempts: list[ProviderAttempt] = []

    def record(self, attempt: ProviderAttempt) -> None:
        self._attempts.append(attempt)

    def snapshot(self) -> tuple[ProviderAttempt, ...]:
        return tuple(self._attempts)

    def for_provider(self, provider: str) -> list[ProviderAttempt]:
        return [a for a in self._attempts if a.provider == provider]

    def __len__(self) -> int:
        return len(self._attempts)

    def __iter__(self) -> Iterator[ProviderAttempt]:
        return iter(self._attempts)


@dataclass(slots=True)
class GenerationSuccess:
    document: GeneratedDocument
    provider_used: str
    attempts: tuple[ProviderAttempt, ...]
    truncation_repaired: bool = False
    warnings: tuple[str, ...] = ()
    skipped_providers: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return True


@dataclass(slots=True)
class GenerationFailure:
    error_kind: ErrorKind
    attempts: tuple[ProviderAttempt, ...]
    fallback_document: GeneratedDocument
    detail: str = ""
    skipped_providers: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return False


GenerationResult = GenerationSuccess | GenerationFailure


def utc_now() -> datetime:
    return datetime.now(UTC)
