"""Domain exceptions for the generation pipeline.

The taxonomy drives the orchestrator's control flow:

* ``ProviderError`` subclasses come from a provider call and are retried
  within the per-provider budget.
* ``NoJsonFound`` / ``RepairFailed`` / ``InvalidStructure`` are content
  errors. They consume the attempt; the next retry makes a fresh call.
* ``ConfigurationMissing`` is fatal and ends the run before any provider is
  called.
* ``GenerationCancelled`` is terminal and never retried.

Each exception carries a stable `error_code` for log and metrics tagging.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class GenerationError(Exception):
    """Base class for generation domain errors."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class ProviderError(GenerationError):
    """A provider call failed; retryable within the provider budget."""


class ProviderUnauthenticated(ProviderError):
    def __init__(self, message: str = "Provider rejected the credentials") -> None:
        super().__init__(message=message, error_code="unauthenticated")


class ProviderRateLimited(ProviderError):
    def __init__(self, message: str = "Provider rate limit exceeded") -> None:
        super().__init__(message=message, error_code="rate_limited")


class ProviderTimeout(ProviderError):
    def __init__(self, message: str = "Provider call timed out") -> None:
        super().__init__(message=message, error_code="timeout")


class ProviderUnavailable(ProviderError):
    def __init__(self, message: str = "Provider is unavailable") -> None:
        super().__init__(message=message, error_code="unavailable")


class ProviderUnknownError(ProviderError):
    def __init__(self, message: str = "Provider call failed") -> None:
        super().__init__(message=message, error_code="unknown")


class NoJsonFound(GenerationError):
    def __init__(self, preview: str = "") -> None:
        super().__init__(
            message="No JSON object found in provider response", error_code="no_json_found"
        )
        self.preview = preview


class RepairFailed(GenerationError):
    def __init__(self, parse_error: str, preview: str = "") -> None:
        super().__init__(
            message=f"JSON could not be repaired: {parse_error}",
            error_code="repair_failed",
        )
        self.parse_error = parse_error
        self.preview = preview


class InvalidStructure(GenerationError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(message=f"{path}: {reason}", error_code="invalid_structure")
        self.path = path
        self.reason = reason


class ConfigurationMissing(GenerationError):
    def __init__(self, message: str = "Required configuration is missing") -> None:
        super().__init__(message=message, error_code="configuration_missing")


class GenerationCancelled(GenerationError):
    def __init__(self, message: str = "Generation was cancelled") -> None:
        super().__init__(message=message, error_code="cancelled")


CONTENT_ERRORS: tuple[type[GenerationError], ...] = (
    NoJsonFound,
    RepairFailed,
    InvalidStructure,
)
