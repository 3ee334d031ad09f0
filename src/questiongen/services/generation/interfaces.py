"""Collaborator interfaces for the generation pipeline.

This module defines the protocols the orchestrator depends on so callers can
inject real providers, storage and observers (or small fakes in tests)
without the pipeline knowing anything about their implementation.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from questiongen.schemas.generation import ProgressEvent
from questiongen.schemas.questionnaire import GeneratedDocument
from questiongen.services.generation.models import ProviderAttempt, RenderedPrompt


ProviderReply = str | AsyncIterator[str | bytes]
"""Either the complete text, or a stream of newline-delimited JSON chunks."""

ProgressSink = Callable[[ProgressEvent], Awaitable[None] | None]


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol for a remote text generation service."""

    name: str

    def is_configured(self) -> bool:
        """Return True when credentials (or a base URL) are present."""
        ...

    async def call(self, system_prompt: str, user_prompt: str) -> ProviderReply:
        """Send one request.

        Raises one of the ``ProviderError`` subclasses on failure.
        """
        ...


class PromptTemplateProtocol(Protocol):
    """Protocol for rendering the system/user prompt pair."""

    def render(self, context: Mapping[str, Any]) -> RenderedPrompt:
        """Render both prompts; raises ``ConfigurationMissing`` if unavailable."""
        ...


class PersistenceProtocol(Protocol):
    """Protocol for durable storage of the final document."""

    async def has_completed(self, request_id: str) -> bool:
        """Return True when a document was already stored for this request."""
        ...

    async def save(self, request_id: str, document: GeneratedDocument) -> None:
        """Store the document for this request."""
        ...


class AttemptObserver(Protocol):
    """Receives attempt-level events. Fire-and-forget; errors are logged."""

    def __call__(self, request_id: str, attempt: ProviderAttempt) -> None: ...
