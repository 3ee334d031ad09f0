"""Persistence boundary for generation outcomes.

The coordinator hands the final document to the storage collaborator at most
once per run: the generated document on success, the fallback document when
every provider was exhausted, and nothing for cancelled runs (the client has
gone away and will retry). Storage failures are logged as warnings; they
never trigger another generation.
"""

from __future__ import annotations

import asyncio
import logging

from questiongen.core.logging import StructuredLogger
from questiongen.schemas.questionnaire import GeneratedDocument
from questiongen.services.generation.interfaces import PersistenceProtocol
from questiongen.services.generation.models import (
    ErrorKind,
    GenerationFailure,
    GenerationResult,
    GenerationSuccess,
)


logger = logging.getLogger(__name__)
structured_logger = StructuredLogger(__name__)

PERSISTED_FAILURE_KINDS = frozenset(
    {ErrorKind.PROVIDERS_EXHAUSTED, ErrorKind.NO_PROVIDER_CONFIGURED}
)


class InMemoryPersistence:
    """Process-local ``PersistenceProtocol`` store.

    Nothing is persisted unless a store is passed to ``generate``; this one
    keeps documents in memory for single-process use and tests.
    """

    def __init__(self) -> None:
        self.documents: dict[str, GeneratedDocument] = {}
        self.save_calls = 0
        self._lock = asyncio.Lock()

    async def has_completed(self, request_id: str) -> bool:
        return request_id in self.documents

    async def save(self, request_id: str, document: GeneratedDocument) -> None:
        async with self._lock:
            self.save_calls += 1
            self.documents[request_id] = document


class PersistenceCoordinator:
    def __init__(self, store: PersistenceProtocol):
        self.store = store

    @staticmethod
    def document_for(result: GenerationResult) -> GeneratedDocument | None:
        """The document to store for ``result``, or None when nothing is saved."""
        if isinstance(result, GenerationSuccess):
            return result.document
        if isinstance(result, GenerationFailure) and result.error_kind in PERSISTED_FAILURE_KINDS:
            return result.fallback_document
        return None

    async def finalize(self, request_id: str, result: GenerationResult) -> bool:
        """Store the outcome of a run. Returns True when a document was saved."""
        document = self.document_for(result)
        if document is None:
            logger.info("Nothing to persist for request %s", request_id)
            return False

        try:
            if await self.store.has_completed(request_id):
                structured_logger.warning(
                    "Generation already persisted; skipping duplicate save",
                    request_id=request_id,
                )
                return False
            await self.store.save(request_id, document)
        except Exception as e:
            structured_logger.warning(
                "Failed to persist generation result",
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        structured_logger.info(
            "Persisted generation result",
            request_id=request_id,
            success=result.success,
            sections=len(document.sections),
        )
        return True
