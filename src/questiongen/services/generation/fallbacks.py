"""Packaged fallback questionnaire returned alongside every failed run."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path

from questiongen.schemas.questionnaire import GeneratedDocument


logger = logging.getLogger(__name__)

FALLBACK_PATH = Path(__file__).resolve().parent / "resources" / "fallback_questionnaire.json"


@lru_cache
def load_fallback_document(path: Path = FALLBACK_PATH) -> GeneratedDocument:
    """Load and validate the fallback document once per process.

    The models are frozen, so the cached instance is safe to share between
    concurrent requests.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    document = GeneratedDocument.model_validate(raw)
    logger.debug(
        "Loaded fallback questionnaire: %d sections, %d questions",
        len(document.sections),
        document.question_count,
    )
    return document
