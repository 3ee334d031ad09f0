"""Locate the JSON object inside a raw provider response.

Models wrap their output in prose or markdown fences more often than not.
The candidate is the inclusive span from the first ``{`` to the last ``}``.
When the object opened by the first ``{`` never closes (the stream was cut
off), the candidate runs to the end of the text instead so the repair engine
sees the partial tail rather than an arbitrary inner ``}``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from questiongen.services.generation.exceptions import NoJsonFound


logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class CandidateState(StrEnum):
    EXTRACTED = "extracted"
    REPAIRED = "repaired"


@dataclass(slots=True)
class CandidateDocument:
    """JSON text moving from ``EXTRACTED`` to ``REPAIRED``.

    Once repaired, ``text`` is syntactically valid JSON and ``value`` holds the
    parsed object. It may still fail schema validation.
    """

    text: str
    state: CandidateState = CandidateState.EXTRACTED
    value: Any = None
    truncation_repaired: bool = False


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    """Short single-line excerpt for logs and error payloads."""
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


def _closes(text: str, start: int) -> bool:
    """True when the object opened at ``start`` is closed somewhere in ``text``."""
    depth = 0
    in_string = False
    escaped = False
    for ch in text[start:]:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return True
    return False


def _strip_trailing_fence(text: str) -> str:
    text = text.rstrip()
    if text.endswith("```"):
        text = text[:-3].rstrip()
    return text


def extract_json_candidate(raw: str) -> CandidateDocument:
    start = raw.find("{")
    if start == -1:
        logger.debug("No JSON object delimiters in %d chars of output", len(raw))
        raise NoJsonFound(preview=preview(raw))

    if not _closes(raw, start):
        return CandidateDocument(text=_strip_trailing_fence(raw[start:]))

    end = raw.rfind("}")
    if end <= start:
        raise NoJsonFound(preview=preview(raw))
    return CandidateDocument(text=raw[start : end + 1])
