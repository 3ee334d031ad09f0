"""Truncation and textual repair for model-generated JSON.

Two bounded passes run on a candidate that does not parse:

1. ``repair_truncation`` walks the text with an explicit DEFAULT / IN_STRING /
   ESCAPED state machine, tracking every open container together with the
   offset just past its last complete element. If containers are still open at
   the end of input the text was cut off mid-stream. It is trimmed back to the
   last complete element of the innermost open array (so a partial trailing
   element is dropped rather than guessed), or, when no array is open, to the
   last complete property of the innermost object. The remaining containers
   are then closed innermost first.
2. ``apply_textual_repairs`` is a single string-aware pass fixing the quirks
   models produce in otherwise complete output: stray backslashes, raw
   newlines and tabs inside strings, unescaped interior quotes, missing commas
   between adjacent values, trailing commas and control characters.

Both passes are the identity on valid JSON, and ``repair_json`` returns valid
input untouched. If the result still does not parse, ``RepairFailed`` is
raised; there is no third pass.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from questiongen.services.generation.exceptions import RepairFailed
from questiongen.services.generation.json_extractor import (
    CandidateDocument,
    CandidateState,
    preview,
)


logger = logging.getLogger(__name__)

_COMPLETE_LITERALS = frozenset({"true", "false", "null"})
_VALID_ESCAPES = frozenset('"\\/bfnrtu')
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_CLOSING_FOLLOWERS = frozenset(",}]:")
_VALUE_ENDS = frozenset('"}]')
_VALUE_STARTS = frozenset('"{[')
_STRING_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
_JSON_WHITESPACE = frozenset(" \t\n\r")


class ScanState(Enum):
    DEFAULT = "default"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


@dataclass(slots=True)
class _Frame:
    kind: str
    last_safe: int
    # Objects cycle key -> colon -> value -> after_value; arrays value <-> after_value.
    phase: str


@dataclass(slots=True)
class TruncationReport:
    text: str
    truncated: bool
    open_braces: int = 0
    close_braces: int = 0
    open_brackets: int = 0
    close_brackets: int = 0


@dataclass(slots=True)
class RepairOutcome:
    text: str
    value: Any
    truncation_repaired: bool = False
    textual_repaired: bool = False
    notes: list[str] = field(default_factory=list)


def _complete_value(stack: list[_Frame], end: int) -> None:
    if stack:
        stack[-1].last_safe = end
        stack[-1].phase = "after_value"


def repair_truncation(text: str) -> TruncationReport:
    """Close a structurally truncated JSON text; no-op when it is balanced."""
    stack: list[_Frame] = []
    state = ScanState.DEFAULT
    scalar_start: int | None = None
    counts = {"{": 0, "}": 0, "[": 0, "]": 0}

    for i, ch in enumerate(text):
        if state is ScanState.ESCAPED:
            state = ScanState.IN_STRING
            continue
        if state is ScanState.IN_STRING:
            if ch == "\\":
                state = ScanState.ESCAPED
            elif ch == '"':
                state = ScanState.DEFAULT
                if stack and stack[-1].kind == "{" and stack[-1].phase == "key":
                    stack[-1].phase = "colon"
                else:
                    _complete_value(stack, i + 1)
            continue

        if scalar_start is not None and (ch.isspace() or ch in ",}]"):
            _complete_value(stack, i)
            scalar_start = None

        if ch == '"':
            state = ScanState.IN_STRING
        elif ch in "{[":
            counts[ch] += 1
            stack.append(_Frame(ch, i + 1, "key" if ch == "{" else "value"))
        elif ch in "}]":
            counts[ch] += 1
            if stack:
                stack.pop()
                _complete_value(stack, i + 1)
        elif ch == ":":
            if stack:
                stack[-1].phase = "value"
        elif ch == ",":
            if stack:
                stack[-1].phase = "key" if stack[-1].kind == "{" else "value"
        elif not ch.isspace() and scalar_start is None:
            scalar_start = i

    report = TruncationReport(
        text=text,
        truncated=bool(stack),
        open_braces=counts["{"],
        close_braces=counts["}"],
        open_brackets=counts["["],
        close_brackets=counts["]"],
    )
    if not stack:
        return report

    # A literal cut exactly at end of input is complete; anything else is partial.
    if (
        state is ScanState.DEFAULT
        and scalar_start is not None
        and text[scalar_start:].strip() in _COMPLETE_LITERALS
    ):
        _complete_value(stack, len(text))

    keep = len(stack)
    for index in range(len(stack) - 1, -1, -1):
        if stack[index].kind == "[":
            keep = index + 1
            break
    cut = stack[keep - 1].last_safe

    head = text[:cut].rstrip()
    if head.endswith(","):
        head = head[:-1].rstrip()
    closers = "".join("}" if frame.kind == "{" else "]" for frame in reversed(stack[:keep]))
    report.text = head + closers

    logger.info(
        "Repaired truncated JSON: braces %d/%d, brackets %d/%d, dropped %d chars",
        report.open_braces,
        report.close_braces,
        report.open_brackets,
        report.close_brackets,
        len(text) - cut,
    )
    return report


def _next_significant(text: str, start: int) -> tuple[str | None, bool]:
    """Return the next non-whitespace char after ``start`` and whether a newline precedes it."""
    saw_newline = False
    for j in range(start, len(text)):
        ch = text[j]
        if ch in "\r\n":
            saw_newline = True
        elif not ch.isspace():
            return ch, saw_newline
    return None, saw_newline


def _is_closing_quote(text: str, index: int) -> bool:
    nxt, saw_newline = _next_significant(text, index + 1)
    if nxt is None or nxt in _CLOSING_FOLLOWERS:
        return True
    # A value starting on a new line is the next element with its comma missing.
    return saw_newline and nxt in _VALUE_STARTS


def apply_textual_repairs(text: str) -> str:
    """Fix common model quirks in one string-aware pass; identity on valid JSON."""
    out: list[str] = []
    last_significant = -1  # index in `out` of the last non-whitespace char outside strings
    in_string = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if in_string:
            if ch == "\\":
                nxt = text[i + 1] if i + 1 < n else ""
                if nxt == "u" and all(c in _HEX_DIGITS for c in text[i + 2 : i + 6]) and i + 6 <= n:
                    out.append(text[i : i + 6])
                    i += 6
                    continue
                if nxt in _VALID_ESCAPES and nxt != "u":
                    out.append(ch + nxt)
                    i += 2
                    continue
                out.append("\\\\")
            elif ch == '"':
                if _is_closing_quote(text, i):
                    out.append(ch)
                    in_string = False
                    last_significant = len(out) - 1
                else:
                    out.append('\\"')
            elif ch in _STRING_CONTROL_ESCAPES:
                out.append(_STRING_CONTROL_ESCAPES[ch])
            elif ord(ch) < 0x20:
                pass
            else:
                out.append(ch)
            i += 1
            continue

        if ch in _VALUE_STARTS:
            if last_significant >= 0 and out[last_significant] in _VALUE_ENDS:
                out.insert(last_significant + 1, ",")
            out.append(ch)
            last_significant = len(out) - 1
            in_string = ch == '"'
        elif ch in "}]":
            if last_significant >= 0 and out[last_significant] == ",":
                del out[last_significant]
            out.append(ch)
            last_significant = len(out) - 1
        elif ch in _JSON_WHITESPACE:
            out.append(ch)
        elif ord(ch) < 0x20 or ch == "\x7f":
            pass
        else:
            out.append(ch)
            last_significant = len(out) - 1
        i += 1

    return "".join(out)


def repair_json(text: str) -> RepairOutcome:
    """Return parseable JSON text for ``text`` or raise ``RepairFailed``."""
    try:
        return RepairOutcome(text=text, value=json.loads(text))
    except json.JSONDecodeError as e:
        original_error = e

    logger.warning(
        "Initial parse failed, attempting repair: %s (position %d)",
        original_error.msg,
        original_error.pos,
    )

    notes: list[str] = []
    truncation = repair_truncation(text)
    if truncation.truncated:
        notes.append("truncation")

    repaired = apply_textual_repairs(truncation.text)
    if repaired != truncation.text:
        notes.append("textual")

    try:
        value = json.loads(repaired)
    except json.JSONDecodeError as e:
        logger.error(
            "JSON repair failed: %s; after repair: %s",
            original_error.msg,
            e.msg,
        )
        raise RepairFailed(
            parse_error=f"{original_error.msg} at position {original_error.pos}",
            preview=preview(text),
        ) from e

    logger.info(
        "Successfully repaired and parsed JSON (%s): %d -> %d chars",
        ", ".join(notes) or "no changes",
        len(text),
        len(repaired),
    )
    return RepairOutcome(
        text=repaired,
        value=value,
        truncation_repaired=truncation.truncated,
        textual_repaired="textual" in notes,
        notes=notes,
    )


def parse_candidate(candidate: CandidateDocument) -> CandidateDocument:
    """Move an extracted candidate to the ``REPAIRED`` state."""
    outcome = repair_json(candidate.text)
    candidate.text = outcome.text
    candidate.value = outcome.value
    candidate.truncation_repaired = outcome.truncation_repaired
    candidate.state = CandidateState.REPAIRED
    return candidate
