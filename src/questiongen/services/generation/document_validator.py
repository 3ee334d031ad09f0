"""Structural validation, normalization and sanitization of generated documents.

Hard checks raise ``InvalidStructure`` naming the offending path (for example
``sections[1].questions[0].type``). Soft checks (expected section count,
questions per section) only produce warnings: models routinely return nine or
eleven sections and the document is still usable.

Normalization fills in the per-type defaults the questionnaire renderer
expects (scale ranges, slider bounds, yes/no toggle options and so on) so
downstream code never has to special-case a partially specified question.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from questiongen.core.config import Settings, get_settings
from questiongen.schemas.questionnaire import GeneratedDocument
from questiongen.services.generation.exceptions import InvalidStructure


logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")

SANITIZED_FIELDS = ("label", "helpText", "placeholder")

SCALE_TYPES = frozenset({"scale", "enhanced_scale"})
CHOICE_TYPES = frozenset(
    {
        "select",
        "multiselect",
        "radio_pills",
        "radio_cards",
        "checkbox_pills",
        "checkbox_cards",
    }
)

DEFAULT_TOGGLE_OPTIONS: tuple[dict[str, str], ...] = (
    {"value": "yes", "label": "Yes"},
    {"value": "no", "label": "No"},
)


def sanitize_text(value: str) -> str:
    """Strip control characters and surrounding whitespace."""
    return _CONTROL_CHARS.sub("", value).strip()


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _with_defaults(config: Any, **defaults: Any) -> dict[str, Any]:
    source = config if isinstance(config, dict) else {}
    merged = dict(source)
    for key, default in defaults.items():
        if merged.get(key) is None or merged.get(key) == "":
            merged[key] = default
    return merged


def _normalize_options(options: Any) -> list[Any]:
    if not isinstance(options, list):
        return []
    normalized: list[Any] = []
    for option in options:
        if isinstance(option, str | int | float) and not isinstance(option, bool):
            text = str(option)
            normalized.append({"value": text, "label": text})
        elif isinstance(option, dict):
            item = dict(option)
            if item.get("value") is not None:
                item["value"] = str(item["value"])
            if item.get("label") is None and "value" in item:
                item["label"] = item["value"]
            elif item.get("label") is not None:
                item["label"] = sanitize_text(str(item["label"]))
            normalized.append(item)
        else:
            normalized.append(option)
    return normalized


def normalize_question(question: dict[str, Any]) -> dict[str, Any]:
    """Apply renderer defaults for a question based on its ``type`` tag."""
    normalized = dict(question)
    qtype = normalized.get("type")

    required = normalized.get("required")
    normalized["required"] = (
        required.strip().lower() == "true" if isinstance(required, str) else bool(required)
    )
    help_text = normalized.get("helpText") or normalized.pop("help_text", None)
    if help_text is not None:
        normalized["helpText"] = help_text
    if not isinstance(normalized.get("metadata"), dict):
        normalized["metadata"] = {}

    if qtype in SCALE_TYPES:
        normalized["scaleConfig"] = _with_defaults(
            normalized.get("scaleConfig"),
            min=1,
            max=5,
            minLabel="Low",
            maxLabel="High",
            step=1,
        )
    elif qtype == "labeled_slider":
        normalized["sliderConfig"] = _with_defaults(
            normalized.get("sliderConfig"), min=0, max=100, step=1
        )
    elif qtype == "number_spinner":
        normalized["numberConfig"] = _with_defaults(
            normalized.get("numberConfig"), min=0, max=999, step=1
        )
    elif qtype == "currency":
        normalized["currencySymbol"] = normalized.get("currencySymbol") or "$"

    if qtype in CHOICE_TYPES:
        normalized["options"] = _normalize_options(normalized.get("options"))
    elif qtype == "toggle_switch":
        options = _normalize_options(normalized.get("options"))
        normalized["options"] = (
            options if len(options) == 2 else [dict(o) for o in DEFAULT_TOGGLE_OPTIONS]
        )
    elif "options" in normalized:
        normalized["options"] = _normalize_options(normalized["options"])

    rules = normalized.get("validation")
    normalized["validation"] = (
        [rule for rule in rules if isinstance(rule, dict)] if isinstance(rules, list) else []
    )

    return normalized


def _sanitize_question(question: dict[str, Any]) -> dict[str, Any]:
    for key in SANITIZED_FIELDS:
        value = question.get(key)
        if isinstance(value, str):
            question[key] = sanitize_text(value)
    description = question.get("description")
    if description is not None and not isinstance(description, str):
        question["description"] = str(description)
    return question


def _format_loc(loc: tuple[int | str, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "$"


class DocumentValidator:
    """Validate a parsed JSON value into a ``GeneratedDocument``.

    ``warnings`` holds the soft-check messages of the most recent call.
    """

    def __init__(
        self,
        expected_sections: int | None = None,
        min_questions: int | None = None,
        max_questions: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.expected_sections = (
            expected_sections
            if expected_sections is not None
            else settings.EXPECTED_SECTION_COUNT
        )
        self.min_questions = (
            min_questions if min_questions is not None else settings.MIN_QUESTIONS_PER_SECTION
        )
        self.max_questions = (
            max_questions if max_questions is not None else settings.MAX_QUESTIONS_PER_SECTION
        )
        self.warnings: list[str] = []

    def validate(self, value: Any) -> GeneratedDocument:
        self.warnings = []

        if not isinstance(value, dict):
            raise InvalidStructure("$", "document must be a JSON object")
        sections = value.get("sections")
        if not isinstance(sections, list):
            raise InvalidStructure("sections", "missing or not an array")

        section_ids: set[str] = set()
        question_ids: set[str] = set()
        normalized_sections: list[dict[str, Any]] = []

        for s_index, section in enumerate(sections):
            path = f"sections[{s_index}]"
            if not isinstance(section, dict):
                raise InvalidStructure(path, "section must be an object")
            for key in ("id", "title"):
                if _is_blank(section.get(key)):
                    raise InvalidStructure(f"{path}.{key}", "missing or empty")
            if section["id"] in section_ids:
                raise InvalidStructure(f"{path}.id", f"duplicate section id {section['id']!r}")
            section_ids.add(section["id"])

            questions = section.get("questions")
            if not isinstance(questions, list):
                raise InvalidStructure(f"{path}.questions", "missing or not an array")

            normalized_questions: list[dict[str, Any]] = []
            for q_index, question in enumerate(questions):
                q_path = f"{path}.questions[{q_index}]"
                if not isinstance(question, dict):
                    raise InvalidStructure(q_path, "question must be an object")
                for key in ("id", "label", "type"):
                    if _is_blank(question.get(key)):
                        raise InvalidStructure(f"{q_path}.{key}", "missing or empty")
                if question["id"] in question_ids:
                    raise InvalidStructure(
                        f"{q_path}.id", f"duplicate question id {question['id']!r}"
                    )
                question_ids.add(question["id"])

                cleaned = _sanitize_question(normalize_question(question))
                if not cleaned.get("label"):
                    raise InvalidStructure(f"{q_path}.label", "empty after sanitization")
                normalized_questions.append(cleaned)

            if not self.min_questions <= len(questions) <= self.max_questions:
                self._warn(
                    f"{path} has {len(questions)} questions "
                    f"(expected {self.min_questions}-{self.max_questions})"
                )

            normalized_section = dict(section)
            normalized_section["questions"] = normalized_questions
            if (
                normalized_section.get("description") is not None
                and not isinstance(normalized_section["description"], str)
            ):
                normalized_section["description"] = str(normalized_section["description"])
            normalized_sections.append(normalized_section)

        if len(sections) != self.expected_sections:
            self._warn(
                f"document has {len(sections)} sections (expected {self.expected_sections})"
            )

        payload = dict(value)
        payload["sections"] = normalized_sections
        if not isinstance(payload.get("metadata", {}), dict):
            payload.pop("metadata")
        try:
            document = GeneratedDocument.model_validate(payload)
        except ValidationError as e:
            first = e.errors()[0]
            raise InvalidStructure(_format_loc(tuple(first["loc"])), first["msg"]) from e

        logger.info(
            "Validated document: %d sections, %d questions, %d warnings",
            len(document.sections),
            document.question_count,
            len(self.warnings),
        )
        return document

    def _warn(self, message: str) -> None:
        logger.warning("Document soft check: %s", message)
        self.warnings.append(message)
