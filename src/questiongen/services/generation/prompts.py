"""Prompt template rendering.

Templates are plain text with ``{placeholder}`` markers filled from the
generation context. JSON examples inside a template are left alone because
only bare identifiers inside braces are treated as placeholders.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from questiongen.core.config import Settings, get_settings
from questiongen.services.generation.exceptions import ConfigurationMissing
from questiongen.services.generation.models import RenderedPrompt


logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "resources" / "prompts"
SYSTEM_TEMPLATE_NAME = "system_prompt.txt"
USER_TEMPLATE_NAME = "user_prompt.txt"

NOT_SPECIFIED = "Not specified"

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _lookup(context: Mapping[str, Any], name: str) -> Any:
    if name in context:
        return context[name]
    # Answers are usually grouped by questionnaire section one level down.
    for value in context.values():
        if isinstance(value, Mapping) and name in value:
            return value[name]
    return None


def format_value(value: Any) -> str:
    if value is None:
        return NOT_SPECIFIED
    if isinstance(value, list | tuple | set):
        items = [str(item) for item in value if item not in (None, "")]
        return ", ".join(items) if items else NOT_SPECIFIED
    text = str(value).strip()
    return text or NOT_SPECIFIED


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Replace every ``{name}`` in ``template`` with the formatted context value."""
    return _PLACEHOLDER.sub(lambda m: format_value(_lookup(context, m.group(1))), template)


class StaticPromptTemplate:
    """Templates held in memory; used by callers that manage prompts themselves."""

    def __init__(self, system: str, user: str):
        self.system = system
        self.user = user

    def render(self, context: Mapping[str, Any]) -> RenderedPrompt:
        if not self.system.strip() or not self.user.strip():
            raise ConfigurationMissing("Prompt template is empty")
        return RenderedPrompt(
            system=render_template(self.system, context),
            user=render_template(self.user, context),
        )


class FilePromptTemplate:
    """Templates read from ``system_prompt.txt`` / ``user_prompt.txt`` in a directory."""

    def __init__(self, directory: Path | str | None = None):
        self.directory = Path(directory) if directory else DEFAULT_TEMPLATE_DIR
        self._cache: dict[str, str] = {}

    def _load(self, name: str) -> str:
        if name not in self._cache:
            path = self.directory / name
            try:
                self._cache[name] = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.error("Prompt template %s could not be read: %s", path, e)
                raise ConfigurationMissing(f"Prompt template not found: {path}") from e
        return self._cache[name]

    def render(self, context: Mapping[str, Any]) -> RenderedPrompt:
        return StaticPromptTemplate(
            self._load(SYSTEM_TEMPLATE_NAME), self._load(USER_TEMPLATE_NAME)
        ).render(context)


def get_prompt_template(settings: Settings | None = None) -> FilePromptTemplate:
    settings = settings or get_settings()
    return FilePromptTemplate(settings.PROMPT_TEMPLATE_DIR)
