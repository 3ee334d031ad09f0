"""Questionnaire document schemas.

These models describe the validated output of a generation run: an ordered
list of sections, each with an ordered list of questions. Field names follow
the camelCase wire format the models are prompted with; Python code may use
either the alias or the snake_case attribute name.

Instances are frozen. Unknown keys emitted by a model are preserved so that
renderers which understand newer question features keep working.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


_DOCUMENT_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="allow",
)


class QuestionOption(BaseModel):
    """A selectable choice for select/radio/checkbox/toggle questions."""

    model_config = _DOCUMENT_CONFIG

    value: str
    label: str
    icon: str | None = None
    description: str | None = None


class ScaleConfig(BaseModel):
    model_config = _DOCUMENT_CONFIG

    min: float = 1
    max: float = 5
    min_label: str = "Low"
    max_label: str = "High"
    step: float = 1
    labels: list[str] | None = None


class SliderConfig(BaseModel):
    model_config = _DOCUMENT_CONFIG

    min: float = 0
    max: float = 100
    step: float = 1
    unit: str | None = None
    markers: list[Any] | None = None


class NumberConfig(BaseModel):
    model_config = _DOCUMENT_CONFIG

    min: float = 0
    max: float = 999
    step: float = 1


class Question(BaseModel):
    """A single question rendered by the dynamic questionnaire UI."""

    model_config = _DOCUMENT_CONFIG

    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, description="Input widget type tag")
    required: bool = False
    placeholder: str | None = None
    help_text: str | None = None
    description: str | None = None
    options: list[QuestionOption] | None = None
    scale_config: ScaleConfig | None = None
    slider_config: SliderConfig | None = None
    number_config: NumberConfig | None = None
    currency_symbol: str | None = None
    min: float | None = None
    max: float | None = None
    validation: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Section(BaseModel):
    model_config = _DOCUMENT_CONFIG

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str | None = None
    order: int | None = None
    questions: list[Question]


class GeneratedDocument(BaseModel):
    """Validated questionnaire produced by one generation run."""

    model_config = _DOCUMENT_CONFIG

    sections: list[Section]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def question_count(self) -> int:
        return sum(len(section.questions) for section in self.sections)

    def to_wire(self) -> dict[str, Any]:
        """Dump using the camelCase field names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)
