"""
Tagged answer values.

Every stored answer populates exactly one typed slot. Which slot is decided
by the question type when the answer is written and recorded on the row as
`value_tag`; readers dispatch on that tag and never on which column happens
to be non-null.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping

from apps.core.exceptions import ValidationError
from apps.surveys.models import Question, QuestionType
from .models import AnswerTag, SurveyAnswer

TAG_BY_QUESTION_TYPE: Mapping[str, str] = {
    QuestionType.RATING: AnswerTag.NUMBER,
    QuestionType.NPS: AnswerTag.NUMBER,
    QuestionType.SLIDER: AnswerTag.NUMBER,
    QuestionType.NUMBER: AnswerTag.NUMBER,
    QuestionType.SINGLE_CHOICE: AnswerTag.TEXT,
    QuestionType.MULTIPLE_CHOICE: AnswerTag.JSON,
    QuestionType.DROPDOWN: AnswerTag.TEXT,
    QuestionType.YES_NO: AnswerTag.BOOLEAN,
    QuestionType.TEXT: AnswerTag.TEXT,
    QuestionType.TEXTAREA: AnswerTag.TEXT,
    QuestionType.EMAIL: AnswerTag.TEXT,
    QuestionType.PHONE: AnswerTag.TEXT,
    QuestionType.URL: AnswerTag.TEXT,
    QuestionType.DATE: AnswerTag.DATE,
    QuestionType.TIME: AnswerTag.TIME,
    QuestionType.FILE: AnswerTag.JSON,
}

VALUE_FIELDS: Mapping[str, str] = {
    AnswerTag.TEXT: "value_text",
    AnswerTag.NUMBER: "value_number",
    AnswerTag.BOOLEAN: "value_boolean",
    AnswerTag.DATE: "value_date",
    AnswerTag.TIME: "value_time",
    AnswerTag.JSON: "value_json",
}

TRUE_STRINGS = {"true", "yes", "y", "1"}
FALSE_STRINGS = {"false", "no", "n", "0"}


def tag_for(question: Question) -> str:
    return TAG_BY_QUESTION_TYPE.get(question.question_type, AnswerTag.TEXT)


def is_present(raw: Any) -> bool:
    """Uniform presence check used by required/conditional validations."""
    if raw is None:
        return False
    if isinstance(raw, str):
        return raw.strip() != ""
    if isinstance(raw, (list, tuple, dict)):
        return len(raw) > 0
    return True


def _to_number(question: Question, raw: Any) -> Decimal:
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid number for question '{question.text}'")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid number for question '{question.text}'")
    if not value.is_finite():
        raise ValidationError(f"Invalid number for question '{question.text}'")
    return value


def _to_boolean(question: Question, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and raw in (0, 1):
        return bool(raw)
    text = str(raw).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    raise ValidationError(f"Expected yes or no for question '{question.text}'")


def _to_date(question: Question, raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        raise ValidationError(f"Invalid date (YYYY-MM-DD) for question '{question.text}'")


def _to_time(question: Question, raw: Any) -> time:
    if isinstance(raw, time):
        return raw
    try:
        return time.fromisoformat(str(raw).strip())
    except ValueError:
        raise ValidationError(f"Invalid time (HH:MM) for question '{question.text}'")


def _to_selection(question: Question, raw: Any) -> list:
    items = raw if isinstance(raw, (list, tuple)) else [raw]
    selection = []
    for item in items:
        if isinstance(item, (dict, list, tuple)):
            raise ValidationError(f"Expected option values for question '{question.text}'")
        selection.append(str(item).strip())
    return selection


def _to_text(question: Question, raw: Any) -> str:
    if isinstance(raw, (dict, list)):
        raise ValidationError(f"Expected a single value for question '{question.text}'")
    return str(raw).strip()


@dataclass(frozen=True)
class AnswerValue:
    """One typed answer: `tag` names the populated slot, `value` holds it."""

    tag: str
    value: Any

    @classmethod
    def coerce(cls, question: Question, raw: Any) -> "AnswerValue":
        """Convert a raw submitted value into the slot selected by the question type."""
        tag = tag_for(question)
        if tag == AnswerTag.NUMBER:
            return cls(tag, _to_number(question, raw))
        if tag == AnswerTag.BOOLEAN:
            return cls(tag, _to_boolean(question, raw))
        if tag == AnswerTag.DATE:
            return cls(tag, _to_date(question, raw))
        if tag == AnswerTag.TIME:
            return cls(tag, _to_time(question, raw))
        if question.question_type == QuestionType.MULTIPLE_CHOICE:
            return cls(tag, _to_selection(question, raw))
        if tag == AnswerTag.JSON:
            try:
                json.dumps(raw)
            except (TypeError, ValueError):
                raise ValidationError(f"Answer for question '{question.text}' is not serializable")
            return cls(tag, raw)
        return cls(tag, _to_text(question, raw))

    @classmethod
    def from_answer(cls, answer: SurveyAnswer) -> "AnswerValue":
        tag = answer.value_tag
        return cls(tag, getattr(answer, VALUE_FIELDS[tag]))

    def to_fields(self) -> Dict[str, Any]:
        """Model kwargs: the tag plus its one populated slot."""
        return {"value_tag": self.tag, VALUE_FIELDS[self.tag]: self.value}

    @property
    def items(self) -> list:
        """Picked options of a multi-select answer, stored as a JSON list."""
        if self.tag != AnswerTag.JSON or not isinstance(self.value, list):
            return []
        return [str(part) for part in self.value]

    def display(self) -> str:
        """Human form used by analytics labels and exports."""
        if self.value is None:
            return ""
        if self.tag == AnswerTag.BOOLEAN:
            return "Yes" if self.value else "No"
        if self.tag == AnswerTag.NUMBER:
            return format_number(self.value)
        if self.tag in (AnswerTag.DATE, AnswerTag.TIME):
            return self.value.isoformat()
        if self.tag == AnswerTag.JSON:
            if isinstance(self.value, list) and all(isinstance(v, str) for v in self.value):
                return ", ".join(self.value)
            return json.dumps(self.value, ensure_ascii=False)
        return str(self.value)

    def to_primitive(self) -> Any:
        """JSON-friendly form."""
        if self.value is None:
            return None
        if self.tag == AnswerTag.NUMBER:
            return number_primitive(self.value)
        if self.tag in (AnswerTag.DATE, AnswerTag.TIME):
            return self.value.isoformat()
        return self.value


def number_primitive(value: Decimal):
    """int when integral, float otherwise."""
    value = Decimal(value)
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def format_number(value: Decimal) -> str:
    value = Decimal(value)
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")
