from __future__ import annotations

import operator as _op
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import URLValidator, validate_email

from apps.core.exceptions import ValidationError
from apps.surveys.models import Question, QuestionType, CHOICE_TYPES
from .answers import AnswerValue, is_present
from .models import AnswerTag

# Supported comparison operators for show_if.
OPS: Mapping[str, callable] = {
    "=": _op.eq,
    "==": _op.eq,
    "!=": _op.ne,
    "<": _op.lt,
    "<=": _op.le,
    ">": _op.gt,
    ">=": _op.ge,
    "in": lambda left, right: left in right,
    "contains": lambda left, right: right in left,
}

# Default numeric bounds by question type; validation_rules override them.
DEFAULT_BOUNDS: Mapping[str, Tuple[Any, Any]] = {
    QuestionType.NPS: (0, 10),
    QuestionType.RATING: (1, None),
}

_url_validator = URLValidator()


def _evaluate_condition(left: Any, op_symbol: str, right: Any) -> bool:
    """
    Evaluate a binary condition like `left < right`.
    Returns False if the operator is unsupported or if comparison fails.
    """
    func = OPS.get((op_symbol or "==").strip())
    if func is None:
        return False
    try:
        return bool(func(left, right))
    except (TypeError, ValueError, InvalidOperation):
        return False


def _comparable(ref_q: Question, raw: Any) -> Any:
    """Bring a raw value into the referenced question's typed form; None when it doesn't fit."""
    if not is_present(raw):
        return None
    try:
        value = AnswerValue.coerce(ref_q, raw)
    except ValidationError:
        return None
    if ref_q.question_type == QuestionType.MULTIPLE_CHOICE:
        return value.items
    return value.value


def is_visible(q: Question, answers: Dict[int, Any], questions: Dict[int, Question]) -> bool:
    """
    True if the question is shown given its optional `conditional_logic.show_if`.
    Hidden when the referenced question is unknown or the values can't be compared.
    """
    logic = q.conditional_logic or {}
    if not isinstance(logic, dict):
        return True
    sif = logic.get("show_if")
    if not (sif and isinstance(sif, dict)):
        return True

    ref_id = sif.get("question_id")
    ref_q = questions.get(ref_id) if ref_id is not None else None
    if ref_q is None:
        return False

    left = _comparable(ref_q, answers.get(ref_q.id))
    if left is None:
        return False
    target = sif.get("value")
    op_symbol = (sif.get("operator") or "==").strip()
    if op_symbol == "in":
        right = [_comparable(ref_q, t) for t in (target if isinstance(target, list) else [target])]
    elif op_symbol == "contains":
        right = str(target)
    else:
        right = _comparable(ref_q, target)
        if right is None:
            return False
    return _evaluate_condition(left, op_symbol, right)


def _bounds(q: Question) -> Tuple[Any, Any]:
    rules = q.validation_rules or {}
    options = q.options or {}
    low, high = DEFAULT_BOUNDS.get(q.question_type, (None, None))
    low = rules.get("min", options.get("min", low))
    high = rules.get("max", options.get("max", high))
    return low, high


def _check_number(q: Question, value: Decimal) -> None:
    low, high = _bounds(q)
    if low is not None and value < Decimal(str(low)):
        raise ValidationError(f"'{q.text}': must be >= {low}")
    if high is not None and value > Decimal(str(high)):
        raise ValidationError(f"'{q.text}': must be <= {high}")


def _check_text(q: Question, value: str) -> None:
    rules = q.validation_rules or {}
    min_len = rules.get("min_length")
    max_len = rules.get("max_length")
    if isinstance(min_len, (int, float)) and len(value) < int(min_len):
        raise ValidationError(f"'{q.text}': must be at least {int(min_len)} characters")
    if isinstance(max_len, (int, float)) and len(value) > int(max_len):
        raise ValidationError(f"'{q.text}': must be at most {int(max_len)} characters")

    pattern = rules.get("pattern")
    if pattern:
        try:
            matched = re.fullmatch(str(pattern), value)
        except re.error:
            raise ValidationError(f"'{q.text}': invalid validation pattern")
        if not matched:
            raise ValidationError(rules.get("error_message") or f"'{q.text}': value does not match pattern")

    try:
        if q.question_type == QuestionType.EMAIL:
            validate_email(value)
        elif q.question_type == QuestionType.URL:
            _url_validator(value)
    except DjangoValidationError:
        raise ValidationError(f"'{q.text}': enter a valid {q.get_question_type_display().lower()}")


def _check_choices(q: Question, value: AnswerValue) -> None:
    if q.question_type == QuestionType.YES_NO:
        return
    allowed = {str(c) for c in (q.options or {}).get("choices") or []}
    picked = value.items if q.question_type == QuestionType.MULTIPLE_CHOICE else [value.value]
    invalid = [v for v in picked if v not in allowed]
    if invalid:
        raise ValidationError(f"Invalid option(s) {invalid} for question '{q.text}'")

    rules = q.validation_rules or {}
    min_sel = rules.get("min_selected")
    max_sel = rules.get("max_selected")
    if isinstance(min_sel, int) and len(picked) < min_sel:
        raise ValidationError(f"'{q.text}': select at least {min_sel} option(s)")
    if isinstance(max_sel, int) and len(picked) > max_sel:
        raise ValidationError(f"'{q.text}': select at most {max_sel} option(s)")


def validate_answer(q: Question, raw: Any) -> AnswerValue:
    """Coerce `raw` into the question's slot and apply its constraints."""
    value = AnswerValue.coerce(q, raw)
    if value.tag == AnswerTag.NUMBER:
        _check_number(q, value.value)
    elif q.question_type in CHOICE_TYPES:
        _check_choices(q, value)
    elif value.tag == AnswerTag.TEXT:
        _check_text(q, value.value)
    return value


def validate_answers(
    questions: Sequence[Question],
    answers: Sequence[Tuple[int, Any]],
) -> List[Tuple[Question, AnswerValue]]:
    """
    Validate a full answer set against a survey's questions.

    Steps:
        1) Reject unknown or repeated question ids.
        2) Required checks for every visible question.
        3) Per-answer coercion and constraints. Blank optional answers and
           answers to hidden questions are dropped.

    Returns (question, value) pairs in question order.
    """
    by_id = {q.id: q for q in questions}
    supplied: Dict[int, Any] = {}
    for question_id, raw in answers:
        if question_id not in by_id:
            raise ValidationError(f"Unknown question id {question_id}")
        if question_id in supplied:
            raise ValidationError(f"Question id {question_id} answered more than once")
        supplied[question_id] = raw

    for q in questions:
        if q.is_required and is_visible(q, supplied, by_id) and not is_present(supplied.get(q.id)):
            raise ValidationError(f"Missing required answer for '{q.text}'")

    result: List[Tuple[Question, AnswerValue]] = []
    for q in questions:
        raw = supplied.get(q.id)
        if not is_present(raw) or not is_visible(q, supplied, by_id):
            continue
        result.append((q, validate_answer(q, raw)))
    return result
