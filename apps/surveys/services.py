"""
Survey administration: creation, metadata edits, question structure and
target employees. Every structural edit goes through `ensure_editable`.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from django.contrib.auth import get_user_model
from django.contrib.auth.hashers import check_password, make_password
from django.db import transaction
from django.db.models import F

from apps.core.exceptions import IneligibleError, NotFoundError, ValidationError
from apps.core.utility import generate_unique_slug, page_bounds
from .lifecycle import ensure_editable
from .models import (
    Survey,
    Question,
    QuestionType,
    SurveyTargetEmployee,
    SurveyType,
    SurveyStatus,
    DurationType,
    CHOICE_TYPES,
)

logger = logging.getLogger(__name__)

# Fields that update_survey may touch; status has its own transitions
EDITABLE_SURVEY_FIELDS = (
    "title",
    "description",
    "welcome_message",
    "thank_you_message",
    "client_name",
    "client_company",
    "target_department",
    "duration_type",
    "start_date",
    "end_date",
    "max_responses",
    "is_anonymous",
    "allow_multiple",
    "allow_editing",
    "show_progress_bar",
    "track_ip",
    "track_location",
    "redirect_url",
)

QUESTION_FIELDS = (
    "question_type",
    "text",
    "description",
    "is_required",
    "validation_rules",
    "options",
    "conditional_logic",
)


def get_survey(survey_id: int) -> Survey:
    survey = Survey.objects.visible().filter(pk=survey_id).first()
    if survey is None:
        raise NotFoundError("Survey not found")
    return survey


def list_surveys(
    filters: Optional[Dict[str, Any]] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Survey], int]:
    """
    Paged survey listing, newest first. Supported filters: status,
    survey_type, created_by, search (title icontains).
    Returns (items, total).
    """
    filters = filters or {}
    qs = Survey.objects.visible().order_by("-created_at", "-id")
    if filters.get("status"):
        qs = qs.filter(status=filters["status"])
    if filters.get("survey_type"):
        qs = qs.filter(survey_type=filters["survey_type"])
    if filters.get("created_by"):
        qs = qs.filter(created_by_id=filters["created_by"])
    if filters.get("search"):
        qs = qs.filter(title__icontains=filters["search"])

    total = qs.count()
    start, end = page_bounds(page, page_size)
    return list(qs[start:end]), total


def _password_hash(password: Optional[str]) -> Optional[str]:
    return make_password(password) if password else None


def _validate_duration(duration_type: str, start_date, end_date) -> None:
    if duration_type == DurationType.LIMITED and not end_date:
        raise ValidationError("A limited survey needs an end date")
    if start_date and end_date and end_date <= start_date:
        raise ValidationError("End date must be after start date")


def _validate_question(question_type: str, text: str, options: Optional[dict]) -> None:
    if question_type not in QuestionType.values:
        raise ValidationError(f"Unknown question type '{question_type}'")
    if not (text or "").strip():
        raise ValidationError("Question text is required")
    if question_type in CHOICE_TYPES and question_type != QuestionType.YES_NO:
        choices = (options or {}).get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValidationError("Choice questions need at least one option")


@transaction.atomic
def create_survey(
    created_by,
    title: str,
    survey_type: str = SurveyType.INTERNAL,
    questions: Optional[Sequence[Dict[str, Any]]] = None,
    target_employee_ids: Optional[Iterable[int]] = None,
    password: Optional[str] = None,
    **fields,
) -> Survey:
    """
    Create a draft survey with a unique slug, optional initial questions and,
    for internal surveys, target employee links. A non-empty `password`
    gates the survey and is stored hashed.
    """
    if not (title or "").strip():
        raise ValidationError("Survey title is required")
    if survey_type not in SurveyType.values:
        raise ValidationError(f"Unknown survey type '{survey_type}'")

    unknown = set(fields) - set(EDITABLE_SURVEY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown survey fields: {', '.join(sorted(unknown))}")

    duration_type = fields.get("duration_type", DurationType.UNLIMITED)
    _validate_duration(duration_type, fields.get("start_date"), fields.get("end_date"))

    survey = Survey.objects.create(
        created_by=created_by,
        title=title.strip(),
        survey_type=survey_type,
        slug=generate_unique_slug(Survey, title),
        status=SurveyStatus.DRAFT,
        password_hash=_password_hash(password),
        **fields,
    )

    for index, definition in enumerate(questions or ()):
        definition = {k: v for k, v in definition.items() if k in QUESTION_FIELDS}
        _validate_question(definition.get("question_type"), definition.get("text"), definition.get("options"))
        Question.objects.create(survey=survey, order_index=index, **definition)

    if survey.survey_type == SurveyType.INTERNAL and target_employee_ids:
        _add_targets(survey, target_employee_ids)

    logger.info("Survey created", extra={"survey_id": survey.id, "slug": survey.slug})
    return survey


@transaction.atomic
def update_survey(survey_id: int, **fields) -> Survey:
    """
    Update metadata on a non-active survey. Status changes go through lifecycle.
    Passing `password` replaces the gate; an empty value removes it.
    """
    password_given = "password" in fields
    password = fields.pop("password", None)
    survey = Survey.objects.select_for_update().filter(pk=survey_id).first()
    if survey is None:
        raise NotFoundError("Survey not found")
    ensure_editable(survey)

    unknown = set(fields) - set(EDITABLE_SURVEY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown survey fields: {', '.join(sorted(unknown))}")
    if "title" in fields and not (fields["title"] or "").strip():
        raise ValidationError("Survey title is required")

    _validate_duration(
        fields.get("duration_type", survey.duration_type),
        fields.get("start_date", survey.start_date),
        fields.get("end_date", survey.end_date),
    )

    for name, value in fields.items():
        setattr(survey, name, value)
    update_fields = list(fields)
    if password_given:
        survey.password_hash = _password_hash(password)
        update_fields.append("password_hash")
    survey.save(update_fields=update_fields + ["updated_at"])
    return survey


def _add_targets(survey: Survey, employee_ids: Iterable[int]) -> int:
    ids = {int(i) for i in employee_ids}
    existing_users = set(get_user_model().objects.filter(pk__in=ids).values_list("pk", flat=True))
    missing = ids - existing_users
    if missing:
        raise NotFoundError(f"Unknown employees: {sorted(missing)}")

    already = set(
        SurveyTargetEmployee.objects.filter(survey=survey, employee_id__in=ids).values_list("employee_id", flat=True)
    )
    links = [SurveyTargetEmployee(survey=survey, employee_id=i) for i in sorted(ids - already)]
    SurveyTargetEmployee.objects.bulk_create(links)
    return len(links)


@transaction.atomic
def set_target_employees(survey_id: int, employee_ids: Iterable[int]) -> int:
    """
    Add target links for an internal survey. Existing links are kept as-is,
    including their responded flag. Returns the number of new links.
    """
    survey = get_survey(survey_id)
    ensure_editable(survey)
    if survey.survey_type != SurveyType.INTERNAL:
        raise ValidationError("Only internal surveys have target employees")
    return _add_targets(survey, employee_ids)


# ---- Questions ---------------------------------------------------------------

def _editable_survey(survey_id: int) -> Survey:
    survey = Survey.objects.select_for_update().filter(pk=survey_id).first()
    if survey is None:
        raise NotFoundError("Survey not found")
    ensure_editable(survey)
    return survey


def _get_question(survey_id: int, question_id: int) -> Question:
    question = Question.objects.filter(pk=question_id, survey_id=survey_id).first()
    if question is None:
        raise NotFoundError("Question not found")
    return question


def _renumber(survey: Survey) -> None:
    for index, question in enumerate(survey.questions.order_by("order_index", "id")):
        if question.order_index != index:
            question.order_index = index
            question.save(update_fields=["order_index", "updated_at"])


@transaction.atomic
def create_question(survey_id: int, question_type: str, text: str, **fields) -> Question:
    """Append a question; `order_index` in fields inserts it at that position instead."""
    survey = _editable_survey(survey_id)
    _validate_question(question_type, text, fields.get("options"))

    position = fields.pop("order_index", None)
    extra = {k: v for k, v in fields.items() if k in QUESTION_FIELDS}

    count = survey.questions.count()
    if position is None or position >= count:
        position = count
    else:
        position = max(0, int(position))
        survey.questions.filter(order_index__gte=position).update(order_index=F("order_index") + 1)

    question = Question.objects.create(
        survey=survey,
        question_type=question_type,
        text=text,
        order_index=position,
        **extra,
    )
    _renumber(survey)
    question.refresh_from_db()
    return question


@transaction.atomic
def update_question(survey_id: int, question_id: int, **fields) -> Question:
    _editable_survey(survey_id)
    question = _get_question(survey_id, question_id)

    unknown = set(fields) - set(QUESTION_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown question fields: {', '.join(sorted(unknown))}")

    _validate_question(
        fields.get("question_type", question.question_type),
        fields.get("text", question.text),
        fields.get("options", question.options),
    )
    for name, value in fields.items():
        setattr(question, name, value)
    question.save()
    return question


@transaction.atomic
def delete_question(survey_id: int, question_id: int) -> None:
    survey = _editable_survey(survey_id)
    question = _get_question(survey_id, question_id)
    question.delete()
    _renumber(survey)


@transaction.atomic
def reorder_questions(survey_id: int, question_ids: Sequence[int]) -> List[Question]:
    """
    Apply a full ordering. `question_ids` must list every question of the
    survey exactly once.
    """
    survey = _editable_survey(survey_id)
    current = {q.id: q for q in survey.questions.all()}
    wanted = [int(i) for i in question_ids]
    if len(wanted) != len(set(wanted)) or set(wanted) != set(current):
        raise ValidationError("Reorder must list every question of the survey exactly once")

    for index, qid in enumerate(wanted):
        question = current[qid]
        if question.order_index != index:
            question.order_index = index
            question.save(update_fields=["order_index", "updated_at"])
    return [current[qid] for qid in wanted]


@transaction.atomic
def duplicate_survey(survey_id: int, created_by=None) -> Survey:
    """Copy metadata and questions into a new draft. Responses, targets and counters are not copied."""
    source = get_survey(survey_id)
    title = f"{source.title} Copy"
    copy = Survey.objects.create(
        created_by=created_by or source.created_by,
        title=title,
        survey_type=source.survey_type,
        slug=generate_unique_slug(Survey, title),
        status=SurveyStatus.DRAFT,
        password_hash=source.password_hash,
        **{name: getattr(source, name) for name in EDITABLE_SURVEY_FIELDS if name != "title"},
    )
    Question.objects.bulk_create([
        Question(
            survey=copy,
            order_index=index,
            **{name: getattr(q, name) for name in QUESTION_FIELDS},
        )
        for index, q in enumerate(source.questions.order_by("order_index", "id"))
    ])
    logger.info("Survey duplicated", extra={"survey_id": source.id, "copy_id": copy.id})
    return copy


def record_view(survey_id: int) -> None:
    updated = Survey.objects.visible().filter(pk=survey_id).update(total_views=F("total_views") + 1)
    if not updated:
        raise NotFoundError("Survey not found")



def verify_survey_password(survey_id: int, password: Optional[str]) -> bool:
    """
    Check a respondent's password against the survey gate.

    Raises:
        - NotFoundError for unknown or deleted surveys.
        - ValidationError when the survey has no password or none was given.
    """
    survey = get_survey(survey_id)
    if not survey.has_password:
        raise ValidationError("Survey is not password protected")
    if not password:
        raise ValidationError("Password is required")
    valid = check_password(password, survey.password_hash)
    if not valid:
        logger.info("Survey password rejected", extra={"survey_id": survey.id})
    return valid


def survey_questions(survey_id: int, password: Optional[str] = None) -> List[Question]:
    """Questions in display order. A gated survey withholds them until the password matches."""
    survey = get_survey(survey_id)
    if survey.has_password and not (password and check_password(password, survey.password_hash)):
        raise IneligibleError("This survey is password protected", code="password_required")
    return list(survey.questions.order_by("order_index", "id"))
