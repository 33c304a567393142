from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

from django.db import DatabaseError, transaction
from django.db.models import Count, Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from apps.core.exceptions import EditingDisabledError, NotFoundError, PersistenceError, ValidationError
from apps.core.utility import page_bounds
from apps.surveys.models import Survey, SurveyStatus, SurveyTargetEmployee, SurveyType
from .eligibility import check_external_duplicate, evaluate
from .models import SurveyResponse, SurveyAnswer, ResponseStatus
from .serializers import SubmitResponseSerializer, UpdateResponseSerializer
from .validation import validate_answers

logger = logging.getLogger(__name__)

AnswerPairs = Union[Mapping[Any, Any], Iterable[Tuple[Any, Any]]]

CONTACT_FIELDS = {"name": "respondent_name", "email": "respondent_email", "phone": "respondent_phone"}


class Submission(NamedTuple):
    survey_id: int
    answers: List[Tuple[int, Any]]
    respondent: Dict[str, Any]
    metadata: Dict[str, Any]


def submission_from_payload(payload: Mapping[str, Any]) -> Submission:
    """
    Parse a raw submission body:
        {"survey_id": 1, "answers": [{"question_id": 3, "value": 5}, ...],
         "respondent": {...}, "metadata": {...}}
    """
    serializer = SubmitResponseSerializer(data=payload)
    if not serializer.is_valid():
        raise ValidationError(_flatten_errors(serializer.errors))
    data = serializer.validated_data
    return Submission(
        survey_id=data["survey_id"],
        answers=[(a["question_id"], a["value"]) for a in data["answers"]],
        respondent=dict(data.get("respondent") or {}),
        metadata=dict(data.get("metadata") or {}),
    )


def update_from_payload(payload: Mapping[str, Any]) -> List[Tuple[int, Any]]:
    """Parse a raw edit body `{"answers": [{"question_id": 3, "value": 5}, ...]}` into answer pairs."""
    serializer = UpdateResponseSerializer(data=payload)
    if not serializer.is_valid():
        raise ValidationError(_flatten_errors(serializer.errors))
    return [(a["question_id"], a["value"]) for a in serializer.validated_data["answers"]]


def _flatten_errors(errors: Any, prefix: str = "") -> str:
    if isinstance(errors, dict):
        parts = [_flatten_errors(v, f"{prefix}{k}.") for k, v in errors.items()]
        return "; ".join(p for p in parts if p)
    if isinstance(errors, list):
        parts = [_flatten_errors(v, prefix) for v in errors]
        return "; ".join(p for p in parts if p)
    return f"{prefix.rstrip('.')}: {errors}" if prefix else str(errors)


def _pairs(answers: AnswerPairs) -> List[Tuple[int, Any]]:
    items = answers.items() if isinstance(answers, Mapping) else answers
    pairs = []
    for question_id, raw in items:
        try:
            pairs.append((int(question_id), raw))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid question id {question_id!r}")
    return pairs


def _started_at(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            raise ValidationError("Invalid started_at timestamp")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _tracking_fields(survey: Survey, metadata: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {
        "user_agent": metadata.get("user_agent") or None,
        "device_type": metadata.get("device_type") or None,
        "browser": metadata.get("browser") or None,
        "os": metadata.get("os") or None,
    }
    if survey.track_ip:
        fields["ip_address"] = metadata.get("ip_address") or None
    if survey.track_location:
        fields["location"] = metadata.get("location") or None
    return fields


def recompute_survey_counters(survey_id: int) -> Dict[str, int]:
    """
    Rewrite the survey's response counters from the response rows.
    Call inside the same transaction as the mutation it follows.
    """
    counts = SurveyResponse.objects.filter(survey_id=survey_id).aggregate(
        total=Count("id"),
        completed=Count("id", filter=Q(status=ResponseStatus.COMPLETED)),
    )
    Survey.objects.filter(pk=survey_id).update(
        total_responses=counts["total"],
        completed_responses=counts["completed"],
    )
    return counts


def _build_answers(response: SurveyResponse, validated) -> List[SurveyAnswer]:
    return [SurveyAnswer(response=response, question=q, **value.to_fields()) for q, value in validated]


def submit_response(
    survey_id: int,
    answers: AnswerPairs,
    actor_id: Optional[int] = None,
    respondent: Optional[Mapping[str, Any]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> SurveyResponse:
    """
    Persist a completed response with its answers in one unit of work.

    Flow:
        - Fast eligibility and (external) duplicate-email pre-checks.
        - Validate and coerce the answers against the survey's questions.
        - Under a row lock on the survey: re-check eligibility, insert the
          response and answers, flag the target link, recompute counters.

    Raises:
        - NotFoundError for unknown or deleted surveys.
        - IneligibleError with the failing rule as reason.
        - ValidationError for malformed answers.
        - PersistenceError when the unit rolled back on a database error.
    """
    now = now or timezone.now()
    respondent = respondent or {}
    metadata = metadata or {}
    pairs = _pairs(answers)

    survey = Survey.objects.visible().filter(pk=survey_id).first()
    if survey is None:
        raise NotFoundError("Survey not found")

    evaluate(survey, actor_id, now).raise_if_denied()
    check_external_duplicate(survey, respondent.get("email")).raise_if_denied()

    validated = validate_answers(list(survey.questions.all()), pairs)
    started_at = _started_at(metadata.get("started_at"))

    try:
        with transaction.atomic():
            survey = Survey.objects.select_for_update().get(pk=survey_id)
            evaluate(survey, actor_id, now, for_update=True).raise_if_denied()

            contact = {}
            if survey.survey_type == SurveyType.EXTERNAL:
                contact = {
                    column: str(respondent.get(key) or "").strip() or None
                    for key, column in CONTACT_FIELDS.items()
                }

            response = SurveyResponse.objects.create(
                survey=survey,
                employee_id=actor_id if survey.survey_type == SurveyType.INTERNAL else None,
                status=ResponseStatus.COMPLETED,
                started_at=started_at or now,
                completed_at=now,
                duration_seconds=max(0, int((now - started_at).total_seconds())) if started_at else None,
                **contact,
                **_tracking_fields(survey, metadata),
            )
            SurveyAnswer.objects.bulk_create(_build_answers(response, validated))

            if survey.survey_type == SurveyType.INTERNAL:
                SurveyTargetEmployee.objects.filter(survey=survey, employee_id=actor_id).update(
                    has_responded=True,
                    responded_at=now,
                )

            recompute_survey_counters(survey.id)
    except DatabaseError as exc:
        logger.exception("Response submission rolled back", extra={"survey_id": survey_id})
        raise PersistenceError("Could not save the response, please retry") from exc

    logger.info(
        "Response submitted",
        extra={"survey_id": survey_id, "response_id": response.id, "answers": len(validated)},
    )
    return response


def update_response(
    response_id: int,
    answers: AnswerPairs,
    actor_id: Optional[int] = None,
) -> SurveyResponse:
    """
    Replace every answer of a response. Answers for questions missing from
    the new set are removed, not kept.

    Raises:
        - NotFoundError if the response is unknown, its survey deleted, or it
          is not owned by `actor_id`. External responses have no owner and
          cannot be edited.
        - EditingDisabledError when the survey does not allow editing.
    """
    pairs = _pairs(answers)
    try:
        with transaction.atomic():
            response = (
                SurveyResponse.objects.select_for_update()
                .select_related("survey")
                .filter(pk=response_id)
                .first()
            )
            if response is None or response.survey.status == SurveyStatus.DELETED:
                raise NotFoundError("Response not found")
            if response.employee_id is None or response.employee_id != actor_id:
                raise NotFoundError("Response not found")

            survey = response.survey
            if not survey.allow_editing:
                raise EditingDisabledError()

            validated = validate_answers(list(survey.questions.all()), pairs)
            response.answers.all().delete()
            SurveyAnswer.objects.bulk_create(_build_answers(response, validated))
            response.save(update_fields=["updated_at"])
            recompute_survey_counters(survey.id)
    except DatabaseError as exc:
        logger.exception("Response update rolled back", extra={"response_id": response_id})
        raise PersistenceError("Could not update the response, please retry") from exc

    logger.info("Response updated", extra={"response_id": response_id, "answers": len(validated)})
    return response


def delete_response(response_id: int) -> None:
    """Delete a response and its answers. Target links keep their responded flag."""
    try:
        with transaction.atomic():
            response = SurveyResponse.objects.select_for_update().filter(pk=response_id).first()
            if response is None:
                raise NotFoundError("Response not found")
            survey_id = response.survey_id
            response.delete()
            recompute_survey_counters(survey_id)
    except DatabaseError as exc:
        logger.exception("Response delete rolled back", extra={"response_id": response_id})
        raise PersistenceError("Could not delete the response, please retry") from exc

    logger.info("Response deleted", extra={"response_id": response_id, "survey_id": survey_id})


def bulk_delete_responses(response_ids: Iterable[int]) -> int:
    """Delete many responses; counters of every touched survey are recomputed. Returns the count."""
    ids = [int(i) for i in response_ids]
    if not ids:
        return 0
    try:
        with transaction.atomic():
            qs = SurveyResponse.objects.filter(pk__in=ids)
            survey_ids = set(qs.values_list("survey_id", flat=True))
            _, per_model = qs.delete()
            for survey_id in survey_ids:
                recompute_survey_counters(survey_id)
    except DatabaseError as exc:
        logger.exception("Bulk response delete rolled back", extra={"count": len(ids)})
        raise PersistenceError("Could not delete the responses, please retry") from exc

    deleted = per_model.get(SurveyResponse._meta.label, 0)
    logger.info("Responses deleted", extra={"count": deleted})
    return deleted


def list_responses(
    survey_id: int,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[SurveyResponse], int]:
    """Paged responses of a survey, newest first, with answers prefetched. Returns (items, total)."""
    if not Survey.objects.visible().filter(pk=survey_id).exists():
        raise NotFoundError("Survey not found")

    qs = SurveyResponse.objects.filter(survey_id=survey_id).order_by("-created_at", "-id")
    if status:
        if status not in ResponseStatus.values:
            raise ValidationError(f"Unknown response status '{status}'")
        qs = qs.filter(status=status)
    if date_from:
        qs = qs.filter(created_at__date__gte=date_from)
    if date_to:
        qs = qs.filter(created_at__date__lte=date_to)

    total = qs.count()
    start, end = page_bounds(page, page_size)
    items = list(qs.prefetch_related("answers")[start:end])
    return items, total

