"""
Response eligibility.

Checks run twice: when a respondent loads a survey (advisory) and again
inside the ingestion unit at submission, since counters and target flags
may move in between. The external duplicate-email check is a pre-check
only and sits outside that unit; two concurrent submissions with the same
email can both pass it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from django.utils import timezone

from apps.core.exceptions import IneligibleError, NotFoundError
from apps.surveys.lifecycle import effective_status
from apps.surveys.models import Survey, SurveyStatus, SurveyTargetEmployee, SurveyType
from .models import SurveyResponse, ResponseStatus


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise IneligibleError(self.reason, code=self.code)


ALLOWED = Eligibility(True)

REASONS = {
    SurveyStatus.DRAFT: ("This survey is not published yet", "survey_draft"),
    SurveyStatus.PAUSED: ("This survey is paused", "survey_paused"),
    SurveyStatus.CLOSED: ("This survey is closed", "survey_closed"),
    SurveyStatus.EXPIRED: ("This survey has expired", "survey_expired"),
    SurveyStatus.DELETED: ("Survey not found", "not_found"),
}


def acceptance_check(survey: Survey, now: Optional[datetime] = None) -> Eligibility:
    """Survey-level gate: effectively active and under the response cap."""
    status = effective_status(survey, now or timezone.now())
    if status != SurveyStatus.ACTIVE:
        reason, code = REASONS.get(status, ("This survey is not accepting responses", "not_accepting"))
        return Eligibility(False, reason, code)
    if survey.max_responses is not None and survey.total_responses >= survey.max_responses:
        return Eligibility(False, "This survey has reached its response limit", "response_limit")
    return ALLOWED


def can_accept_responses(survey: Survey, now: Optional[datetime] = None) -> bool:
    return acceptance_check(survey, now).allowed


def check_respondent(survey: Survey, actor_id: Optional[int], target: Optional[SurveyTargetEmployee]) -> Eligibility:
    """Actor-level gate for internal surveys, given the actor's target link (or None)."""
    if survey.survey_type != SurveyType.INTERNAL:
        return ALLOWED
    if actor_id is None or target is None:
        return Eligibility(False, "You are not targeted for this survey", "not_targeted")
    if not survey.allow_multiple and target.has_responded:
        return Eligibility(False, "You have already responded to this survey", "already_responded")
    return ALLOWED


def evaluate(
    survey: Survey,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
    for_update: bool = False,
) -> Eligibility:
    result = acceptance_check(survey, now)
    if not result.allowed:
        return result

    target = None
    if survey.survey_type == SurveyType.INTERNAL and actor_id is not None:
        qs = SurveyTargetEmployee.objects.filter(survey=survey, employee_id=actor_id)
        if for_update:
            qs = qs.select_for_update()
        target = qs.first()
    return check_respondent(survey, actor_id, target)


def can_user_respond(survey_id: int, actor_id: Optional[int] = None, now: Optional[datetime] = None) -> Eligibility:
    """
    Whether `actor_id` may submit to the survey right now.

    Raises:
        - NotFoundError for unknown or deleted surveys.
    """
    survey = Survey.objects.visible().filter(pk=survey_id).first()
    if survey is None:
        raise NotFoundError("Survey not found")
    return evaluate(survey, actor_id, now)


def check_external_duplicate(survey: Survey, email: Optional[str]) -> Eligibility:
    """
    Best-effort duplicate guard for external surveys without allow_multiple.
    Anonymous submissions (no email) are never considered duplicates.
    """
    if survey.survey_type != SurveyType.EXTERNAL or survey.allow_multiple:
        return ALLOWED
    email = (email or "").strip()
    if not email:
        return ALLOWED
    exists = SurveyResponse.objects.filter(
        survey=survey,
        respondent_email__iexact=email,
        status=ResponseStatus.COMPLETED,
    ).exists()
    if exists:
        return Eligibility(False, "A response with this email has already been submitted", "duplicate_email")
    return ALLOWED
