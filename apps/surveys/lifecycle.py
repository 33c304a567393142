"""
Survey lifecycle state machine.

`expired` is mostly a derived status: an active, limited-duration survey
whose end date has passed reports `expired` from `effective_status` even if
nothing has persisted it yet. `expire_overdue_surveys` materializes that
status in bulk for listings; eligibility never depends on it having run.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import InvalidTransitionError, NotFoundError, SurveyLockedError
from .models import Survey, SurveyStatus, DurationType

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    SurveyStatus.DRAFT: frozenset({SurveyStatus.ACTIVE, SurveyStatus.DELETED}),
    SurveyStatus.ACTIVE: frozenset({
        SurveyStatus.PAUSED, SurveyStatus.CLOSED, SurveyStatus.EXPIRED, SurveyStatus.DELETED,
    }),
    SurveyStatus.PAUSED: frozenset({SurveyStatus.ACTIVE, SurveyStatus.CLOSED, SurveyStatus.DELETED}),
    SurveyStatus.CLOSED: frozenset({SurveyStatus.DELETED}),
    SurveyStatus.EXPIRED: frozenset({SurveyStatus.CLOSED, SurveyStatus.DELETED}),
    SurveyStatus.DELETED: frozenset(),
}


def is_expired(survey: Survey, now: Optional[datetime] = None) -> bool:
    if survey.duration_type == DurationType.UNLIMITED:
        return False
    if not survey.end_date:
        return False
    now = now or timezone.now()
    return now > survey.end_date


def effective_status(survey: Survey, now: Optional[datetime] = None) -> str:
    """Stored status, except an overdue active survey reads as expired. Never writes."""
    if survey.status == SurveyStatus.ACTIVE and is_expired(survey, now):
        return SurveyStatus.EXPIRED
    return survey.status


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_editable(survey: Survey) -> None:
    """Structure and metadata edits need the stored status to be anything but active."""
    if survey.status == SurveyStatus.DELETED:
        raise NotFoundError("Survey not found")
    if survey.status == SurveyStatus.ACTIVE:
        raise SurveyLockedError("Cannot edit an active survey. Pause it first.")


@transaction.atomic
def transition(survey_id: int, target: str, now: Optional[datetime] = None) -> Survey:
    """
    Move a survey to `target`, stamping published_at / closed_at where relevant.

    Raises:
        - NotFoundError for unknown or deleted surveys.
        - InvalidTransitionError when the move is not in TRANSITIONS.
    """
    now = now or timezone.now()
    survey = Survey.objects.select_for_update().filter(pk=survey_id).first()
    if survey is None or survey.status == SurveyStatus.DELETED:
        raise NotFoundError("Survey not found")

    current = survey.status
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move survey from {current} to {target}")

    survey.status = target
    fields = ["status", "updated_at"]
    if target == SurveyStatus.ACTIVE:
        survey.published_at = now
        fields.append("published_at")
    elif target == SurveyStatus.CLOSED:
        survey.closed_at = now
        fields.append("closed_at")
    survey.save(update_fields=fields)

    logger.info("Survey status changed", extra={"survey_id": survey.id, "from": current, "to": target})
    return survey


def publish_survey(survey_id: int, now: Optional[datetime] = None) -> Survey:
    return transition(survey_id, SurveyStatus.ACTIVE, now)


def pause_survey(survey_id: int, now: Optional[datetime] = None) -> Survey:
    return transition(survey_id, SurveyStatus.PAUSED, now)


def close_survey(survey_id: int, now: Optional[datetime] = None) -> Survey:
    return transition(survey_id, SurveyStatus.CLOSED, now)


def delete_survey(survey_id: int, now: Optional[datetime] = None) -> Survey:
    """Soft delete; the row stays but drops out of every listing and count."""
    return transition(survey_id, SurveyStatus.DELETED, now)


def expire_overdue_surveys(now: Optional[datetime] = None, batch_size: Optional[int] = None) -> int:
    """
    Persist `expired` for active surveys past their limited end date.
    Works in id-ordered batches of `batch_size`; returns the number updated.
    """
    now = now or timezone.now()
    batch_size = batch_size or getattr(settings, "SURVEY_EXPIRY_BATCH_SIZE", 200)
    total = 0
    while True:
        ids = list(
            Survey.objects.overdue(now)
            .order_by("id")
            .values_list("id", flat=True)[:batch_size]
        )
        if not ids:
            break

        # Re-apply the overdue filter so a survey paused meanwhile is left alone
        updated = Survey.objects.overdue(now).filter(id__in=ids).update(
            status=SurveyStatus.EXPIRED,
            updated_at=now,
        )
        total += updated
        if len(ids) < batch_size:
            break

    if total:
        logger.info("Overdue surveys expired", extra={"count": total})
    return total
