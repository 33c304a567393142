"""
Per-survey analytics computed on demand from stored answers.

Aggregations read the answer slot named by each row's `value_tag`; only
answers of completed responses are counted.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional

from django.conf import settings
from django.db.models import Avg, Count, Max, Min, QuerySet
from django.db.models.functions import TruncDate
from django.utils import timezone

from apps.core.exceptions import NotFoundError
from apps.responses.answers import AnswerValue, VALUE_FIELDS
from apps.responses.models import AnswerTag, ResponseStatus, SurveyAnswer, SurveyResponse
from apps.surveys.lifecycle import effective_status
from apps.surveys.models import Question, QuestionCategory, Survey

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "unknown"


@dataclass
class DistributionBucket:
    value: Any
    label: str
    count: int
    percentage: int = 0


@dataclass
class QuestionAnalytics:
    question_id: int
    text: str
    question_type: str
    category: str
    order_index: int
    total_answers: int = 0
    response_rate: int = 0
    distribution: List[DistributionBucket] = field(default_factory=list)
    average: Optional[float] = None
    min: Any = None
    max: Any = None
    samples: List[str] = field(default_factory=list)


@dataclass
class TimelinePoint:
    date: date
    count: int


@dataclass
class Overview:
    survey_id: int
    title: str
    status: str
    total_responses: int
    completed_responses: int
    in_progress_responses: int
    completion_rate: int
    average_duration_seconds: Optional[int]
    total_views: int


@dataclass
class AnalyticsReport:
    overview: Overview
    questions: List[QuestionAnalytics]
    timeline: List[TimelinePoint]
    devices: List[DistributionBucket]
    browsers: List[DistributionBucket]
    generated_at: datetime


def percent(part: int, whole: int) -> int:
    """Share as a whole percentage, half rounding up. 0 when `whole` is 0."""
    if not whole:
        return 0
    value = Decimal(part) * 100 / Decimal(whole)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _round2(value) -> Optional[float]:
    if value is None:
        return None
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _with_percentages(buckets: List[DistributionBucket], whole: int) -> List[DistributionBucket]:
    for bucket in buckets:
        bucket.percentage = percent(bucket.count, whole)
    return buckets


def _numeric(result: QuestionAnalytics, answers: QuerySet) -> None:
    numbers = answers.filter(value_tag=AnswerTag.NUMBER, value_number__isnull=False)
    rows = numbers.values("value_number").annotate(count=Count("id")).order_by("value_number")
    buckets = []
    for row in rows:
        value = AnswerValue(AnswerTag.NUMBER, row["value_number"])
        buckets.append(DistributionBucket(value.to_primitive(), value.display(), row["count"]))
    result.distribution = _with_percentages(buckets, result.total_answers)

    stats = numbers.aggregate(avg=Avg("value_number"), low=Min("value_number"), high=Max("value_number"))
    result.average = _round2(stats["avg"])
    if stats["low"] is not None:
        result.min = AnswerValue(AnswerTag.NUMBER, stats["low"]).to_primitive()
        result.max = AnswerValue(AnswerTag.NUMBER, stats["high"]).to_primitive()


def _choice(result: QuestionAnalytics, answers: QuerySet) -> None:
    counts: Counter = Counter()
    tags = answers.values_list("value_tag", flat=True).distinct()
    for tag in set(tags):
        column = VALUE_FIELDS[tag]
        if tag == AnswerTag.JSON:
            # Count each picked option on its own
            for stored in answers.filter(value_tag=tag).values_list(column, flat=True):
                for item in AnswerValue(tag, stored).items:
                    counts[(AnswerTag.TEXT, item)] += 1
            continue
        rows = answers.filter(value_tag=tag).values(column).annotate(count=Count("id"))
        for row in rows:
            if row[column] is not None:
                counts[(tag, row[column])] += row["count"]

    buckets = []
    for (tag, raw), count in counts.items():
        value = AnswerValue(tag, raw)
        buckets.append(DistributionBucket(value.to_primitive(), value.display(), count))
    buckets.sort(key=lambda b: (-b.count, b.label))
    result.distribution = _with_percentages(buckets, result.total_answers)


def _samples(result: QuestionAnalytics, answers: QuerySet, limit: int) -> None:
    latest = answers.order_by("-response__completed_at", "-id")[:limit]
    result.samples = [AnswerValue.from_answer(a).display() for a in latest]


def analyze_question(question: Question, completed: int, sample_size: int) -> QuestionAnalytics:
    answers = SurveyAnswer.objects.filter(question=question, response__status=ResponseStatus.COMPLETED)
    result = QuestionAnalytics(
        question_id=question.id,
        text=question.text,
        question_type=question.question_type,
        category=question.category,
        order_index=question.order_index,
    )
    result.total_answers = answers.count()
    respondents = answers.aggregate(n=Count("response", distinct=True))["n"]
    result.response_rate = percent(respondents, completed)

    if question.category == QuestionCategory.NUMERIC:
        _numeric(result, answers)
    elif question.category == QuestionCategory.CHOICE:
        _choice(result, answers)
    else:
        _samples(result, answers, sample_size)
    return result


def _breakdown(responses: QuerySet, column: str) -> List[DistributionBucket]:
    rows = responses.values(column).annotate(count=Count("id")).order_by("-count", column)
    total = sum(row["count"] for row in rows)
    buckets = [
        DistributionBucket(row[column] or UNKNOWN_LABEL, row[column] or UNKNOWN_LABEL, row["count"])
        for row in rows
    ]
    return _with_percentages(buckets, total)


def _timeline(responses: QuerySet, now: datetime, days: int) -> List[TimelinePoint]:
    since = now - timedelta(days=days)
    rows = (
        responses.filter(completed_at__gte=since, completed_at__lte=now)
        .annotate(day=TruncDate("completed_at"))
        .values("day")
        .annotate(count=Count("id"))
        .order_by("-day")
    )
    return [TimelinePoint(row["day"], row["count"]) for row in rows]


def compute_analytics(survey_id: int, now: Optional[datetime] = None) -> AnalyticsReport:
    """
    Build the full analytics report for a survey.

    Raises:
        - NotFoundError for unknown or deleted surveys.
    """
    now = now or timezone.now()
    survey = Survey.objects.visible().filter(pk=survey_id).first()
    if survey is None:
        raise NotFoundError("Survey not found")

    sample_size = getattr(settings, "SURVEY_TEXT_SAMPLE_SIZE", 10)
    timeline_days = getattr(settings, "SURVEY_TIMELINE_DAYS", 30)

    responses = SurveyResponse.objects.filter(survey=survey)
    completed_qs = responses.filter(status=ResponseStatus.COMPLETED)
    avg_duration = completed_qs.filter(duration_seconds__isnull=False).aggregate(avg=Avg("duration_seconds"))["avg"]

    overview = Overview(
        survey_id=survey.id,
        title=survey.title,
        status=effective_status(survey, now),
        total_responses=survey.total_responses,
        completed_responses=survey.completed_responses,
        in_progress_responses=responses.filter(status=ResponseStatus.IN_PROGRESS).count(),
        completion_rate=percent(survey.completed_responses, survey.total_responses),
        average_duration_seconds=None if avg_duration is None else int(
            Decimal(avg_duration).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        ),
        total_views=survey.total_views,
    )

    questions = [
        analyze_question(q, survey.completed_responses, sample_size)
        for q in survey.questions.order_by("order_index", "id")
    ]

    report = AnalyticsReport(
        overview=overview,
        questions=questions,
        timeline=_timeline(completed_qs, now, timeline_days),
        devices=_breakdown(completed_qs, "device_type"),
        browsers=_breakdown(completed_qs, "browser"),
        generated_at=now,
    )
    logger.debug("Analytics computed", extra={"survey_id": survey.id, "questions": len(questions)})
    return report
