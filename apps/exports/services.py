"""
Survey exports: delimited text, spreadsheet-ready bytes and a printable
HTML report. All three share one fetch and one column layout: a fixed
prefix followed by one column per question in `order_index` order, with an
empty cell wherever a respondent skipped a question.
"""
from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Dict, Iterable, List, Optional, Sequence

from django.conf import settings
from django.db.models import Count
from django.template.loader import render_to_string
from django.utils import formats, timezone

from apps.analytics.services import percent
from apps.responses.answers import AnswerValue, format_number
from apps.responses.models import AnswerTag, ResponseStatus, SurveyAnswer, SurveyResponse
from apps.surveys.lifecycle import effective_status
from apps.surveys.models import Question, Survey, SurveyType

logger = logging.getLogger(__name__)

BOM = "\ufeff"
REPORT_TEMPLATE = "exports/report.html"
REPORT_PLACEHOLDER = "-"

BASE_HEADERS = ["Response ID", "Submitted At", "Duration (seconds)"]
INTERNAL_HEADERS = ["Employee Name", "Employee Email"]
EXTERNAL_HEADERS = ["Respondent Name", "Respondent Email", "Respondent Phone"]


@dataclass
class SurveyExport:
    survey: Survey
    questions: List[Question]
    responses: List[SurveyResponse]
    answers: Dict[int, Dict[int, SurveyAnswer]]  # response id -> question id -> answer

    @property
    def is_internal(self) -> bool:
        return self.survey.survey_type == SurveyType.INTERNAL

    def answer_for(self, response: SurveyResponse, question: Question) -> Optional[SurveyAnswer]:
        return self.answers.get(response.id, {}).get(question.id)


def _ordered_unique(survey_ids: Iterable[int]) -> List[int]:
    seen, ordered = set(), []
    for sid in survey_ids:
        sid = int(sid)
        if sid not in seen:
            seen.add(sid)
            ordered.append(sid)
    return ordered


def collect(survey_ids: Iterable[int]) -> List[SurveyExport]:
    """Load surveys in the requested order; unknown or deleted ids are skipped."""
    ids = _ordered_unique(survey_ids)
    surveys = {s.id: s for s in Survey.objects.visible().filter(pk__in=ids)}
    result = []
    for sid in ids:
        survey = surveys.get(sid)
        if survey is None:
            logger.info("Export skipped unknown survey", extra={"survey_id": sid})
            continue

        questions = list(survey.questions.order_by("order_index", "id"))
        responses = list(
            SurveyResponse.objects.filter(survey=survey, status=ResponseStatus.COMPLETED)
            .select_related("employee")
            .prefetch_related("answers")
            .order_by("-completed_at", "-id")
        )
        answers = {r.id: {a.question_id: a for a in r.answers.all()} for r in responses}
        result.append(SurveyExport(survey, questions, responses, answers))
    return result


def format_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return formats.date_format(value, "SHORT_DATETIME_FORMAT")


def format_answer(answer: Optional[SurveyAnswer]) -> str:
    """Text for one answer cell, chosen by the stored tag."""
    if answer is None:
        return ""
    value = AnswerValue.from_answer(answer)
    if value.value is None:
        return ""
    if value.tag == AnswerTag.BOOLEAN:
        return "Yes" if value.value else "No"
    if value.tag == AnswerTag.DATE:
        return formats.date_format(value.value, "SHORT_DATE_FORMAT")
    if value.tag == AnswerTag.TIME:
        return value.value.isoformat(timespec="minutes") if isinstance(value.value, time) else str(value.value)
    if value.tag == AnswerTag.NUMBER:
        return format_number(value.value)
    if value.tag == AnswerTag.JSON:
        return value.display()
    return str(value.value)


def _person(response: SurveyResponse) -> Dict[str, str]:
    employee = response.employee
    name = ""
    email = ""
    if employee is not None:
        name = employee.get_full_name() or employee.get_username()
        email = employee.email or ""
    return {
        "employee_name": name,
        "employee_email": email,
        "respondent_name": response.respondent_name or "",
        "respondent_email": response.respondent_email or "",
        "respondent_phone": response.respondent_phone or "",
    }


def header_row(export: SurveyExport) -> List[str]:
    extra = INTERNAL_HEADERS if export.is_internal else EXTERNAL_HEADERS
    return BASE_HEADERS + extra + [q.text for q in export.questions]


def response_row(export: SurveyExport, response: SurveyResponse) -> List[str]:
    person = _person(response)
    if export.is_internal and export.survey.is_anonymous:
        identity = ["", ""]
    elif export.is_internal:
        identity = [person["employee_name"], person["employee_email"]]
    else:
        identity = [person["respondent_name"], person["respondent_email"], person["respondent_phone"]]
    row = [
        str(response.id),
        format_datetime(response.completed_at),
        "" if response.duration_seconds is None else str(response.duration_seconds),
    ]
    return row + identity + [format_answer(export.answer_for(response, q)) for q in export.questions]


def _write_block(writer, export: SurveyExport) -> None:
    survey = export.survey
    writer.writerow([f"Survey: {survey.title}"])
    writer.writerow([f"Type: {survey.survey_type}"])
    writer.writerow([f"Status: {effective_status(survey)}"])
    writer.writerow([f"Created: {format_datetime(survey.created_at)}"])
    writer.writerow([f"Total Responses: {len(export.responses)}"])
    writer.writerow([])
    writer.writerow(header_row(export))
    for response in export.responses:
        writer.writerow(response_row(export, response))


def export_delimited(survey_ids: Iterable[int]) -> str:
    """
    CSV text, one block per survey separated by two blank rows. Every cell
    is quoted.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    exports = collect(survey_ids)
    for index, export in enumerate(exports):
        if index:
            writer.writerow([])
            writer.writerow([])
        _write_block(writer, export)
    logger.info("Delimited export built", extra={"surveys": len(exports)})
    return buffer.getvalue()


def export_spreadsheet(survey_ids: Iterable[int]) -> bytes:
    """The delimited export as UTF-8 bytes behind a byte-order mark, for spreadsheet tools."""
    return (BOM + export_delimited(survey_ids)).encode("utf-8")


def export_report(survey_ids: Iterable[int], now: Optional[datetime] = None) -> str:
    """Printable HTML report, one section per survey with a page break between them."""
    now = now or timezone.now()
    sections = []
    for export in collect(survey_ids):
        survey = export.survey
        rows = []
        for response in export.responses:
            person = _person(response)
            if export.is_internal:
                who = "Anonymous" if survey.is_anonymous else (person["employee_name"] or "Unknown")
            else:
                who = person["respondent_name"] or "Anonymous"
            cells = [format_answer(export.answer_for(response, q)) or REPORT_PLACEHOLDER for q in export.questions]
            rows.append({"submitted": format_datetime(response.completed_at), "who": who, "cells": cells})

        sections.append({
            "survey": survey,
            "type_label": survey.get_survey_type_display(),
            "status": effective_status(survey, now),
            "created": format_datetime(survey.created_at),
            "total": len(export.responses),
            "completion_rate": percent(survey.completed_responses, survey.total_responses),
            "who_header": "Employee" if export.is_internal else "Respondent",
            "questions": [q.text for q in export.questions],
            "rows": rows,
        })

    html = render_to_string(REPORT_TEMPLATE, {
        "title": getattr(settings, "SURVEY_EXPORT_TITLE", "Survey Export Report"),
        "generated_at": format_datetime(now),
        "sections": sections,
    })
    logger.info("Report export built", extra={"surveys": len(sections)})
    return html


def export_summary(survey_ids: Sequence[int]) -> Dict[str, object]:
    """Counts for an export request: per-survey responses/questions and totals."""
    ids = _ordered_unique(survey_ids)
    surveys = (
        Survey.objects.visible()
        .filter(pk__in=ids)
        .annotate(question_count=Count("questions", distinct=True))
    )
    by_id = {s.id: s for s in surveys}
    rows = []
    for sid in ids:
        survey = by_id.get(sid)
        if survey is None:
            continue
        rows.append({
            "id": survey.id,
            "title": survey.title,
            "total_responses": survey.total_responses,
            "completed_responses": survey.completed_responses,
            "question_count": survey.question_count,
        })
    return {
        "total_surveys": len(rows),
        "total_responses": sum(r["completed_responses"] for r in rows),
        "total_questions": sum(r["question_count"] for r in rows),
        "surveys": rows,
    }
