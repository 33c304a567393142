import csv
import io
from datetime import date, timedelta

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone

from apps.exports.services import (
    BASE_HEADERS,
    EXTERNAL_HEADERS,
    export_delimited,
    export_report,
    export_spreadsheet,
    export_summary,
)
from apps.responses.services import submit_response
from apps.surveys.lifecycle import delete_survey
from apps.surveys.models import (
    DurationType,
    Question,
    QuestionType,
    Survey,
    SurveyStatus,
    SurveyTargetEmployee,
    SurveyType,
)


def parse_block(text):
    """Rows of the first survey block: header comments, blank row, header, data."""
    return list(csv.reader(io.StringIO(text)))


class ExportTests(TestCase):
    def setUp(self):
        self.survey = Survey.objects.create(
            title="Customer, \"Voice\"", slug="customer-voice", status=SurveyStatus.ACTIVE,
            survey_type=SurveyType.EXTERNAL, allow_multiple=True,
        )
        # Created out of order on purpose; columns follow order_index
        self.likes = Question.objects.create(
            survey=self.survey, question_type=QuestionType.YES_NO, text="Would buy again", order_index=2,
        )
        self.score = Question.objects.create(
            survey=self.survey, question_type=QuestionType.NPS, text="Score", order_index=0,
        )
        self.when = Question.objects.create(
            survey=self.survey, question_type=QuestionType.DATE, text="Visit date", order_index=1,
        )
        self.extra = Question.objects.create(
            survey=self.survey, question_type=QuestionType.FILE, text="Attachment", order_index=3,
        )

    def _fill(self):
        submit_response(self.survey.id, {self.score.id: 9, self.likes.id: True},
                        respondent={"name": "Ann", "email": "ann@example.com"})
        submit_response(self.survey.id, {self.when.id: "2024-03-05"})
        submit_response(self.survey.id, {self.extra.id: {"name": "a.pdf"}, self.likes.id: False})

    def test_round_trip_keeps_columns_stable(self):
        self._fill()
        rows = parse_block(export_delimited([self.survey.id]))

        self.assertEqual(rows[0], ['Survey: Customer, "Voice"'])
        self.assertEqual(rows[4], ["Total Responses: 3"])
        self.assertEqual(rows[5], [])
        header = rows[6]
        prefix = len(BASE_HEADERS) + len(EXTERNAL_HEADERS)
        self.assertEqual(header[prefix:], ["Score", "Visit date", "Would buy again", "Attachment"])

        data = rows[7:]
        self.assertEqual(len(data), 3)
        self.assertTrue(all(len(r) == prefix + 4 for r in data))

        by_name = {r[3]: r for r in data}
        self.assertEqual(by_name["Ann"][prefix:], ["9", "", "Yes", ""])
        last = [r for r in data if r[prefix + 3]][0]
        self.assertEqual(last[prefix + 2], "No")
        self.assertEqual(last[prefix + 3], '{"name": "a.pdf"}')

    def test_every_cell_is_quoted(self):
        self._fill()
        text = export_delimited([self.survey.id])
        for line in text.splitlines():
            if line:
                self.assertTrue(line.startswith('"') and line.endswith('"'))

    def test_spreadsheet_has_bom_and_same_content(self):
        self._fill()
        data = export_spreadsheet([self.survey.id])
        self.assertTrue(data.startswith(b"\xef\xbb\xbf"))
        self.assertEqual(data.decode("utf-8")[1:], export_delimited([self.survey.id]))

    def test_unknown_and_deleted_surveys_are_skipped(self):
        other = Survey.objects.create(title="Gone", slug="gone")
        delete_survey(other.id)
        text = export_delimited([other.id, 55555, self.survey.id])
        self.assertEqual(sum(1 for r in parse_block(text) if r and r[0].startswith("Survey:")), 1)
        self.assertEqual(export_delimited([55555]), "")

    def test_multiple_surveys_are_separated(self):
        second = Survey.objects.create(title="Second", slug="second")
        text = export_delimited([self.survey.id, second.id])
        titles = [r[0] for r in parse_block(text) if r and r[0].startswith("Survey:")]
        self.assertEqual(titles, ['Survey: Customer, "Voice"', "Survey: Second"])

    def test_internal_columns_use_employee(self):
        employee = User.objects.create_user(username="emp", password="p", first_name="Eve", last_name="Stone",
                                            email="eve@example.com")
        internal = Survey.objects.create(title="Staff", slug="staff", status=SurveyStatus.ACTIVE)
        q = Question.objects.create(survey=internal, question_type=QuestionType.TEXT, text="Idea", order_index=0)
        SurveyTargetEmployee.objects.create(survey=internal, employee=employee)
        submit_response(internal.id, {q.id: "More coffee"}, actor_id=employee.id)

        rows = parse_block(export_delimited([internal.id]))
        self.assertEqual(rows[6], ["Response ID", "Submitted At", "Duration (seconds)",
                                   "Employee Name", "Employee Email", "Idea"])
        self.assertEqual(rows[7][3:], ["Eve Stone", "eve@example.com", "More coffee"])

    def test_anonymous_internal_survey_blanks_employee(self):
        employee = User.objects.create_user(username="anon", password="p", first_name="Eve", email="eve@example.com")
        internal = Survey.objects.create(title="Candid", slug="candid", status=SurveyStatus.ACTIVE, is_anonymous=True)
        q = Question.objects.create(survey=internal, question_type=QuestionType.TEXT, text="Idea", order_index=0)
        SurveyTargetEmployee.objects.create(survey=internal, employee=employee)
        submit_response(internal.id, {q.id: "Fewer meetings"}, actor_id=employee.id)

        rows = parse_block(export_delimited([internal.id]))
        self.assertEqual(rows[7][3:], ["", "", "Fewer meetings"])
        html = export_report([internal.id])
        self.assertIn("<td>Anonymous</td>", html)
        self.assertNotIn("eve@example.com", html)

    def test_time_and_multi_select_cells(self):
        at = Question.objects.create(
            survey=self.survey, question_type=QuestionType.TIME, text="Arrival", order_index=4,
        )
        cities = Question.objects.create(
            survey=self.survey, question_type=QuestionType.MULTIPLE_CHOICE, text="Cities", order_index=5,
            options={"choices": ["Paris, France", "Rome"]},
        )
        submit_response(self.survey.id, {at.id: "09:30:15", cities.id: ["Paris, France", "Rome"]})
        rows = parse_block(export_delimited([self.survey.id]))
        prefix = len(BASE_HEADERS) + len(EXTERNAL_HEADERS)
        self.assertEqual(rows[7][prefix + 4:], ["09:30", "Paris, France, Rome"])

    def test_overdue_survey_exports_as_expired(self):
        self.survey.duration_type = DurationType.LIMITED
        self.survey.end_date = timezone.now() - timedelta(days=1)
        self.survey.save()
        rows = parse_block(export_delimited([self.survey.id]))
        self.assertEqual(rows[2], ["Status: expired"])
        self.assertIn("<strong>Status:</strong> expired", export_report([self.survey.id]))

    def test_report_renders_placeholders(self):
        self._fill()
        second = Survey.objects.create(title="Second", slug="second")
        html = export_report([self.survey.id, second.id])
        self.assertIn("Survey: Customer, &quot;Voice&quot;", html)
        self.assertIn("<td>Anonymous</td>", html)
        self.assertIn("<td>-</td>", html)
        self.assertIn("Completion Rate:</strong> 100%", html)
        self.assertEqual(html.count('class="page-break"'), 1)
        self.assertIn("No responses yet.", html)

    def test_summary(self):
        self._fill()
        summary = export_summary([self.survey.id, 31337])
        self.assertEqual(summary["total_surveys"], 1)
        self.assertEqual(summary["total_responses"], 3)
        self.assertEqual(summary["surveys"][0]["question_count"], 4)

    def test_date_cells_use_short_format(self):
        submit_response(self.survey.id, {self.when.id: date(2024, 3, 5)})
        rows = parse_block(export_delimited([self.survey.id]))
        cell = rows[7][len(BASE_HEADERS) + len(EXTERNAL_HEADERS) + 1]
        self.assertIn("2024", cell)
