from datetime import date, timedelta
from decimal import Decimal
from unittest import mock

from django.contrib.auth.models import User
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from apps.core.exceptions import (
    EditingDisabledError,
    IneligibleError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from apps.responses import eligibility, services
from apps.responses.answers import AnswerValue
from apps.responses.models import AnswerTag, ResponseStatus, SurveyAnswer, SurveyResponse
from apps.responses.serializers import SurveyResponseReadSerializer
from apps.surveys.models import (
    DurationType,
    Question,
    QuestionType,
    Survey,
    SurveyStatus,
    SurveyTargetEmployee,
    SurveyType,
)


class AnswerValueTests(TestCase):
    def setUp(self):
        self.survey = Survey.objects.create(title="Tags", slug="tags")

    def _q(self, question_type, **kwargs):
        return Question(survey=self.survey, question_type=question_type, text=question_type, order_index=0, **kwargs)

    def test_tag_follows_question_type(self):
        self.assertEqual(AnswerValue.coerce(self._q(QuestionType.NPS), "7"), AnswerValue(AnswerTag.NUMBER, Decimal("7")))
        self.assertEqual(AnswerValue.coerce(self._q(QuestionType.YES_NO), "yes"), AnswerValue(AnswerTag.BOOLEAN, True))
        self.assertEqual(AnswerValue.coerce(self._q(QuestionType.DATE), "2024-05-01").value, date(2024, 5, 1))
        self.assertEqual(AnswerValue.coerce(self._q(QuestionType.FILE), {"name": "a.pdf"}).tag, AnswerTag.JSON)
        multi = AnswerValue.coerce(self._q(QuestionType.MULTIPLE_CHOICE), ["a", "b"])
        self.assertEqual(multi, AnswerValue(AnswerTag.JSON, ["a", "b"]))
        self.assertEqual(multi.items, ["a", "b"])
        self.assertEqual(multi.display(), "a, b")

    def test_invalid_values_are_rejected(self):
        with self.assertRaises(ValidationError):
            AnswerValue.coerce(self._q(QuestionType.NUMBER), "abc")
        with self.assertRaises(ValidationError):
            AnswerValue.coerce(self._q(QuestionType.YES_NO), "maybe")
        with self.assertRaises(ValidationError):
            AnswerValue.coerce(self._q(QuestionType.TIME), "25:99")

    def test_to_fields_populates_one_slot(self):
        fields = AnswerValue(AnswerTag.BOOLEAN, False).to_fields()
        self.assertEqual(fields, {"value_tag": AnswerTag.BOOLEAN, "value_boolean": False})
        self.assertEqual(AnswerValue(AnswerTag.BOOLEAN, False).display(), "No")
        self.assertEqual(AnswerValue(AnswerTag.NUMBER, Decimal("4.50")).display(), "4.5")


class SubmissionTestsMixin:
    def make_survey(self, **kwargs):
        defaults = {
            "title": "Pulse",
            "slug": f"pulse-{Survey.objects.count() + 1}",
            "status": SurveyStatus.ACTIVE,
            "survey_type": SurveyType.EXTERNAL,
        }
        defaults.update(kwargs)
        survey = Survey.objects.create(**defaults)
        self.rating = Question.objects.create(
            survey=survey, question_type=QuestionType.RATING, text="Score", order_index=0, is_required=True,
            validation_rules={"min": 1, "max": 5},
        )
        self.choice = Question.objects.create(
            survey=survey, question_type=QuestionType.SINGLE_CHOICE, text="Team", order_index=1,
            options={"choices": ["red", "blue"]},
        )
        self.comment = Question.objects.create(
            survey=survey, question_type=QuestionType.TEXTAREA, text="Why?", order_index=2,
            conditional_logic={"show_if": {"question_id": self.rating.id, "operator": "<", "value": 3}},
            is_required=True,
        )
        return survey


class ValidationTests(SubmissionTestsMixin, TestCase):
    def setUp(self):
        self.survey = self.make_survey()

    def test_required_answer_missing(self):
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.choice.id: "red"})

    def test_conditional_question_only_required_when_shown(self):
        services.submit_response(self.survey.id, {self.rating.id: 4})
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 2})
        services.submit_response(self.survey.id, {self.rating.id: 2, self.comment.id: "Too slow"})

    def test_bounds_and_choices(self):
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 9})
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 4, self.choice.id: "green"})

    def test_unknown_and_repeated_questions(self):
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 4, 999999: "x"})
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, [(self.rating.id, 4), (self.rating.id, 5)])

    def test_email_question_format(self):
        email_q = Question.objects.create(
            survey=self.survey, question_type=QuestionType.EMAIL, text="Email", order_index=3,
        )
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 4, email_q.id: "not-an-email"})
        services.submit_response(self.survey.id, {self.rating.id: 4, email_q.id: "a@example.com"})

    def test_answers_to_hidden_questions_are_dropped(self):
        response = services.submit_response(self.survey.id, {self.rating.id: 4, self.comment.id: "Stale"})
        self.assertEqual(list(response.answers.values_list("question_id", flat=True)), [self.rating.id])

    def test_show_if_in_and_contains(self):
        follow_up = Question.objects.create(
            survey=self.survey, question_type=QuestionType.TEXT, text="Which blue?", order_index=3,
            is_required=True,
            conditional_logic={"show_if": {"question_id": self.choice.id, "operator": "in", "value": ["blue"]}},
        )
        services.submit_response(self.survey.id, {self.rating.id: 4, self.choice.id: "red"})
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 4, self.choice.id: "blue"})
        services.submit_response(self.survey.id, {self.rating.id: 4, self.choice.id: "blue", follow_up.id: "Navy"})

        tags = Question.objects.create(
            survey=self.survey, question_type=QuestionType.MULTIPLE_CHOICE, text="Tags", order_index=4,
            options={"choices": ["fast", "cheap", "good"]},
        )
        praise = Question.objects.create(
            survey=self.survey, question_type=QuestionType.TEXT, text="What was good?", order_index=5,
            is_required=True,
            conditional_logic={"show_if": {"question_id": tags.id, "operator": "contains", "value": "good"}},
        )
        services.submit_response(self.survey.id, {self.rating.id: 4, tags.id: ["fast", "cheap"]})
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 4, tags.id: ["fast", "good"]})
        services.submit_response(self.survey.id, {self.rating.id: 4, tags.id: ["good"], praise.id: "All"})

    def test_multiple_choice_options_may_contain_commas(self):
        cities = Question.objects.create(
            survey=self.survey, question_type=QuestionType.MULTIPLE_CHOICE, text="Cities", order_index=3,
            options={"choices": ["Paris, France", "Rome"]},
        )
        response = services.submit_response(self.survey.id, {self.rating.id: 4, cities.id: ["Paris, France", "Rome"]})
        answer = response.answers.get(question=cities)
        self.assertEqual(answer.value_tag, AnswerTag.JSON)
        self.assertEqual(AnswerValue.from_answer(answer).items, ["Paris, France", "Rome"])
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 4, cities.id: ["Paris"]})

    def test_nothing_persisted_on_validation_failure(self):
        with self.assertRaises(ValidationError):
            services.submit_response(self.survey.id, {self.rating.id: 0})
        self.assertEqual(SurveyResponse.objects.count(), 0)
        self.assertEqual(SurveyAnswer.objects.count(), 0)


class EligibilityTests(SubmissionTestsMixin, TestCase):
    def test_acceptance_reasons(self):
        now = timezone.now()
        survey = self.make_survey(status=SurveyStatus.PAUSED)
        self.assertEqual(eligibility.acceptance_check(survey, now).code, "survey_paused")

        expired = self.make_survey(duration_type=DurationType.LIMITED, end_date=now - timedelta(minutes=1))
        result = eligibility.acceptance_check(expired, now)
        self.assertFalse(result.allowed)
        self.assertIn("expired", result.reason)
        self.assertTrue(eligibility.can_accept_responses(expired, now - timedelta(days=1)))

    def test_unknown_survey_not_found(self):
        with self.assertRaises(NotFoundError):
            eligibility.can_user_respond(123456)

    def test_max_responses_rejects_the_next_attempt(self):
        survey = self.make_survey(max_responses=3)
        for _ in range(3):
            services.submit_response(survey.id, {self.rating.id: 4})
        with self.assertRaises(IneligibleError) as ctx:
            services.submit_response(survey.id, {self.rating.id: 4})
        self.assertEqual(ctx.exception.code, "response_limit")
        survey.refresh_from_db()
        self.assertEqual(survey.total_responses, 3)

    def test_internal_targeting_and_duplicates(self):
        employee = User.objects.create_user(username="emp", password="pass")
        stranger = User.objects.create_user(username="other", password="pass")
        survey = self.make_survey(survey_type=SurveyType.INTERNAL)
        SurveyTargetEmployee.objects.create(survey=survey, employee=employee)

        self.assertFalse(eligibility.can_user_respond(survey.id, stranger.id).allowed)
        self.assertEqual(eligibility.can_user_respond(survey.id, None).code, "not_targeted")

        services.submit_response(survey.id, {self.rating.id: 5}, actor_id=employee.id)
        target = SurveyTargetEmployee.objects.get(survey=survey, employee=employee)
        self.assertTrue(target.has_responded)
        self.assertIsNotNone(target.responded_at)

        result = eligibility.can_user_respond(survey.id, employee.id)
        self.assertFalse(result.allowed)
        self.assertIn("already responded", result.reason)
        with self.assertRaises(IneligibleError):
            services.submit_response(survey.id, {self.rating.id: 5}, actor_id=employee.id)

    def test_internal_allow_multiple(self):
        employee = User.objects.create_user(username="emp", password="pass")
        survey = self.make_survey(survey_type=SurveyType.INTERNAL, allow_multiple=True)
        SurveyTargetEmployee.objects.create(survey=survey, employee=employee)
        services.submit_response(survey.id, {self.rating.id: 5}, actor_id=employee.id)
        services.submit_response(survey.id, {self.rating.id: 4}, actor_id=employee.id)
        survey.refresh_from_db()
        self.assertEqual(survey.completed_responses, 2)

    def test_external_duplicate_email(self):
        survey = self.make_survey()
        services.submit_response(survey.id, {self.rating.id: 4}, respondent={"email": "a@example.com"})
        with self.assertRaises(IneligibleError) as ctx:
            services.submit_response(survey.id, {self.rating.id: 4}, respondent={"email": "A@example.com"})
        self.assertEqual(ctx.exception.code, "duplicate_email")

        # Anonymous respondents are never treated as duplicates
        services.submit_response(survey.id, {self.rating.id: 4})
        services.submit_response(survey.id, {self.rating.id: 4})


class IngestionTests(SubmissionTestsMixin, TestCase):
    def setUp(self):
        self.survey = self.make_survey(track_ip=False, track_location=True)
        self.now = timezone.now()

    def test_submit_persists_tagged_answers_and_counters(self):
        response = services.submit_response(
            self.survey.id,
            {self.rating.id: "4", self.choice.id: "blue"},
            respondent={"name": "Ann", "email": "ann@example.com"},
            metadata={
                "ip_address": "10.0.0.1",
                "location": {"city": "Cairo"},
                "device_type": "mobile",
                "started_at": self.now - timedelta(seconds=90),
            },
            now=self.now,
        )
        self.assertEqual(response.status, ResponseStatus.COMPLETED)
        self.assertEqual(response.duration_seconds, 90)
        self.assertIsNone(response.ip_address)
        self.assertEqual(response.location, {"city": "Cairo"})
        self.assertEqual(response.respondent_name, "Ann")

        tags = dict(response.answers.values_list("question_id", "value_tag"))
        self.assertEqual(tags, {self.rating.id: AnswerTag.NUMBER, self.choice.id: AnswerTag.TEXT})
        self.survey.refresh_from_db()
        self.assertEqual((self.survey.total_responses, self.survey.completed_responses), (1, 1))

    def test_counters_track_rows_through_edits_and_deletes(self):
        first = services.submit_response(self.survey.id, {self.rating.id: 4})
        second = services.submit_response(self.survey.id, {self.rating.id: 5})
        SurveyResponse.objects.create(survey=self.survey)  # in progress
        services.recompute_survey_counters(self.survey.id)
        self.survey.refresh_from_db()
        self.assertEqual((self.survey.total_responses, self.survey.completed_responses), (3, 2))

        services.delete_response(first.id)
        self.survey.refresh_from_db()
        self.assertEqual((self.survey.total_responses, self.survey.completed_responses), (2, 1))

        self.assertEqual(services.bulk_delete_responses([second.id, 424242]), 1)
        self.survey.refresh_from_db()
        self.assertEqual((self.survey.total_responses, self.survey.completed_responses), (1, 0))
        self.assertLessEqual(self.survey.completed_responses, self.survey.total_responses)

    def _owned_response(self, allow_editing=True):
        employee = User.objects.create_user(username=f"emp{User.objects.count()}", password="pass")
        internal = self.make_survey(survey_type=SurveyType.INTERNAL, allow_editing=allow_editing)
        SurveyTargetEmployee.objects.create(survey=internal, employee=employee)
        response = services.submit_response(
            internal.id, {self.rating.id: 4, self.choice.id: "red"}, actor_id=employee.id,
        )
        return employee, response

    def test_update_replaces_all_answers(self):
        employee, response = self._owned_response()
        services.update_response(response.id, {self.rating.id: 5}, actor_id=employee.id)
        values = {a.question_id: AnswerValue.from_answer(a).value for a in response.answers.all()}
        self.assertEqual(values, {self.rating.id: Decimal("5")})

    def test_update_requires_editing_and_ownership(self):
        employee, locked = self._owned_response(allow_editing=False)
        with self.assertRaises(EditingDisabledError):
            services.update_response(locked.id, {self.rating.id: 5}, actor_id=employee.id)

        employee, owned = self._owned_response()
        with self.assertRaises(NotFoundError):
            services.update_response(owned.id, {self.rating.id: 5}, actor_id=employee.id + 100)
        with self.assertRaises(NotFoundError):
            services.update_response(owned.id, {self.rating.id: 5})
        services.update_response(owned.id, {self.rating.id: 5}, actor_id=employee.id)

    def test_external_response_cannot_be_edited_by_anyone(self):
        self.survey.allow_editing = True
        self.survey.save()
        stranger = User.objects.create_user(username="stranger", password="pass")
        response = services.submit_response(
            self.survey.id, {self.rating.id: 4}, respondent={"email": "owner@example.com"},
        )
        for actor_id in (stranger.id, None):
            with self.assertRaises(NotFoundError):
                services.update_response(response.id, {self.rating.id: 1}, actor_id=actor_id)
        answer = response.answers.get()
        self.assertEqual(AnswerValue.from_answer(answer).value, Decimal("4"))

    def test_database_error_rolls_back(self):
        with mock.patch.object(services, "recompute_survey_counters", side_effect=DatabaseError("boom")):
            with self.assertRaises(PersistenceError):
                services.submit_response(self.survey.id, {self.rating.id: 4})
        self.assertEqual(SurveyResponse.objects.count(), 0)
        self.assertEqual(SurveyAnswer.objects.count(), 0)

    def test_deleted_survey_rejects_submission(self):
        self.survey.status = SurveyStatus.DELETED
        self.survey.save()
        with self.assertRaises(NotFoundError):
            services.submit_response(self.survey.id, {self.rating.id: 4})

    def test_list_responses_filters_and_pages(self):
        for score in (3, 4, 5):
            services.submit_response(self.survey.id, {self.rating.id: score})
        SurveyResponse.objects.create(survey=self.survey)
        items, total = services.list_responses(self.survey.id, status=ResponseStatus.COMPLETED, page_size=2)
        self.assertEqual(total, 3)
        self.assertEqual(len(items), 2)
        with self.assertRaises(ValidationError):
            services.list_responses(self.survey.id, status="bogus")


class PayloadTests(SubmissionTestsMixin, TestCase):
    def test_submission_from_payload(self):
        survey = self.make_survey()
        submission = services.submission_from_payload({
            "survey_id": survey.id,
            "answers": [{"question_id": self.rating.id, "value": 4}],
            "respondent": {"email": "x@example.com"},
            "metadata": {"browser": "Firefox"},
        })
        self.assertEqual(submission.survey_id, survey.id)
        self.assertEqual(submission.answers, [(self.rating.id, 4)])
        response = services.submit_response(
            submission.survey_id, submission.answers,
            respondent=submission.respondent, metadata=submission.metadata,
        )
        self.assertEqual(response.browser, "Firefox")

    def test_invalid_payload(self):
        with self.assertRaises(ValidationError):
            services.submission_from_payload({"answers": [{"question_id": "x"}]})

    def test_update_from_payload(self):
        self.make_survey()
        pairs = services.update_from_payload({"answers": [{"question_id": self.rating.id, "value": 5}]})
        self.assertEqual(pairs, [(self.rating.id, 5)])
        with self.assertRaises(ValidationError):
            services.update_from_payload({
                "answers": [{"question_id": self.rating.id, "value": 5}, {"question_id": self.rating.id, "value": 4}],
            })
        with self.assertRaises(ValidationError):
            services.update_from_payload({})

    def test_read_serializer_renders_tagged_values(self):
        survey = self.make_survey()
        tags = Question.objects.create(
            survey=survey, question_type=QuestionType.MULTIPLE_CHOICE, text="Tags", order_index=3,
            options={"choices": ["fast", "good"]},
        )
        response = services.submit_response(
            survey.id, {self.rating.id: 4, tags.id: ["fast", "good"]}, respondent={"name": "Ann"},
        )
        data = SurveyResponseReadSerializer(response).data
        self.assertEqual(data["respondent_name"], "Ann")
        self.assertEqual(data["status"], ResponseStatus.COMPLETED)
        answers = {a["question"]: a for a in data["answers"]}
        self.assertEqual(answers[self.rating.id]["value"], 4)
        self.assertEqual(answers[self.rating.id]["value_tag"], AnswerTag.NUMBER)
        self.assertEqual(answers[tags.id]["value"], ["fast", "good"])
        self.assertEqual(answers[tags.id]["display"], "fast, good")
