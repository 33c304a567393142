from datetime import timedelta
from unittest import mock

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone

from apps.core.exceptions import (
    IneligibleError,
    InvalidTransitionError,
    NotFoundError,
    SurveyLockedError,
    ValidationError,
)
from apps.core.utility import generate_slug, generate_unique_slug, is_valid_slug
from apps.surveys import lifecycle, services
from apps.surveys.models import DurationType, Question, QuestionType, Survey, SurveyStatus, SurveyTargetEmployee, SurveyType
from apps.surveys.tasks import expire_overdue_surveys_task


def make_survey(**kwargs):
    defaults = {"title": "Survey", "slug": f"s-{Survey.objects.count() + 1}"}
    defaults.update(kwargs)
    return Survey.objects.create(**defaults)


class SlugTests(TestCase):
    def test_generate_slug_normalizes(self):
        self.assertEqual(generate_slug("Q1 Survey!!"), "q1-survey")
        self.assertEqual(generate_slug("  Hello__World -- 2024 "), "hello-world-2024")
        self.assertEqual(generate_slug("!!!"), "")

    def test_unique_slug_appends_random_suffix_on_collision(self):
        first = generate_unique_slug(Survey, "Q1 Survey!!")
        self.assertEqual(first, "q1-survey")
        make_survey(slug=first)

        with mock.patch("apps.core.utility.get_random_string", return_value="ab12cd"):
            second = generate_unique_slug(Survey, "Q1 Survey!!")
        self.assertEqual(second, "q1-survey-ab12cd")
        self.assertTrue(is_valid_slug(second))

    def test_unique_slug_falls_back_to_timestamp(self):
        make_survey(slug="q1-survey")
        make_survey(slug="q1-survey-aaaaaa")
        with mock.patch("apps.core.utility.get_random_string", return_value="aaaaaa") as rnd:
            slug = generate_unique_slug(Survey, "Q1 Survey")
        self.assertEqual(rnd.call_count, 10)
        self.assertTrue(slug.startswith("q1-survey-"))
        self.assertNotEqual(slug, "q1-survey-aaaaaa")
        self.assertTrue(is_valid_slug(slug))

    def test_empty_title_uses_placeholder_and_base_is_capped(self):
        self.assertEqual(generate_unique_slug(Survey, "???"), "survey")
        slug = generate_unique_slug(Survey, "word " * 30)
        self.assertLessEqual(len(slug), 40)
        self.assertFalse(slug.endswith("-"))


class LifecycleTests(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.survey = make_survey(
            status=SurveyStatus.ACTIVE,
            duration_type=DurationType.LIMITED,
            end_date=self.now - timedelta(days=1),
        )

    def test_effective_status_reports_expired_without_writing(self):
        for _ in range(3):
            self.assertEqual(lifecycle.effective_status(self.survey, self.now), SurveyStatus.EXPIRED)
        self.survey.refresh_from_db()
        self.assertEqual(self.survey.status, SurveyStatus.ACTIVE)

    def test_unlimited_or_open_ended_never_expires(self):
        unlimited = make_survey(status=SurveyStatus.ACTIVE, end_date=self.now - timedelta(days=3))
        self.assertFalse(lifecycle.is_expired(unlimited, self.now))
        no_end = make_survey(status=SurveyStatus.ACTIVE, duration_type=DurationType.LIMITED)
        self.assertEqual(lifecycle.effective_status(no_end, self.now), SurveyStatus.ACTIVE)

    def test_paused_survey_keeps_stored_status_when_overdue(self):
        self.survey.status = SurveyStatus.PAUSED
        self.assertEqual(lifecycle.effective_status(self.survey, self.now), SurveyStatus.PAUSED)

    def test_transitions(self):
        draft = make_survey()
        published = lifecycle.publish_survey(draft.id, now=self.now)
        self.assertEqual(published.status, SurveyStatus.ACTIVE)
        self.assertEqual(published.published_at, self.now)

        lifecycle.pause_survey(draft.id)
        lifecycle.publish_survey(draft.id)
        closed = lifecycle.close_survey(draft.id, now=self.now)
        self.assertIsNotNone(closed.closed_at)

        with self.assertRaises(InvalidTransitionError):
            lifecycle.publish_survey(draft.id)

        lifecycle.delete_survey(draft.id)
        with self.assertRaises(NotFoundError):
            lifecycle.close_survey(draft.id)

    def test_draft_cannot_be_paused(self):
        draft = make_survey()
        with self.assertRaises(InvalidTransitionError):
            lifecycle.pause_survey(draft.id)

    def test_ensure_editable(self):
        with self.assertRaises(SurveyLockedError):
            lifecycle.ensure_editable(self.survey)
        lifecycle.ensure_editable(make_survey(status=SurveyStatus.PAUSED))

    def test_expire_overdue_surveys_in_batches(self):
        for _ in range(4):
            make_survey(
                status=SurveyStatus.ACTIVE,
                duration_type=DurationType.LIMITED,
                end_date=self.now - timedelta(hours=1),
            )
        future = make_survey(
            status=SurveyStatus.ACTIVE,
            duration_type=DurationType.LIMITED,
            end_date=self.now + timedelta(days=1),
        )
        self.assertEqual(lifecycle.expire_overdue_surveys(now=self.now, batch_size=2), 5)
        self.assertEqual(Survey.objects.filter(status=SurveyStatus.EXPIRED).count(), 5)
        future.refresh_from_db()
        self.assertEqual(future.status, SurveyStatus.ACTIVE)
        self.assertEqual(lifecycle.expire_overdue_surveys(now=self.now), 0)

    def test_expiry_task(self):
        result = expire_overdue_surveys_task.apply(kwargs={"batch_size": 10})
        self.assertEqual(result.get(), 1)
        self.survey.refresh_from_db()
        self.assertEqual(self.survey.status, SurveyStatus.EXPIRED)


class SurveyServiceTests(TestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin", password="pass")
        self.employee = User.objects.create_user(username="emp", password="pass")

    def _create(self, **kwargs):
        params = {
            "created_by": self.admin,
            "title": "Team Pulse",
            "questions": [
                {"question_type": QuestionType.RATING, "text": "How was it?"},
                {"question_type": QuestionType.TEXT, "text": "Comments"},
            ],
        }
        params.update(kwargs)
        return services.create_survey(**params)

    def test_create_survey_builds_slug_questions_and_targets(self):
        survey = self._create(target_employee_ids=[self.employee.id])
        self.assertEqual(survey.slug, "team-pulse")
        self.assertEqual(survey.status, SurveyStatus.DRAFT)
        self.assertEqual(list(survey.questions.values_list("order_index", flat=True)), [0, 1])
        self.assertTrue(SurveyTargetEmployee.objects.filter(survey=survey, employee=self.employee).exists())

    def test_limited_survey_needs_valid_dates(self):
        with self.assertRaises(ValidationError):
            self._create(duration_type=DurationType.LIMITED)
        now = timezone.now()
        with self.assertRaises(ValidationError):
            self._create(duration_type=DurationType.LIMITED, start_date=now, end_date=now - timedelta(days=1))

    def test_choice_question_needs_options(self):
        survey = self._create()
        with self.assertRaises(ValidationError):
            services.create_question(survey.id, QuestionType.SINGLE_CHOICE, "Pick one")

    def test_active_survey_is_locked(self):
        survey = self._create()
        lifecycle.publish_survey(survey.id)
        with self.assertRaises(SurveyLockedError):
            services.update_survey(survey.id, title="Renamed")
        with self.assertRaises(SurveyLockedError):
            services.create_question(survey.id, QuestionType.TEXT, "Late question")

        lifecycle.pause_survey(survey.id)
        updated = services.update_survey(survey.id, title="Renamed")
        self.assertEqual(updated.title, "Renamed")

    def test_question_order_stays_dense(self):
        survey = self._create()
        inserted = services.create_question(survey.id, QuestionType.YES_NO, "Recommend?", order_index=0)
        self.assertEqual(inserted.order_index, 0)
        ordered = list(survey.questions.values_list("text", "order_index"))
        self.assertEqual(ordered, [("Recommend?", 0), ("How was it?", 1), ("Comments", 2)])

        services.delete_question(survey.id, inserted.id)
        self.assertEqual(list(survey.questions.values_list("order_index", flat=True)), [0, 1])

        ids = list(survey.questions.values_list("id", flat=True))
        services.reorder_questions(survey.id, list(reversed(ids)))
        self.assertEqual(list(survey.questions.values_list("id", flat=True)), list(reversed(ids)))

        with self.assertRaises(ValidationError):
            services.reorder_questions(survey.id, ids[:1])

    def test_set_targets_is_additive(self):
        survey = self._create(target_employee_ids=[self.employee.id])
        SurveyTargetEmployee.objects.filter(survey=survey).update(has_responded=True)
        other = User.objects.create_user(username="emp2", password="pass")

        added = services.set_target_employees(survey.id, [self.employee.id, other.id])
        self.assertEqual(added, 1)
        self.assertTrue(SurveyTargetEmployee.objects.get(survey=survey, employee=self.employee).has_responded)

    def test_duplicate_survey(self):
        survey = self._create()
        lifecycle.publish_survey(survey.id)
        copy = services.duplicate_survey(survey.id, created_by=self.admin)
        self.assertEqual(copy.title, "Team Pulse Copy")
        self.assertEqual(copy.slug, "team-pulse-copy")
        self.assertEqual(copy.status, SurveyStatus.DRAFT)
        self.assertEqual(copy.questions.count(), 2)

    def test_record_view_and_listing_skip_deleted(self):
        survey = self._create()
        services.record_view(survey.id)
        services.record_view(survey.id)
        survey.refresh_from_db()
        self.assertEqual(survey.total_views, 2)

        external = self._create(title="Customers", survey_type=SurveyType.EXTERNAL)
        lifecycle.delete_survey(external.id)
        items, total = services.list_surveys()
        self.assertEqual(total, 1)
        self.assertEqual(items[0].id, survey.id)
        with self.assertRaises(NotFoundError):
            services.get_survey(external.id)
        with self.assertRaises(NotFoundError):
            services.record_view(external.id)

    def test_password_is_stored_hashed_and_verified(self):
        survey = self._create(password="s3cret")
        self.assertTrue(survey.has_password)
        self.assertNotEqual(survey.password_hash, "s3cret")
        self.assertTrue(services.verify_survey_password(survey.id, "s3cret"))
        self.assertFalse(services.verify_survey_password(survey.id, "wrong"))
        with self.assertRaises(ValidationError):
            services.verify_survey_password(survey.id, "")

        copy = services.duplicate_survey(survey.id)
        self.assertTrue(services.verify_survey_password(copy.id, "s3cret"))

    def test_password_gate_withholds_questions(self):
        survey = self._create(password="s3cret")
        with self.assertRaises(IneligibleError) as ctx:
            services.survey_questions(survey.id)
        self.assertEqual(ctx.exception.code, "password_required")
        with self.assertRaises(IneligibleError):
            services.survey_questions(survey.id, "nope")
        texts = [q.text for q in services.survey_questions(survey.id, "s3cret")]
        self.assertEqual(texts, ["How was it?", "Comments"])

    def test_update_survey_replaces_or_clears_password(self):
        survey = self._create()
        with self.assertRaises(ValidationError):
            services.verify_survey_password(survey.id, "anything")
        self.assertEqual(len(services.survey_questions(survey.id)), 2)

        services.update_survey(survey.id, password="first")
        self.assertTrue(services.verify_survey_password(survey.id, "first"))
        services.update_survey(survey.id, password="second")
        self.assertFalse(services.verify_survey_password(survey.id, "first"))
        self.assertTrue(services.verify_survey_password(survey.id, "second"))

        services.update_survey(survey.id, password="")
        survey.refresh_from_db()
        self.assertFalse(survey.has_password)
        with self.assertRaises(ValidationError):
            services.update_survey(survey.id, password_hash="raw")

    def test_question_category(self):
        survey = self._create()
        q = Question.objects.get(survey=survey, order_index=0)
        self.assertEqual(q.category, "numeric")
