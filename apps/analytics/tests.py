from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from apps.analytics.serializers import AnalyticsReportSerializer
from apps.analytics.services import compute_analytics, percent
from apps.core.exceptions import NotFoundError
from apps.responses.models import SurveyResponse
from apps.responses.services import recompute_survey_counters, submit_response
from apps.surveys.models import Question, QuestionType, Survey, SurveyStatus, SurveyType


class AnalyticsTests(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.survey = Survey.objects.create(
            title="Quarterly", slug="quarterly", status=SurveyStatus.ACTIVE,
            survey_type=SurveyType.EXTERNAL, allow_multiple=True,
        )
        self.score = Question.objects.create(
            survey=self.survey, question_type=QuestionType.RATING, text="Score", order_index=0,
        )
        self.fruit = Question.objects.create(
            survey=self.survey, question_type=QuestionType.SINGLE_CHOICE, text="Fruit", order_index=1,
            options={"choices": ["apple", "pear"]},
        )
        self.recommend = Question.objects.create(
            survey=self.survey, question_type=QuestionType.YES_NO, text="Recommend?", order_index=2,
        )
        self.notes = Question.objects.create(
            survey=self.survey, question_type=QuestionType.TEXT, text="Notes", order_index=3,
        )

    def _submit(self, answers, minutes_ago=0, **metadata):
        when = self.now - timedelta(minutes=minutes_ago)
        return submit_response(self.survey.id, answers, metadata=metadata, now=when)

    def test_numeric_distribution_and_average(self):
        for value in (3, 5, 5, 4):
            self._submit({self.score.id: value})
        report = compute_analytics(self.survey.id, now=self.now)
        score = report.questions[0]
        self.assertEqual(score.average, 4.25)
        self.assertEqual([(b.value, b.count) for b in score.distribution], [(3, 1), (4, 1), (5, 2)])
        self.assertEqual((score.min, score.max), (3, 5))
        self.assertEqual(score.response_rate, 100)

    def test_choice_distribution_most_common_first(self):
        self._submit({self.fruit.id: "pear", self.recommend.id: True})
        self._submit({self.fruit.id: "apple", self.recommend.id: False})
        self._submit({self.fruit.id: "pear", self.recommend.id: "yes"})
        report = compute_analytics(self.survey.id, now=self.now)
        fruit = report.questions[1]
        self.assertEqual([(b.value, b.count) for b in fruit.distribution], [("pear", 2), ("apple", 1)])
        self.assertEqual(fruit.distribution[0].percentage, 67)
        recommend = report.questions[2]
        self.assertEqual([(b.label, b.count) for b in recommend.distribution], [("Yes", 2), ("No", 1)])

    def test_multiple_choice_counts_each_option(self):
        cities = Question.objects.create(
            survey=self.survey, question_type=QuestionType.MULTIPLE_CHOICE, text="Cities", order_index=4,
            options={"choices": ["Paris, France", "Rome", "Oslo"]},
        )
        self._submit({cities.id: ["Paris, France", "Rome"]})
        self._submit({cities.id: ["Paris, France"]})
        self._submit({self.score.id: 3})
        result = compute_analytics(self.survey.id, now=self.now).questions[4]
        self.assertEqual(result.total_answers, 2)
        self.assertEqual(result.response_rate, 67)
        self.assertEqual(
            [(b.value, b.count, b.percentage) for b in result.distribution],
            [("Paris, France", 2, 100), ("Rome", 1, 50)],
        )

    def test_text_samples_newest_first(self):
        for i in range(12):
            self._submit({self.notes.id: f"note {i}"}, minutes_ago=100 - i)
        notes = compute_analytics(self.survey.id, now=self.now).questions[3]
        self.assertEqual(len(notes.samples), 10)
        self.assertEqual(notes.samples[0], "note 11")
        self.assertEqual(notes.distribution, [])

    def test_overview_rates_and_guards(self):
        empty = compute_analytics(self.survey.id, now=self.now)
        self.assertEqual(empty.overview.completion_rate, 0)
        self.assertEqual(empty.questions[0].response_rate, 0)
        self.assertIsNone(empty.overview.average_duration_seconds)

        self._submit({self.score.id: 4}, started_at=self.now - timedelta(seconds=60))
        self._submit({self.fruit.id: "apple"}, started_at=self.now - timedelta(seconds=121))
        SurveyResponse.objects.create(survey=self.survey)
        recompute_survey_counters(self.survey.id)

        report = compute_analytics(self.survey.id, now=self.now)
        self.assertEqual(report.overview.total_responses, 3)
        self.assertEqual(report.overview.completed_responses, 2)
        self.assertEqual(report.overview.in_progress_responses, 1)
        self.assertEqual(report.overview.completion_rate, 67)
        self.assertEqual(report.overview.average_duration_seconds, 91)
        self.assertEqual(report.questions[0].response_rate, 50)

    def test_timeline_and_demographics(self):
        self._submit({self.score.id: 4}, device_type="mobile", browser="Chrome")
        self._submit({self.score.id: 4}, minutes_ago=2 * 24 * 60, device_type="mobile", browser="Safari")
        self._submit({self.score.id: 4}, minutes_ago=40 * 24 * 60, device_type="desktop")
        report = compute_analytics(self.survey.id, now=self.now)

        self.assertEqual(sum(p.count for p in report.timeline), 2)
        self.assertGreater(report.timeline[0].date, report.timeline[-1].date)
        self.assertEqual([(b.label, b.count) for b in report.devices], [("mobile", 2), ("desktop", 1)])
        self.assertEqual(sorted(b.label for b in report.browsers), ["Chrome", "Safari", "unknown"])

    def test_serializer_renders_primitives(self):
        self._submit({self.score.id: 5, self.recommend.id: True})
        data = AnalyticsReportSerializer(compute_analytics(self.survey.id, now=self.now)).data
        self.assertEqual(data["overview"]["completed_responses"], 1)
        self.assertEqual(data["questions"][0]["distribution"][0]["value"], 5)
        self.assertEqual(data["questions"][2]["distribution"][0]["value"], True)

    def test_unknown_survey(self):
        with self.assertRaises(NotFoundError):
            compute_analytics(987654)

    def test_percent_rounds_half_up(self):
        self.assertEqual(percent(1, 8), 13)
        self.assertEqual(percent(2, 3), 67)
        self.assertEqual(percent(5, 0), 0)
