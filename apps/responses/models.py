from django.conf import settings
from django.db import models
from django.utils import timezone
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog
from apps.surveys.models import Survey, Question


class ResponseStatus(models.TextChoices):
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"


class AnswerTag(models.TextChoices):
    TEXT = "text", "Text"
    NUMBER = "number", "Number"
    BOOLEAN = "boolean", "Boolean"
    DATE = "date", "Date"
    TIME = "time", "Time"
    JSON = "json", "Structured"


class SurveyResponse(TimeStampedModel):
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="responses")
    employee = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="survey_responses"
    )
    respondent_name = models.CharField(max_length=255, blank=True, null=True)
    respondent_email = models.EmailField(blank=True, null=True)
    respondent_phone = models.CharField(max_length=64, blank=True, null=True)
    status = models.CharField(max_length=16, choices=ResponseStatus.choices, default=ResponseStatus.IN_PROGRESS)

    # Tracking metadata
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True, null=True)
    device_type = models.CharField(max_length=64, blank=True, null=True)
    browser = models.CharField(max_length=64, blank=True, null=True)
    os = models.CharField(max_length=64, blank=True, null=True)
    location = models.JSONField(blank=True, null=True)

    started_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(blank=True, null=True)
    duration_seconds = models.PositiveIntegerField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["survey", "status"], name="idx_response_survey_status"),
            models.Index(fields=["survey", "-completed_at"], name="idx_response_survey_time"),
            models.Index(fields=["survey", "respondent_email"], name="idx_response_survey_email"),
        ]

    def __str__(self):
        return f"response#{self.id} survey#{self.survey_id}"


class SurveyAnswer(TimeStampedModel):
    response = models.ForeignKey(SurveyResponse, on_delete=models.CASCADE, related_name="answers")
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name="answers")

    # Which slot below holds the value; derived from the question type at write time
    value_tag = models.CharField(max_length=16, choices=AnswerTag.choices)

    value_text = models.TextField(blank=True, null=True)
    value_number = models.DecimalField(max_digits=30, decimal_places=10, blank=True, null=True)
    value_boolean = models.BooleanField(blank=True, null=True)
    value_date = models.DateField(blank=True, null=True)
    value_time = models.TimeField(blank=True, null=True)
    value_json = models.JSONField(blank=True, null=True)

    class Meta:
        unique_together = ("response", "question")
        indexes = [
            models.Index(fields=["question"], name="idx_answer_question"),
        ]

    def __str__(self):
        return f"ans#{self.id} q#{self.question_id}"


# Register audit logging for responses models
auditlog.register(SurveyResponse)
auditlog.register(SurveyAnswer)
