from django.conf import settings
from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog


class SurveyType(models.TextChoices):
    INTERNAL = "internal", "Internal"
    EXTERNAL = "external", "External"


class DurationType(models.TextChoices):
    LIMITED = "limited", "Limited"
    UNLIMITED = "unlimited", "Unlimited"


class SurveyStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    ACTIVE = "active", "Active"
    PAUSED = "paused", "Paused"
    CLOSED = "closed", "Closed"
    EXPIRED = "expired", "Expired"
    DELETED = "deleted", "Deleted"


class QuestionType(models.TextChoices):
    RATING = "rating", "Rating"
    NPS = "nps", "Net Promoter Score"
    SLIDER = "slider", "Slider"
    NUMBER = "number", "Number"
    SINGLE_CHOICE = "single_choice", "Single choice"
    MULTIPLE_CHOICE = "multiple_choice", "Multiple choice"
    DROPDOWN = "dropdown", "Dropdown"
    YES_NO = "yes_no", "Yes / No"
    TEXT = "text", "Text"
    TEXTAREA = "textarea", "Text area"
    EMAIL = "email", "Email"
    PHONE = "phone", "Phone"
    URL = "url", "URL"
    DATE = "date", "Date"
    TIME = "time", "Time"
    FILE = "file", "File"


class QuestionCategory(models.TextChoices):
    NUMERIC = "numeric", "Numeric"
    CHOICE = "choice", "Choice"
    TEXT = "text", "Text"
    OTHER = "other", "Other"


NUMERIC_TYPES = frozenset({QuestionType.RATING, QuestionType.NPS, QuestionType.SLIDER, QuestionType.NUMBER})
CHOICE_TYPES = frozenset({
    QuestionType.SINGLE_CHOICE, QuestionType.MULTIPLE_CHOICE, QuestionType.DROPDOWN, QuestionType.YES_NO,
})
TEXT_TYPES = frozenset({
    QuestionType.TEXT, QuestionType.TEXTAREA, QuestionType.EMAIL, QuestionType.PHONE, QuestionType.URL,
})


def category_for(question_type: str) -> str:
    if question_type in NUMERIC_TYPES:
        return QuestionCategory.NUMERIC
    if question_type in CHOICE_TYPES:
        return QuestionCategory.CHOICE
    if question_type in TEXT_TYPES:
        return QuestionCategory.TEXT
    return QuestionCategory.OTHER


class SurveyQuerySet(models.QuerySet):
    def visible(self):
        return self.exclude(status=SurveyStatus.DELETED)

    def overdue(self, now):
        """Stored as active but past a limited end date."""
        return self.filter(
            status=SurveyStatus.ACTIVE,
            duration_type=DurationType.LIMITED,
            end_date__isnull=False,
            end_date__lt=now,
        )


class Survey(TimeStampedModel):
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_surveys"
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, null=True)
    welcome_message = models.TextField(blank=True, null=True)
    thank_you_message = models.TextField(blank=True, null=True)

    survey_type = models.CharField(max_length=16, choices=SurveyType.choices, default=SurveyType.INTERNAL)
    client_name = models.CharField(max_length=255, blank=True, null=True)
    client_company = models.CharField(max_length=255, blank=True, null=True)
    target_department = models.CharField(max_length=255, blank=True, null=True)

    duration_type = models.CharField(max_length=16, choices=DurationType.choices, default=DurationType.UNLIMITED)
    start_date = models.DateTimeField(blank=True, null=True)
    end_date = models.DateTimeField(blank=True, null=True)

    status = models.CharField(max_length=16, choices=SurveyStatus.choices, default=SurveyStatus.DRAFT)
    slug = models.SlugField(max_length=50, unique=True)
    password_hash = models.CharField(max_length=128, blank=True, null=True)

    max_responses = models.PositiveIntegerField(blank=True, null=True)
    is_anonymous = models.BooleanField(default=False)
    allow_multiple = models.BooleanField(default=False)
    allow_editing = models.BooleanField(default=False)
    show_progress_bar = models.BooleanField(default=True)
    track_ip = models.BooleanField(default=False)
    track_location = models.BooleanField(default=False)
    redirect_url = models.URLField(blank=True, null=True)

    published_at = models.DateTimeField(blank=True, null=True)
    closed_at = models.DateTimeField(blank=True, null=True)

    # Materialized from response rows; see apps.responses.services.recompute_survey_counters
    total_responses = models.PositiveIntegerField(default=0)
    completed_responses = models.PositiveIntegerField(default=0)
    total_views = models.PositiveIntegerField(default=0)

    objects = SurveyQuerySet.as_manager()

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="idx_survey_status"),
            models.Index(fields=["survey_type", "status"], name="idx_survey_type_status"),
        ]

    def __str__(self):
        return f"{self.slug}"

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_internal(self) -> bool:
        return self.survey_type == SurveyType.INTERNAL


class Question(TimeStampedModel):
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="questions")
    question_type = models.CharField(max_length=24, choices=QuestionType.choices)
    text = models.TextField()
    description = models.TextField(blank=True, null=True)
    is_required = models.BooleanField(default=False)
    order_index = models.PositiveIntegerField()
    validation_rules = models.JSONField(default=dict, blank=True)   # min/max/min_length/max_length/pattern
    options = models.JSONField(default=dict, blank=True)            # choices, rating bounds
    conditional_logic = models.JSONField(default=dict, blank=True)  # show_if

    class Meta:
        ordering = ["order_index", "id"]
        indexes = [
            models.Index(fields=["survey", "order_index"], name="idx_question_survey_order"),
        ]

    def __str__(self):
        return f"{self.survey_id}:{self.order_index}"

    @property
    def category(self) -> str:
        return category_for(self.question_type)


class SurveyTargetEmployee(models.Model):
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="targets")
    employee = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="survey_targets")
    has_responded = models.BooleanField(default=False)
    responded_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("survey", "employee")
        indexes = [
            models.Index(fields=["survey", "has_responded"], name="idx_target_survey_responded"),
        ]

    def __str__(self):
        return f"target:{self.employee_id} -> {self.survey_id}"


# Register audit logging for survey models
auditlog.register(Survey)
auditlog.register(Question)
auditlog.register(SurveyTargetEmployee)
