from rest_framework import serializers

from .answers import AnswerValue
from .models import SurveyResponse, SurveyAnswer


class AnswerInputSerializer(serializers.Serializer):
    question_id = serializers.IntegerField(min_value=1)
    value = serializers.JSONField(allow_null=True)


class RespondentSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255, required=False, allow_blank=True, allow_null=True)
    email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)
    phone = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)


class MetadataSerializer(serializers.Serializer):
    ip_address = serializers.IPAddressField(required=False, allow_null=True)
    user_agent = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    device_type = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)
    browser = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)
    os = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)
    location = serializers.JSONField(required=False, allow_null=True)
    started_at = serializers.DateTimeField(required=False, allow_null=True)


class UpdateResponseSerializer(serializers.Serializer):
    answers = AnswerInputSerializer(many=True, allow_empty=True)

    def validate_answers(self, value):
        ids = [a["question_id"] for a in value]
        if len(ids) != len(set(ids)):
            raise serializers.ValidationError("Each question may be answered once")
        return value


class SubmitResponseSerializer(UpdateResponseSerializer):
    survey_id = serializers.IntegerField(min_value=1)
    respondent = RespondentSerializer(required=False)
    metadata = MetadataSerializer(required=False)


class SurveyAnswerReadSerializer(serializers.ModelSerializer):
    value = serializers.SerializerMethodField()
    display = serializers.SerializerMethodField()

    class Meta:
        model = SurveyAnswer
        fields = ["id", "question", "value_tag", "value", "display"]

    def get_value(self, obj: SurveyAnswer):
        return AnswerValue.from_answer(obj).to_primitive()

    def get_display(self, obj: SurveyAnswer):
        return AnswerValue.from_answer(obj).display()


class SurveyResponseReadSerializer(serializers.ModelSerializer):
    answers = SurveyAnswerReadSerializer(many=True, read_only=True)

    class Meta:
        model = SurveyResponse
        fields = [
            "id",
            "survey",
            "employee",
            "respondent_name",
            "respondent_email",
            "respondent_phone",
            "status",
            "started_at",
            "completed_at",
            "duration_seconds",
            "device_type",
            "browser",
            "answers",
        ]
