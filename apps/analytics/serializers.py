from rest_framework import serializers


class DistributionBucketSerializer(serializers.Serializer):
    value = serializers.JSONField()
    label = serializers.CharField()
    count = serializers.IntegerField()
    percentage = serializers.IntegerField()


class QuestionAnalyticsSerializer(serializers.Serializer):
    question_id = serializers.IntegerField()
    text = serializers.CharField()
    question_type = serializers.CharField()
    category = serializers.CharField()
    order_index = serializers.IntegerField()
    total_answers = serializers.IntegerField()
    response_rate = serializers.IntegerField()
    distribution = DistributionBucketSerializer(many=True)
    average = serializers.FloatField(allow_null=True)
    min = serializers.JSONField(allow_null=True)
    max = serializers.JSONField(allow_null=True)
    samples = serializers.ListField(child=serializers.CharField())


class TimelinePointSerializer(serializers.Serializer):
    date = serializers.DateField()
    count = serializers.IntegerField()


class OverviewSerializer(serializers.Serializer):
    survey_id = serializers.IntegerField()
    title = serializers.CharField()
    status = serializers.CharField()
    total_responses = serializers.IntegerField()
    completed_responses = serializers.IntegerField()
    in_progress_responses = serializers.IntegerField()
    completion_rate = serializers.IntegerField()
    average_duration_seconds = serializers.IntegerField(allow_null=True)
    total_views = serializers.IntegerField()


class AnalyticsReportSerializer(serializers.Serializer):
    """Read-only rendering of an AnalyticsReport to primitives."""

    overview = OverviewSerializer()
    questions = QuestionAnalyticsSerializer(many=True)
    timeline = TimelinePointSerializer(many=True)
    devices = DistributionBucketSerializer(many=True)
    browsers = DistributionBucketSerializer(many=True)
    generated_at = serializers.DateTimeField()
