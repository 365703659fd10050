from rest_framework import serializers

from . import languages
from .models import ConversionJob


class ConversionJobSerializer(serializers.ModelSerializer):
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        model = ConversionJob
        fields = [
            "content_hash",
            "name",
            "status",
            "status_display",
            "transcoder_status",
            "has_mp4",
            "bucket_size",
            "subtitle",
            "time_created",
            "time_modified",
            "time_completed",
        ]


class UploadCreateSerializer(serializers.Serializer):
    file = serializers.FileField()
    subtitle = serializers.BooleanField(required=False, default=False)


class SubtitleRequestSerializer(serializers.Serializer):
    languages = serializers.ListField(child=serializers.CharField(), allow_empty=False)

    def validate_languages(self, value):
        """
        Validate that all requested languages are supported.
        De-duplicate while preserving order.
        """
        bad = [code for code in value if not languages.is_supported(code)]
        if bad:
            raise serializers.ValidationError(f"Unsupported languages: {bad}")
        return list(dict.fromkeys(value))
