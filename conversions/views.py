from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from . import subtitles
from .engine import ConversionEngine
from .models import ConversionJob
from .serializers import ConversionJobSerializer, SubtitleRequestSerializer, UploadCreateSerializer
from .tasks import submit_conversions
from .utils import save_uploaded_file


class UploadAndCreateConversionView(views.APIView):
    """
    Accepts a video upload, stores it under MEDIA_ROOT, creates the conversion
    record and enqueues the submission pass.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = UploadCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        source = save_uploaded_file(ser.validated_data["file"])
        job = ConversionEngine().create_conversion(source, subtitle=ser.validated_data["subtitle"])

        submit_conversions.delay()
        return Response({"content_hash": job.content_hash}, status=status.HTTP_202_ACCEPTED)


class ConversionDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, content_hash):
        try:
            job = ConversionJob.objects.get(content_hash=content_hash)
        except ConversionJob.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)

        data = ConversionJobSerializer(job).data
        data["subtitles"] = subtitles.subtitle_status(content_hash)
        return Response(data)


class SubtitleRequestView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request, content_hash):
        if not ConversionJob.objects.filter(content_hash=content_hash).exists():
            return Response({"detail": "Not found"}, status=404)

        ser = SubtitleRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        result = subtitles.request_subtitles(content_hash, ser.validated_data["languages"])
        return Response(result, status=200 if result["success"] else 400)
