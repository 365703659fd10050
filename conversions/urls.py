from django.urls import path

from .views import ConversionDetailView, SubtitleRequestView, UploadAndCreateConversionView

urlpatterns = [
    path("upload/", UploadAndCreateConversionView.as_view(), name="upload_create_conversion"),
    path("<str:content_hash>/", ConversionDetailView.as_view(), name="conversion_detail"),
    path("<str:content_hash>/subtitles/", SubtitleRequestView.as_view(), name="conversion_subtitles"),
]
