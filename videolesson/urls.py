from django.urls import include, path

urlpatterns = [
    path("conversions/", include("conversions.urls")),
]
