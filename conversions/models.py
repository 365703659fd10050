from django.db import models
from django.utils import timezone


class ConversionStatus(models.IntegerChoices):
    FINISHED = 200
    IN_PROGRESS = 201
    ACCEPTED = 202
    NOT_FOUND = 404
    ERROR = 500
    UPLOAD_ERROR = 503


# Errors or finished, either way the sub-process is no longer pending.
TERMINAL_STATUSES = (
    ConversionStatus.FINISHED,
    ConversionStatus.NOT_FOUND,
    ConversionStatus.ERROR,
)


class SourceFile(models.Model):
    """A file held by the host storage, addressable by its path digest."""

    pathname_hash = models.CharField(max_length=40, unique=True)
    content_hash = models.CharField(max_length=40, db_index=True)
    filename = models.CharField(max_length=255)
    storage_path = models.CharField(max_length=512)     # relative to MEDIA_ROOT
    size = models.PositiveBigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)


class MediaProbe(models.Model):
    """Probe metadata computed for a source before it is sent for conversion."""

    content_hash = models.CharField(max_length=40, unique=True)
    metadata = models.TextField(blank=True, default="")    # raw ffprobe JSON
    width = models.PositiveIntegerField(null=True, blank=True)
    height = models.PositiveIntegerField(null=True, blank=True)


class ConversionJob(models.Model):
    content_hash = models.CharField(max_length=40, unique=True)
    pathname_hash = models.CharField(max_length=40)
    name = models.CharField(max_length=255, blank=True, default="")
    status = models.PositiveSmallIntegerField(
        choices=ConversionStatus.choices, default=ConversionStatus.ACCEPTED
    )
    transcoder_status = models.PositiveSmallIntegerField(
        choices=ConversionStatus.choices, default=ConversionStatus.ACCEPTED
    )
    # True -> MediaConvert, False -> the legacy Elastic Transcoder pipeline.
    alternate_transcoder = models.BooleanField(default=True)
    has_mp4 = models.BooleanField(default=False)
    bucket_size = models.PositiveBigIntegerField(default=0)
    subtitle = models.CharField(max_length=255, blank=True, default="")  # completed languages, comma separated
    input_deleted = models.BooleanField(default=False)

    time_created = models.DateTimeField(default=timezone.now)
    time_modified = models.DateTimeField(default=timezone.now)
    time_completed = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [models.Index(fields=["status", "time_created"], name="conv_job_status_created_idx")]

    def __str__(self):
        return f"{self.content_hash} ({self.get_status_display()})"


class SubtitleJob(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"

    content_hash = models.CharField(max_length=40)
    language_code = models.CharField(max_length=16)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    retry_count = models.PositiveSmallIntegerField(default=0)
    requested_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    message_id = models.CharField(max_length=255, null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["content_hash", "language_code"], name="unique_subtitle_language"
            ),
        ]
        ordering = ["requested_at", "id"]


class QueueMessage(models.Model):
    """A status event received from the queue channel, stored once per payload hash."""

    object_key = models.CharField(max_length=255, db_index=True)
    process = models.CharField(max_length=32)
    status = models.CharField(max_length=32)
    message_hash = models.CharField(max_length=32, unique=True)
    message = models.TextField(blank=True, default="")
    sent_time = models.CharField(max_length=64, blank=True, default="")
    time_created = models.DateTimeField(default=timezone.now)
    time_processed = models.DateTimeField(null=True, blank=True)


class ConversionLog(models.Model):
    class Type(models.TextChoices):
        INFO = "INFO"
        ERROR = "ERROR"

    type = models.CharField(max_length=8, choices=Type.choices)
    name = models.CharField(max_length=64)
    other = models.TextField(blank=True, default="")     # JSON detail blob
    sent_to_admin = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
