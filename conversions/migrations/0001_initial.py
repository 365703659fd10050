import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="SourceFile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("pathname_hash", models.CharField(max_length=40, unique=True)),
                ("content_hash", models.CharField(db_index=True, max_length=40)),
                ("filename", models.CharField(max_length=255)),
                ("storage_path", models.CharField(max_length=512)),
                ("size", models.PositiveBigIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="MediaProbe",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("content_hash", models.CharField(max_length=40, unique=True)),
                ("metadata", models.TextField(blank=True, default="")),
                ("width", models.PositiveIntegerField(blank=True, null=True)),
                ("height", models.PositiveIntegerField(blank=True, null=True)),
            ],
        ),
        migrations.CreateModel(
            name="ConversionJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("content_hash", models.CharField(max_length=40, unique=True)),
                ("pathname_hash", models.CharField(max_length=40)),
                ("name", models.CharField(blank=True, default="", max_length=255)),
                (
                    "status",
                    models.PositiveSmallIntegerField(
                        choices=[(200, "Finished"), (201, "In Progress"), (202, "Accepted"), (404, "Not Found"), (500, "Error"), (503, "Upload Error")],
                        default=202,
                    ),
                ),
                (
                    "transcoder_status",
                    models.PositiveSmallIntegerField(
                        choices=[(200, "Finished"), (201, "In Progress"), (202, "Accepted"), (404, "Not Found"), (500, "Error"), (503, "Upload Error")],
                        default=202,
                    ),
                ),
                ("alternate_transcoder", models.BooleanField(default=True)),
                ("has_mp4", models.BooleanField(default=False)),
                ("bucket_size", models.PositiveBigIntegerField(default=0)),
                ("subtitle", models.CharField(blank=True, default="", max_length=255)),
                ("input_deleted", models.BooleanField(default=False)),
                ("time_created", models.DateTimeField(default=django.utils.timezone.now)),
                ("time_modified", models.DateTimeField(default=django.utils.timezone.now)),
                ("time_completed", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "indexes": [models.Index(fields=["status", "time_created"], name="conv_job_status_created_idx")],
            },
        ),
        migrations.CreateModel(
            name="SubtitleJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("content_hash", models.CharField(max_length=40)),
                ("language_code", models.CharField(max_length=16)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed")],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
                ("requested_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("message_id", models.CharField(blank=True, max_length=255, null=True)),
            ],
            options={
                "ordering": ["requested_at", "id"],
                "constraints": [
                    models.UniqueConstraint(fields=("content_hash", "language_code"), name="unique_subtitle_language"),
                ],
            },
        ),
        migrations.CreateModel(
            name="QueueMessage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("object_key", models.CharField(db_index=True, max_length=255)),
                ("process", models.CharField(max_length=32)),
                ("status", models.CharField(max_length=32)),
                ("message_hash", models.CharField(max_length=32, unique=True)),
                ("message", models.TextField(blank=True, default="")),
                ("sent_time", models.CharField(blank=True, default="", max_length=64)),
                ("time_created", models.DateTimeField(default=django.utils.timezone.now)),
                ("time_processed", models.DateTimeField(blank=True, null=True)),
            ],
        ),
        migrations.CreateModel(
            name="ConversionLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("type", models.CharField(choices=[("INFO", "Info"), ("ERROR", "Error")], max_length=8)),
                ("name", models.CharField(max_length=64)),
                ("other", models.TextField(blank=True, default="")),
                ("sent_to_admin", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
    ]
