"""
Conversion job lifecycle.

Jobs are created ACCEPTED, uploaded to the input bucket by submit_pending()
and then followed by reconcile_pending() until every sub-process (the
transcoder and, when they count, the subtitle languages) is terminal or the
job has waited longer than CONVERSION_TIMEOUT. Both passes are meant to be
called periodically and are safe to run from several workers at once.
"""
import logging
import math
import os
from datetime import timedelta

from django.conf import settings
from django.core.files.storage import default_storage
from django.db import IntegrityError, transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from . import logs, subtitles
from .channels import status_table as default_status_table
from .models import (
    TERMINAL_STATUSES,
    ConversionJob,
    ConversionStatus,
    MediaProbe,
    QueueMessage,
    SourceFile,
    SubtitleJob,
)
from .results import ObjectStoreError
from .signals import transcode_finished
from .storage import iter_objects, object_store

logger = logging.getLogger(__name__)

# Queue message states worth reading. Progress and warnings are ignored.
QUEUE_MESSAGE_STATES = (
    "SUCCEEDED",    # Rekognition success
    "COMPLETED",    # Elastic Transcoder success
    "ERROR",        # Elastic Transcoder error
    "COMPLETE",     # MediaConvert complete
    "FAILED",       # subtitle failure
    "PROCESSING",   # subtitle progress
)
SUCCESS_STATES = ("COMPLETE", "COMPLETED", "SUCCEEDED")
FAILURE_STATES = ("ERROR", "FAILED")

TRANSCODER_PROCESSES = ("transcoder", "mediaconvert")
SUBTITLE_PROCESS = "subtitle"

MAX_WIDTH, MAX_HEIGHT = 1920, 1080

_UNSET = object()


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def output_resolution(width, height):
    """
    MP4 rendition size: capped at 1920x1080 keeping the aspect ratio, with
    both sides rounded up to an even number of pixels.
    """
    if not width or not height:
        return None
    if height > MAX_HEIGHT or width > MAX_WIDTH:
        aspect = width / height
        if aspect > MAX_WIDTH / MAX_HEIGHT:
            width, height = MAX_WIDTH, _round_half_up(MAX_WIDTH / aspect)
        else:
            width, height = _round_half_up(MAX_HEIGHT * aspect), MAX_HEIGHT
    width += width % 2
    height += height % 2
    return width, height


class ConversionEngine:
    def __init__(self, input_store=None, output_store=None, status_table=_UNSET, resolver=None):
        self._input_store = input_store
        self._output_store = output_store
        self._status_table = status_table
        self.resolver = resolver or subtitles.BestGuessLanguageResolver()

    # Clients are built on first use so creating a job never needs AWS config.
    @property
    def input_store(self):
        if self._input_store is None:
            self._input_store = object_store("input")
        return self._input_store

    @property
    def output_store(self):
        if self._output_store is None:
            self._output_store = object_store("output")
        return self._output_store

    @property
    def status_table(self):
        if self._status_table is _UNSET:
            self._status_table = default_status_table()
        return self._status_table

    # -----------------------------------------------------
    # Creation
    # -----------------------------------------------------
    def create_conversion(self, source: SourceFile, subtitle: bool = False) -> ConversionJob:
        """
        Create the ACCEPTED record for a stored file. Concurrent uploads of the
        same content race on the unique hash; the loser gets the existing row.
        """
        if subtitle:
            subtitles.create_subtitle_job(source.content_hash, settings.SUBTITLE_DEFAULT_LANGUAGE)

        now = timezone.now()
        try:
            with transaction.atomic():
                return ConversionJob.objects.create(
                    content_hash=source.content_hash,
                    pathname_hash=source.pathname_hash,
                    name=os.path.splitext(source.filename)[0],
                    status=ConversionStatus.ACCEPTED,
                    transcoder_status=ConversionStatus.ACCEPTED,
                    time_created=now,
                    time_modified=now,
                )
        except IntegrityError:
            existing = ConversionJob.objects.filter(content_hash=source.content_hash).first()
            if existing is None:
                raise
            return existing

    def conversion_records(self, status: int):
        # Newest first: fresh small files should not queue behind one slow old file.
        return list(
            ConversionJob.objects.filter(status=status)
            .order_by("-time_created")[: settings.CONVERSION_MAX_FILES]
        )

    # -----------------------------------------------------
    # Submission
    # -----------------------------------------------------
    def conversion_settings(self, job: ConversionJob) -> dict:
        """Metadata sent along with the upload for the transcoding pipeline."""
        result = {
            "siteid": settings.SITE_IDENTIFIER,
            "siteurl": settings.SITE_URL,
            "transcoder": "mediaconvert" if job.alternate_transcoder else "elastictranscoder",
            "pluginversion": settings.PLUGIN_VERSION,
        }

        probe = MediaProbe.objects.filter(content_hash=job.content_hash).first()
        if probe:
            if probe.metadata:
                result["ffprobe"] = probe.metadata
            size = output_resolution(probe.width, probe.height)
            if size:
                result["mp4_output_reso"] = f"{size[0]},{size[1]}"

        # The pipeline generates this language itself once transcoding is done.
        if SubtitleJob.objects.filter(
            content_hash=job.content_hash,
            language_code=settings.SUBTITLE_DEFAULT_LANGUAGE,
            status=SubtitleJob.Status.PENDING,
        ).exists():
            result["subtitle"] = settings.SUBTITLE_DEFAULT_LANGUAGE

        return result

    def submit(self, job: ConversionJob) -> int:
        source = SourceFile.objects.filter(pathname_hash=job.pathname_hash).first()
        if source is None or not default_storage.exists(source.storage_path):
            # A missing local file will not come back; no retry.
            status = ConversionStatus.NOT_FOUND
        else:
            metadata = self.conversion_settings(job)
            with default_storage.open(source.storage_path, "rb") as fh:
                result = self.input_store.upload(job.content_hash, fh, metadata)
            try:
                result.unwrap()
                status = ConversionStatus.IN_PROGRESS
            except ObjectStoreError as e:
                status = (
                    ConversionStatus.UPLOAD_ERROR if e.code == "upload_denied" else ConversionStatus.ERROR
                )
                logs.error("S3", [f"{e.code or e.status_code or ''}:{e}"])

        ConversionJob.objects.filter(pk=job.pk).update(
            status=status, transcoder_status=status, time_modified=timezone.now()
        )
        job.status = job.transcoder_status = status
        return status

    def submit_pending(self) -> dict:
        results = {}
        for job in self.conversion_records(ConversionStatus.ACCEPTED):
            results[job.pk] = self.submit(job)
        logger.info("conversions_submitted count=%d", len(results))
        return results

    # -----------------------------------------------------
    # Transcoder results
    # -----------------------------------------------------
    def transcode_outputs(self, job: ConversionJob) -> dict:
        """List the produced files. Raises ObjectStoreError when the listing fails."""
        total, objects, has_mp4 = 0, [], False
        for item in iter_objects(self.output_store, job.content_hash):
            total += item["size"]
            objects.append({"size": item["size"], "filename": item["key"].rsplit("/", 1)[-1]})
            # <bucket key>/<hash>/mp4/<file>
            parts = item["key"].split("/")
            if len(parts) > 2 and parts[2] == "mp4":
                has_mp4 = True
        return {"totalsize": total, "objects": objects, "has_mp4": has_mp4}

    def _mark_transcoded(self, job: ConversionJob) -> None:
        outputs = self.transcode_outputs(job)
        job.bucket_size = outputs["totalsize"]
        job.has_mp4 = job.has_mp4 or outputs["has_mp4"]
        job.transcoder_status = ConversionStatus.FINISHED

    def _mark_transcoder_failed(self, job: ConversionJob, details) -> None:
        job.transcoder_status = ConversionStatus.ERROR
        job.time_completed = timezone.now()
        logs.error("mediaconvert", details)

    def apply_status_record(self, job: ConversionJob, record: dict) -> bool:
        """
        Interpret a key-value status record. Returns True when the transcoder
        reached FINISHED through it.
        """
        value = str(record.get("status") or "").upper()
        if value in ("COMPLETE", "COMPLETED"):
            self._mark_transcoded(job)
            return True
        if value in FAILURE_STATES:
            self._mark_transcoder_failed(job, {
                "error_message": record.get("error_message") or "Unknown error",
                "job_id": record.get("job_id"),
                "source": "dynamodb",
            })
        return False

    # -----------------------------------------------------
    # Queue fallback
    # -----------------------------------------------------
    def queue_messages_for(self, job: ConversionJob, include_transcoder: bool = True):
        processes = []
        if include_transcoder and job.transcoder_status in (ConversionStatus.ACCEPTED, ConversionStatus.IN_PROGRESS):
            processes.extend(TRANSCODER_PROCESSES)
        if subtitles.has_open_subtitles(job.content_hash):
            processes.append(SUBTITLE_PROCESS)
        if not processes:
            return []

        keys = [job.content_hash, f"{settings.BUCKET_KEY}/{job.content_hash}"]
        return list(
            QueueMessage.objects.filter(
                process__in=processes,
                status__in=QUEUE_MESSAGE_STATES,
                object_key__in=keys,
                time_processed__isnull=True,
            ).order_by("time_created", "id")
        )

    def apply_queue_messages(self, job: ConversionJob, messages) -> bool:
        """Apply stored queue messages in arrival order. Returns True on transcoder success."""
        finished = False
        for msg in messages:
            if msg.process in TRANSCODER_PROCESSES:
                if job.transcoder_status in TERMINAL_STATUSES:
                    pass
                elif msg.status in SUCCESS_STATES:
                    self._mark_transcoded(job)
                    finished = True
                elif msg.status in FAILURE_STATES:
                    self._mark_transcoder_failed(job, {
                        "object_key": msg.object_key,
                        "process": msg.process,
                        "status": msg.status,
                        "message": msg.message,
                        "sent_time": msg.sent_time,
                    })
            elif msg.process == SUBTITLE_PROCESS:
                subtitles.apply_subtitle_message(job.content_hash, msg.status, msg.message, self.resolver)

        if messages:
            QueueMessage.objects.filter(pk__in=[m.pk for m in messages]).update(time_processed=timezone.now())
        return finished

    # -----------------------------------------------------
    # Completion and cleanup
    # -----------------------------------------------------
    def cleanup_input(self, content_hash: str) -> bool:
        """Delete the uploaded source from the input bucket. Failure is only logged."""
        result = self.input_store.delete(content_hash)
        if result.ok:
            logs.info("S3", {"input_deleted": content_hash})
            return True
        logs.error("S3", {"input_deleted": content_hash, "error": result.error, "type": result.code})
        return False

    def sub_processes_terminal(self, job: ConversionJob) -> bool:
        if job.transcoder_status not in TERMINAL_STATUSES:
            return False
        if settings.SUBTITLES_COUNT_FOR_COMPLETION and subtitles.has_open_subtitles(job.content_hash):
            return False
        return True

    def update_completion_status(self, job: ConversionJob, force: bool = False) -> ConversionJob:
        """
        Finalise a job once all of its sub-processes are terminal or it has
        gone CONVERSION_TIMEOUT without a change. A timed out job is finished
        even though its remote status is unknown.
        """
        if job.status != ConversionStatus.IN_PROGRESS:
            return job

        now = timezone.now()
        timed_out = job.time_modified < now - timedelta(seconds=settings.CONVERSION_TIMEOUT)
        if not (force or timed_out or self.sub_processes_terminal(job)):
            return job

        job.status = (
            ConversionStatus.ERROR if job.transcoder_status == ConversionStatus.ERROR else ConversionStatus.FINISHED
        )
        job.time_modified = now
        job.time_completed = now
        if self.cleanup_input(job.content_hash):
            job.input_deleted = True
        job.save(update_fields=["status", "time_modified", "time_completed", "input_deleted"])
        logger.info("conversion_completed hash=%s status=%s", job.content_hash, job.status)
        return job

    # -----------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------
    def reconcile(self, job_id: int) -> ConversionJob:
        """Bring one job up to date with the status channels."""
        with transaction.atomic():
            job = ConversionJob.objects.select_for_update().get(pk=job_id)
            transcoding = job.transcoder_status in (ConversionStatus.ACCEPTED, ConversionStatus.IN_PROGRESS)
            informed = False
            finished = False

            record = None
            if transcoding and self.status_table is not None:
                record = self.status_table.get_status(job.content_hash)
            if record is not None:
                informed = True
                finished = self.apply_status_record(job, record)

            if settings.QUEUE_FALLBACK:
                # The key-value record is authoritative for the transcoder when present.
                messages = self.queue_messages_for(job, include_transcoder=record is None)
                if messages:
                    informed = True
                    finished = self.apply_queue_messages(job, messages) or finished

            force = False
            if transcoding and not informed and job.transcoder_status not in TERMINAL_STATUSES:
                cutoff = timezone.now() - timedelta(seconds=settings.CONVERSION_STATUS_TIMEOUT)
                if job.time_created < cutoff:
                    job.transcoder_status = ConversionStatus.ERROR
                    logs.error("conversion", {"timeout": job.content_hash, "time_created": job.time_created})
                    force = True

            job.save(update_fields=["transcoder_status", "bucket_size", "has_mp4", "time_completed"])
            job = self.update_completion_status(job, force=force)

        if finished:
            transcode_finished.send(sender=ConversionJob, content_hash=job.content_hash)
        return job

    def jobs_to_reconcile(self) -> list:
        records = {job.content_hash: job for job in self.conversion_records(ConversionStatus.IN_PROGRESS)}

        open_subtitles = SubtitleJob.objects.filter(
            content_hash=OuterRef("content_hash"), status__in=subtitles.OPEN_STATUSES
        )
        finished = ConversionJob.objects.filter(status=ConversionStatus.FINISHED).filter(Exists(open_subtitles))
        for job in finished:
            records.setdefault(job.content_hash, job)
        return list(records.values())

    def reconcile_pending(self) -> list:
        results = []
        for job in self.jobs_to_reconcile():
            try:
                results.append(self.reconcile(job.pk))
            except ObjectStoreError as e:
                # Transient: the next pass tries again.
                logger.warning("reconcile_failed hash=%s error=%s", job.content_hash, e)
            except Exception:
                # The pass carries on with the remaining jobs.
                logger.exception("reconcile_crashed hash=%s", job.content_hash)
        logger.info("conversions_reconciled count=%d", len(results))
        return results

    # -----------------------------------------------------
    # Maintenance
    # -----------------------------------------------------
    def poll_stale(self) -> list:
        """
        Jobs in progress for longer than STALE_CONVERSION_AGE with no terminal
        queue message are settled by looking at the output bucket directly.
        """
        cutoff = timezone.now() - timedelta(seconds=settings.STALE_CONVERSION_AGE)
        terminal_messages = QueueMessage.objects.filter(
            object_key=OuterRef("content_hash"), status__in=SUCCESS_STATES + ("ERROR",)
        )
        stale = (
            ConversionJob.objects.filter(status=ConversionStatus.IN_PROGRESS, time_created__lt=cutoff)
            .exclude(Exists(terminal_messages))
            .order_by("time_created")[: settings.CONVERSION_MAX_FILES]
        )

        results = []
        for job in stale:
            finished = False
            try:
                with transaction.atomic():
                    job = ConversionJob.objects.select_for_update().get(pk=job.pk)
                    if job.transcoder_status in (ConversionStatus.ACCEPTED, ConversionStatus.IN_PROGRESS):
                        outputs = self.transcode_outputs(job)
                        job.bucket_size = outputs["totalsize"]
                        job.has_mp4 = job.has_mp4 or outputs["has_mp4"]
                        if outputs["objects"]:
                            job.transcoder_status = ConversionStatus.FINISHED
                            finished = True
                        else:
                            job.transcoder_status = ConversionStatus.ERROR
                        job.save(update_fields=["transcoder_status", "bucket_size", "has_mp4"])
                    results.append(self.update_completion_status(job, force=True))
            except ObjectStoreError as e:
                logger.warning("stale_poll_failed hash=%s error=%s", job.content_hash, e)
                continue
            except Exception:
                logger.exception("stale_poll_crashed hash=%s", job.content_hash)
                continue
            if finished:
                transcode_finished.send(sender=ConversionJob, content_hash=job.content_hash)
        return results

    def delete_input_files(self) -> int:
        """Retry input cleanup for finished jobs whose source is still in the input bucket."""
        keys = list(
            ConversionJob.objects.filter(
                status__in=[ConversionStatus.FINISHED, ConversionStatus.ERROR],
                time_completed__isnull=False,
                input_deleted=False,
            ).values_list("content_hash", flat=True)
        )
        if not keys:
            return 0

        deleted = 0
        for prefix, response in self.input_store.delete_many(keys).items():
            if response["success"]:
                ConversionJob.objects.filter(content_hash=prefix).update(input_deleted=True)
                logs.info("S3", {"input_deleted": prefix})
                deleted += 1
            else:
                logs.error("S3", response["errors"])
        return deleted
