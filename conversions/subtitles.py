"""
Subtitle sub-jobs.

Each (content hash, language) pair is tracked by one SubtitleJob row that
only moves forward: pending -> processing -> completed, or to failed from
pending or processing. Repeating a transition, or asking for one out of a
final state, is a silent no-op so duplicate status deliveries are harmless.
"""
import json
import logging
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from . import languages
from .models import ConversionJob, ConversionStatus, SubtitleJob
from .notifications import PublishError, publisher as default_publisher

logger = logging.getLogger(__name__)

Status = SubtitleJob.Status

OPEN_STATUSES = (Status.PENDING, Status.PROCESSING)

_ALLOWED = {
    Status.PENDING: {Status.PROCESSING, Status.COMPLETED, Status.FAILED},
    Status.PROCESSING: {Status.COMPLETED, Status.FAILED},
    Status.COMPLETED: set(),
    Status.FAILED: set(),
}


def is_allowed_transition(current: str, target: str) -> bool:
    return target in _ALLOWED.get(current, set())


def create_subtitle_job(content_hash: str, language_code: str) -> SubtitleJob | None:
    """
    Insert a pending row. Returns None when the pair already exists, which
    happens when two requests race; any other database error propagates.
    """
    try:
        with transaction.atomic():
            return SubtitleJob.objects.create(
                content_hash=content_hash,
                language_code=language_code,
                status=Status.PENDING,
            )
    except IntegrityError:
        if not SubtitleJob.objects.filter(content_hash=content_hash, language_code=language_code).exists():
            raise
        return None


def _transition(content_hash: str, language_code: str, target: str, **fields) -> bool:
    row = SubtitleJob.objects.filter(content_hash=content_hash, language_code=language_code).first()
    if row is None:
        return False
    if not is_allowed_transition(row.status, target):
        if row.status != target:
            logger.info(
                "subtitle_transition_blocked hash=%s lang=%s current=%s target=%s",
                content_hash, language_code, row.status, target,
            )
        return False

    # Guarded on the status we read so a concurrent pass cannot move it backwards.
    updated = SubtitleJob.objects.filter(pk=row.pk, status=row.status).update(status=target, **fields)
    return updated == 1


def mark_processing(content_hash: str, language_code: str, message_id: str | None = None) -> bool:
    fields = {"message_id": message_id} if message_id else {}
    return _transition(content_hash, language_code, Status.PROCESSING, **fields)


def mark_completed(content_hash: str, language_code: str) -> bool:
    now = timezone.now()
    if not SubtitleJob.objects.filter(content_hash=content_hash, language_code=language_code).exists():
        # Completed without ever being requested here, e.g. generated by the transcoder.
        try:
            with transaction.atomic():
                SubtitleJob.objects.create(
                    content_hash=content_hash,
                    language_code=language_code,
                    status=Status.COMPLETED,
                    requested_at=now,
                    completed_at=now,
                )
            changed = True
        except IntegrityError:
            changed = _transition(content_hash, language_code, Status.COMPLETED, completed_at=now, error_message=None)
    else:
        changed = _transition(content_hash, language_code, Status.COMPLETED, completed_at=now, error_message=None)

    if changed:
        sync_completed_languages(content_hash)
    return changed


def mark_failed(content_hash: str, language_code: str, error_message: str) -> bool:
    return _transition(content_hash, language_code, Status.FAILED, error_message=error_message)


def subtitle_status(content_hash: str) -> dict:
    result = {s.value: [] for s in Status}
    for code, status in SubtitleJob.objects.filter(content_hash=content_hash).values_list("language_code", "status"):
        result[status].append(code)
    return result


def has_open_subtitles(content_hash: str) -> bool:
    return SubtitleJob.objects.filter(content_hash=content_hash, status__in=OPEN_STATUSES).exists()


def sync_completed_languages(content_hash: str) -> None:
    completed = list(
        SubtitleJob.objects.filter(content_hash=content_hash, status=Status.COMPLETED)
        .values_list("language_code", flat=True)
    )
    if completed:
        ConversionJob.objects.filter(content_hash=content_hash).update(subtitle=",".join(completed))


class BestGuessLanguageResolver:
    """
    Works out which languages a subtitle status message is about.

    Payloads name languages in several shapes. When none can be read, the
    fallback picks rows by status: the oldest open row for a completion, all
    pending rows for processing, every open row for a failure. That guess is
    an approximation; keep it here so it can be replaced on its own.
    """

    def named_languages(self, payload: str) -> list:
        try:
            data = json.loads(payload) if payload else None
        except ValueError:
            data = payload
        return [code.strip() for code in self._collect(data) if code and code.strip()]

    def _collect(self, data) -> list:
        if isinstance(data, str):
            return [data]
        if isinstance(data, list):
            codes = []
            for item in data:
                if isinstance(item, str):
                    codes.append(item)
                elif isinstance(item, dict) and isinstance(item.get("code"), str):
                    codes.append(item["code"])
            return codes
        if isinstance(data, dict):
            for key in ("target_lang", "code"):
                if isinstance(data.get(key), str):
                    return [data[key]]
            if isinstance(data.get("languages"), list):
                return self._collect(data["languages"])
        return []

    def fallback(self, content_hash: str, target: str) -> list:
        status = subtitle_status(content_hash)
        open_rows = status[Status.PENDING] + status[Status.PROCESSING]
        if target == Status.COMPLETED:
            oldest = (
                SubtitleJob.objects.filter(content_hash=content_hash, status__in=OPEN_STATUSES)
                .order_by("requested_at", "id")
                .values_list("language_code", flat=True)
                .first()
            )
            return [oldest] if oldest else []
        if target == Status.PROCESSING:
            return status[Status.PENDING]
        return open_rows

    def resolve(self, content_hash: str, payload: str, target: str) -> list:
        return self.named_languages(payload) or self.fallback(content_hash, target)


def apply_subtitle_message(content_hash: str, status: str, payload: str, resolver=None) -> list:
    """Apply one subtitle status message. Returns the languages it changed."""
    resolver = resolver or BestGuessLanguageResolver()
    status = status.upper()
    changed = []

    if status in ("COMPLETED", "COMPLETE", "SUCCEEDED"):
        for code in resolver.resolve(content_hash, payload, Status.COMPLETED):
            if mark_completed(content_hash, code):
                changed.append(code)
    elif status == "PROCESSING":
        for code in resolver.resolve(content_hash, payload, Status.PROCESSING):
            if mark_processing(content_hash, code):
                changed.append(code)
    elif status in ("ERROR", "FAILED"):
        error = payload or "Subtitle generation failed"
        for code in resolver.resolve(content_hash, payload, Status.FAILED):
            if mark_failed(content_hash, code, error):
                changed.append(code)
    return changed


def subtitle_source_uri(job: ConversionJob) -> str:
    base = f"s3://{settings.S3_OUTPUT_BUCKET}/{settings.BUCKET_KEY}/{job.content_hash}"
    if job.has_mp4:
        return f"{base}/mp4/{job.content_hash}.mp4"
    if job.alternate_transcoder:
        return f"{base}/conversions/{job.content_hash}.m3u8"
    return f"{base}/conversions/{job.content_hash}_hls_playlist.m3u8"


def _result(success: bool, requested=(), skipped=(), errors=()) -> dict:
    return {"success": success, "requested": list(requested), "skipped": list(skipped), "errors": list(errors)}


def request_subtitles(content_hash: str, language_codes, publisher=None) -> dict:
    """
    Request subtitles in extra languages for a transcoded video.

    Languages already completed or in flight are skipped. A failed language is
    retried: its row goes back to pending with the retry counter bumped.
    """
    job = ConversionJob.objects.filter(content_hash=content_hash).first()
    if job is None:
        return _result(False, errors=[f"Video not found: {content_hash}"])
    if job.transcoder_status != ConversionStatus.FINISHED:
        return _result(False, errors=["Video has not finished transcoding"])

    validated = []
    for code in language_codes:
        code = str(code).strip()
        if not languages.is_supported(code):
            return _result(False, errors=[f"Unsupported subtitle language: {code}"])
        if code not in validated:
            validated.append(code)
    if not validated:
        return _result(False, errors=["No subtitle languages requested"])

    status = subtitle_status(content_hash)
    in_flight = set(status[Status.COMPLETED] + status[Status.PENDING] + status[Status.PROCESSING])
    skipped = [code for code in validated if code in in_flight]
    wanted = [code for code in validated if code not in in_flight]
    if not wanted:
        return _result(True, skipped=skipped)

    publisher = publisher or default_publisher()
    object_key = f"{settings.BUCKET_KEY}/{content_hash}"
    s3_uri = subtitle_source_uri(job)
    requested, errors = [], []

    for code in wanted:
        if code in status[Status.FAILED]:
            SubtitleJob.objects.filter(
                content_hash=content_hash, language_code=code, status=Status.FAILED
            ).update(
                status=Status.PENDING,
                requested_at=timezone.now(),
                error_message=None,
                message_id=None,
                retry_count=F("retry_count") + 1,
            )
        elif create_subtitle_job(content_hash, code) is None:
            skipped.append(code)
            continue

        try:
            result = publisher.trigger_subtitle_generation(object_key, code, content_hash, s3_uri)
        except PublishError as e:
            mark_failed(content_hash, code, str(e))
            errors.append(f"Subtitle request failed ({code}): {e}")
            continue

        if result.get("success"):
            mark_processing(content_hash, code, message_id=result.get("MessageId"))
            requested.append(code)
        else:
            mark_failed(content_hash, code, "Subtitle request failed")
            errors.append(f"Subtitle request failed ({code})")

    return _result(not errors, requested=requested, skipped=skipped, errors=errors)


def retry_failed(content_hash: str, language_codes=None, publisher=None) -> dict:
    failed = SubtitleJob.objects.filter(content_hash=content_hash, status=Status.FAILED)
    if language_codes:
        failed = failed.filter(language_code__in=list(language_codes))
    codes = list(failed.values_list("language_code", flat=True))
    if not codes:
        return _result(True)
    return request_subtitles(content_hash, codes, publisher=publisher)


def check_pending_via_object_store(store, timeout_seconds: int | None = None) -> dict:
    """
    Complete open rows whose WebVTT file exists in the output area, and fail
    those requested longer ago than the timeout.
    """
    timeout_seconds = settings.SUBTITLE_TIMEOUT if timeout_seconds is None else timeout_seconds
    cutoff = timezone.now() - timedelta(seconds=timeout_seconds)
    counts = {"checked": 0, "completed": 0, "failed": 0, "still_pending": 0}

    for row in SubtitleJob.objects.filter(status__in=OPEN_STATUSES):
        counts["checked"] += 1
        if store.exists(f"{row.content_hash}/subtitles/{row.language_code}.vtt"):
            mark_completed(row.content_hash, row.language_code)
            counts["completed"] += 1
        elif row.requested_at < cutoff:
            mark_failed(row.content_hash, row.language_code, "Subtitle generation timed out")
            counts["failed"] += 1
        else:
            counts["still_pending"] += 1
    return counts
