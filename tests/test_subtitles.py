from datetime import timedelta
from unittest.mock import Mock

from django.test import TestCase
from django.utils import timezone

from conversions import subtitles
from conversions.models import ConversionStatus, SubtitleJob
from conversions.notifications import PublishError

from .helpers import HASH, DummyStore, make_job

Status = SubtitleJob.Status


def status_of(code):
    return SubtitleJob.objects.get(content_hash=HASH, language_code=code).status


class TransitionTests(TestCase):
    def setUp(self):
        subtitles.create_subtitle_job(HASH, "fr")

    def test_duplicate_create_returns_none(self):
        self.assertIsNone(subtitles.create_subtitle_job(HASH, "fr"))
        self.assertEqual(SubtitleJob.objects.filter(content_hash=HASH).count(), 1)

    def test_forward_transitions(self):
        self.assertTrue(subtitles.mark_processing(HASH, "fr", message_id="m-1"))
        self.assertTrue(subtitles.mark_completed(HASH, "fr"))
        row = SubtitleJob.objects.get(content_hash=HASH, language_code="fr")
        self.assertEqual(row.status, Status.COMPLETED)
        self.assertEqual(row.message_id, "m-1")
        self.assertIsNotNone(row.completed_at)

    def test_final_states_do_not_move(self):
        subtitles.mark_completed(HASH, "fr")
        self.assertFalse(subtitles.mark_processing(HASH, "fr"))
        self.assertFalse(subtitles.mark_failed(HASH, "fr", "late failure"))
        self.assertEqual(status_of("fr"), Status.COMPLETED)

    def test_failed_does_not_complete(self):
        subtitles.mark_failed(HASH, "fr", "boom")
        self.assertFalse(subtitles.mark_completed(HASH, "fr"))
        self.assertEqual(status_of("fr"), Status.FAILED)

    def test_completion_without_request_creates_row(self):
        make_job(status=ConversionStatus.FINISHED)
        self.assertTrue(subtitles.mark_completed(HASH, "de"))
        self.assertEqual(status_of("de"), Status.COMPLETED)

    def test_status_summary(self):
        subtitles.create_subtitle_job(HASH, "de")
        subtitles.mark_failed(HASH, "de", "boom")
        result = subtitles.subtitle_status(HASH)
        self.assertEqual(result["pending"], ["fr"])
        self.assertEqual(result["failed"], ["de"])
        self.assertEqual(result["completed"], [])
        self.assertTrue(subtitles.has_open_subtitles(HASH))


class ApplyMessageTests(TestCase):
    def setUp(self):
        self.job = make_job(status=ConversionStatus.FINISHED)
        subtitles.create_subtitle_job(HASH, "fr")

    def test_processing_then_completed_then_repeat(self):
        self.assertEqual(subtitles.apply_subtitle_message(HASH, "PROCESSING", '"fr"'), ["fr"])
        self.assertEqual(status_of("fr"), Status.PROCESSING)

        self.assertEqual(subtitles.apply_subtitle_message(HASH, "COMPLETED", '"fr"'), ["fr"])
        row = SubtitleJob.objects.get(content_hash=HASH, language_code="fr")
        self.assertEqual(row.status, Status.COMPLETED)
        completed_at = row.completed_at
        self.job.refresh_from_db()
        self.assertIn("fr", self.job.subtitle.split(","))

        self.assertEqual(subtitles.apply_subtitle_message(HASH, "COMPLETED", '"fr"'), [])
        row.refresh_from_db()
        self.assertEqual(row.completed_at, completed_at)

    def test_payload_shapes(self):
        resolver = subtitles.BestGuessLanguageResolver()
        self.assertEqual(resolver.named_languages('{"target_lang": "fr"}'), ["fr"])
        self.assertEqual(resolver.named_languages('[{"code": "fr"}, "de"]'), ["fr", "de"])
        self.assertEqual(resolver.named_languages('{"languages": ["es"]}'), ["es"])
        self.assertEqual(resolver.named_languages("null"), [])

    def test_fallback_completes_oldest_open_row(self):
        subtitles.create_subtitle_job(HASH, "de")
        SubtitleJob.objects.filter(language_code="de").update(requested_at=timezone.now() + timedelta(minutes=1))

        self.assertEqual(subtitles.apply_subtitle_message(HASH, "COMPLETED", "null"), ["fr"])
        self.assertEqual(status_of("de"), Status.PENDING)

    def test_failure_fails_every_open_row(self):
        subtitles.create_subtitle_job(HASH, "de")
        changed = subtitles.apply_subtitle_message(HASH, "FAILED", "null")
        self.assertEqual(sorted(changed), ["de", "fr"])
        self.assertEqual(SubtitleJob.objects.get(language_code="fr").error_message, "null")


class RequestSubtitlesTests(TestCase):
    def setUp(self):
        self.job = make_job(status=ConversionStatus.FINISHED, has_mp4=True)
        self.publisher = Mock()
        self.publisher.trigger_subtitle_generation.return_value = {"success": True, "MessageId": "m-1"}

    def test_request_publishes_and_marks_processing(self):
        result = subtitles.request_subtitles(HASH, ["fr", "fr"], publisher=self.publisher)

        self.assertEqual(result, {"success": True, "requested": ["fr"], "skipped": [], "errors": []})
        self.assertEqual(status_of("fr"), Status.PROCESSING)
        args = self.publisher.trigger_subtitle_generation.call_args[0]
        self.assertEqual(args[0], f"videolesson/{HASH}")
        self.assertEqual(args[1], "fr")
        self.assertTrue(args[3].endswith(f"/mp4/{HASH}.mp4"))

    def test_in_flight_languages_are_skipped(self):
        subtitles.create_subtitle_job(HASH, "fr")
        result = subtitles.request_subtitles(HASH, ["fr"], publisher=self.publisher)
        self.assertEqual(result["skipped"], ["fr"])
        self.publisher.trigger_subtitle_generation.assert_not_called()

    def test_failed_language_is_retried(self):
        subtitles.create_subtitle_job(HASH, "fr")
        subtitles.mark_failed(HASH, "fr", "boom")

        result = subtitles.retry_failed(HASH, publisher=self.publisher)

        self.assertEqual(result["requested"], ["fr"])
        row = SubtitleJob.objects.get(content_hash=HASH, language_code="fr")
        self.assertEqual(row.status, Status.PROCESSING)
        self.assertEqual(row.retry_count, 1)
        self.assertIsNone(row.error_message)

    def test_publish_error_marks_failed(self):
        self.publisher.trigger_subtitle_generation.side_effect = PublishError("SNS down")

        result = subtitles.request_subtitles(HASH, ["de"], publisher=self.publisher)

        self.assertFalse(result["success"])
        self.assertEqual(status_of("de"), Status.FAILED)

    def test_rejects_unsupported_language(self):
        result = subtitles.request_subtitles(HASH, ["xx"], publisher=self.publisher)
        self.assertFalse(result["success"])
        self.assertFalse(SubtitleJob.objects.exists())

    def test_rejects_unfinished_video(self):
        make_job("d" * 40, status=ConversionStatus.IN_PROGRESS)
        result = subtitles.request_subtitles("d" * 40, ["fr"], publisher=self.publisher)
        self.assertFalse(result["success"])


class ObjectStoreCheckTests(TestCase):
    def test_check_pending(self):
        make_job(status=ConversionStatus.FINISHED)
        subtitles.create_subtitle_job(HASH, "fr")
        subtitles.create_subtitle_job(HASH, "de")
        subtitles.create_subtitle_job(HASH, "es")
        SubtitleJob.objects.filter(language_code="de").update(requested_at=timezone.now() - timedelta(hours=2))
        store = DummyStore(existing={f"{HASH}/subtitles/fr.vtt"})

        counts = subtitles.check_pending_via_object_store(store, timeout_seconds=3600)

        self.assertEqual(counts, {"checked": 3, "completed": 1, "failed": 1, "still_pending": 1})
        self.assertEqual(status_of("fr"), Status.COMPLETED)
        self.assertEqual(status_of("de"), Status.FAILED)
        self.assertEqual(status_of("es"), Status.PENDING)
