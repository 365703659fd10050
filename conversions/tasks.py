import logging

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail

from . import subtitles
from .channels import ingest_queue, message_queue
from .engine import ConversionEngine
from .models import ConversionLog
from .results import ObjectStoreError
from .storage import PrefixCache, object_store

logger = logging.getLogger(__name__)


@shared_task(bind=True)
def submit_conversions(self):
    """Upload every ACCEPTED job to the input bucket."""
    results = ConversionEngine().submit_pending()
    return {str(k): v for k, v in results.items()}


@shared_task(bind=True)
def process_conversions(self):
    """
    One reconciliation pass: settle subtitles already in the output bucket,
    drain the queue channel, reconcile jobs, then refresh the prefix cache.
    """
    output = object_store("output")
    counts = subtitles.check_pending_via_object_store(output)

    received = 0
    if settings.QUEUE_FALLBACK:
        queue = message_queue()
        if queue is not None:
            received = ingest_queue(queue)

    engine = ConversionEngine(output_store=output)
    jobs = engine.reconcile_pending()

    try:
        PrefixCache(output).refresh()
    except ObjectStoreError as e:
        logger.warning("prefix_cache_refresh_failed error=%s", e)

    return {"subtitles": counts, "messages": received, "reconciled": len(jobs)}


@shared_task(bind=True)
def delete_input_files(self):
    return ConversionEngine().delete_input_files()


@shared_task(bind=True)
def poll_stale_conversions(self):
    return len(ConversionEngine().poll_stale())


@shared_task(bind=True)
def send_error_log(self):
    """Mail unsent ERROR log entries to ERROR_LOG_RECIPIENTS and mark them sent."""
    if not settings.ERROR_LOG_RECIPIENTS:
        return 0

    entries = list(
        ConversionLog.objects.filter(type=ConversionLog.Type.ERROR, sent_to_admin=False).order_by("created_at")
    )
    if not entries:
        return 0

    lines = [f"{e.created_at:%Y-%m-%d %H:%M:%S} [{e.name}] {e.other}" for e in entries]
    send_mail(
        subject=f"Video conversion errors ({len(entries)})",
        message="\n".join(lines),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=settings.ERROR_LOG_RECIPIENTS,
    )
    ConversionLog.objects.filter(pk__in=[e.pk for e in entries]).update(sent_to_admin=True)
    return len(entries)
