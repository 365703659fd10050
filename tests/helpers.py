from django.conf import settings
from django.utils import timezone

from conversions.models import ConversionJob, ConversionStatus, SourceFile
from conversions.results import StoreResult

HASH = "a" * 40
OTHER_HASH = "b" * 40


def make_source(content_hash=HASH, filename="lesson.mp4"):
    return SourceFile.objects.create(
        pathname_hash=f"p{content_hash}"[:40],
        content_hash=content_hash,
        filename=filename,
        storage_path=f"uploads/{filename}",
        size=10,
    )


def make_job(content_hash=HASH, status=ConversionStatus.IN_PROGRESS, transcoder_status=None, **fields):
    now = timezone.now()
    fields.setdefault("time_created", now)
    fields.setdefault("time_modified", now)
    return ConversionJob.objects.create(
        content_hash=content_hash,
        pathname_hash=f"p{content_hash}"[:40],
        name="lesson",
        status=status,
        transcoder_status=status if transcoder_status is None else transcoder_status,
        **fields,
    )


class DummyStore:
    """In-memory object store area. `objects` maps full keys to sizes."""

    def __init__(self, objects=None, upload_result=None, delete_ok=True, existing=()):
        self.objects = dict(objects or {})
        self.upload_result = upload_result
        self.delete_ok = delete_ok
        self.existing = set(existing)
        self.uploads = []
        self.deleted = []

    def upload(self, key, body, metadata=None):
        self.uploads.append((key, metadata))
        return self.upload_result or StoreResult.success({"etag": "x"}, status_code=200)

    def list(self, prefix="", continuation_token=None, delimiter=False):
        full = f"{settings.BUCKET_KEY}/{prefix}"
        items = [{"key": k, "size": s} for k, s in self.objects.items() if k.startswith(full)]
        return StoreResult.success({"items": items, "prefixes": [], "truncated": False, "next_token": None})

    def delete(self, key):
        self.deleted.append(key)
        if self.delete_ok:
            return StoreResult.success(True, status_code=204)
        return StoreResult.failure("Access Denied", status_code=403, code="AccessDenied")

    def delete_many(self, keys):
        self.deleted.extend(keys)
        return {k: {"success": self.delete_ok, "errors": [] if self.delete_ok else ["denied"]} for k in keys}

    def exists(self, key):
        return key in self.existing


class DummyStatusTable:
    def __init__(self, records=None):
        self.records = dict(records or {})
        self.calls = []

    def get_status(self, content_hash):
        self.calls.append(content_hash)
        return self.records.get(content_hash)
