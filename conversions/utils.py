import hashlib
import os
from uuid import uuid4

from django.conf import settings

from .models import SourceFile


def save_uploaded_file(djangofile) -> SourceFile:
    """
    Save to MEDIA_ROOT/uploads/<uuid>_<name> and register it as a SourceFile.
    The content hash is the SHA-1 of the bytes, the pathname hash the SHA-1 of
    the path relative to MEDIA_ROOT.
    """
    uploads_dir = settings.MEDIA_ROOT / "uploads"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    filename = os.path.basename(djangofile.name)
    dest = uploads_dir / f"{uuid4().hex}_{filename}"

    digest = hashlib.sha1()
    size = 0
    with open(dest, "wb") as f:
        for chunk in djangofile.chunks():
            digest.update(chunk)
            size += len(chunk)
            f.write(chunk)

    rel_path = str(dest.relative_to(settings.MEDIA_ROOT))
    return SourceFile.objects.create(
        pathname_hash=hashlib.sha1(rel_path.encode("utf-8")).hexdigest(),
        content_hash=digest.hexdigest(),
        filename=filename,
        storage_path=rel_path,
        size=size,
    )
