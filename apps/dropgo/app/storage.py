import os
import time

from fastapi import HTTPException, UploadFile

from . import settings

CUSTOMER_BUCKET = "profile-images"
DRIVER_BUCKET = "driver-profiles"

_IMAGE_EXTS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def _extension(upload: UploadFile) -> str:
    ext = os.path.splitext(upload.filename or "")[1].lstrip(".").lower()
    if ext in ("jpg", "jpeg", "png", "webp", "gif"):
        return "jpg" if ext == "jpeg" else ext
    ext = _IMAGE_EXTS.get((upload.content_type or "").split(";")[0].strip())
    if not ext:
        raise HTTPException(status_code=400, detail="file must be an image")
    return ext


def save_profile_image(bucket: str, owner_id: str, upload: UploadFile) -> str:
    """Store an uploaded profile image as ``{bucket}/{owner}-{ms}.{ext}`` and return its public URL."""
    ext = _extension(upload)
    data = upload.file.read(settings.MAX_IMAGE_BYTES + 1)
    if len(data) > settings.MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="image too large")
    if not data:
        raise HTTPException(status_code=400, detail="empty file")
    name = f"{owner_id}-{int(time.time() * 1000)}.{ext}"
    folder = os.path.join(settings.MEDIA_ROOT, bucket)
    os.makedirs(folder, exist_ok=True)
    with open(os.path.join(folder, name), "wb") as f:
        f.write(data)
    return f"{settings.MEDIA_BASE_URL.rstrip('/')}/{bucket}/{name}"
