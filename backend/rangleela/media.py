import logging
import os
import re
from typing import Dict, Iterable, Optional
from uuid import uuid4

from werkzeug.utils import secure_filename

from .errors import PersistenceError, ValidationError, field_error

IMAGE_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
VIDEO_MIME_TYPES = {"video/mp4", "video/mpeg", "video/quicktime", "video/x-msvideo"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi"}
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_VIDEO_BYTES = 50 * 1024 * 1024

# Checked against every dotted segment, so "photo.php.jpg" is refused too.
SUSPICIOUS_EXTENSION = re.compile(
    r"\.(php\d?|phtml|exe|bat|cmd|scr|com|pif|vbs|js|jar|zip|rar|sh)(\.|$)",
    re.IGNORECASE,
)

MEDIA_KINDS = {
    "image": (IMAGE_MIME_TYPES, IMAGE_EXTENSIONS, MAX_IMAGE_BYTES, "10MB"),
    "video": (VIDEO_MIME_TYPES, VIDEO_EXTENSIONS, MAX_VIDEO_BYTES, "50MB"),
}


def measure_upload(file_storage) -> int:
    stream = getattr(file_storage, "stream", None)
    if stream is None or not hasattr(stream, "seek"):
        return int(getattr(file_storage, "content_length", 0) or 0)
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


class MediaStore:
    """Stores uploaded images and videos in a local folder.

    Files are saved under a random name; that name is the media id used to
    build the public URL and to release the file later.
    """

    def __init__(
        self,
        upload_folder: str,
        base_url: str = "",
        logger: Optional[logging.Logger] = None,
    ):
        self.upload_folder = upload_folder
        self.base_url = (base_url or "").rstrip("/")
        self.logger = logger or logging.getLogger(__name__)
        os.makedirs(self.upload_folder, exist_ok=True)

    def url_for(self, media_id: str) -> str:
        return f"{self.base_url}/uploads/{media_id}"

    def validate(self, file_storage, kind: str = "image", field: str = "image"):
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Unknown media kind: {kind}")
        allowed_mimes, allowed_extensions, max_bytes, max_label = MEDIA_KINDS[kind]

        raw_filename = str(getattr(file_storage, "filename", "") or "")
        if not raw_filename:
            raise ValidationError(
                f"A {kind} file is required.", [field_error(field, "File is required")]
            )

        if SUSPICIOUS_EXTENSION.search(raw_filename):
            raise ValidationError(
                "Suspicious file name detected.",
                [field_error(field, "Suspicious file name detected.")],
            )

        mimetype = str(getattr(file_storage, "mimetype", "") or "").lower()
        if mimetype not in allowed_mimes:
            raise ValidationError(
                "Invalid file type. Only JPEG, PNG, WebP images and MP4, MOV, AVI videos are allowed.",
                [field_error(field, f"Unsupported {kind} type")],
            )

        extension = os.path.splitext(raw_filename)[1].lower()
        if extension not in allowed_extensions:
            raise ValidationError(
                "Invalid file extension. Only image and video files are allowed.",
                [field_error(field, f"Unsupported {kind} extension")],
            )

        size = measure_upload(file_storage)
        if size > max_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {max_label}.",
                [field_error(field, f"Maximum size is {max_label}")],
            )

        return secure_filename(raw_filename), extension, mimetype, size

    def upload(self, file_storage, kind: str = "image", field: str = "image") -> Dict[str, object]:
        safe_name, extension, mimetype, size = self.validate(file_storage, kind, field)

        media_id = f"{kind}_{uuid4().hex}{extension}"
        safe_name = safe_name or media_id
        destination = os.path.join(self.upload_folder, media_id)
        try:
            file_storage.save(destination)
        except OSError as exc:
            self.logger.error("Unable to store upload %s: %s", safe_name, exc)
            raise PersistenceError(
                "We could not store the uploaded file. Please try again."
            ) from exc

        return {
            "id": media_id,
            "url": self.url_for(media_id),
            "filename": safe_name,
            "file_size": size,
            "mime_type": mimetype,
        }

    def delete(self, media_id: Optional[str]) -> bool:
        if not media_id:
            return False
        # Ids are generated names; anything with a path component is not ours.
        if os.path.basename(str(media_id)) != str(media_id):
            return False

        target = os.path.join(self.upload_folder, str(media_id))
        try:
            os.remove(target)
        except FileNotFoundError:
            return False
        return True

    def delete_many(self, media_ids: Iterable[Optional[str]]) -> None:
        for media_id in media_ids:
            try:
                self.delete(media_id)
            except OSError as exc:
                self.logger.warning("Unable to release media %s: %s", media_id, exc)


def media_ids_of(document: Optional[Dict]) -> list:
    """Collect every media id referenced by a product, contact or hero image."""
    if not document:
        return []
    ids = []
    image = document.get("image")
    if isinstance(image, dict) and image.get("id"):
        ids.append(image["id"])
    for entry in document.get("additional_images") or []:
        if isinstance(entry, dict) and entry.get("id"):
            ids.append(entry["id"])
    for entry in document.get("images") or []:
        if isinstance(entry, dict) and entry.get("id"):
            ids.append(entry["id"])
    video = document.get("video")
    if isinstance(video, dict) and video.get("id"):
        ids.append(video["id"])
    return ids
