"""Media storage for message attachments.

Uploaded files are written to ``{upload_dir}/{name}-{uuid}{ext}`` and
handed back as a MediaReference whose URL points under ``/uploads/``.
Serving that path is left to whatever fronts the service.
"""
import logging
import re
import uuid
from pathlib import Path
from typing import List, Optional

from ..errors import MediaTooLargeError, ValidationError
from ..messages.schemas import MediaReference, MediaType

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def get_media_type(mime_type: str) -> MediaType:
    """Map a MIME type to a media type tag.

    Examples:
        >>> get_media_type("image/png")
        <MediaType.IMAGE: 'image'>
        >>> get_media_type("application/pdf")
        <MediaType.FILE: 'file'>
    """
    major = (mime_type or "").split("/", 1)[0].lower()
    if major == "image":
        return MediaType.IMAGE
    if major == "video":
        return MediaType.VIDEO
    if major == "audio":
        return MediaType.AUDIO
    return MediaType.FILE


class MediaStorage:
    """Saves uploads to disk and returns references to them."""

    def __init__(
        self,
        upload_dir: str = "uploads",
        public_base_url: str = "",
        max_file_size_bytes: int = 50 * 1024 * 1024,
        allowed_mime_prefixes: Optional[List[str]] = None,
    ) -> None:
        self._upload_dir = Path(upload_dir)
        self._public_base_url = public_base_url.rstrip("/")
        self._max_file_size_bytes = max_file_size_bytes
        self._allowed_mime_prefixes = (
            ["image/", "video/"] if allowed_mime_prefixes is None else allowed_mime_prefixes
        )

    @property
    def upload_dir(self) -> Path:
        return self._upload_dir

    def is_allowed(self, mime_type: str) -> bool:
        if not self._allowed_mime_prefixes:
            return True
        mime = (mime_type or "").lower()
        return any(mime.startswith(prefix) for prefix in self._allowed_mime_prefixes)

    def url_for(self, stored_filename: str) -> str:
        return f"{self._public_base_url}/uploads/{stored_filename}"

    def discard(self, reference: MediaReference) -> bool:
        """Remove a file stored by ``save``. Returns False if it is not there."""
        stored_filename = reference.url.rsplit("/", 1)[-1]
        path = self._upload_dir / stored_filename
        if not stored_filename or path.parent != self._upload_dir or not path.is_file():
            return False
        path.unlink()
        logger.info(f"Discarded upload: {stored_filename}")
        return True

    def save(self, filename: str, content: bytes, mime_type: str) -> MediaReference:
        """Validate and store one upload.

        Raises:
            ValidationError: If the file is empty or its type is not allowed.
            MediaTooLargeError: If the file exceeds the size limit.
        """
        if not self.is_allowed(mime_type):
            raise ValidationError("Only image and video files are allowed")
        size_bytes = len(content)
        if size_bytes == 0:
            raise ValidationError("Uploaded file is empty")
        if size_bytes > self._max_file_size_bytes:
            raise MediaTooLargeError(
                f"File size ({size_bytes} bytes) exceeds limit "
                f"({self._max_file_size_bytes} bytes)"
            )

        original = Path(filename or "upload")
        stem = _UNSAFE_CHARS.sub("_", original.stem)[:64] or "upload"
        ext = _UNSAFE_CHARS.sub("", original.suffix.lower())
        stored_filename = f"{stem}-{uuid.uuid4().hex}{ext}"

        self._upload_dir.mkdir(parents=True, exist_ok=True)
        (self._upload_dir / stored_filename).write_bytes(content)
        logger.info(f"Saved upload: {stored_filename} ({size_bytes} bytes)")

        return MediaReference(
            url=self.url_for(stored_filename),
            type=get_media_type(mime_type),
            fileName=original.name,
            fileSize=size_bytes,
        )
