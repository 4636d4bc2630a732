"""Disk storage for uploaded images."""

import os
import uuid
import logging

import config

logger = logging.getLogger(__name__)


class MediaRejected(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class MediaStore:
    def __init__(self, directory: str = config.UPLOAD_DIR,
                 url_prefix: str = config.UPLOAD_URL_PREFIX,
                 max_bytes: int = config.MAX_UPLOAD_BYTES):
        self.directory = directory
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        os.makedirs(self.directory, exist_ok=True)

    def save(self, filename: str, content_type: str, data: bytes) -> str:
        """Store ``data`` under a unique name and return its public reference."""
        if not (content_type or "").startswith("image/"):
            raise MediaRejected("Only image uploads are allowed")
        if not data:
            raise MediaRejected("No file uploaded")
        if len(data) > self.max_bytes:
            raise MediaRejected(f"Image must be under {self.max_bytes // (1024 * 1024)} MB", status_code=413)

        ext = os.path.splitext(filename or "")[1].lower()
        if not ext.isascii() or len(ext) > 6:
            ext = ""
        name = f"{uuid.uuid4().hex}{ext}"
        with open(os.path.join(self.directory, name), "wb") as f:
            f.write(data)
        logger.info("Stored upload %s (%d bytes)", name, len(data))
        return f"{self.url_prefix}/{name}"


media_store = MediaStore()
