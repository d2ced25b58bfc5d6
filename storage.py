"""Blob storage for avatar images, served by the app under /uploads."""

import base64
import binascii
import logging
import os
import re

from fastapi.concurrency import run_in_threadpool

from errors import ValidationFailure

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
UPLOAD_BASE_URL = os.getenv("UPLOAD_BASE_URL", "/uploads")

DATA_URL_RE = re.compile(r"^data:(?P<mime>image/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)
IMAGE_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/gif": "gif", "image/webp": "webp"}


class BlobStorage:
    def __init__(self, root: str = UPLOAD_DIR, base_url: str = UPLOAD_BASE_URL):
        self.root = root
        self.base_url = base_url.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.root, key))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            raise ValidationFailure(f"Invalid storage key {key!r}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    async def upload(self, key: str, data: bytes) -> str:
        path = self._path(key)

        def _write():
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)

        await run_in_threadpool(_write)
        logger.info("Stored %d bytes at %s", len(data), key)
        return self.url_for(key)

    async def upload_data_url(self, key_prefix: str, data_url: str) -> str:
        """Decode a base64 image data URL, store it as ``<key_prefix>.<ext>`` and return its URL."""
        match = DATA_URL_RE.match(data_url.strip())
        if not match or match.group("mime") not in IMAGE_EXTENSIONS:
            raise ValidationFailure("Avatar must be a base64 encoded PNG, JPEG, GIF or WebP data URL.")
        try:
            data = base64.b64decode(match.group("data"), validate=True)
        except (binascii.Error, ValueError):
            raise ValidationFailure("Avatar data is not valid base64.")
        return await self.upload(f"{key_prefix}.{IMAGE_EXTENSIONS[match.group('mime')]}", data)
