"""Filesystem-backed public bucket for chat attachments.

Blocking file I/O runs in the default thread-pool executor so uploads never
block the event loop. Objects are publicly readable through
``GET /storage/{bucket}/{path}``.
"""

import asyncio
import logging
import os
import secrets
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from quickloans.errors import ObjectStoreError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[int, int], None]


class ObjectStore:
    """Thin wrapper around a directory acting as one storage bucket."""

    def __init__(self, root: str, bucket: str, public_base_url: str):
        self.bucket = bucket
        self._root = Path(root).resolve() / bucket
        self._public_base_url = public_base_url.rstrip("/")

    def _resolve(self, object_path: str) -> Path:
        target = (self._root / object_path).resolve()
        if self._root not in target.parents:
            raise ObjectStoreError("upload", f"Invalid object path: {object_path}")
        return target

    def _write(self, target: Path, content: bytes, on_progress: Optional[ProgressCallback]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        total = len(content)
        loaded = 0
        with open(target, "xb") as fh:
            for start in range(0, total, CHUNK_SIZE):
                chunk = content[start:start + CHUNK_SIZE]
                fh.write(chunk)
                loaded += len(chunk)
                if on_progress is not None:
                    on_progress(loaded, total)
        if total == 0 and on_progress is not None:
            on_progress(0, 0)

    async def upload(
        self,
        object_path: str,
        content: bytes,
        content_type: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Store bytes under ``object_path`` and return the public URL."""
        target = self._resolve(object_path)
        logger.info(
            "Uploading object",
            extra={"bucket": self.bucket, "path": object_path, "size": len(content), "content_type": content_type},
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, partial(self._write, target, content, on_progress))
        except OSError as e:
            logger.error(f"Failed to upload object {object_path}: {e}")
            raise ObjectStoreError("upload", f"Upload failed: {e.strerror or e}") from e
        return self.public_url(object_path)

    def public_url(self, object_path: str) -> str:
        return f"{self._public_base_url}/storage/{self.bucket}/{object_path}"

    def open(self, object_path: str) -> Path:
        """Return the local path of an existing object."""
        target = self._resolve(object_path)
        if not target.is_file():
            raise FileNotFoundError(object_path)
        return target

    def exists(self, object_path: str) -> bool:
        try:
            return self._resolve(object_path).is_file()
        except ObjectStoreError:
            return False

    @staticmethod
    def build_attachment_path(user_id: str, filename: str) -> str:
        """Build ``{user_id}/{random}.{ext}``; randomness alone avoids collisions."""
        ext = os.path.splitext(os.path.basename(filename))[1].lstrip(".")
        name = secrets.token_hex(8)
        return f"{user_id}/{name}.{ext}" if ext else f"{user_id}/{name}"
