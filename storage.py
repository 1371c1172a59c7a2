"""
storage.py — object storage for uploaded images and job input files.

Layout under the storage root (DATA_DIR/storage by default):
  products/<scope>/<variant>_<md5>.<ext>      hosted images (public URL)
  jobs/<job_id>/<ms>_<rand>_<name>.<ext>      raw job input files

Hosted images are served from STORAGE_PUBLIC_BASE_URL (job_server.py exposes
the directory under /storage). Image dimensions are read with Pillow.

File I/O runs in a worker thread so the event loop never blocks on disk.
"""
from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import mimetypes
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

import config

logger = logging.getLogger(__name__)


@dataclass
class UploadedImage:
    url: str
    width: Optional[int]
    height: Optional[int]
    mime_type: str


@dataclass
class StoredFile:
    buffer: bytes
    content_type: str
    size: int


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", str(name or ""))[:120]


def image_dimensions(buffer: bytes) -> tuple[Optional[int], Optional[int]]:
    """(width, height) of an image buffer, (None, None) if Pillow can't read it."""
    try:
        with Image.open(io.BytesIO(buffer)) as img:
            return img.width, img.height
    except (UnidentifiedImageError, OSError, ValueError):
        return None, None


def _extension(mime_type: Optional[str], fallback: str = "bin") -> str:
    if mime_type and "/" in mime_type:
        return mime_type.split("/", 1)[1].split(";")[0].strip() or fallback
    return fallback


class ObjectStorage(ABC):
    """Interface the job runner and orchestrator depend on."""

    @abstractmethod
    async def upload(self, buffer: bytes, mime_type: str, scope: str, variant: str = "main") -> UploadedImage:
        ...

    @abstractmethod
    async def download(self, path: str) -> StoredFile:
        ...

    @abstractmethod
    async def upload_job_file(
        self, buffer: bytes, mime_type: Optional[str], job_id: str, original_name: str = "upload.bin",
    ) -> dict:
        ...


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed storage rooted at ``root``."""

    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None) -> None:
        self.root = os.path.abspath(root or os.path.join(config.DATA_DIR, "storage"))
        self.public_base_url = (public_base_url or config.STORAGE_PUBLIC_BASE_URL).rstrip("/")

    def _resolve(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if os.path.commonpath([full, self.root]) != self.root:
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    @staticmethod
    def _write(full_path: str, buffer: bytes) -> None:
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as fh:
            fh.write(buffer)

    @staticmethod
    def _read(full_path: str) -> bytes:
        with open(full_path, "rb") as fh:
            return fh.read()

    async def upload(self, buffer: bytes, mime_type: str, scope: str, variant: str = "main") -> UploadedImage:
        digest = hashlib.md5(buffer).hexdigest()
        path = f"products/{sanitize_filename(scope)}/{sanitize_filename(variant)}_{digest}.{_extension(mime_type, 'jpg')}"
        await asyncio.to_thread(self._write, self._resolve(path), buffer)
        width, height = await asyncio.to_thread(image_dimensions, buffer)
        url = f"{self.public_base_url}/{path}"
        logger.info("Image uploaded: %s", url)
        return UploadedImage(url=url, width=width, height=height, mime_type=mime_type)

    async def upload_job_file(
        self, buffer: bytes, mime_type: Optional[str], job_id: str, original_name: str = "upload.bin",
    ) -> dict:
        original_name = original_name or "upload.bin"
        ext = _extension(mime_type, "")
        if not ext:
            ext = original_name.rsplit(".", 1)[-1] if "." in original_name else "bin"
        path = (
            f"jobs/{sanitize_filename(job_id)}/{int(time.time() * 1000)}_"
            f"{uuid.uuid4().hex[:8]}_{sanitize_filename(original_name)}.{ext}"
        )
        await asyncio.to_thread(self._write, self._resolve(path), buffer)
        return {
            "path": path,
            "mimeType": mime_type or "application/octet-stream",
            "originalName": original_name,
            "size": len(buffer),
        }

    async def download(self, path: str) -> StoredFile:
        """Read a stored file. Raises FileNotFoundError when it doesn't exist."""
        data = await asyncio.to_thread(self._read, self._resolve(path))
        content_type, _ = mimetypes.guess_type(path)
        return StoredFile(
            buffer=data,
            content_type=content_type or "application/octet-stream",
            size=len(data),
        )


_storage: Optional[ObjectStorage] = None


def get_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        _storage = LocalObjectStorage()
    return _storage
