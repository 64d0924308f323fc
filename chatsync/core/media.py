from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ChatSyncError, CompressionFailed, UnsupportedMediaType, UploadFailed
from .objects import ObjectStore

log = logging.getLogger("chatsync.media")

ProgressFn = Callable[[int], None]

SUPPORTED_CATEGORIES = ("image", "video")
DEFAULT_MAX_IMAGE_BYTES = 1024 * 1024
DEFAULT_MAX_IMAGE_DIMENSION = 1920
DEFAULT_JPEG_QUALITY = 85
MIN_JPEG_QUALITY = 40
DEFAULT_CHUNK_SIZE = 256 * 1024

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class MediaFile:
    name: str
    mime_type: str
    data: bytes


def classify(mime_type: str) -> str:
    """Return ``image`` or ``video`` for a MIME type, else raise UnsupportedMediaType."""

    category = (mime_type or "").split("/", 1)[0].strip().lower()
    if category not in SUPPORTED_CATEGORIES:
        raise UnsupportedMediaType(f"unsupported file type {mime_type!r}")
    return category


def media_path(conversation_id: str, name: str, ts: int, prefix: str = "chat_media") -> str:
    safe = _UNSAFE_NAME.sub("_", name).strip("._") or "upload"
    return f"{prefix}/{conversation_id}/{ts}_{safe}"


# ---------------------------------------------------------------------------
# Image reduction
# ---------------------------------------------------------------------------

def compress_image(
    data: bytes,
    *,
    max_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
    max_dimension: int = DEFAULT_MAX_IMAGE_DIMENSION,
    quality: int = DEFAULT_JPEG_QUALITY,
    mime_type: str = "image/jpeg",
) -> Tuple[bytes, str]:
    """Bound an image to ``max_dimension`` px and ``max_bytes``.

    Images already within both bounds are returned untouched. Everything else is
    re-encoded as JPEG, first at decreasing quality and then at shrinking size,
    until it fits. Returns ``(data, mime_type)``.
    """

    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            image = ImageOps.exif_transpose(source)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise CompressionFailed(f"cannot decode image: {exc}") from exc

    width, height = image.size
    if len(data) <= max_bytes and max(width, height) <= max_dimension:
        return data, mime_type

    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    q = quality
    while True:
        encoded = _encode_jpeg(image, q)
        if len(encoded) <= max_bytes:
            log.debug("compressed image %d -> %d bytes (q=%d, %sx%s)", len(data), len(encoded), q, *image.size)
            return encoded, "image/jpeg"
        if q > MIN_JPEG_QUALITY:
            q = max(MIN_JPEG_QUALITY, q - 10)
            continue
        w, h = image.size
        if max(w, h) <= 16:
            raise CompressionFailed(f"cannot reduce image below {max_bytes} bytes")
        image = image.resize((max(1, int(w * 0.75)), max(1, int(h * 0.75))), Image.Resampling.LANCZOS)


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    out = io.BytesIO()
    try:
        image.save(out, format="JPEG", quality=quality, optimize=True)
    except (OSError, ValueError) as exc:
        raise CompressionFailed(f"cannot encode image: {exc}") from exc
    return out.getvalue()


async def compress_image_async(data: bytes, **options) -> Tuple[bytes, str]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: compress_image(data, **options))


# ---------------------------------------------------------------------------
# Resumable upload
# ---------------------------------------------------------------------------

class ProgressReporter:
    """Clamps to [0, 100] and never reports a value lower than the last one."""

    def __init__(self, callback: Optional[ProgressFn]) -> None:
        self.callback = callback
        self.last = -1

    def report(self, sent: int, total: int) -> None:
        pct = 100 if total <= 0 else min(100, max(0, (sent * 100) // total))
        if pct <= self.last:
            return
        self.last = pct
        if self.callback is None:
            return
        try:
            self.callback(pct)
        except Exception:
            log.exception("progress callback failed")


async def upload_resumable(
    objects: ObjectStore,
    path: str,
    data: bytes,
    content_type: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_progress: Optional[ProgressFn] = None,
    session_id: Optional[str] = None,
) -> str:
    """Upload ``data`` in sequential chunks and return its retrieval address.

    With ``session_id`` the transfer continues from the store's committed offset.
    Any collaborator failure aborts the session and raises UploadFailed.
    """

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    total = len(data)
    progress = ProgressReporter(on_progress)
    try:
        if session_id is None:
            session_id = await objects.start_upload(path, total, content_type, hashlib.sha256(data).hexdigest())
            offset = 0
        else:
            offset = await objects.upload_status(session_id)
        progress.report(offset if total else 0, total or 1)

        while offset < total:
            chunk = data[offset : offset + chunk_size]
            offset = await objects.put_chunk(session_id, offset, chunk)
            progress.report(offset, total)

        address = await objects.finish_upload(session_id)
    except (ChatSyncError, OSError) as exc:
        log.warning("upload of %s failed: %s", path, exc)
        if session_id is not None:
            await _abort_quietly(objects, session_id)
        raise UploadFailed(str(exc)) from exc

    progress.report(total, total)
    return address


async def _abort_quietly(objects: ObjectStore, session_id: str) -> None:
    try:
        await objects.abort_upload(session_id)
    except (ChatSyncError, OSError):
        log.warning("abort of upload session %s failed", session_id)


__all__ = [
    "MediaFile",
    "classify",
    "media_path",
    "compress_image",
    "compress_image_async",
    "upload_resumable",
    "ProgressReporter",
]
