import hashlib
import io
import os

import pytest
from PIL import Image

from chatsync.core.errors import CompressionFailed, ObjectStoreError, UnsupportedMediaType, UploadFailed
from chatsync.core.media import (
    ProgressReporter,
    classify,
    compress_image,
    compress_image_async,
    media_path,
    upload_resumable,
)
from chatsync.core.objects import InMemoryObjectStore


# ---- helpers ----

def png_bytes(size=(64, 48), color=(200, 30, 30)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def noisy_png(size) -> bytes:
    out = io.BytesIO()
    Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3)).save(out, format="PNG")
    return out.getvalue()


class FailingChunkStore(InMemoryObjectStore):
    def __init__(self, fail_at_call: int):
        super().__init__()
        self.fail_at_call = fail_at_call
        self.calls = 0
        self.aborted = []

    async def put_chunk(self, session_id, offset, data):
        self.calls += 1
        if self.calls == self.fail_at_call:
            raise ObjectStoreError("connection reset")
        return await super().put_chunk(session_id, offset, data)

    async def abort_upload(self, session_id):
        self.aborted.append(session_id)
        await super().abort_upload(session_id)


# ---- classification / naming ----

@pytest.mark.parametrize("mime,kind", [("image/png", "image"), ("video/mp4", "video"), ("IMAGE/JPEG", "image")])
def test_classify_accepts_images_and_videos(mime, kind):
    assert classify(mime) == kind


@pytest.mark.parametrize("mime", ["application/pdf", "text/plain", "", "audio/ogg"])
def test_classify_rejects_everything_else(mime):
    with pytest.raises(UnsupportedMediaType):
        classify(mime)


def test_media_path_layout():
    assert media_path("alice_bob", "holiday pic.png", 123) == "chat_media/alice_bob/123_holiday_pic.png"
    assert media_path("alice_bob", "../../etc/passwd", 1).startswith("chat_media/alice_bob/1_")


# ---- compression ----

def test_small_image_passes_through_unchanged():
    data = png_bytes()
    out, mime = compress_image(data, mime_type="image/png")
    assert out == data
    assert mime == "image/png"


def test_large_dimension_is_bounded():
    data = png_bytes(size=(4000, 1000))
    out, mime = compress_image(data, max_dimension=1920)
    assert mime == "image/jpeg"
    with Image.open(io.BytesIO(out)) as img:
        assert max(img.size) <= 1920
        assert img.size[0] > img.size[1]


def test_oversized_bytes_are_reduced_below_bound():
    data = noisy_png((800, 800))
    limit = 60 * 1024
    assert len(data) > limit
    out, mime = compress_image(data, max_bytes=limit)
    assert len(out) <= limit
    assert mime == "image/jpeg"


def test_undecodable_image_fails():
    with pytest.raises(CompressionFailed):
        compress_image(b"definitely not an image")


def test_oversized_pixel_count_fails(monkeypatch):
    """Pillow's decompression-bomb guard surfaces as CompressionFailed."""
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    with pytest.raises(CompressionFailed):
        compress_image(png_bytes(size=(100, 100)))


@pytest.mark.asyncio
async def test_async_compression_matches_sync():
    data = png_bytes(size=(3000, 100))
    out, _ = await compress_image_async(data, max_dimension=500)
    with Image.open(io.BytesIO(out)) as img:
        assert max(img.size) <= 500


# ---- progress ----

def test_progress_is_clamped_and_monotonic():
    seen = []
    p = ProgressReporter(seen.append)
    for sent, total in [(0, 10), (5, 10), (3, 10), (12, 10), (10, 10)]:
        p.report(sent, total)
    assert seen == [0, 50, 100]


# ---- upload ----

@pytest.mark.asyncio
async def test_upload_reports_progress_and_stores_object(objects):
    data = os.urandom(10_000)
    seen = []
    address = await upload_resumable(objects, "chat_media/a_b/1_x.bin", data, "video/mp4", chunk_size=3000, on_progress=seen.append)

    assert address == "memory://objects/chat_media/a_b/1_x.bin"
    assert objects.get(address).data == data
    assert seen[0] == 0 and seen[-1] == 100
    assert seen == sorted(seen)
    assert all(0 <= p <= 100 for p in seen)


@pytest.mark.asyncio
async def test_empty_upload(objects):
    seen = []
    address = await upload_resumable(objects, "p/empty", b"", "video/mp4", on_progress=seen.append)
    assert objects.get(address).data == b""
    assert seen == [0, 100]


@pytest.mark.asyncio
async def test_failed_chunk_aborts_and_raises_upload_failed():
    store = FailingChunkStore(fail_at_call=2)
    with pytest.raises(UploadFailed):
        await upload_resumable(store, "p/x", os.urandom(5000), "video/mp4", chunk_size=1000)
    assert len(store.aborted) == 1
    assert store.get("p/x") is None


@pytest.mark.asyncio
async def test_resume_continues_from_committed_offset(objects):
    data = os.urandom(5000)
    session = await objects.start_upload("p/resume", len(data), "video/mp4", hashlib.sha256(data).hexdigest())
    await objects.put_chunk(session, 0, data[:2000])

    seen = []
    address = await upload_resumable(objects, "p/resume", data, "video/mp4", chunk_size=1000, on_progress=seen.append, session_id=session)
    assert objects.get(address).data == data
    assert seen[0] == 40 and seen[-1] == 100


@pytest.mark.asyncio
async def test_object_store_rejects_out_of_order_and_bad_checksum(objects):
    session = await objects.start_upload("p/y", 4, "video/mp4", "0" * 64)
    with pytest.raises(ObjectStoreError):
        await objects.put_chunk(session, 2, b"ab")
    await objects.put_chunk(session, 0, b"abcd")
    with pytest.raises(ObjectStoreError):
        await objects.finish_upload(session)
