from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from .errors import ObjectStoreError

log = logging.getLogger("chatsync.objects")


class ObjectStore(Protocol):
    """Resumable upload protocol (FILE_START / FILE_CHUNK / FILE_END)."""

    async def start_upload(self, path: str, size: int, content_type: str, sha256: str) -> str: ...

    async def put_chunk(self, session_id: str, offset: int, data: bytes) -> int: ...

    async def upload_status(self, session_id: str) -> int: ...

    async def finish_upload(self, session_id: str) -> str: ...

    async def abort_upload(self, session_id: str) -> None: ...


@dataclass
class UploadState:
    path: str
    size: int
    content_type: str
    sha256: str
    chunks: Dict[int, bytes] = field(default_factory=dict)
    committed: int = 0

    def add_chunk(self, offset: int, data: bytes) -> None:
        self.chunks[offset] = data
        self.committed = offset + len(data)

    def assemble(self) -> bytes:
        return b"".join(self.chunks[i] for i in sorted(self.chunks))


@dataclass(frozen=True)
class StoredObject:
    path: str
    content_type: str
    data: bytes


class InMemoryObjectStore:
    """Reference ObjectStore keeping finished objects in a dict keyed by path."""

    def __init__(self, base_url: str = "memory://objects") -> None:
        self.base_url = base_url.rstrip("/")
        self._uploads: Dict[str, UploadState] = {}
        self._objects: Dict[str, StoredObject] = {}

    async def start_upload(self, path: str, size: int, content_type: str, sha256: str) -> str:
        if not path or size < 0:
            raise ObjectStoreError("upload requires a path and a non-negative size")
        await asyncio.sleep(0)
        session_id = uuid.uuid4().hex
        self._uploads[session_id] = UploadState(path=path, size=size, content_type=content_type, sha256=sha256)
        log.debug("upload %s started for %s (%d bytes)", session_id, path, size)
        return session_id

    async def put_chunk(self, session_id: str, offset: int, data: bytes) -> int:
        state = self._session(session_id)
        await asyncio.sleep(0)
        if offset != state.committed:
            raise ObjectStoreError(f"chunk offset {offset} does not match committed {state.committed}")
        if offset + len(data) > state.size:
            raise ObjectStoreError("chunk exceeds declared size")
        state.add_chunk(offset, data)
        return state.committed

    async def upload_status(self, session_id: str) -> int:
        return self._session(session_id).committed

    async def finish_upload(self, session_id: str) -> str:
        state = self._session(session_id)
        await asyncio.sleep(0)
        data = state.assemble()
        if len(data) != state.size:
            raise ObjectStoreError(f"upload incomplete: {len(data)}/{state.size} bytes")
        if hashlib.sha256(data).hexdigest() != state.sha256:
            raise ObjectStoreError("checksum mismatch")
        self._uploads.pop(session_id, None)
        self._objects[state.path] = StoredObject(path=state.path, content_type=state.content_type, data=data)
        log.info("stored object %s (%d bytes)", state.path, len(data))
        return self.address_of(state.path)

    async def abort_upload(self, session_id: str) -> None:
        self._uploads.pop(session_id, None)

    def address_of(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def get(self, address_or_path: str) -> Optional[StoredObject]:
        prefix = self.base_url + "/"
        path = address_or_path[len(prefix):] if address_or_path.startswith(prefix) else address_or_path
        return self._objects.get(path)

    def _session(self, session_id: str) -> UploadState:
        state = self._uploads.get(session_id)
        if state is None:
            raise ObjectStoreError(f"upload session {session_id} not found")
        return state


__all__ = ["ObjectStore", "InMemoryObjectStore", "UploadState", "StoredObject"]
