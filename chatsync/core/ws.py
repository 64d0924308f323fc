from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import uuid
from typing import Any, Dict, List, Optional

import websockets

from chatsync.utils.canonical import canonical_bytes, loads

from .errors import StoreError, error_from_code
from .proto import Envelope, b64url, build_frame
from .store import Snapshot, SnapshotCallback, Subscription

"""
Relay client transport
----------------------
One websocket per client. Requests are Envelopes whose payload carries a ``req``
number; the relay answers with RESULT{req, result} or ERROR{req, code, detail}.
Subscriptions are registered with SUBSCRIBE{sub, kind, key}; the relay then pushes
SNAPSHOT{sub, key, docs} frames until UNSUBSCRIBE{sub}.
"""

log = logging.getLogger("chatsync.ws")

RELAY = "relay"


def encode_frame(frame: Dict[str, Any]) -> str:
    return canonical_bytes(frame).decode("utf-8")


class RelayConnection:
    def __init__(self, url: str, client_id: Optional[str] = None, *, request_timeout: float = 10.0) -> None:
        self.url = url
        self.client_id = client_id or uuid.uuid4().hex
        self.request_timeout = request_timeout
        self.ws: Optional[Any] = None
        self._req_ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._subs: Dict[str, Subscription] = {}
        self._receiver: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self.ws is not None:
            return
        self.ws = await websockets.connect(self.url)
        self._receiver = asyncio.create_task(self._rx_loop(), name=f"relay-rx-{self.client_id[:8]}")
        log.info("Connected to relay %s as %s", self.url, self.client_id)

    async def close(self) -> None:
        for sub in list(self._subs.values()):
            sub.active = False
        self._subs.clear()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.ws is not None:
            await self.ws.close()
        if self._receiver is not None:
            self._receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver
            self._receiver = None
        self.ws = None
        self._fail_pending(StoreError("relay connection closed"))

    async def __aenter__(self) -> "RelayConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, type_: str, payload: Dict[str, Any]) -> Any:
        if self.ws is None:
            raise StoreError("not connected to relay")
        req = next(self._req_ids)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req] = fut
        try:
            await self._send(type_, dict(payload, req=req))
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreError(f"{type_} timed out after {self.request_timeout}s") from exc
        except websockets.ConnectionClosed as exc:
            raise StoreError(f"relay connection closed during {type_}") from exc
        finally:
            self._pending.pop(req, None)

    def subscribe(self, kind: str, key: str, callback: SnapshotCallback) -> Subscription:
        sub_id = uuid.uuid4().hex
        sub = Subscription(kind=kind, key=key, callback=callback, on_cancel=lambda s: self._unsubscribe(sub_id))
        self._subs[sub_id] = sub
        self._spawn(self.request("SUBSCRIBE", {"sub": sub_id, "kind": kind, "key": key}), f"subscribe {kind}/{key}")
        return sub

    def _unsubscribe(self, sub_id: str) -> None:
        if self._subs.pop(sub_id, None) is None or self.ws is None:
            return
        self._spawn(self.request("UNSUBSCRIBE", {"sub": sub_id}), f"unsubscribe {sub_id}")

    async def _send(self, type_: str, payload: Dict[str, Any]) -> None:
        assert self.ws is not None
        frame = build_frame(type_, self.client_id, RELAY, payload)
        async with self._send_lock:
            await self.ws.send(encode_frame(frame))

    def _spawn(self, coro: Any, what: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.warning("Relay %s failed: %s", what, t.exception())

        task.add_done_callback(_done)

    # ------------------------------------------------------------------
    # Receive side
    # ------------------------------------------------------------------

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    env = Envelope(**loads(raw))
                except Exception:
                    log.warning("Dropped invalid frame from relay")
                    continue
                self._handle_incoming(env)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._fail_pending(StoreError("relay connection closed"))

    def _handle_incoming(self, env: Envelope) -> None:
        payload = env.payload
        if env.type == "RESULT":
            self._resolve(payload.get("req"), result=payload.get("result"))
        elif env.type == "ERROR":
            exc = error_from_code(str(payload.get("code", "")), str(payload.get("detail", "")))
            if payload.get("req") is None:
                log.warning("Relay error: %s", exc)
                return
            self._resolve(payload.get("req"), error=exc)
        elif env.type == "SNAPSHOT":
            sub = self._subs.get(payload.get("sub", ""))
            if sub is None:
                return
            snapshot = Snapshot(key=str(payload.get("key", "")), docs=list(payload.get("docs", [])))
            asyncio.get_running_loop().call_soon(sub.deliver, snapshot)
        else:
            log.debug("Ignoring relay frame %s", env.type)

    def _resolve(self, req: Any, *, result: Any = None, error: Optional[BaseException] = None) -> None:
        fut = self._pending.get(req) if isinstance(req, int) else None
        if fut is None or fut.done():
            return
        if error is not None:
            fut.set_exception(error)
        else:
            fut.set_result(result)

    def _fail_pending(self, exc: BaseException) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()


# ---------------------------------------------------------------------------
# Collaborators over the relay
# ---------------------------------------------------------------------------

class WebSocketRemoteStore:
    """RemoteStore speaking to a relay over a RelayConnection."""

    def __init__(self, conn: RelayConnection) -> None:
        self.conn = conn

    async def find_identity(self, handle: str, phone: str) -> Optional[Dict[str, Any]]:
        return await self.conn.request("FIND_IDENTITY", {"username": handle, "phone": phone})

    async def update_presence(self, identity_id: str, status: str) -> None:
        await self.conn.request("UPDATE_PRESENCE", {"id": identity_id, "status": status})

    def subscribe_identities(self, exclude_id: str, callback: SnapshotCallback) -> Subscription:
        return self.conn.subscribe("identities", exclude_id, callback)

    async def create_relationship(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return await self.conn.request("CREATE_RELATIONSHIP", {"doc": doc})

    async def get_relationship(self, relationship_id: str) -> Dict[str, Any]:
        return await self.conn.request("GET_RELATIONSHIP", {"id": relationship_id})

    async def update_relationship(
        self, relationship_id: str, fields: Dict[str, Any], *, expected_version: int
    ) -> Dict[str, Any]:
        return await self.conn.request(
            "UPDATE_RELATIONSHIP",
            {"id": relationship_id, "fields": fields, "expected_version": expected_version},
        )

    def subscribe_relationships(self, identity_id: str, callback: SnapshotCallback) -> Subscription:
        return self.conn.subscribe("relationships", identity_id, callback)

    async def append_message(self, conversation_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        return await self.conn.request("APPEND_MESSAGE", {"conversation": conversation_id, "doc": doc})

    async def get_message(self, conversation_id: str, message_id: str) -> Dict[str, Any]:
        return await self.conn.request("GET_MESSAGE", {"conversation": conversation_id, "id": message_id})

    async def update_reactions(
        self,
        conversation_id: str,
        message_id: str,
        reactions: Dict[str, List[str]],
        *,
        expected_version: int,
    ) -> Dict[str, Any]:
        return await self.conn.request(
            "UPDATE_REACTIONS",
            {
                "conversation": conversation_id,
                "id": message_id,
                "reactions": reactions,
                "expected_version": expected_version,
            },
        )

    def subscribe_messages(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        return self.conn.subscribe("messages", conversation_id, callback)


class WebSocketObjectStore:
    """ObjectStore using FILE_START / FILE_CHUNK / FILE_END frames; chunk bytes travel b64url."""

    def __init__(self, conn: RelayConnection) -> None:
        self.conn = conn

    async def start_upload(self, path: str, size: int, content_type: str, sha256: str) -> str:
        result = await self.conn.request(
            "FILE_START", {"path": path, "size": size, "mime": content_type, "sha256": sha256}
        )
        return str(result["session"])

    async def put_chunk(self, session_id: str, offset: int, data: bytes) -> int:
        result = await self.conn.request(
            "FILE_CHUNK", {"session": session_id, "offset": offset, "data": b64url(data)}
        )
        return int(result["committed"])

    async def upload_status(self, session_id: str) -> int:
        result = await self.conn.request("FILE_STATUS", {"session": session_id})
        return int(result["committed"])

    async def finish_upload(self, session_id: str) -> str:
        result = await self.conn.request("FILE_END", {"session": session_id})
        return str(result["address"])

    async def abort_upload(self, session_id: str) -> None:
        await self.conn.request("FILE_ABORT", {"session": session_id})


__all__ = ["RelayConnection", "WebSocketRemoteStore", "WebSocketObjectStore", "encode_frame"]
