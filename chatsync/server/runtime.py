from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from chatsync.core import proto
from chatsync.core.config import RelayConfig
from chatsync.core.errors import AlreadyExists, ChatSyncError, StoreError
from chatsync.core.objects import InMemoryObjectStore
from chatsync.core.store import InMemoryRemoteStore, Snapshot, Subscription
from chatsync.core.ws import RELAY, encode_frame
from chatsync.utils.canonical import loads

log = logging.getLogger("chatsync.server.runtime")

SUBSCRIPTION_KINDS = ("identities", "relationships", "messages")


@dataclass(slots=True)
class Connection:
    websocket: Any
    client_id: Optional[str] = None
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = encode_frame(frame)
        async with self.send_lock:
            await self.websocket.send(text)


Handler = Callable[[Connection, Dict[str, Any]], Awaitable[Any]]


class ServerRuntime:
    """Relay hosting one remote store and one object store for many clients."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        store: Optional[InMemoryRemoteStore] = None,
        objects: Optional[InMemoryObjectStore] = None,
    ) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = config.host_port
        self.store = store or InMemoryRemoteStore()
        self.objects = objects or InMemoryObjectStore(base_url=config.public_base_url)
        self._connections: list[Connection] = []
        self._ws_server: Optional[Any] = None
        self._pushes: set[asyncio.Task] = set()
        self._handlers: Dict[str, Handler] = {
            "FIND_IDENTITY": self._handle_find_identity,
            "UPDATE_PRESENCE": self._handle_update_presence,
            "SUBSCRIBE": self._handle_subscribe,
            "UNSUBSCRIBE": self._handle_unsubscribe,
            "CREATE_RELATIONSHIP": self._handle_create_relationship,
            "GET_RELATIONSHIP": self._handle_get_relationship,
            "UPDATE_RELATIONSHIP": self._handle_update_relationship,
            "APPEND_MESSAGE": self._handle_append_message,
            "GET_MESSAGE": self._handle_get_message,
            "UPDATE_REACTIONS": self._handle_update_reactions,
            "FILE_START": self._handle_file_start,
            "FILE_CHUNK": self._handle_file_chunk,
            "FILE_STATUS": self._handle_file_status,
            "FILE_END": self._handle_file_end,
            "FILE_ABORT": self._handle_file_abort,
        }
        self._seed_identities()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ws_server = await websockets.serve(self._handle_connection, self.listen_host, self.listen_port)
        sockets = getattr(self._ws_server, "sockets", None) or []
        if sockets:
            self.listen_port = sockets[0].getsockname()[1]
        log.info("Relay listening on ws://%s:%d", self.listen_host, self.listen_port)

    async def stop(self) -> None:
        for conn in list(self._connections):
            self._drop_subscriptions(conn)
            try:
                await conn.websocket.close()
            except websockets.WebSocketException:
                log.debug("close failed for %s", conn.client_id)
        self._connections.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

    @property
    def url(self) -> str:
        return f"ws://{self.listen_host}:{self.listen_port}"

    def _seed_identities(self) -> None:
        for seed in self.cfg.identities:
            try:
                self.store.add_identity(
                    name=seed.name,
                    username=seed.username,
                    phone=seed.phone,
                    verified=seed.verified,
                    identity_id=seed.id,
                )
            except AlreadyExists:
                log.warning("Skipping duplicate seed identity %s", seed.username)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: Any) -> None:
        conn = Connection(websocket=websocket)
        self._connections.append(conn)
        log.debug("Accepted connection from %s", self._fmt_remote(websocket))
        try:
            async for raw in websocket:
                try:
                    env = proto.Envelope(**loads(raw))
                except Exception:
                    await self._send_error(conn, None, "UNKNOWN_TYPE", "invalid envelope")
                    continue
                conn.client_id = conn.client_id or env.from_
                await self._dispatch(conn, env)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._on_disconnect(conn)
            try:
                self._connections.remove(conn)
            except ValueError:
                pass

    async def _dispatch(self, conn: Connection, envelope: proto.Envelope) -> None:
        payload = envelope.payload
        req = payload.get("req")
        handler = self._handlers.get(envelope.type)
        if handler is None:
            await self._send_error(conn, req, "UNKNOWN_TYPE", f"unsupported type {envelope.type}")
            return
        try:
            result = await handler(conn, payload)
        except ChatSyncError as exc:
            await self._send_error(conn, req, exc.code, exc.detail or str(exc))
            return
        except (KeyError, TypeError, ValueError) as exc:
            await self._send_error(conn, req, StoreError.code, f"malformed {envelope.type} payload: {exc}")
            return
        await self._send_envelope(conn, "RESULT", {"req": req, "result": result})

    def _on_disconnect(self, conn: Connection) -> None:
        self._drop_subscriptions(conn)
        if conn.client_id:
            log.info("Client %s disconnected", conn.client_id)

    @staticmethod
    def _drop_subscriptions(conn: Connection) -> None:
        for sub in list(conn.subscriptions.values()):
            sub.unsubscribe()
        conn.subscriptions.clear()

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def _handle_find_identity(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.find_identity(payload["username"], payload["phone"])

    async def _handle_update_presence(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        await self.store.update_presence(payload["id"], payload["status"])
        return None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def _handle_subscribe(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        sub_id, kind, key = payload["sub"], payload["kind"], payload["key"]
        if kind not in SUBSCRIPTION_KINDS:
            raise StoreError(f"unknown subscription kind {kind!r}")
        if sub_id in conn.subscriptions:
            return {"sub": sub_id}

        def forward(snapshot: Snapshot) -> None:
            frame = proto.build_frame(
                "SNAPSHOT", RELAY, conn.client_id or "*", {"sub": sub_id, "key": snapshot.key, "docs": snapshot.docs}
            )
            task = asyncio.create_task(self._push(conn, frame))
            self._pushes.add(task)
            task.add_done_callback(self._pushes.discard)

        subscribe = getattr(self.store, f"subscribe_{kind}")
        conn.subscriptions[sub_id] = subscribe(key, forward)
        log.debug("%s subscribed to %s/%s", conn.client_id, kind, key)
        return {"sub": sub_id}

    async def _handle_unsubscribe(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        sub = conn.subscriptions.pop(payload["sub"], None)
        if sub is not None:
            sub.unsubscribe()
        return None

    async def _push(self, conn: Connection, frame: Dict[str, Any]) -> None:
        try:
            await conn.send(frame)
        except websockets.ConnectionClosed:
            log.debug("Dropped snapshot for closed connection %s", conn.client_id)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def _handle_create_relationship(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.create_relationship(payload["doc"])

    async def _handle_get_relationship(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.get_relationship(payload["id"])

    async def _handle_update_relationship(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.update_relationship(
            payload["id"], payload["fields"], expected_version=int(payload["expected_version"])
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _handle_append_message(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.append_message(payload["conversation"], payload["doc"])

    async def _handle_get_message(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.get_message(payload["conversation"], payload["id"])

    async def _handle_update_reactions(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return await self.store.update_reactions(
            payload["conversation"],
            payload["id"],
            payload["reactions"],
            expected_version=int(payload["expected_version"]),
        )

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------

    async def _handle_file_start(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        session = await self.objects.start_upload(
            payload["path"], int(payload["size"]), payload.get("mime", "application/octet-stream"), payload["sha256"]
        )
        return {"session": session}

    async def _handle_file_chunk(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        data = proto.b64url_decode(payload["data"])
        committed = await self.objects.put_chunk(payload["session"], int(payload["offset"]), data)
        return {"committed": committed}

    async def _handle_file_status(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return {"committed": await self.objects.upload_status(payload["session"])}

    async def _handle_file_end(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        return {"address": await self.objects.finish_upload(payload["session"])}

    async def _handle_file_abort(self, conn: Connection, payload: Dict[str, Any]) -> Any:
        await self.objects.abort_upload(payload["session"])
        return None

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _send_envelope(self, conn: Connection, type_: str, payload: Dict[str, Any]) -> None:
        frame = proto.build_frame(type_, RELAY, conn.client_id or "*", payload)
        try:
            await conn.send(frame)
        except websockets.ConnectionClosed:
            log.debug("Client %s went away before %s", conn.client_id, type_)

    async def _send_error(self, conn: Connection, req: Any, code: str, detail: str) -> None:
        await self._send_envelope(conn, "ERROR", {"req": req, "code": code, "detail": detail})

    @staticmethod
    def _fmt_remote(websocket: Any) -> str:
        peer = getattr(websocket, "remote_address", None)
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime", "Connection"]
