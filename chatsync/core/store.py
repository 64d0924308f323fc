from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .errors import AlreadyExists, ConflictError, NotFound, StoreError
from .proto import now_ms

"""
Remote store collaborator
-------------------------
Document-oriented store with realtime subscriptions and conditional writes.
Components only ever see raw documents (dicts) from here; decoding into records
happens in the component via proto.decode_* so a bad shape fails fast there.

Collections
===========
- identities        {id, name, username, phone, verified, status, lastSeen}
- relationships     {id, fromUserId, toUserId, status, timestamp}
- messages/<conv>   {id, from, content, type, timestamp, reactions, clientRef}

Every document carries ``_version``; conditional writes compare it and raise
ConflictError when somebody else committed first.

Delivery contract
=================
- subscribe_*() returns immediately; the first snapshot arrives on a later loop
  iteration, as do all following ones (never re-entrantly inside a write).
- Each snapshot is the full current result set of the query.
- A Subscription that has been unsubscribed never invokes its callback again,
  even for snapshots that were already scheduled.
"""

log = logging.getLogger("chatsync.store")


@dataclass(frozen=True)
class Snapshot:
    key: str
    docs: List[Dict[str, Any]]


SnapshotCallback = Callable[[Snapshot], None]


@dataclass(eq=False)
class Subscription:
    kind: str
    key: str
    callback: SnapshotCallback
    on_cancel: Optional[Callable[["Subscription"], None]] = None
    active: bool = True

    def deliver(self, snapshot: Snapshot) -> None:
        if not self.active:
            return
        try:
            self.callback(snapshot)
        except Exception:
            log.exception("%s subscription callback failed for %s", self.kind, self.key)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.on_cancel is not None:
            self.on_cancel(self)


class RemoteStore(Protocol):
    async def find_identity(self, handle: str, phone: str) -> Optional[Dict[str, Any]]: ...

    async def update_presence(self, identity_id: str, status: str) -> None: ...

    def subscribe_identities(self, exclude_id: str, callback: SnapshotCallback) -> Subscription: ...

    async def create_relationship(self, doc: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_relationship(self, relationship_id: str) -> Dict[str, Any]: ...

    async def update_relationship(
        self, relationship_id: str, fields: Dict[str, Any], *, expected_version: int
    ) -> Dict[str, Any]: ...

    def subscribe_relationships(self, identity_id: str, callback: SnapshotCallback) -> Subscription: ...

    async def append_message(self, conversation_id: str, doc: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_message(self, conversation_id: str, message_id: str) -> Dict[str, Any]: ...

    async def update_reactions(
        self,
        conversation_id: str,
        message_id: str,
        reactions: Dict[str, List[str]],
        *,
        expected_version: int,
    ) -> Dict[str, Any]: ...

    def subscribe_messages(self, conversation_id: str, callback: SnapshotCallback) -> Subscription: ...


class SubscriptionHub:
    """Registers subscriptions per (kind, key) and schedules snapshot delivery."""

    def __init__(self) -> None:
        self._subscriptions: Dict[Tuple[str, str], List[Subscription]] = {}

    def add(self, kind: str, key: str, callback: SnapshotCallback) -> Subscription:
        sub = Subscription(kind=kind, key=key, callback=callback, on_cancel=self._remove)
        self._subscriptions.setdefault((kind, key), []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get((sub.kind, sub.key))
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop((sub.kind, sub.key), None)

    def listeners(self, kind: str) -> List[Subscription]:
        found: List[Subscription] = []
        for (k, _key), subs in self._subscriptions.items():
            if k == kind:
                found.extend(subs)
        return found

    @staticmethod
    def schedule(sub: Subscription, snapshot: Snapshot) -> None:
        asyncio.get_running_loop().call_soon(sub.deliver, snapshot)


class InMemoryRemoteStore:
    """Reference RemoteStore; also backs the relay server."""

    def __init__(self, *, now: Callable[[], int] = now_ms) -> None:
        self.now = now
        self._identities: Dict[str, Dict[str, Any]] = {}
        self._relationships: Dict[str, Dict[str, Any]] = {}
        self._messages: Dict[str, List[Dict[str, Any]]] = {}
        self._hub = SubscriptionHub()

    # ------------------------------------------------------------------
    # Registration / approval (external processes)
    # ------------------------------------------------------------------

    def add_identity(
        self,
        *,
        name: str,
        username: str,
        phone: str,
        verified: bool = False,
        identity_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if any(doc["username"] == username for doc in self._identities.values()):
            raise AlreadyExists(f"username {username!r} is already taken")
        doc = {
            "id": identity_id or uuid.uuid4().hex,
            "name": name,
            "username": username,
            "phone": phone,
            "verified": verified,
            "status": "offline",
            "lastSeen": self.now(),
            "_version": 1,
        }
        self._identities[doc["id"]] = doc
        self._publish_identities()
        return copy.deepcopy(doc)

    def set_verified(self, identity_id: str, verified: bool = True) -> None:
        doc = self._require(self._identities, identity_id, "identity")
        doc["verified"] = verified
        doc["_version"] += 1
        self._publish_identities()

    def identity(self, identity_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._require(self._identities, identity_id, "identity"))

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def find_identity(self, handle: str, phone: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        for doc in self._identities.values():
            if doc["username"] == handle and doc["phone"] == phone:
                return copy.deepcopy(doc)
        return None

    async def update_presence(self, identity_id: str, status: str) -> None:
        if status not in ("online", "offline"):
            raise StoreError(f"invalid presence status {status!r}")
        await asyncio.sleep(0)
        doc = self._require(self._identities, identity_id, "identity")
        doc["status"] = status
        doc["lastSeen"] = self.now()
        doc["_version"] += 1
        self._publish_identities()

    def subscribe_identities(self, exclude_id: str, callback: SnapshotCallback) -> Subscription:
        sub = self._hub.add("identities", exclude_id, callback)
        self._hub.schedule(sub, self._identities_snapshot(exclude_id))
        return sub

    def _identities_snapshot(self, exclude_id: str) -> Snapshot:
        docs = [
            copy.deepcopy(doc)
            for doc in self._identities.values()
            if doc["verified"] and doc["id"] != exclude_id
        ]
        return Snapshot(key=exclude_id, docs=docs)

    def _publish_identities(self) -> None:
        for sub in self._hub.listeners("identities"):
            self._hub.schedule(sub, self._identities_snapshot(sub.key))

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        rel_id = doc.get("id")
        if not rel_id:
            raise StoreError("relationship document requires an id")
        if rel_id in self._relationships:
            raise AlreadyExists(f"relationship {rel_id} already exists")
        stored = dict(copy.deepcopy(doc), timestamp=self.now(), _version=1)
        self._relationships[rel_id] = stored
        self._publish_relationships()
        return copy.deepcopy(stored)

    async def get_relationship(self, relationship_id: str) -> Dict[str, Any]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._require(self._relationships, relationship_id, "relationship"))

    async def update_relationship(
        self, relationship_id: str, fields: Dict[str, Any], *, expected_version: int
    ) -> Dict[str, Any]:
        await asyncio.sleep(0)
        doc = self._require(self._relationships, relationship_id, "relationship")
        if set(fields) - {"status"}:
            raise StoreError("only the status field of a relationship may be updated")
        if doc["_version"] != expected_version:
            raise ConflictError(f"relationship {relationship_id} changed since read")
        doc.update(fields)
        doc["_version"] += 1
        self._publish_relationships()
        return copy.deepcopy(doc)

    def subscribe_relationships(self, identity_id: str, callback: SnapshotCallback) -> Subscription:
        sub = self._hub.add("relationships", identity_id, callback)
        self._hub.schedule(sub, self._relationships_snapshot(identity_id))
        return sub

    def _relationships_snapshot(self, identity_id: str) -> Snapshot:
        docs = [
            copy.deepcopy(doc)
            for doc in self._relationships.values()
            if identity_id in (doc["fromUserId"], doc["toUserId"])
        ]
        return Snapshot(key=identity_id, docs=docs)

    def _publish_relationships(self) -> None:
        for sub in self._hub.listeners("relationships"):
            self._hub.schedule(sub, self._relationships_snapshot(sub.key))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(self, conversation_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        stored = dict(
            copy.deepcopy(doc),
            id=uuid.uuid4().hex,
            timestamp=self.now(),
            _version=1,
        )
        stored.setdefault("reactions", {})
        self._messages.setdefault(conversation_id, []).append(stored)
        self._publish_messages(conversation_id)
        return copy.deepcopy(stored)

    async def get_message(self, conversation_id: str, message_id: str) -> Dict[str, Any]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._find_message(conversation_id, message_id))

    async def update_reactions(
        self,
        conversation_id: str,
        message_id: str,
        reactions: Dict[str, List[str]],
        *,
        expected_version: int,
    ) -> Dict[str, Any]:
        await asyncio.sleep(0)
        doc = self._find_message(conversation_id, message_id)
        if doc["_version"] != expected_version:
            raise ConflictError(f"message {message_id} changed since read")
        doc["reactions"] = copy.deepcopy(reactions)
        doc["_version"] += 1
        self._publish_messages(conversation_id)
        return copy.deepcopy(doc)

    def subscribe_messages(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        sub = self._hub.add("messages", conversation_id, callback)
        self._hub.schedule(sub, self._messages_snapshot(conversation_id))
        return sub

    def _messages_snapshot(self, conversation_id: str) -> Snapshot:
        # sorted() is stable: equal timestamps keep insertion order
        docs = sorted(self._messages.get(conversation_id, []), key=lambda d: d["timestamp"])
        return Snapshot(key=conversation_id, docs=copy.deepcopy(docs))

    def _publish_messages(self, conversation_id: str) -> None:
        for sub in self._hub.listeners("messages"):
            if sub.key == conversation_id:
                self._hub.schedule(sub, self._messages_snapshot(conversation_id))

    def _find_message(self, conversation_id: str, message_id: str) -> Dict[str, Any]:
        for doc in self._messages.get(conversation_id, []):
            if doc["id"] == message_id:
                return doc
        raise NotFound(f"message {message_id} not found in {conversation_id}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require(table: Dict[str, Dict[str, Any]], key: str, what: str) -> Dict[str, Any]:
        doc = table.get(key)
        if doc is None:
            raise NotFound(f"{what} {key} not found")
        return doc


__all__ = ["Snapshot", "Subscription", "SubscriptionHub", "RemoteStore", "InMemoryRemoteStore"]
