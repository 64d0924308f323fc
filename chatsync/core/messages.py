from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from .config import MediaConfig
from .errors import (
    ChatSyncError,
    ConversationClosed,
    DurableWriteFailed,
    EmptyMessage,
    SchemaError,
    Unauthorized,
)
from .media import MediaFile, ProgressFn, classify, compress_image_async, media_path, upload_resumable
from .objects import ObjectStore
from .proto import Message, canonical_id, decode_many, decode_message, now_ms
from .reactions import ReactionLedger
from .relationships import RelationshipEngine
from .session import SessionContext
from .store import RemoteStore, Snapshot, Subscription

"""
Message synchronizer
--------------------
Keeps, for the one open conversation, the visible list

    durable messages from the latest snapshot  +  optimistic entries in send order

Optimistic entries are never persisted or transmitted; each one is removed by its
temp id when its durable append is acknowledged (the acknowledged message stands
in until the next snapshot) or fails. The durable append also
carries the entry's ``clientRef`` so that a snapshot which already contains the
durable copy retires the placeholder even if the acknowledgement never arrives.

Switching conversations unsubscribes the previous stream before subscribing the
next one, and every snapshot is checked against the conversation id and the
open generation it was subscribed for; stale snapshots are discarded.
"""

log = logging.getLogger("chatsync.messages")


@dataclass(frozen=True)
class OptimisticEntry:
    temp_id: str
    client_ref: str
    sender_id: str
    content: str
    kind: str
    created_at: int = field(default_factory=now_ms)

    @property
    def id(self) -> str:
        return self.temp_id

    @property
    def pending(self) -> bool:
        return True


VisibleItem = Union[Message, OptimisticEntry]


class ConversationView:
    def __init__(self, conversation_id: str, partner_id: str) -> None:
        self.conversation_id = conversation_id
        self.partner_id = partner_id
        self.durable: List[Message] = []
        self.pending: "OrderedDict[str, OptimisticEntry]" = OrderedDict()
        self.loaded = False

    def visible(self) -> List[VisibleItem]:
        return [*self.durable, *self.pending.values()]

    def add_pending(self, sender_id: str, content: str, kind: str) -> OptimisticEntry:
        client_ref = uuid.uuid4().hex
        entry = OptimisticEntry(
            temp_id=f"temp_{client_ref}",
            client_ref=client_ref,
            sender_id=sender_id,
            content=content,
            kind=kind,
        )
        self.pending[entry.temp_id] = entry
        return entry

    def drop_pending(self, temp_id: str) -> bool:
        return self.pending.pop(temp_id, None) is not None

    def confirm(self, temp_id: str, message: Message) -> bool:
        """Swap a placeholder for its acknowledged message until the next snapshot lands."""

        dropped = self.drop_pending(temp_id)
        if any(m.id == message.id for m in self.durable):
            return dropped
        self.durable = sorted([*self.durable, message], key=lambda m: m.server_timestamp)
        return True

    def reconcile(self, messages: List[Message]) -> bool:
        """Replace the durable part; returns False when nothing changed."""

        landed = {m.client_ref for m in messages if m.client_ref}
        retired = [tid for tid, e in self.pending.items() if e.client_ref in landed]
        if messages == self.durable and not retired and self.loaded:
            return False
        self.durable = list(messages)
        for tid in retired:
            self.pending.pop(tid, None)
        self.loaded = True
        return True


class MessageSynchronizer:
    def __init__(
        self,
        store: RemoteStore,
        objects: ObjectStore,
        session: SessionContext,
        relationships: RelationshipEngine,
        reactions: ReactionLedger,
        *,
        media: Optional[MediaConfig] = None,
        on_change: Optional[Callable[[str, List[VisibleItem]], None]] = None,
    ) -> None:
        self.store = store
        self.objects = objects
        self.session = session
        self.relationships = relationships
        self.reactions = reactions
        self.media = media or MediaConfig()
        self.on_change = on_change
        self._view: Optional[ConversationView] = None
        self._sub: Optional[Subscription] = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> Optional[str]:
        return self._view.conversation_id if self._view else None

    async def open(self, partner_id: str) -> str:
        me = self.session.identity_id
        conversation_id = canonical_id(me, partner_id)
        if self._view is not None and self._view.conversation_id == conversation_id:
            return conversation_id

        # previous stream goes away before the permission check can suspend
        self.close()
        ticket = self._generation
        if not await self.relationships.is_contact(partner_id):
            raise Unauthorized(f"no accepted chat request with {partner_id}")
        if self._generation != ticket:
            # a later open() or close() was issued while we were checking
            if self._view is not None and self._view.conversation_id == conversation_id:
                return conversation_id
            raise ConversationClosed(f"opening {conversation_id} was superseded")

        self._generation += 1
        generation = self._generation
        self._view = ConversationView(conversation_id, partner_id)
        self._sub = self.store.subscribe_messages(
            conversation_id, lambda snap: self._on_snapshot(conversation_id, generation, snap)
        )
        log.debug("Opened conversation %s (gen %d)", conversation_id, generation)
        return conversation_id

    def close(self) -> None:
        if self._sub is not None:
            self._sub.unsubscribe()
        self._sub = None
        if self._view is not None:
            log.debug("Closed conversation %s", self._view.conversation_id)
        self._view = None
        self._generation += 1

    def visible(self) -> List[VisibleItem]:
        return self._view.visible() if self._view else []

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _on_snapshot(self, conversation_id: str, generation: int, snapshot: Snapshot) -> None:
        view = self._view
        if (
            view is None
            or generation != self._generation
            or snapshot.key != conversation_id
            or view.conversation_id != conversation_id
        ):
            log.debug("Discarded stale snapshot for %s", snapshot.key)
            return
        try:
            messages = decode_many(Message, snapshot.docs)
        except SchemaError as exc:
            log.warning("Dropped message snapshot for %s: %s", conversation_id, exc)
            return
        if view.reconcile(messages):
            self._notify(view)

    def _notify(self, view: ConversationView) -> None:
        if self.on_change is None or view is not self._view:
            return
        try:
            self.on_change(view.conversation_id, view.visible())
        except Exception:
            log.exception("message on_change callback failed")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_text(self, content: str) -> Message:
        view = self._require_view()
        if not content or not content.strip():
            raise EmptyMessage("message is empty")
        entry = view.add_pending(self.session.identity_id, content, "text")
        self._notify(view)
        try:
            return await self._append(view, entry, content, "text")
        except BaseException:
            self._rollback(view, entry)
            raise

    async def send_media(self, media: MediaFile, on_progress: Optional[ProgressFn] = None) -> Message:
        kind = classify(media.mime_type)
        view = self._require_view()
        entry = view.add_pending(self.session.identity_id, media.name, kind)
        self._notify(view)

        try:
            data, content_type = media.data, media.mime_type
            if kind == "image":
                data, content_type = await compress_image_async(
                    data,
                    max_bytes=self.media.max_image_bytes,
                    max_dimension=self.media.max_image_dimension,
                    quality=self.media.jpeg_quality,
                    mime_type=media.mime_type,
                )
            path = media_path(view.conversation_id, media.name, now_ms(), prefix=self.media.path_prefix)
            address = await upload_resumable(
                self.objects,
                path,
                data,
                content_type,
                chunk_size=self.media.chunk_size,
                on_progress=on_progress,
            )
            return await self._append(view, entry, address, kind)
        except BaseException:
            # cancellation included: no placeholder outlives its send
            self._rollback(view, entry)
            raise

    async def _append(self, view: ConversationView, entry: OptimisticEntry, content: str, kind: str) -> Message:
        doc = {
            "from": entry.sender_id,
            "content": content,
            "type": kind,
            "reactions": {},
            "clientRef": entry.client_ref,
        }
        try:
            message = decode_message(await self.store.append_message(view.conversation_id, doc))
        except ChatSyncError as exc:
            log.warning("Durable append to %s failed: %s", view.conversation_id, exc)
            raise DurableWriteFailed(str(exc)) from exc
        if view.confirm(entry.temp_id, message):
            self._notify(view)
        return message

    def _rollback(self, view: ConversationView, entry: OptimisticEntry) -> None:
        if view.drop_pending(entry.temp_id):
            self._notify(view)

    def _require_view(self) -> ConversationView:
        if self._view is None:
            raise ConversationClosed("no conversation is open")
        return self._view

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def react(self, message_id: str, symbol: str) -> Message:
        view = self._require_view()
        return await self.reactions.toggle(view.conversation_id, message_id, symbol)


__all__ = ["OptimisticEntry", "ConversationView", "MessageSynchronizer", "VisibleItem"]
