from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .errors import AlreadyExists, ConflictError, NotFound, SchemaError, Unauthorized
from .proto import (
    Identity,
    Relationship,
    canonical_id,
    decode_many,
    decode_relationship,
)
from .session import SessionContext
from .store import RemoteStore, Snapshot, Subscription

log = logging.getLogger("chatsync.relationships")


class RelationshipState(enum.Enum):
    NONE = "none"
    PENDING_OUTGOING = "pending_outgoing"
    PENDING_INCOMING = "pending_incoming"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class IncomingRequest:
    identity: Identity
    relationship: Relationship


@dataclass
class Partition:
    contacts: List[Identity] = field(default_factory=list)
    incoming: List[IncomingRequest] = field(default_factory=list)
    other: List[Identity] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure derivations
# ---------------------------------------------------------------------------

_PRECEDENCE = {"accepted": 0, "pending": 1, "rejected": 2}


def _authoritative(records: Iterable[Relationship]) -> Optional[Relationship]:
    # Older data can hold more than one record per pair; pick one deterministically.
    ordered = sorted(records, key=lambda r: (_PRECEDENCE[r.status], r.created_at, r.id))
    return ordered[0] if ordered else None


def index_by_counterpart(me: str, relationships: Iterable[Relationship]) -> Dict[str, Relationship]:
    grouped: Dict[str, List[Relationship]] = {}
    for rel in relationships:
        if not rel.involves(me) or rel.from_identity == rel.to_identity:
            continue
        grouped.setdefault(rel.counterpart(me), []).append(rel)
    return {other: _authoritative(recs) for other, recs in grouped.items()}  # type: ignore[misc]


def state_of(me: str, rel: Optional[Relationship]) -> RelationshipState:
    if rel is None:
        return RelationshipState.NONE
    if rel.status == "accepted":
        return RelationshipState.ACCEPTED
    if rel.status == "rejected":
        return RelationshipState.REJECTED
    if rel.to_identity == me:
        return RelationshipState.PENDING_INCOMING
    return RelationshipState.PENDING_OUTGOING


def state_between(me: str, other: str, relationships: Iterable[Relationship]) -> RelationshipState:
    return state_of(me, index_by_counterpart(me, relationships).get(other))


def partition(me: str, identities: Iterable[Identity], relationships: Iterable[Relationship]) -> Partition:
    """Place every other identity in exactly one of contacts / incoming / other."""

    by_other = index_by_counterpart(me, relationships)
    result = Partition()
    seen = set()
    for identity in identities:
        if identity.id == me or identity.id in seen:
            continue
        seen.add(identity.id)
        rel = by_other.get(identity.id)
        state = state_of(me, rel)
        if state is RelationshipState.ACCEPTED:
            result.contacts.append(identity)
        elif state is RelationshipState.PENDING_INCOMING:
            result.incoming.append(IncomingRequest(identity=identity, relationship=rel))  # type: ignore[arg-type]
        else:
            result.other.append(identity)
    return result


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RelationshipEngine:
    """Request → accept/decline state machine, seen from the session identity."""

    def __init__(
        self,
        store: RemoteStore,
        session: SessionContext,
        on_change: Optional[Callable[[Partition], None]] = None,
    ) -> None:
        self.store = store
        self.session = session
        self.on_change = on_change
        self._identities: Dict[str, Identity] = {}
        self._relationships: Dict[str, Relationship] = {}
        self._subs: List[Subscription] = []
        self._owner: Optional[str] = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def start(self) -> None:
        me = self.session.identity_id
        if self._owner == me and self._subs:
            return
        self.stop()
        self._owner = me
        self._subs = [
            self.store.subscribe_identities(me, lambda snap: self._on_identities(me, snap)),
            self.store.subscribe_relationships(me, lambda snap: self._on_relationships(me, snap)),
        ]
        log.debug("Relationship subscriptions started for %s", me)

    def stop(self) -> None:
        for sub in self._subs:
            sub.unsubscribe()
        self._subs = []
        self._owner = None
        self._identities.clear()
        self._relationships.clear()

    def _on_identities(self, owner: str, snapshot: Snapshot) -> None:
        if owner != self._owner:
            return
        try:
            identities = decode_many(Identity, snapshot.docs)
        except SchemaError as exc:
            log.warning("Dropped identities snapshot: %s", exc)
            return
        fresh = {i.id: i for i in identities if i.verified and i.id != owner}
        if fresh == self._identities:
            return
        self._identities = fresh
        self._notify()

    def _on_relationships(self, owner: str, snapshot: Snapshot) -> None:
        if owner != self._owner:
            return
        try:
            relationships = decode_many(Relationship, snapshot.docs)
        except SchemaError as exc:
            log.warning("Dropped relationships snapshot: %s", exc)
            return
        fresh = {r.id: r for r in relationships if r.involves(owner)}
        if fresh == self._relationships:
            return
        self._relationships = fresh
        self._notify()

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.partition())
        except Exception:
            log.exception("relationship on_change callback failed")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def identities(self) -> List[Identity]:
        return list(self._identities.values())

    @property
    def relationships(self) -> List[Relationship]:
        return list(self._relationships.values())

    def identity(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)

    def partition(self) -> Partition:
        return partition(self.session.identity_id, self._identities.values(), self._relationships.values())

    def relationship_with(self, other: str) -> Optional[Relationship]:
        return index_by_counterpart(self.session.identity_id, self._relationships.values()).get(other)

    def state_for(self, other: str) -> RelationshipState:
        return state_of(self.session.identity_id, self.relationship_with(other))

    async def is_contact(self, other: str) -> bool:
        """Accepted relationship with ``other``; re-reads the store when the cache disagrees."""

        if self.state_for(other) is RelationshipState.ACCEPTED:
            return True
        try:
            rel = decode_relationship(await self.store.get_relationship(canonical_id(self.session.identity_id, other)))
        except NotFound:
            return False
        return rel.status == "accepted" and rel.involves(self.session.identity_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def propose(self, target_id: str) -> Relationship:
        """Create a pending request; the first record for a pair wins."""

        me = self.session.identity_id
        if target_id == me:
            raise ValueError("cannot send a chat request to yourself")
        rel_id = canonical_id(me, target_id)
        doc = {"id": rel_id, "fromUserId": me, "toUserId": target_id, "status": "pending"}
        try:
            created = decode_relationship(await self.store.create_relationship(doc))
        except AlreadyExists:
            existing = decode_relationship(await self.store.get_relationship(rel_id))
            log.info("Chat request %s already exists (%s); keeping it", rel_id, existing.status)
            return existing
        log.info("Chat request sent %s -> %s", me, target_id)
        return created

    async def accept(self, relationship_id: str) -> Relationship:
        return await self._transition(relationship_id, "accepted")

    async def decline(self, relationship_id: str) -> Relationship:
        return await self._transition(relationship_id, "rejected")

    async def _transition(self, relationship_id: str, status: str) -> Relationship:
        me = self.session.identity_id
        try:
            current = decode_relationship(await self.store.get_relationship(relationship_id))
        except NotFound as exc:
            raise Unauthorized(f"relationship {relationship_id} does not exist") from exc

        if current.to_identity != me:
            raise Unauthorized("only the recipient may answer a chat request")
        if current.status != "pending":
            raise Unauthorized(f"chat request is already {current.status}")

        try:
            updated = await self.store.update_relationship(
                relationship_id, {"status": status}, expected_version=current.version
            )
        except ConflictError as exc:
            raise Unauthorized("chat request changed while answering it") from exc
        log.info("Chat request %s -> %s by %s", relationship_id, status, me)
        return decode_relationship(updated)


__all__ = [
    "RelationshipState",
    "IncomingRequest",
    "Partition",
    "RelationshipEngine",
    "index_by_counterpart",
    "state_of",
    "state_between",
    "partition",
]
