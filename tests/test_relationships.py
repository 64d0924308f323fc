import asyncio

import pytest

from chatsync.core.errors import Unauthorized
from chatsync.core.proto import Identity, Relationship, canonical_id
from chatsync.core.relationships import (
    RelationshipEngine,
    RelationshipState,
    partition,
    state_between,
)
from chatsync.core.session import SessionContext
from chatsync.core.store import InMemoryRemoteStore


# ---- helpers ----

def ident(i: str) -> Identity:
    return Identity(id=i, name=i.title(), username=i, phone="0", verified=True)


def rel(a: str, b: str, status: str = "pending", ts: int = 1, rid: str | None = None) -> Relationship:
    return Relationship(id=rid or f"{a}->{b}", fromUserId=a, toUserId=b, status=status, timestamp=ts)


@pytest.fixture
def engine_for(store):
    engines = []

    def _engine(identity, on_change=None):
        e = RelationshipEngine(store, SessionContext(identity), on_change=on_change)
        engines.append(e)
        return e

    yield _engine
    for e in engines:
        e.stop()


# ---- pure derivations ----

def test_partition_is_total_and_disjoint():
    me = "me"
    identities = [ident(x) for x in ("me", "a", "b", "c", "d", "e")]
    rels = [
        rel("me", "a", "accepted"),
        rel("b", "me", "pending"),
        rel("me", "c", "pending"),
        rel("d", "me", "rejected"),
        rel("x", "y", "accepted"),
    ]
    p = partition(me, identities, rels)
    contacts = {i.id for i in p.contacts}
    incoming = {r.identity.id for r in p.incoming}
    other = {i.id for i in p.other}

    assert contacts == {"a"}
    assert incoming == {"b"}
    assert other == {"c", "d", "e"}
    assert contacts | incoming | other == {"a", "b", "c", "d", "e"}
    assert p.incoming[0].relationship.from_identity == "b"


def test_state_between_directions():
    rels = [rel("me", "a"), rel("b", "me"), rel("me", "c", "accepted"), rel("d", "me", "rejected")]
    assert state_between("me", "a", rels) is RelationshipState.PENDING_OUTGOING
    assert state_between("me", "b", rels) is RelationshipState.PENDING_INCOMING
    assert state_between("me", "c", rels) is RelationshipState.ACCEPTED
    assert state_between("me", "d", rels) is RelationshipState.REJECTED
    assert state_between("me", "z", rels) is RelationshipState.NONE


def test_duplicate_records_resolve_deterministically():
    """Legacy pairs with two records: accepted beats pending regardless of order."""
    rels = [rel("a", "me", "pending", ts=1, rid="r1"), rel("me", "a", "accepted", ts=2, rid="r2")]
    assert state_between("me", "a", rels) is RelationshipState.ACCEPTED
    assert state_between("me", "a", list(reversed(rels))) is RelationshipState.ACCEPTED


# ---- engine ----

@pytest.mark.asyncio
async def test_request_accept_flow_updates_both_sides(engine_for, alice, bob, settle):
    a_changes = []
    a = engine_for(alice, on_change=a_changes.append)
    b = engine_for(bob)
    a.start()
    b.start()
    await settle()

    sent = await a.propose(bob.id)
    assert sent.id == canonical_id(alice.id, bob.id)
    assert sent.status == "pending"
    await settle()
    assert a.state_for(bob.id) is RelationshipState.PENDING_OUTGOING
    assert [r.identity.id for r in b.partition().incoming] == [alice.id]

    accepted = await b.accept(sent.id)
    assert accepted.status == "accepted"
    await settle()
    assert [i.id for i in a.partition().contacts] == [bob.id]
    assert [i.id for i in b.partition().contacts] == [alice.id]
    assert a_changes and [i.id for i in a_changes[-1].contacts] == [bob.id]


@pytest.mark.asyncio
async def test_only_recipient_may_answer(engine_for, alice, bob, carol):
    a = engine_for(alice)
    sent = await a.propose(bob.id)

    with pytest.raises(Unauthorized):
        await a.accept(sent.id)
    with pytest.raises(Unauthorized):
        await engine_for(carol).decline(sent.id)


@pytest.mark.asyncio
async def test_answer_is_final(engine_for, alice, bob):
    sent = await engine_for(alice).propose(bob.id)
    b = engine_for(bob)
    await b.decline(sent.id)
    with pytest.raises(Unauthorized):
        await b.accept(sent.id)


@pytest.mark.asyncio
async def test_unknown_relationship_is_unauthorized(engine_for, alice):
    with pytest.raises(Unauthorized):
        await engine_for(alice).accept("nope")


@pytest.mark.asyncio
async def test_simultaneous_proposals_leave_one_record(engine_for, store, alice, bob, settle):
    a, b = engine_for(alice), engine_for(bob)
    r1, r2 = await asyncio.gather(a.propose(bob.id), b.propose(alice.id))
    assert r1.id == r2.id
    assert r1.from_identity == r2.from_identity

    seen = []
    store.subscribe_relationships(alice.id, seen.append)
    await settle()
    assert len(seen[-1].docs) == 1


@pytest.mark.asyncio
async def test_repeat_proposal_returns_existing(engine_for, alice, bob):
    a = engine_for(alice)
    first = await a.propose(bob.id)
    b = engine_for(bob)
    await b.accept(first.id)
    again = await a.propose(bob.id)
    assert again.status == "accepted"


@pytest.mark.asyncio
async def test_self_proposal_rejected(engine_for, alice):
    with pytest.raises(ValueError):
        await engine_for(alice).propose(alice.id)


@pytest.mark.asyncio
async def test_is_contact_rereads_when_cache_is_cold(engine_for, alice, bob, befriend):
    await befriend(alice, bob)
    a = engine_for(alice)  # never started, cache empty
    assert a.state_for(bob.id) is RelationshipState.NONE
    assert await a.is_contact(bob.id)


@pytest.mark.asyncio
async def test_is_contact_false_for_pending(engine_for, alice, bob):
    a = engine_for(alice)
    await a.propose(bob.id)
    assert not await a.is_contact(bob.id)


@pytest.mark.asyncio
async def test_malformed_snapshot_is_dropped(alice, bob, settle, caplog):
    store = InMemoryRemoteStore()
    store.add_identity(name="Bob", username="bob", phone="1", verified=True, identity_id="bob")
    engine = RelationshipEngine(store, SessionContext(alice))
    engine.start()
    await settle()
    assert [i.id for i in engine.identities] == ["bob"]

    store._identities["bob"]["status"] = "away"  # not a valid presence value
    store.set_verified("bob")
    await settle()
    assert [i.presence_status for i in engine.identities] == ["offline"]
    assert "Dropped identities snapshot" in caplog.text
    engine.stop()


@pytest.mark.asyncio
async def test_stop_detaches_subscriptions(engine_for, alice, bob, settle):
    changes = []
    a = engine_for(alice, on_change=changes.append)
    a.start()
    a.stop()
    await engine_for(bob).propose(alice.id)
    await settle()
    assert changes == []
    assert a.identities == []
