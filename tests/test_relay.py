import asyncio
import os

import pytest
import pytest_asyncio

from chatsync.core.client import ChatClient
from chatsync.core.config import ClientConfig, RelayConfig, SeedIdentity
from chatsync.core.errors import AlreadyExists, ConflictError, InvalidCredentials, NotFound, StoreError
from chatsync.core.media import upload_resumable
from chatsync.core.reactions import DEFAULT_REACTIONS
from chatsync.core.session_store import SessionStore
from chatsync.core.ws import RelayConnection, WebSocketObjectStore, WebSocketRemoteStore
from chatsync.server.runtime import ServerRuntime


# ---- helpers ----

async def eventually(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


SEEDS = [
    SeedIdentity(id="alice", name="Alice", username="alice", phone="0400000001", verified=True),
    SeedIdentity(id="bob", name="Bob", username="bob", phone="0400000002", verified=True),
    SeedIdentity(id="carol", name="Carol", username="carol", phone="0400000003", verified=False),
]


@pytest_asyncio.fixture
async def relay():
    runtime = ServerRuntime(RelayConfig(listen="127.0.0.1:0", identities=SEEDS))
    await runtime.start()
    yield runtime
    await runtime.stop()


@pytest_asyncio.fixture
async def conn(relay):
    c = RelayConnection(relay.url, request_timeout=3.0)
    await c.connect()
    yield c
    await c.close()


@pytest_asyncio.fixture
async def clients(relay):
    made = []

    async def _client():
        config = ClientConfig(relay_url=relay.url)
        client = await ChatClient.connect(config, session_store=SessionStore(":memory:"))
        await client.start()
        made.append(client)
        return client

    yield _client
    for client in made:
        await client.shutdown()


# ---- request / response ----

@pytest.mark.asyncio
async def test_find_identity_over_relay(conn):
    store = WebSocketRemoteStore(conn)
    doc = await store.find_identity("alice", "0400000001")
    assert doc["id"] == "alice"
    assert await store.find_identity("alice", "nope") is None


@pytest.mark.asyncio
async def test_errors_keep_their_type_across_the_wire(conn):
    store = WebSocketRemoteStore(conn)
    doc = {"id": "alice_bob", "fromUserId": "alice", "toUserId": "bob", "status": "pending"}
    created = await store.create_relationship(doc)
    with pytest.raises(AlreadyExists):
        await store.create_relationship(doc)
    await store.update_relationship("alice_bob", {"status": "accepted"}, expected_version=created["_version"])
    with pytest.raises(ConflictError):
        await store.update_relationship("alice_bob", {"status": "rejected"}, expected_version=created["_version"])
    with pytest.raises(NotFound):
        await store.get_message("alice_bob", "missing")


@pytest.mark.asyncio
async def test_unknown_frame_type_is_an_error(conn):
    with pytest.raises(StoreError):
        await conn.request("BOGUS", {})


@pytest.mark.asyncio
async def test_subscription_pushes_snapshots_until_unsubscribed(conn, relay):
    store = WebSocketRemoteStore(conn)
    seen = []
    sub = store.subscribe_messages("alice_bob", seen.append)
    await eventually(lambda: len(seen) == 1)
    assert seen[0].docs == []

    await store.append_message("alice_bob", {"from": "alice", "content": "over the wire", "type": "text"})
    await eventually(lambda: len(seen) == 2)
    assert seen[-1].docs[0]["content"] == "over the wire"

    sub.unsubscribe()
    await asyncio.sleep(0.05)
    await relay.store.append_message("alice_bob", {"from": "bob", "content": "unseen", "type": "text"})
    await asyncio.sleep(0.1)
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_chunked_upload_over_relay(conn, relay):
    objects = WebSocketObjectStore(conn)
    data = os.urandom(70_000)
    progress = []
    address = await upload_resumable(objects, "chat_media/alice_bob/1_clip.mp4", data, "video/mp4", chunk_size=16_384, on_progress=progress.append)
    assert address == "relay://objects/chat_media/alice_bob/1_clip.mp4"
    assert relay.objects.get(address).data == data
    assert progress[0] == 0 and progress[-1] == 100


# ---- end to end ----

@pytest.mark.asyncio
async def test_two_clients_chat_through_relay(clients, relay):
    alice = await clients()
    bob = await clients()

    with pytest.raises(InvalidCredentials):
        await alice.login("alice", "wrong")
    await alice.login("alice", "0400000001")
    await bob.login("bob", "0400000002")
    await eventually(lambda: relay.store.identity("alice")["status"] == "online")

    await eventually(lambda: [i.id for i in alice.partition().other] == ["bob"])
    rel = await alice.send_request("bob")
    await eventually(lambda: [r.identity.id for r in bob.partition().incoming] == ["alice"])
    await bob.accept(rel.id)
    await eventually(lambda: [i.id for i in alice.partition().contacts] == ["bob"])

    assert await alice.open_chat("bob") == await bob.open_chat("alice") == "alice_bob"
    sent = await alice.send_text("hi bob")
    await eventually(lambda: [i.content for i in bob.visible_messages()] == ["hi bob"])

    await bob.react(sent.id, DEFAULT_REACTIONS[3])
    await eventually(
        lambda: bool(alice.visible_messages()) and alice.visible_messages()[0].reactions == {DEFAULT_REACTIONS[3]: ["bob"]}
    )

    alice.logout()
    await eventually(lambda: relay.store.identity("alice")["status"] == "offline")
