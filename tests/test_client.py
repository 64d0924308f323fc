import pytest

from chatsync.core.client import ChatClient
from chatsync.core.config import ClientConfig, SessionConfig
from chatsync.core.errors import PermissionDenied
from chatsync.core.reactions import DEFAULT_REACTIONS
from chatsync.core.relationships import RelationshipState


# ---- helpers ----

@pytest.fixture
def make_client(store, objects, tmp_path):
    def _make(name="client", **kwargs):
        config = ClientConfig(session=SessionConfig(db_path=str(tmp_path / f"{name}.db")))
        return ChatClient(store, objects, config, **kwargs)
    return _make


# ---- lifecycle ----

@pytest.mark.asyncio
async def test_fresh_start_has_no_identity(make_client):
    client = make_client()
    assert await client.start() is None
    assert client.identity is None
    await client.shutdown()


@pytest.mark.asyncio
async def test_restart_restores_session_and_presence(make_client, store, alice, bob, settle):
    first = make_client("alice")
    await first.start()
    await first.login(alice.handle, alice.phone)
    await first.shutdown()
    assert store.identity(alice.id)["status"] == "offline"

    second = make_client("alice")
    restored = await second.start()
    assert restored is not None and restored.id == alice.id
    await second.sessions.drain()
    assert store.identity(alice.id)["status"] == "online"

    await settle()
    assert [i.id for i in second.partition().other] == [bob.id]
    await second.shutdown()


@pytest.mark.asyncio
async def test_logout_forgets_stored_session(make_client, alice):
    client = make_client("alice")
    await client.start()
    await client.login(alice.handle, alice.phone)
    client.logout()
    await client.shutdown()

    again = make_client("alice")
    assert await again.start() is None
    await again.shutdown()


# ---- contacts and chat ----

@pytest.mark.asyncio
async def test_facade_end_to_end(make_client, alice, bob, settle):
    partitions = []
    a = make_client("alice", on_contacts=partitions.append)
    b = make_client("bob")
    for client, who in ((a, alice), (b, bob)):
        await client.start()
        await client.login(who.handle, who.phone)

    rel = await a.send_request(bob.id)
    await settle()
    assert a.relationships.state_for(bob.id) is RelationshipState.PENDING_OUTGOING
    await b.accept(rel.id)
    await settle()
    assert [i.id for i in partitions[-1].contacts] == [bob.id]

    await a.open_chat(bob.id)
    await b.open_chat(alice.id)
    sent = await a.send_text("hello from the facade")
    await b.react(sent.id, DEFAULT_REACTIONS[1])
    await settle()
    assert a.visible_messages()[0].reactions == {DEFAULT_REACTIONS[1]: [bob.id]}

    a.close_chat()
    assert a.visible_messages() == []
    await a.shutdown()
    await b.shutdown()


def test_reaction_symbols_and_voice_errors(make_client):
    client = make_client()
    assert client.reaction_symbols == list(DEFAULT_REACTIONS)
    assert isinstance(client.voice_error("not-allowed"), PermissionDenied)
    assert client.voice_error("no-speech") is None
