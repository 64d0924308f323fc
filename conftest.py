import asyncio
import itertools

import pytest
import pytest_asyncio

from chatsync.core.objects import InMemoryObjectStore
from chatsync.core.proto import canonical_id, decode_identity
from chatsync.core.session import SessionContext
from chatsync.core.session_store import SessionStore
from chatsync.core.store import InMemoryRemoteStore


class Clock:
    """Strictly increasing fake epoch-ms clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self._ticks = itertools.count(start, 10)

    def __call__(self) -> int:
        return next(self._ticks)


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Await to let call_soon deliveries and fire-and-forget tasks run."""
    return _settle


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return InMemoryRemoteStore(now=clock)


@pytest.fixture
def objects():
    return InMemoryObjectStore()


def _add(store, ident, verified=True):
    return decode_identity(
        store.add_identity(
            name=ident.title(),
            username=ident,
            phone=f"04000000{len(ident):02d}",
            verified=verified,
            identity_id=ident,
        )
    )


@pytest.fixture
def alice(store):
    return _add(store, "alice")


@pytest.fixture
def bob(store):
    return _add(store, "bob")


@pytest.fixture
def carol(store):
    return _add(store, "carol")


@pytest.fixture
def dave(store):
    """Registered but not yet approved."""
    return _add(store, "dave", verified=False)


@pytest.fixture
def ctx():
    def _ctx(identity):
        return SessionContext(identity)
    return _ctx


@pytest.fixture
def befriend(store):
    """Create an accepted relationship between two identities directly in the store."""

    async def _befriend(a, b):
        rel_id = canonical_id(a.id, b.id)
        doc = await store.create_relationship(
            {"id": rel_id, "fromUserId": a.id, "toUserId": b.id, "status": "pending"}
        )
        return await store.update_relationship(rel_id, {"status": "accepted"}, expected_version=doc["_version"])

    return _befriend


@pytest_asyncio.fixture
async def session_store(tmp_path):
    s = SessionStore(tmp_path / "session.db")
    await s.open()
    yield s
    await s.close()
