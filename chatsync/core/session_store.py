from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from chatsync.utils.canonical import canonical_bytes, loads

from .errors import SchemaError
from .proto import Identity, decode_identity, now_ms

log = logging.getLogger("chatsync.session_store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS session(
    slot       TEXT PRIMARY KEY,
    identity   BLOB NOT NULL,
    saved_at   INT  NOT NULL
);
"""

SLOT = "current"


class SessionStore:
    """Keeps the logged-in identity on disk so a restart can restore it."""

    def __init__(self, path: str | Path = "chatsync-session.db") -> None:
        self.path = str(path) if str(path) == ":memory:" else str(Path(path).expanduser())
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        if self._db is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.path)
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is None:
            return
        await self._db.close()
        self._db = None

    async def save(self, identity: Identity) -> None:
        db = await self._conn()
        await db.execute(
            """INSERT INTO session(slot, identity, saved_at) VALUES(?,?,?)
               ON CONFLICT(slot) DO UPDATE SET identity=excluded.identity, saved_at=excluded.saved_at""",
            (SLOT, canonical_bytes(identity.to_doc()), now_ms()),
        )
        await db.commit()

    async def load(self) -> Optional[Identity]:
        db = await self._conn()
        cur = await db.execute("SELECT identity FROM session WHERE slot=?", (SLOT,))
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        try:
            return decode_identity(loads(row[0]))
        except (SchemaError, ValueError) as exc:
            log.warning("Discarding unreadable stored session: %s", exc)
            await self.clear()
            return None

    async def clear(self) -> None:
        db = await self._conn()
        await db.execute("DELETE FROM session WHERE slot=?", (SLOT,))
        await db.commit()

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.open()
        assert self._db is not None
        return self._db


__all__ = ["SessionStore"]
