from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from .errors import ChatSyncError, InvalidCredentials, NotLoggedIn, PendingApproval
from .proto import Identity, decode_identity
from .session_store import SessionStore
from .store import RemoteStore

"""
Session & presence
------------------
Owns the local identity and its online/offline signalling.

Presence write policy
=====================
Every presence write (online on login/restore, offline on logout/teardown) is
fire-and-forget: it is scheduled as a background task, never awaited by the
caller, and a failure is only logged. Teardown-time callers have no reliable way
to wait, so nothing here may depend on the write landing.

Lifecycle contract for the host
===============================
- await restore()         on start-up, before anything reads the context
- await login(h, p)       user intent
- logout()                user intent; synchronous for the caller. The stored
                          session is wiped in the background; login() and
                          restore() wait for it, and a host that may exit
                          right after should await drain()
- on_session_end()        MUST be invoked by the host when the process/tab is
                          going away; best-effort, non-blocking, idempotent
- await drain()           optional, waits for outstanding background writes
"""

log = logging.getLogger("chatsync.session")

LOGIN_OK = "Login successful!"


class SessionContext:
    """Explicit holder of the current identity, passed to every component."""

    def __init__(self, identity: Optional[Identity] = None) -> None:
        self._identity = identity
        self._listeners: List[Callable[[Optional[Identity]], None]] = []

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def identity_id(self) -> str:
        if self._identity is None:
            raise NotLoggedIn("no identity in session")
        return self._identity.id

    @property
    def logged_in(self) -> bool:
        return self._identity is not None

    def set(self, identity: Optional[Identity]) -> None:
        self._identity = identity
        for listener in list(self._listeners):
            try:
                listener(identity)
            except Exception:
                log.exception("session listener failed")

    def clear(self) -> None:
        self.set(None)

    def add_listener(self, listener: Callable[[Optional[Identity]], None]) -> None:
        self._listeners.append(listener)


class SessionManager:
    def __init__(self, store: RemoteStore, session_store: SessionStore, context: SessionContext) -> None:
        self.store = store
        self.session_store = session_store
        self.context = context
        self._background: Set[asyncio.Task] = set()
        self._clearing: Optional[asyncio.Task] = None
        self._ended = False

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def login(self, handle: str, phone: str) -> str:
        await self._await_clear()
        doc = await self.store.find_identity(handle, phone)
        if doc is None:
            raise InvalidCredentials("Invalid username or phone number.")
        identity = decode_identity(doc)
        if not identity.verified:
            raise PendingApproval("Your account is pending admin approval.")

        online = identity.model_copy(update={"presence_status": "online"})
        await self.session_store.save(online)
        self.context.set(online)
        self._ended = False
        self._fire_presence(online.id, "online")
        log.info("Logged in as %s (%s)", online.handle, online.id)
        return LOGIN_OK

    def logout(self) -> None:
        identity = self.context.identity
        self.context.clear()
        if identity is None:
            return
        self._clearing = self._fire(self.session_store.clear(), "clear stored session")
        self._fire_presence(identity.id, "offline")
        log.info("Logged out %s", identity.id)

    async def restore(self) -> Optional[Identity]:
        """Bring a previously stored session back and re-announce it online."""

        await self._await_clear()
        identity = await self.session_store.load()
        if identity is None:
            return None
        restored = identity.model_copy(update={"presence_status": "online"})
        self.context.set(restored)
        self._ended = False
        self._fire_presence(restored.id, "online")
        log.info("Restored session for %s", restored.id)
        return restored

    def on_session_end(self) -> None:
        """Host teardown hook: mark offline, best-effort, keep the stored session."""

        identity = self.context.identity
        if identity is None or self._ended:
            return
        self._ended = True
        self._fire_presence(identity.id, "offline")

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Fire-and-forget plumbing
    # ------------------------------------------------------------------

    def _fire_presence(self, identity_id: str, status: str) -> None:
        self._fire(self.store.update_presence(identity_id, status), f"presence {status} for {identity_id}")

    async def _await_clear(self) -> None:
        # a logout still wiping the stored session must land before it is read or rewritten
        clearing, self._clearing = self._clearing, None
        if clearing is not None and not clearing.done():
            await asyncio.wait({clearing})

    def _fire(self, coro: Awaitable[None], what: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("No running loop; dropped %s", what)
            coro.close()  # type: ignore[union-attr]
            return None
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(lambda t: self._finished(t, what))
        return task

    def _finished(self, task: asyncio.Task, what: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            log.warning("Cancelled %s", what)
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, (ChatSyncError, OSError)):
            log.warning("Failed %s: %s", what, exc)
        else:
            log.error("Failed %s", what, exc_info=exc)


__all__ = ["SessionContext", "SessionManager", "LOGIN_OK"]
