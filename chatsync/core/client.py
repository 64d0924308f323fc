from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .config import ClientConfig
from .errors import VoiceInputError
from .media import MediaFile, ProgressFn
from .messages import MessageSynchronizer, VisibleItem
from .objects import ObjectStore
from .proto import Identity, Message, Relationship
from .reactions import ReactionLedger
from .relationships import Partition, RelationshipEngine
from .session import SessionContext, SessionManager
from .session_store import SessionStore
from .store import RemoteStore
from .voice import map_voice_error
from .ws import RelayConnection, WebSocketObjectStore, WebSocketRemoteStore

log = logging.getLogger("chatsync.client")


class ChatClient:
    """Wires one session's components around a remote store and an object store.

    Hosts call ``start()`` once, ``login``/``logout`` on user intent and
    ``shutdown()`` when the process is going away.
    """

    def __init__(
        self,
        store: RemoteStore,
        objects: ObjectStore,
        config: Optional[ClientConfig] = None,
        *,
        session_store: Optional[SessionStore] = None,
        on_contacts: Optional[Callable[[Partition], None]] = None,
        on_messages: Optional[Callable[[str, List[VisibleItem]], None]] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.store = store
        self.objects = objects
        self.context = SessionContext()
        self.session_store = session_store or SessionStore(self.config.session.db_path)
        self.sessions = SessionManager(store, self.session_store, self.context)
        self.relationships = RelationshipEngine(store, self.context, on_change=on_contacts)
        self.reactions = ReactionLedger(store, self.context, max_attempts=self.config.reactions.max_attempts)
        self.messages = MessageSynchronizer(
            store,
            objects,
            self.context,
            self.relationships,
            self.reactions,
            media=self.config.media,
            on_change=on_messages,
        )
        self._conn: Optional[RelayConnection] = None

    @classmethod
    async def connect(cls, config: ClientConfig, **kwargs) -> "ChatClient":
        """Build a client talking to the relay at ``config.relay_url``."""

        conn = RelayConnection(config.relay_url)
        await conn.connect()
        client = cls(WebSocketRemoteStore(conn), WebSocketObjectStore(conn), config, **kwargs)
        client._conn = conn
        return client

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def identity(self) -> Optional[Identity]:
        return self.context.identity

    async def start(self) -> Optional[Identity]:
        await self.session_store.open()
        identity = await self.sessions.restore()
        if identity is not None:
            self.relationships.start()
        return identity

    async def login(self, handle: str, phone: str) -> str:
        result = await self.sessions.login(handle, phone)
        self.relationships.start()
        return result

    def logout(self) -> None:
        self.messages.close()
        self.relationships.stop()
        self.sessions.logout()

    async def shutdown(self) -> None:
        self.sessions.on_session_end()
        self.messages.close()
        self.relationships.stop()
        await self.sessions.drain()
        await self.session_store.close()
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
        log.info("Client shut down")

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def partition(self) -> Partition:
        return self.relationships.partition()

    async def send_request(self, identity_id: str) -> Relationship:
        return await self.relationships.propose(identity_id)

    async def accept(self, relationship_id: str) -> Relationship:
        return await self.relationships.accept(relationship_id)

    async def decline(self, relationship_id: str) -> Relationship:
        return await self.relationships.decline(relationship_id)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def open_chat(self, partner_id: str) -> str:
        return await self.messages.open(partner_id)

    def close_chat(self) -> None:
        self.messages.close()

    def visible_messages(self) -> List[VisibleItem]:
        return self.messages.visible()

    async def send_text(self, content: str) -> Message:
        return await self.messages.send_text(content)

    async def send_media(self, media: MediaFile, on_progress: Optional[ProgressFn] = None) -> Message:
        return await self.messages.send_media(media, on_progress)

    async def react(self, message_id: str, symbol: str) -> Message:
        return await self.messages.react(message_id, symbol)

    @property
    def reaction_symbols(self) -> List[str]:
        return list(self.config.reactions.symbols)

    @staticmethod
    def voice_error(code: str) -> Optional[VoiceInputError]:
        return map_voice_error(code)


__all__ = ["ChatClient"]
