from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .errors import ConflictError, ConflictExceeded
from .proto import Message, decode_message
from .session import SessionContext
from .store import RemoteStore

log = logging.getLogger("chatsync.reactions")

DEFAULT_REACTIONS = ("\u2764\ufe0f", "\U0001F602", "\U0001F525", "\U0001F44D", "\U0001F622")
DEFAULT_MAX_ATTEMPTS = 5

ReactionMap = Dict[str, List[str]]

T = TypeVar("T")
R = TypeVar("R")


def apply_toggle(reactions: ReactionMap, identity_id: str, symbol: str) -> ReactionMap:
    """Toggle ``identity_id``'s reaction to ``symbol``; pure, returns a new map.

    The identity is first removed from wherever it currently is (empty sets are
    pruned). If that was ``symbol`` the result is an un-react, otherwise the
    identity is added under ``symbol``. At most one symbol per identity holds for
    the result whatever the input looked like.
    """

    if not symbol:
        raise ValueError("reaction symbol must be non-empty")
    previous: List[str] = []
    updated: ReactionMap = {}
    for sym, ids in reactions.items():
        if identity_id in ids:
            previous.append(sym)
        kept = [i for i in dict.fromkeys(ids) if i != identity_id]
        if kept:
            updated[sym] = kept
    if symbol not in previous:
        updated.setdefault(symbol, []).append(identity_id)
    return updated


async def optimistic_update(
    read: Callable[[], Awaitable[Tuple[T, int]]],
    modify: Callable[[T], T],
    commit: Callable[[T, int], Awaitable[R]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> R:
    """Read, modify, commit-if-unchanged; on ConflictError start over.

    ``modify`` must be pure so that reapplying it to fresher state is safe. Only
    ConflictError is retried; every other failure propagates on the first attempt.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    for attempt in range(1, max_attempts + 1):
        value, version = await read()
        try:
            return await commit(modify(value), version)
        except ConflictError:
            log.debug("commit conflict on attempt %d/%d", attempt, max_attempts)
    raise ConflictExceeded(f"gave up after {max_attempts} conflicting attempts")


class ReactionLedger:
    def __init__(
        self,
        store: RemoteStore,
        session: SessionContext,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.session = session
        self.max_attempts = max_attempts

    async def toggle(
        self,
        conversation_id: str,
        message_id: str,
        symbol: str,
        identity_id: Optional[str] = None,
    ) -> Message:
        who = identity_id or self.session.identity_id

        async def read() -> Tuple[ReactionMap, int]:
            message = decode_message(await self.store.get_message(conversation_id, message_id))
            return message.reactions, message.version

        async def commit(reactions: ReactionMap, version: int) -> Message:
            doc = await self.store.update_reactions(
                conversation_id, message_id, reactions, expected_version=version
            )
            return decode_message(doc)

        message = await optimistic_update(
            read,
            lambda current: apply_toggle(current, who, symbol),
            commit,
            max_attempts=self.max_attempts,
        )
        log.debug("%s reacted %r on %s (now %s)", who, symbol, message_id, message.reaction_of(who))
        return message


__all__ = ["DEFAULT_REACTIONS", "apply_toggle", "optimistic_update", "ReactionLedger"]
