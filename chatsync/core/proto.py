from __future__ import annotations

import base64
import time
from typing import Any, Dict, Iterable, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import SchemaError


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------
# Aliases keep the document shapes the remote store already holds
# (users / chatRequests / chats/<id>/messages).

PresenceStatus = Literal["online", "offline"]
RelationshipStatus = Literal["pending", "accepted", "rejected"]
MessageKind = Literal["text", "image", "video"]

CONVERSATION_SEPARATOR = "_"


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    version: int = Field(default=0, alias="_version")

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Identity(Record):
    id: str
    display_name: str = Field(alias="name")
    handle: str = Field(alias="username")
    phone: str
    verified: bool = False
    presence_status: PresenceStatus = Field(default="offline", alias="status")
    last_seen_at: Optional[int] = Field(default=None, alias="lastSeen")


class Relationship(Record):
    id: str
    from_identity: str = Field(alias="fromUserId")
    to_identity: str = Field(alias="toUserId")
    status: RelationshipStatus = "pending"
    created_at: int = Field(alias="timestamp")

    def counterpart(self, identity_id: str) -> str:
        return self.to_identity if self.from_identity == identity_id else self.from_identity

    def involves(self, identity_id: str) -> bool:
        return identity_id in (self.from_identity, self.to_identity)


class Message(Record):
    id: str
    sender_id: str = Field(alias="from")
    content: str
    kind: MessageKind = Field(default="text", alias="type")
    server_timestamp: int = Field(alias="timestamp")
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    client_ref: Optional[str] = Field(default=None, alias="clientRef")

    @field_validator("reactions")
    @classmethod
    def _unique_reactors(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        return {symbol: list(dict.fromkeys(ids)) for symbol, ids in value.items()}

    @property
    def pending(self) -> bool:
        return False

    def reaction_of(self, identity_id: str) -> Optional[str]:
        for symbol, ids in self.reactions.items():
            if identity_id in ids:
                return symbol
        return None


class PresenceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity_id: str
    status: PresenceStatus
    last_seen_at: Optional[int] = None

    @classmethod
    def of(cls, identity: Identity) -> "PresenceState":
        return cls(
            identity_id=identity.id,
            status=identity.presence_status,
            last_seen_at=identity.last_seen_at,
        )


# ---------------------------------------------------------------------------
# Decoding (fail fast at the store boundary)
# ---------------------------------------------------------------------------

R = TypeVar("R", bound=Record)


def decode(model: Type[R], doc: Any) -> R:
    if not isinstance(doc, dict):
        raise SchemaError(f"{model.__name__} document must be an object, got {type(doc).__name__}")
    try:
        return model.model_validate(doc)
    except ValidationError as exc:
        raise SchemaError(f"invalid {model.__name__} document: {exc.errors()[0]['msg']}") from exc


def decode_identity(doc: Any) -> Identity:
    return decode(Identity, doc)


def decode_relationship(doc: Any) -> Relationship:
    return decode(Relationship, doc)


def decode_message(doc: Any) -> Message:
    return decode(Message, doc)


def decode_many(model: Type[R], docs: Iterable[Any]) -> List[R]:
    """Decode a whole snapshot; one bad document rejects all of it."""

    return [decode(model, doc) for doc in docs]


# ---------------------------------------------------------------------------
# Relay wire frame
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """JSON frame carried between the relay and its clients."""

    type: str
    from_: str = Field(alias="from")
    to: str
    ts: int
    payload: Dict[str, Any]

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


def build_frame(
    type: str,
    from_: str,
    to: str,
    payload: Dict[str, Any],
    *,
    ts: int | None = None,
) -> Dict[str, Any]:
    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def canonical_id(a: str, b: str) -> str:
    """Order-independent id for the pair (a, b); both parties derive the same value."""

    return CONVERSATION_SEPARATOR.join(sorted((a, b)))


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


__all__ = [
    "Identity",
    "Relationship",
    "Message",
    "PresenceState",
    "Record",
    "decode",
    "decode_identity",
    "decode_relationship",
    "decode_message",
    "decode_many",
    "Envelope",
    "build_frame",
    "now_ms",
    "canonical_id",
    "b64url",
    "b64url_decode",
]
