from __future__ import annotations

"""
Error taxonomy
--------------
Every user-initiated action surfaces at most one of these per attempt. Each class
carries a short upper-case ``code`` so the relay can ship it over the wire in an
ERROR frame and the client can rebuild the same exception on the other side.

  ChatSyncError
    AuthError          InvalidCredentials, PendingApproval, NotLoggedIn
    RelationshipError  Unauthorized
    SendError          EmptyMessage, UnsupportedMediaType, CompressionFailed,
                       UploadFailed, DurableWriteFailed, ConversationClosed
    ReactionError      ConflictExceeded
    SchemaError
    StoreError         NotFound, ConflictError, AlreadyExists
    ObjectStoreError
    VoiceInputError    PermissionDenied, VoiceInputFailed

Presence failures are intentionally absent: they are logged, never raised.
"""

from typing import Dict, Type


class ChatSyncError(Exception):
    code = "INTERNAL"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail


# ---- auth ----
class AuthError(ChatSyncError):
    code = "AUTH"


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"


class PendingApproval(AuthError):
    code = "PENDING_APPROVAL"


class NotLoggedIn(AuthError):
    code = "NOT_LOGGED_IN"


# ---- relationships ----
class RelationshipError(ChatSyncError):
    code = "RELATIONSHIP"


class Unauthorized(RelationshipError):
    code = "UNAUTHORIZED"


# ---- sending ----
class SendError(ChatSyncError):
    code = "SEND"


class EmptyMessage(SendError):
    code = "EMPTY_MESSAGE"


class UnsupportedMediaType(SendError):
    code = "UNSUPPORTED_MEDIA_TYPE"


class CompressionFailed(SendError):
    code = "COMPRESSION_FAILED"


class UploadFailed(SendError):
    code = "UPLOAD_FAILED"


class DurableWriteFailed(SendError):
    code = "DURABLE_WRITE_FAILED"


class ConversationClosed(SendError):
    code = "CONVERSATION_CLOSED"


# ---- reactions ----
class ReactionError(ChatSyncError):
    code = "REACTION"


class ConflictExceeded(ReactionError):
    code = "CONFLICT_EXCEEDED"


# ---- boundary / collaborators ----
class SchemaError(ChatSyncError):
    code = "SCHEMA"


class StoreError(ChatSyncError):
    code = "STORE"


class NotFound(StoreError):
    code = "NOT_FOUND"


class ConflictError(StoreError):
    code = "CONFLICT"


class AlreadyExists(ConflictError):
    code = "ALREADY_EXISTS"


class ObjectStoreError(ChatSyncError):
    code = "OBJECT_STORE"


# ---- voice input ----
class VoiceInputError(ChatSyncError):
    code = "VOICE"


class PermissionDenied(VoiceInputError):
    code = "PERMISSION_DENIED"


class VoiceInputFailed(VoiceInputError):
    code = "VOICE_INPUT_FAILED"


def _collect(root: Type[ChatSyncError]) -> Dict[str, Type[ChatSyncError]]:
    found = {root.code: root}
    for sub in root.__subclasses__():
        found.update(_collect(sub))
    return found


ERROR_CODES: Dict[str, Type[ChatSyncError]] = _collect(ChatSyncError)


def error_from_code(code: str, detail: str = "") -> ChatSyncError:
    """Rebuild an exception from a wire ``code``; unknown codes become StoreError."""

    cls = ERROR_CODES.get(code, StoreError)
    return cls(detail)


__all__ = [
    "ChatSyncError",
    "AuthError",
    "InvalidCredentials",
    "PendingApproval",
    "NotLoggedIn",
    "RelationshipError",
    "Unauthorized",
    "SendError",
    "EmptyMessage",
    "UnsupportedMediaType",
    "CompressionFailed",
    "UploadFailed",
    "DurableWriteFailed",
    "ConversationClosed",
    "ReactionError",
    "ConflictExceeded",
    "SchemaError",
    "StoreError",
    "NotFound",
    "ConflictError",
    "AlreadyExists",
    "ObjectStoreError",
    "VoiceInputError",
    "PermissionDenied",
    "VoiceInputFailed",
    "ERROR_CODES",
    "error_from_code",
]
