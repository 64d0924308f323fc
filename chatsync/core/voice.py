from __future__ import annotations

import logging
from typing import Optional

from .errors import PermissionDenied, VoiceInputError, VoiceInputFailed

log = logging.getLogger("chatsync.voice")

PERMISSION_CODES = frozenset({"not-allowed", "permission-denied", "service-not-allowed"})
IGNORED_CODES = frozenset({"no-speech", "aborted"})


def map_voice_error(code: str) -> Optional[VoiceInputError]:
    """Translate a recogniser error code into the error to surface, or None to ignore it."""

    normalized = (code or "").strip().lower()
    if normalized in PERMISSION_CODES:
        return PermissionDenied("Microphone access was denied.")
    if normalized in IGNORED_CODES:
        log.debug("ignoring voice input event %r", normalized)
        return None
    log.warning("voice recognition error %r", code)
    return VoiceInputFailed("Voice recognition failed")


def append_transcript(draft: str, transcript: str) -> str:
    text = transcript.strip()
    if not text:
        return draft
    if not draft or draft.endswith(" "):
        return draft + text
    return f"{draft} {text}"


__all__ = ["map_voice_error", "append_transcript"]
