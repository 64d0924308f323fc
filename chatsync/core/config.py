from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .reactions import DEFAULT_REACTIONS

log = logging.getLogger("chatsync.config")


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SessionConfig(_Section):
    db_path: str = "chatsync-session.db"


class MediaConfig(_Section):
    max_image_bytes: int = Field(default=1024 * 1024, gt=0)
    max_image_dimension: int = Field(default=1920, gt=0)
    jpeg_quality: int = Field(default=85, ge=1, le=95)
    chunk_size: int = Field(default=256 * 1024, gt=0)
    path_prefix: str = "chat_media"


class ReactionConfig(_Section):
    max_attempts: int = Field(default=5, ge=1)
    symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_REACTIONS))

    @field_validator("symbols")
    @classmethod
    def _non_empty_symbols(cls, value: List[str]) -> List[str]:
        if not value or any(not s for s in value):
            raise ValueError("reaction symbols must be non-empty strings")
        return value


class ClientConfig(_Section):
    relay_url: str = "ws://127.0.0.1:7101"
    session: SessionConfig = Field(default_factory=SessionConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    reactions: ReactionConfig = Field(default_factory=ReactionConfig)


class SeedIdentity(_Section):
    name: str
    username: str
    phone: str
    verified: bool = False
    id: Optional[str] = None


class RelayConfig(_Section):
    listen: str = "127.0.0.1:7101"
    public_base_url: str = "relay://objects"
    identities: List[SeedIdentity] = Field(default_factory=list)

    @field_validator("listen")
    @classmethod
    def _host_port(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("listen must look like host:port")
        return value

    @property
    def host_port(self) -> Tuple[str, int]:
        host, _, port = self.listen.rpartition(":")
        return host, int(port)


C = TypeVar("C", bound=BaseModel)


def parse_config(model: Type[C], raw: Optional[Dict[str, Any]]) -> C:
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        raise ValueError(f"invalid {model.__name__}: {exc}") from exc


def load_config(model: Type[C], path: str | Path | None) -> C:
    """Read a YAML config file; a missing file yields the defaults."""

    if path is None:
        return model()
    config_path = Path(path).expanduser()
    if not config_path.exists():
        log.info("Config %s not found; using defaults", config_path)
        return model()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"cannot parse {config_path}: {exc}") from exc
    if raw is not None and not isinstance(raw, dict):
        raise ValueError(f"{config_path} must contain a mapping")
    return parse_config(model, raw)


def load_client_config(path: str | Path | None = None) -> ClientConfig:
    return load_config(ClientConfig, path)


def load_relay_config(path: str | Path | None = None) -> RelayConfig:
    return load_config(RelayConfig, path)


__all__ = [
    "SessionConfig",
    "MediaConfig",
    "ReactionConfig",
    "ClientConfig",
    "SeedIdentity",
    "RelayConfig",
    "parse_config",
    "load_config",
    "load_client_config",
    "load_relay_config",
]
