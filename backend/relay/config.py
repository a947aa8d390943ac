"""Room Relay application configuration.

Settings are read from an optional YAML file (``relay.settings.yaml``) and
then overridden by environment variables, so a plain ``.env``-style
deployment keeps working without any file at all:

  * PORT, ENVIRONMENT, CLIENT_URL          -> server
  * DEFAULT_ROOM, CHAT_ROOMS,
    MESSAGE_HISTORY_LIMIT                  -> chat
  * MESSAGE_DB_PATH                        -> persistence (enables it)
  * LOG_LEVEL                              -> logging
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")

DEFAULT_ROOMS = ["general", "tech", "gaming", "support"]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def split_room_list(value: Any) -> List[str]:
    """Parse a comma-separated room list (or a list) into trimmed names."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(room).strip() for room in value if str(room).strip()]


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    environment:     str       = "development"
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class ChatSettings(BaseModel):
    """Room presets and history bounds for the coordinator."""
    default_room:  str       = "general"
    rooms:         List[str] = Field(default_factory=lambda: list(DEFAULT_ROOMS))
    history_limit: int       = Field(default=200, ge=1)
    page_size:     int       = Field(default=25, ge=1)
    max_page_size: int       = Field(default=200, ge=1)

    @field_validator("rooms", mode="before")
    @classmethod
    def _parse_rooms(cls, value: Any) -> List[str]:
        return split_room_list(value)

    @field_validator("default_room")
    @classmethod
    def _strip_default_room(cls, value: str) -> str:
        return value.strip() or "general"

    @model_validator(mode="after")
    def _fill_empty_rooms(self) -> "ChatSettings":
        if not self.rooms:
            self.rooms = list(DEFAULT_ROOMS)
        return self


class PersistenceSettings(BaseModel):
    enabled: bool = False
    db_path: str  = "relay_messages.duckdb"


class LoggingSettings(BaseModel):
    level: str = "info"


class RelayConfig(BaseModel):
    server:      ServerSettings      = Field(default_factory=ServerSettings)
    chat:        ChatSettings        = Field(default_factory=ChatSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    logging:     LoggingSettings     = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Merge recognised environment variables into the raw settings dict."""
    server = data.setdefault("server", {})
    chat = data.setdefault("chat", {})
    persistence = data.setdefault("persistence", {})
    log_cfg = data.setdefault("logging", {})

    if env.get("PORT"):
        server["port"] = env["PORT"]
    if env.get("ENVIRONMENT"):
        server["environment"] = env["ENVIRONMENT"]
    if env.get("CLIENT_URL"):
        server["allowed_origins"] = [env["CLIENT_URL"]]

    if env.get("DEFAULT_ROOM"):
        chat["default_room"] = env["DEFAULT_ROOM"]
    if env.get("CHAT_ROOMS") and split_room_list(env["CHAT_ROOMS"]):
        chat["rooms"] = env["CHAT_ROOMS"]
    if env.get("MESSAGE_HISTORY_LIMIT"):
        chat["history_limit"] = env["MESSAGE_HISTORY_LIMIT"]

    if env.get("MESSAGE_DB_PATH"):
        persistence["enabled"] = True
        persistence["db_path"] = env["MESSAGE_DB_PATH"]

    if env.get("LOG_LEVEL"):
        log_cfg["level"] = env["LOG_LEVEL"]
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RelayConfig:
    """Load the YAML settings file and apply environment overrides."""
    path = Path(settings_path) if settings_path else SETTINGS_FILE
    data = _load_yaml(path)
    data = _apply_env_overrides(data, os.environ if env is None else env)

    config = RelayConfig(**data)
    logger.info(
        "Settings loaded (port=%s, default_room=%s, rooms=%s, history_limit=%d, persistence=%s)",
        config.server.port,
        config.chat.default_room,
        ",".join(config.chat.rooms),
        config.chat.history_limit,
        config.persistence.enabled,
    )
    return config


_config: Optional[RelayConfig] = None


def get_config() -> RelayConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
