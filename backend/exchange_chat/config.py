"""Exchange chat configuration.

Loads settings from two YAML files:
  * exchange_chat.settings.yaml: non-secret configuration
  * exchange_chat.secrets.yaml: secrets (never committed)

The settings path can be overridden with the EXCHANGE_CHAT_SETTINGS
environment variable; the secrets file is looked up next to it.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("exchange_chat.settings.yaml")
SECRETS_FILE  = Path("exchange_chat.secrets.yaml")
SETTINGS_ENV  = "EXCHANGE_CHAT_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "dev-only-secret-change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:      str = "0.0.0.0"
    port:      int = 8000
    allowed_origins: list = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class ChatSettings(BaseModel):
    """Timing and size limits for rooms, typing and fan-out."""
    typing_window_seconds:         float = 2.0
    typing_debounce_seconds:       float = 0.5
    typing_sweep_interval_seconds: float = 10.0
    outbox_size:                   int   = 256
    max_content_length:            int   = 4000
    max_images:                    int   = 10

    @model_validator(mode="after")
    def _check_windows(self) -> "ChatSettings":
        if self.typing_debounce_seconds > self.typing_window_seconds:
            raise ValueError("typing_debounce_seconds must not exceed typing_window_seconds")
        if self.outbox_size < 1:
            raise ValueError("outbox_size must be at least 1")
        return self


class StoreSettings(BaseModel):
    db_path: str = "exchange_chat.duckdb"


class ClientSettings(BaseModel):
    reconnect_attempts:   int   = 5
    reconnect_base_delay: float = 0.5
    reconnect_max_delay:  float = 10.0


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)
    client:  ClientSettings  = Field(default_factory=ClientSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative db_path against the settings file's directory.

    ``:memory:`` and absolute paths are returned unchanged.
    """
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    return str(settings_path.resolve().parent / db_path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV, SETTINGS_FILE))
    settings_path = Path(settings_path)
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.store.db_path = _resolve_db_path(config.store.db_path, settings_path)
    logger.info(
        "Settings loaded (server=%s:%s, store=%s, typing_window=%ss)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.chat.typing_window_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
