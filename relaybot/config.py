"""Config loader. Merges config.local.yaml, .env and the environment; provides get()/require()/settings().

Precedence, lowest first: YAML file, .env file, process environment. Keys are
flat and case-insensitive (YAML may use `auto_react`, the environment uses
`AUTO_REACT`). Only keys that map to a Settings field are kept.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relaybot.common import (
    CREDS_FILENAME,
    DEFAULT_HOME_DIR,
    LOGS_DIRNAME,
    PLUGINS_DIRNAME,
    SESSION_DIRNAME,
    normalize_jid,
)
from relaybot.errors import ConfigurationError

LOCAL_CONFIG_FILE = Path("config.local.yaml")
ENV_FILE = Path(".env")

# Environment names that differ from the field name
ENV_ALIASES = {
    "RELAYBOT_HOME": "HOME_DIR",
}

_config: dict = {}
_loaded = False
_settings: Optional["Settings"] = None


class Settings(BaseModel):
    """Validated runtime configuration. Frozen; rebuild via reload()."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Credentials
    session_locator: Optional[str] = None

    # Behaviors
    auto_react: bool = False
    auto_status_seen: bool = True
    auto_status_react: bool = False
    auto_status_reply: bool = False
    status_reply_text: str = "Your status has been seen."
    react_emojis: list[str] = Field(default_factory=lambda: ["👍", "❤️", "😂", "🔥", "👏", "😎"])
    status_react_emojis: list[str] = Field(default_factory=lambda: ["💚", "🔥", "😍", "👀"])
    mode: Literal["public", "private"] = "public"
    owner_number: Optional[str] = None
    bot_name: str = "relaybot"
    startup_notify: bool = True
    anti_call: bool = False
    anti_call_text: str = "Calls are not accepted by this number. Please send a message instead."
    welcome: bool = False
    welcome_text: str = "Welcome {user} to {group}!"
    goodbye_text: str = "Goodbye {user}."

    # Paths
    home_dir: Path = DEFAULT_HOME_DIR
    plugins_dir: Optional[Path] = None

    # Transport
    transport_factory: Optional[str] = None
    protocol_version: Optional[list[int]] = None
    client_platform: str = "macOS"
    client_browser: str = "Firefox"
    sync_full_history: bool = True
    connect_timeout: Optional[float] = Field(60.0, gt=0)
    fetch_timeout: float = Field(30.0, gt=0)
    reconnect_base_delay: float = Field(1.0, ge=0)
    reconnect_max_delay: float = Field(60.0, ge=0)
    reconnect_max_attempts: Optional[int] = Field(None, ge=1)
    terminal_status_codes: list[int] = Field(default_factory=list)

    # Health server / logging
    host: str = "0.0.0.0"
    port: int = Field(9090, ge=0, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("mode", "log_level", mode="before")
    @classmethod
    def _case_fold(cls, value: Any, info) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value.upper() if info.field_name == "log_level" else value.lower()
        return value

    @field_validator("react_emojis", "status_react_emojis", "terminal_status_codes", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("welcome_text", "goodbye_text")
    @classmethod
    def _check_template(cls, value: str) -> str:
        try:
            value.format(user="", group="")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(f"template may only use {{user}} and {{group}} placeholders ({e!r})") from e
        return value

    @field_validator("protocol_version", mode="before")
    @classmethod
    def _split_version(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.replace(",", ".").split(".") if part.strip()]
        return value

    @property
    def session_dir(self) -> Path:
        return self.home_dir / SESSION_DIRNAME

    @property
    def creds_path(self) -> Path:
        return self.session_dir / CREDS_FILENAME

    @property
    def plugin_path(self) -> Path:
        return self.plugins_dir or self.home_dir / PLUGINS_DIRNAME

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / LOGS_DIRNAME

    @property
    def owner_jid(self) -> str:
        return normalize_jid(self.owner_number)


def _config_file() -> Path:
    override = os.environ.get("RELAYBOT_CONFIG", "").strip()
    return Path(override).expanduser() if override else LOCAL_CONFIG_FILE


def _known_keys() -> set[str]:
    return {name.upper() for name in Settings.model_fields}


def _normalize(mapping: dict) -> dict:
    known = _known_keys()
    out = {}
    for raw_key, value in mapping.items():
        if value is None:
            continue
        key = str(raw_key).strip().upper()
        key = ENV_ALIASES.get(key, key)
        if key in known:
            out[key] = value
    return out


def load() -> dict:
    """Merge all configuration sources. Safe to call multiple times (cached)."""
    global _config, _loaded
    if _loaded:
        return _config

    merged: dict = {}

    path = _config_file()
    if path.exists():
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping of keys to values")
        merged.update(_normalize(data))

    if ENV_FILE.exists():
        merged.update(_normalize(dotenv_values(ENV_FILE)))

    merged.update(_normalize(dict(os.environ)))

    _config = merged
    _loaded = True
    return _config


def get(key: str, default: Any = None) -> Any:
    """Get a raw config value by key, e.g. get('SESSION_LOCATOR')."""
    load()
    key = ENV_ALIASES.get(key.upper(), key.upper())
    return _config.get(key, default)


def require(key: str) -> Any:
    """Get a config value or raise ConfigurationError if it is missing or empty."""
    value = get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(f"Required config '{key.upper()}' is missing or empty.")
    return value


def settings() -> Settings:
    """Validated Settings for the merged configuration (cached)."""
    global _settings
    if _settings is not None:
        return _settings
    # Blank values (e.g. `AUTO_REACT=` in .env) fall back to the default
    raw = {
        key.lower(): value
        for key, value in load().items()
        if not (isinstance(value, str) and not value.strip())
    }
    try:
        _settings = Settings.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())).upper() or "config"
        raise ConfigurationError(f"Invalid value for {key}: {first.get('msg')}") from e
    return _settings


def reload() -> Settings:
    """Force reload from all sources (useful for tests)."""
    global _loaded, _settings
    _loaded = False
    _settings = None
    return settings()
