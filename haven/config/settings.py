"""
Runtime configuration for Haven.

All configuration comes from environment variables (HAVEN_* prefix),
read once into a frozen Settings object. Invalid values fail fast with
ConfigurationError instead of silently falling back.

Variables:
    HAVEN_DEV_MODE          "1" for human-readable logs and dev defaults
    LOG_LEVEL               stdlib level name (default INFO)
    HAVEN_DATABASE_URL      SQLAlchemy URL for the record store adapter
    HAVEN_SESSION_KEY_SALT  constant mixed into session-derived keys
    HAVEN_STORAGE_DIR       directory for the file-backed device storage
    HAVEN_DEVICE_STORAGE    keyring | file | memory
    HAVEN_SIGN_OUT_POLICY   exit_anonymous | end_session_only
    HAVEN_MATCH_POLICY      highest_rated | least_recently_assigned
    HAVEN_LLM_API_KEY       text-generation API key (unset = templates only)
    HAVEN_LLM_BASE_URL      OpenAI-compatible base URL
    HAVEN_LLM_MODEL         model name sent with each request
    HAVEN_LLM_TIMEOUT       request timeout in seconds
    HAVEN_INSIGHT_WINDOW    number of recent mood entries analysed
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TypeVar

from haven.lib.exceptions import ConfigurationError

E = TypeVar("E", bound=StrEnum)
N = TypeVar("N", int, float)


class SignOutPolicy(StrEnum):
    """What an explicit sign-out does to a coexisting anonymous identity."""

    EXIT_ANONYMOUS = "exit_anonymous"        # forget the persisted anonymous id too
    END_SESSION_ONLY = "end_session_only"    # keep it in device storage


class MatchPolicy(StrEnum):
    """How a supporter is picked among those under capacity."""

    HIGHEST_RATED = "highest_rated"
    LEAST_RECENTLY_ASSIGNED = "least_recently_assigned"


class DeviceStorageBackend(StrEnum):
    KEYRING = "keyring"
    FILE = "file"
    MEMORY = "memory"


DEFAULT_SESSION_KEY_SALT = "mental-health-salt"
DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-4"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration values."""

    dev_mode: bool = False
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///:memory:"
    session_key_salt: str = DEFAULT_SESSION_KEY_SALT
    storage_dir: Path = Path.home() / ".haven"
    device_storage: DeviceStorageBackend = DeviceStorageBackend.KEYRING
    sign_out_policy: SignOutPolicy = SignOutPolicy.EXIT_ANONYMOUS
    match_policy: MatchPolicy = MatchPolicy.HIGHEST_RATED
    llm_api_key: str | None = None
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_model: str = DEFAULT_LLM_MODEL
    llm_timeout: float = 30.0
    insight_window: int = 30

    @property
    def text_generation_enabled(self) -> bool:
        return bool(self.llm_api_key)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """
        Build Settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Raises:
            ConfigurationError: If any value cannot be parsed
        """
        env = os.environ if environ is None else environ

        storage_dir = env.get("HAVEN_STORAGE_DIR")
        return cls(
            dev_mode=env.get("HAVEN_DEV_MODE") == "1",
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            database_url=env.get("HAVEN_DATABASE_URL", "sqlite+aiosqlite:///:memory:"),
            session_key_salt=env.get("HAVEN_SESSION_KEY_SALT", DEFAULT_SESSION_KEY_SALT),
            storage_dir=Path(storage_dir) if storage_dir else Path.home() / ".haven",
            device_storage=_parse_enum(
                DeviceStorageBackend, env.get("HAVEN_DEVICE_STORAGE", "keyring"), "HAVEN_DEVICE_STORAGE"
            ),
            sign_out_policy=_parse_enum(
                SignOutPolicy, env.get("HAVEN_SIGN_OUT_POLICY", "exit_anonymous"), "HAVEN_SIGN_OUT_POLICY"
            ),
            match_policy=_parse_enum(
                MatchPolicy, env.get("HAVEN_MATCH_POLICY", "highest_rated"), "HAVEN_MATCH_POLICY"
            ),
            llm_api_key=env.get("HAVEN_LLM_API_KEY") or None,
            llm_base_url=env.get("HAVEN_LLM_BASE_URL", DEFAULT_LLM_BASE_URL).rstrip("/"),
            llm_model=env.get("HAVEN_LLM_MODEL", DEFAULT_LLM_MODEL),
            llm_timeout=_parse_number(float, env.get("HAVEN_LLM_TIMEOUT", "30"), "HAVEN_LLM_TIMEOUT"),
            insight_window=_parse_number(int, env.get("HAVEN_INSIGHT_WINDOW", "30"), "HAVEN_INSIGHT_WINDOW"),
        )


def _parse_enum(enum_cls: type[E], raw: str, name: str) -> E:
    try:
        return enum_cls(raw.strip().lower())
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"{name}={raw!r} is invalid (expected one of: {allowed})") from e


def _parse_number(kind: type[N], raw: str, name: str) -> N:
    try:
        value = kind(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name}={raw!r} is not a valid {kind.__name__}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
