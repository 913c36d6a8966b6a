"""Pydantic settings for the relay.

This module provides:
- Environment variable support (RELAYBOT__MODEL, RELAYBOT__CHANNEL, etc.)
- OPENROUTER_API_KEY as the API key fallback
- SecretStr for the API key to prevent accidental logging
- Validation with clear error messages
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_store import get_config_path, read_relay_table
from .dispatch import OverflowPolicy
from .logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "RELAYBOT__"
API_KEY_ENV = "OPENROUTER_API_KEY"


class ConfigError(RuntimeError):
    """Configuration error."""

    pass


class RelaySettings(BaseSettings):
    """Relay configuration loaded from CLI options, environment and TOML.

    Environment variables use the RELAYBOT__ prefix:
    - RELAYBOT__MODEL -> model
    - RELAYBOT__CHANNEL -> channel
    - RELAYBOT__LEADER -> leader
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        extra="ignore",
        populate_by_name=True,
    )

    # Backend
    model: str = Field(min_length=1)
    api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(f"{ENV_PREFIX}API_KEY", API_KEY_ENV),
    )
    base_url: str = "https://openrouter.ai/api/v1"
    request_timeout_s: float = Field(default=120.0, gt=0)

    # IRC
    server: str = "irc.libera.chat"
    port: int = Field(default=6667, gt=0, lt=65536)
    tls: bool = False
    channel: str = "#chat_0098"
    nickname: str = Field(default="bot", min_length=1)
    leader: bool = False

    # Pipeline
    debounce_ttl_ms: float = Field(default=1000.0, gt=0)
    flush_tick_ms: float = Field(default=100.0, gt=0)
    queue_capacity: int = Field(default=100, gt=0)
    queue_overflow: OverflowPolicy = OverflowPolicy.BLOCK
    chunk_max_size: int = Field(default=500, gt=0)
    send_rate_per_s: float = Field(default=10.0, ge=0)
    send_burst: int = Field(default=1, ge=1)


def _set_in_env(key: str) -> bool:
    # Environment names match case-insensitively, as pydantic-settings reads them.
    names = {f"{ENV_PREFIX}{key}".upper()}
    if key == "api_key":
        names.add(API_KEY_ENV)
    return any(name.upper() in names for name in os.environ)


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "settings"
        problems.append(f"{loc}: {err['msg']}")
    return "; ".join(problems)


def load_settings(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> RelaySettings:
    """Resolve settings from command-line overrides, environment and TOML.

    Precedence is overrides, then environment, then the ``[relay]`` table
    of the config file, then defaults. ``None`` overrides are ignored.

    Args:
        config_path: TOML file to read. Defaults to ./relaybot.toml.
        overrides: Values given on the command line.

    Raises:
        ConfigError: If the file cannot be read or the result is invalid.
    """
    path = config_path or get_config_path()
    try:
        file_data = read_relay_table(path)
    except Exception as e:
        raise ConfigError(f"failed to read {path}: {e}") from e

    data = {k: v for k, v in file_data.items() if not _set_in_env(k)}
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        settings = RelaySettings(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid settings: {_format_validation_error(e)}") from e

    logger.debug(
        "settings.loaded",
        path=str(path),
        from_file=sorted(file_data),
        from_cli=sorted(k for k, v in (overrides or {}).items() if v is not None),
    )
    return settings
