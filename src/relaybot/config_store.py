"""Raw TOML configuration I/O utilities.

Separates file I/O from validation so settings can merge file data with
environment and command-line values before pydantic validation.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import tomlkit

CONFIG_FILE = "relaybot.toml"
CONFIG_TABLE = "relay"


def get_config_path(root: Path | None = None) -> Path:
    """Get the default config file path under ``root`` (cwd by default)."""
    return (root or Path.cwd()) / CONFIG_FILE


def read_raw_toml(path: Path) -> dict[str, Any]:
    """Read raw TOML data from a file.

    Raises:
        FileNotFoundError: If the file does not exist
        tomllib.TOMLDecodeError: If the file is not valid TOML
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def read_relay_table(path: Path) -> dict[str, Any]:
    """Return the ``[relay]`` table of a config file, or {} if absent."""
    if not path.exists():
        return {}
    table = read_raw_toml(path).get(CONFIG_TABLE, {})
    return dict(table) if isinstance(table, dict) else {}


def write_starter_config(path: Path, *, model: str, channel: str, nickname: str) -> None:
    """Write a commented starter config with tomlkit."""
    doc = tomlkit.document()
    doc.add(tomlkit.comment("relaybot configuration"))
    doc.add(tomlkit.comment("Environment variables (RELAYBOT__MODEL, ...) override this file."))
    doc.add(tomlkit.nl())

    relay = tomlkit.table()
    relay.add("model", model)
    relay.add("server", "irc.libera.chat")
    relay.add("port", 6667)
    relay.add("tls", False)
    relay.add("channel", channel)
    relay.add("nickname", nickname)
    relay.add("leader", False)
    relay.add(tomlkit.nl())
    relay.add(tomlkit.comment("The API key is read from OPENROUTER_API_KEY if not set here."))
    relay.add("base_url", "https://openrouter.ai/api/v1")
    relay.add("debounce_ttl_ms", 1000)
    relay.add("flush_tick_ms", 100)
    relay.add("queue_capacity", 100)
    relay.add("queue_overflow", "block")
    relay.add("chunk_max_size", 500)
    relay.add("send_rate_per_s", 10.0)
    doc.add(CONFIG_TABLE, relay)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(tomlkit.dumps(doc))
