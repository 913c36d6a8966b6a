from __future__ import annotations

from pathlib import Path
from typing import Any

import anyio
import typer

from . import __version__
from .bridge import run_relay
from .config_store import CONFIG_FILE, get_config_path, write_starter_config
from .irc import IrcConnectionError
from .logging import get_logger, setup_logging
from .settings import ConfigError, RelaySettings, load_settings

logger = get_logger(__name__)


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def _collect_overrides(
    *,
    model: str | None,
    server: str | None,
    port: int | None,
    channel: str | None,
    nickname: str | None,
    tls: bool,
    leader: bool,
) -> dict[str, Any]:
    """Turn CLI options into settings overrides.

    Flags only override when given, so a config file can still turn
    them on.
    """
    return {
        "model": model,
        "server": server,
        "port": port,
        "channel": channel,
        "nickname": nickname,
        "tls": True if tls else None,
        "leader": True if leader else None,
    }


def _load_or_exit(config: Path | None, overrides: dict[str, Any]) -> RelaySettings:
    try:
        return load_settings(config, overrides)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)


app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    help="Relay an IRC channel into an LLM and post its replies.",
)


@app.callback()
def app_main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    model: str = typer.Option(
        None, "--model", "-m", help="Model identifier sent to the completion backend."
    ),
    server: str = typer.Option(None, "--server", "-s", help="IRC server address."),
    port: int = typer.Option(None, "--port", "-p", help="IRC server port."),
    channel: str = typer.Option(None, "--channel", "-c", help="IRC channel to join."),
    nickname: str = typer.Option(None, "--nickname", "-n", help="IRC nickname."),
    tls: bool = typer.Option(False, "--tls", help="Use TLS for the IRC connection."),
    leader: bool = typer.Option(
        False,
        "--leader",
        "-l",
        help="Answer even the first message of an empty conversation.",
    ),
    config: Path = typer.Option(
        None, "--config", help=f"Config file (defaults to ./{CONFIG_FILE})."
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log inbound lines, completion requests and history.",
    ),
) -> None:
    """relaybot - IRC to LLM relay."""
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        overrides = _collect_overrides(
            model=model,
            server=server,
            port=port,
            channel=channel,
            nickname=nickname,
            tls=tls,
            leader=leader,
        )
        _run_relay(config=config, overrides=overrides, debug=debug)
        raise typer.Exit()


def _run_relay(*, config: Path | None, overrides: dict[str, Any], debug: bool) -> None:
    setup_logging(debug=debug)
    settings = _load_or_exit(config, overrides)

    try:
        anyio.run(run_relay, settings)
    except IrcConnectionError as e:
        logger.error("relay.connect_failed", error=str(e))
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130)


@app.command("init", help="Write a starter relaybot.toml.")
def init_command(
    path: Path = typer.Option(
        None, "--path", help=f"Where to write the config (defaults to ./{CONFIG_FILE})."
    ),
    model: str = typer.Option(
        "openai/gpt-4o-mini", "--model", "-m", help="Model identifier."
    ),
    channel: str = typer.Option("#chat_0098", "--channel", "-c", help="IRC channel."),
    nickname: str = typer.Option("bot", "--nickname", "-n", help="IRC nickname."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    target = path or get_config_path()
    if target.exists() and not force:
        typer.echo(f"error: {target} already exists (use --force)", err=True)
        raise typer.Exit(code=1)

    write_starter_config(target, model=model, channel=channel, nickname=nickname)
    typer.echo(f"✓ Config saved to {target}")
    typer.echo("Set OPENROUTER_API_KEY, then run: relaybot")


@app.command("info")
def info_command(ctx: typer.Context) -> None:
    """Show the resolved settings (API key masked)."""
    config = (ctx.obj or {}).get("config")
    settings = _load_or_exit(config, {})
    for key, value in settings.model_dump(mode="json").items():
        typer.echo(f"{key}: {value}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
