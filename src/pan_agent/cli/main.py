"""
PAN CLI: `pan` command.

Commands:
  pan config set|show|clear   Saved defaults (~/.pan/config.json)
  pan probe [URL]             Connect and show the access point's helo
  pan chat <group>            Interactive group chat
  pan send <group> <text>     One-shot chat message
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install pan-agent[cli]")

from pan_agent.agent import PanAgent

console = Console()
CONFIG_FILE = Path.home() / ".pan" / "config.json"
DEFAULT_APP_ID = "da19daa2-1c45-4257-9690-947598760c0e"


def _load_config() -> dict:
    try:
        return json.loads(CONFIG_FILE.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def _save_config(cfg: dict) -> None:
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(cfg, indent=2))


def _make_agent(
    url: Optional[str] = None,
    app_id: Optional[str] = None,
    namespace: Optional[str] = None,
    ttl: Optional[int] = None,
) -> PanAgent:
    cfg = _load_config()
    target = url or cfg.get("url")
    if not target:
        console.print("[red]No access point URL. Pass one or run `pan config set --url ...`.[/red]")
        raise SystemExit(2)
    return PanAgent(
        url=target,
        app_id=app_id or cfg.get("app_id") or DEFAULT_APP_ID,
        namespace=namespace or cfg.get("namespace"),
        default_ttl=ttl if ttl is not None else cfg.get("default_ttl", 8),
    )


def _read_token(token: Optional[str], token_file: Optional[str]) -> str:
    if token:
        return token
    if os.environ.get("PAN_TOKEN"):
        return os.environ["PAN_TOKEN"]
    path = token_file or _load_config().get("token_file")
    if not path:
        console.print("[red]No token. Pass --token/--token-file, set PAN_TOKEN, or `pan config set --token-file`.[/red]")
        raise SystemExit(2)
    return Path(path).expanduser().read_text().strip()


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log protocol traffic.")
def main(verbose: bool):
    """PAN CLI: talk to a PAN access point."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


@main.group("config")
def config():
    """Saved defaults."""


@config.command("set")
@click.option("--url", default=None, help="Access point WebSocket URL")
@click.option("--app-id", default=None)
@click.option("--namespace", default=None)
@click.option("--token-file", default=None)
@click.option("--ttl", "default_ttl", default=None, type=int)
def config_set(url, app_id, namespace, token_file, default_ttl):
    """Update saved defaults."""
    cfg = _load_config()
    updates = {
        "url": url,
        "app_id": app_id,
        "namespace": namespace,
        "token_file": token_file,
        "default_ttl": default_ttl,
    }
    cfg.update({k: v for k, v in updates.items() if v is not None})
    _save_config(cfg)
    console.print(f"[green]Saved to {CONFIG_FILE}[/green]")


@config.command("show")
def config_show():
    """Print saved defaults."""
    click.echo(json.dumps(_load_config(), indent=2))


@config.command("clear")
def config_clear():
    """Forget saved defaults."""
    _save_config({})
    console.print("[green]Config cleared.[/green]")


# Register subcommands from separate modules
from pan_agent.cli.chat import chat_cmd, send_cmd, probe_cmd

main.add_command(probe_cmd)
main.add_command(chat_cmd)
main.add_command(send_cmd)


if __name__ == "__main__":
    main()
