"""CLI: pan probe, pan chat, pan send"""

import asyncio
import os
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from pan_agent.errors import AuthenticationFailed, PanAgentError
from pan_agent.models.envelope import Envelope
from pan_agent.models.events import AgentEvent

console = Console()
STATUS_INTERVAL_S = 5.0
CLOSE_GRACE_S = 0.25


def _make_agent(*args, **kwargs):
    from pan_agent.cli.main import _make_agent
    return _make_agent(*args, **kwargs)


def _read_token(token, token_file):
    from pan_agent.cli.main import _read_token
    return _read_token(token, token_file)


def _run(coro):
    from pan_agent.cli.main import _run
    return _run(coro)


def short_id(value: Optional[str], length: int = 8) -> str:
    if not value or not isinstance(value, str):
        return "?"
    return value[:length]


def format_from(envelope: Envelope) -> str:
    sender = envelope.sender
    if sender is None:
        return "?/?"
    return f"{short_id(sender.node_id, 6)}/{short_id(sender.conn_id, 6)}"


def trusted_urns(extra: tuple[str, ...] = ()) -> list[str]:
    env = [s.strip() for s in os.environ.get("PAN_TRUST_URNS", "").split(",") if s.strip()]
    return env + [s for s in extra if s]


def decide_trust(helo: Envelope, allow: list[str]) -> tuple[bool, str]:
    """Accept the access point unless an allowlist is set and its URN is not on it."""
    server = helo.payload_get("i_am")
    if allow and server not in allow:
        return False, f"server URN not allowlisted: {server}"
    return True, "accepted"


def _error_text(err: Any) -> str:
    if isinstance(err, Envelope):
        return str(err.payload_get("message") or err.payload)
    return str(err)


async def _open(agent, token: str, trust: tuple[str, ...], reconnect: Optional[str] = None) -> dict[str, Any]:
    helo = await agent.connect()
    console.print(f"[dim][helo] server={helo.payload_get('i_am') or '(missing)'} "
                  f"token={'present' if helo.payload_get('helo_token') else 'missing'}[/dim]")
    ok, why = decide_trust(helo, trusted_urns(trust))
    if not ok:
        console.print(f"[red][trust] {why}; disconnecting[/red]")
        agent.close(1000, "untrusted server")
        raise SystemExit(1)
    try:
        info = await agent.authenticate(token=token, reconnect=reconnect)
    except AuthenticationFailed as e:
        console.print(f"[red][auth] failed: {e}[/red]")
        agent.close(1000, "authorization failed")
        raise SystemExit(1)
    console.print(f"[green][auth] ok node={short_id(agent.node_id)} conn={short_id(agent.conn_id)}[/green]")
    return info


def _common_options(fn):
    for option in reversed([
        click.option("--url", default=None, help="Access point WebSocket URL"),
        click.option("--app-id", default=None),
        click.option("--namespace", default=None),
        click.option("--ttl", default=None, type=int),
        click.option("--token", default=None, help="Opaque auth token"),
        click.option("--token-file", default=None),
        click.option("--trust", multiple=True, help="Allowed server URN (repeatable)"),
    ]):
        fn = option(fn)
    return fn


@click.command("probe")
@click.argument("url", required=False)
@click.option("--app-id", default=None)
def probe_cmd(url: Optional[str], app_id: Optional[str]):
    """Connect, show the helo, disconnect."""

    async def _probe():
        agent = _make_agent(url, app_id)
        with console.status("Connecting..."):
            helo = await agent.connect()
        table = Table(title=f"helo from {agent.options.url}")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        payload = helo.payload if isinstance(helo.payload, dict) else {}
        for key, value in payload.items():
            if key == "helo_token":
                value = f"{str(value)[:24]}..." if value else ""
            table.add_row(key, str(value))
        console.print(table)
        agent.close(1000, "probe done")
        await asyncio.sleep(CLOSE_GRACE_S)

    try:
        _run(_probe())
    except PanAgentError as e:
        console.print(f"[red]{e.code}: {e}[/red]")
        raise SystemExit(1)


@click.command("chat")
@click.argument("group_name")
@_common_options
@click.option("--nick", default=None)
@click.option("--reconnect", "reconnect_conn_id", default=None, help="Previous conn_id to resume")
def chat_cmd(group_name, url, app_id, namespace, ttl, token, token_file, trust, nick, reconnect_conn_id):
    """Interactive group chat. Commands: /status <text>, /nick <name>, /quit"""
    secret = _read_token(token, token_file)

    async def _chat():
        agent = _make_agent(url, app_id, namespace, ttl)
        agent.on(AgentEvent.DISCONNECTED,
                 lambda info: console.print(f"[dim][net] disconnected code={info['code']} reason={info['reason']}[/dim]"))
        agent.on(AgentEvent.ERROR, lambda err: console.print(f"[red][net] error: {_error_text(err)}[/red]"))

        await _open(agent, secret, trust, reconnect_conn_id)
        me = {"name": nick or short_id(agent.node_id), "text": "online"}
        peers: dict[str, dict[str, str]] = {}

        def peer_key(envelope: Envelope) -> str:
            sender = envelope.sender
            return f"{sender.node_id}:{sender.conn_id}" if sender else "?"

        def on_chat(payload: Any, envelope: Envelope) -> None:
            text = payload.get("text") if isinstance(payload, dict) else payload
            name = peers.get(peer_key(envelope), {}).get("name") or format_from(envelope)
            console.print(f"[bold cyan]{name}[/bold cyan]: {text}")

        def on_status(payload: Any, envelope: Envelope) -> None:
            if not isinstance(payload, dict):
                return
            key = peer_key(envelope)
            current = {"name": str(payload.get("name", "")), "text": str(payload.get("text", ""))}
            if peers.get(key) != current:
                peers[key] = current
                console.print(f"[dim]{current['name']} status -> {current['text']}[/dim]")

        with console.status(f"Joining {group_name}..."):
            group = await agent.join_group(group_name, {"chat": on_chat, "status": on_status})
        console.print(f"[green][group] joined {group.display_name}[/green]")

        async def announce() -> None:
            while agent.authenticated:
                group.send("status", dict(me))
                await asyncio.sleep(STATUS_INTERVAL_S)

        announcer = asyncio.create_task(announce())
        console.print("[cyan]Type a message. Commands: /status <msg>, /nick <name>, /quit[/cyan]\n")
        loop = asyncio.get_running_loop()
        try:
            while agent.authenticated:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                text = line.strip()
                if not text:
                    continue
                if text in ("/quit", "/exit"):
                    break
                if text.startswith("/status"):
                    me["text"] = text[len("/status"):].strip() or "online"
                    group.send("status", dict(me))
                    console.print(f"[dim][status] set {me['text']}[/dim]")
                    continue
                if text.startswith("/nick"):
                    me["name"] = text[len("/nick"):].strip() or me["name"]
                    group.send("status", dict(me))
                    console.print(f"[dim][status] name {me['name']}[/dim]")
                    continue
                group.send("chat", {"text": text})
        except (KeyboardInterrupt, EOFError):
            pass
        finally:
            announcer.cancel()
            if agent.authenticated:
                group.send("status", {"name": me["name"], "text": "offline"})
            agent.close(1000, "quit")
            await asyncio.sleep(CLOSE_GRACE_S)

    try:
        _run(_chat())
    except PanAgentError as e:
        console.print(f"[red]{e.code}: {e}[/red]")
        raise SystemExit(1)


@click.command("send")
@click.argument("group_name")
@click.argument("message")
@_common_options
@click.option("--json-output", "--json", is_flag=True)
def send_cmd(group_name, message, url, app_id, namespace, ttl, token, token_file, trust, json_output):
    """Send a one-shot chat message to a group."""
    secret = _read_token(token, token_file)

    async def _send():
        agent = _make_agent(url, app_id, namespace, ttl)
        await _open(agent, secret, trust)
        msg_id = agent.send_group(group_name, "chat", {"text": message})
        if json_output:
            stats = agent.get_stats()
            click.echo(stats.model_dump_json())
        else:
            console.print(f"[green]Sent {msg_id} to {agent.group_id(group_name)}[/green]")
        agent.close(1000, "done")
        await asyncio.sleep(CLOSE_GRACE_S)

    try:
        _run(_send())
    except PanAgentError as e:
        console.print(f"[red]{e.code}: {e}[/red]")
        raise SystemExit(1)
