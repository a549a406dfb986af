"""
Roomchat CLI - Command Line Interface for the room chat node

Main entry point for all CLI commands.
"""

import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import Optional, Tuple

import click

from roomchat.utils.logger import setup_logging


DEFAULT_IDENTITY = "~/.roomchat/identity.json"


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-dir", default=None, help="Also write logs to this directory")
@click.option("--env-file", default=None, type=click.Path(dir_okay=False), help="Read ROOMCHAT_* settings from this .env file")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, log_dir, env_file):
    """Roomchat - peer-to-peer chat rooms"""
    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level, log_dir=log_dir)

    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


# =============================================================================
# Identity Commands
# =============================================================================

@cli.group()
def identity():
    """Node identity management commands"""
    pass


@identity.command("create")
@click.option("--path", default=DEFAULT_IDENTITY, help="Identity file")
@click.option("--force", is_flag=True, help="Overwrite an existing identity")
def identity_create(path, force):
    """Create a new node identity"""
    from roomchat.network.identity import PeerIdentity

    target = Path(path).expanduser()
    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists (use --force to replace it)")

    ident = PeerIdentity.generate()
    ident.save(target)

    click.echo(f"✓ Identity created")
    click.echo(f"  Peer ID: {ident.peer_id}")
    click.echo(f"  Saved to: {target}")


@identity.command("show")
@click.option("--path", default=DEFAULT_IDENTITY, help="Identity file")
def identity_show(path):
    """Show the peer id stored in an identity file"""
    from roomchat.network.identity import PeerIdentity

    target = Path(path).expanduser()
    if not target.exists():
        raise click.ClickException(f"No identity at {target}")
    try:
        ident = PeerIdentity.load(target)
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"Peer ID: {ident.peer_id}")
    click.echo(f"Public key: {ident.public_key.hex()}")


# =============================================================================
# Chat Command
# =============================================================================


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    """Feed stdin lines into ``lines``; None marks end of input."""
    def read():
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line.rstrip("\n"))
        loop.call_soon_threadsafe(lines.put_nowait, None)

    threading.Thread(target=read, name="roomchat-stdin", daemon=True).start()


def _print_message(payload: dict) -> None:
    who = "you" if payload["is_self"] else payload["from"][:8]
    stamp = payload["timestamp"][11:19]
    click.echo(f"[{stamp}] <{who}> {payload['content']}")


async def _handle_line(bridge, line: str) -> bool:
    """Run one input line. Returns False when the user quits."""
    from roomchat.core.errors import RoomChatError

    line = line.strip()
    if not line:
        return True

    try:
        if line == "/quit":
            return False
        if line == "/info":
            info = await bridge.get_node_info()
            click.echo(f"Peer ID: {info.peer_id}")
            for addr in info.addresses:
                click.echo(f"  {addr}")
            click.echo(f"Connected peers: {len(info.connected_peers)}")
            for peer in info.connected_peers:
                click.echo(f"  {peer}")
        elif line.startswith("/join "):
            room = line[len("/join "):].strip()
            await bridge.join_room(room)
            click.echo(f"Joined room '{room}'")
        elif line.startswith("/connect "):
            addr = line[len("/connect "):].strip()
            await bridge.connect_to_peer(addr)
            click.echo(f"Connected to {addr}")
        elif line.startswith("/"):
            click.echo("Commands: /join NAME, /connect ADDR, /info, /quit")
        else:
            await bridge.send_message(line)
    except RoomChatError as e:
        click.echo(f"✗ {e} ({e.code})", err=True)
    return True


async def _poll_status(bridge, interval: float) -> None:
    """Print peer and address counts whenever they change."""
    last: Optional[Tuple[int, int]] = None
    while True:
        info = await bridge.get_node_info()
        counts = (len(info.connected_peers), len(info.addresses))
        if counts != last:
            click.echo(f"  Peers: {counts[0]}  Addresses: {counts[1]}")
            last = counts
        await asyncio.sleep(interval)


@cli.command("chat")
@click.option("--listen", multiple=True, help="Listen multiaddr (repeatable)")
@click.option("--room", default=None, help="Room to join on start")
@click.option("--connect", multiple=True, help="Peer multiaddr to dial on start (repeatable)")
@click.option("--identity", "identity_path", default=None, help="Identity file (created if missing)")
@click.option("--mdns/--no-mdns", default=None, help="Find peers on the local network")
@click.pass_context
def chat(ctx, listen, room, connect, identity_path, mdns):
    """Start a node and chat from the terminal"""
    from roomchat.api import EventBridge
    from roomchat.core.config import load_config
    from roomchat.core.errors import RoomChatError

    overrides = {}
    if listen:
        overrides["listen_addrs"] = list(listen)
    if identity_path:
        overrides["identity_path"] = Path(identity_path).expanduser()
    if mdns is not None:
        overrides["enable_mdns"] = mdns
    try:
        config = load_config(ctx.obj["env_file"], **overrides)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    async def run_chat():
        bridge = EventBridge(config=config)
        bridge.on("chat-message", _print_message)

        try:
            peer_id = await bridge.init_p2p()
        except RoomChatError as e:
            raise click.ClickException(str(e))

        click.echo(f"Node running as {peer_id}")
        info = await bridge.get_node_info()
        for addr in info.addresses:
            click.echo(f"  {addr}")

        poller = asyncio.create_task(_poll_status(bridge, config.poll_interval))
        try:
            if room:
                await _handle_line(bridge, f"/join {room}")
            for addr in connect:
                await _handle_line(bridge, f"/connect {addr}")

            lines: asyncio.Queue = asyncio.Queue()
            _start_stdin_reader(asyncio.get_running_loop(), lines)
            while True:
                line = await lines.get()
                if line is None or not await _handle_line(bridge, line):
                    break
        finally:
            poller.cancel()
            await asyncio.gather(poller, return_exceptions=True)
            await bridge.shutdown()

    try:
        asyncio.run(run_chat())
    except KeyboardInterrupt:
        click.echo("\nNode stopped.")


if __name__ == "__main__":
    cli()
