"""
Command-line interface for the audit chain.

Usage:
    auditchain init
    auditchain record --type vote '{"choice": "A"}'
    auditchain head
    auditchain show
    auditchain verify
    auditchain reset --yes
    auditchain relay --port 8080
    auditchain sync --relay ws://localhost:8080
"""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

from .config import ChainConfig
from .exceptions import BlockValidationError, TransportError
from .network.relay_server import RelayServer
from .node import ChainNode

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S"
)

logger = logging.getLogger(__name__)


def _configure_logging(config: ChainConfig, debug: bool) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else config.log_level.upper())

    if config.log_file:
        handler = logging.FileHandler(config.log_file)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))
        root.addHandler(handler)


def _run_node(config: ChainConfig, action: Callable[[ChainNode], Awaitable[Any]]) -> Any:
    """Start an offline node on the local store, run ``action``, stop."""

    async def runner():
        node = ChainNode(config)
        await node.start(bootstrap=False)
        try:
            return await action(node)
        finally:
            await node.stop()

    return asyncio.run(runner())


def _require_chain(config: ChainConfig) -> None:
    if not config.db_path.exists():
        click.echo(click.style("✗ No chain found. Run 'auditchain init' first.", fg="red"))
        sys.exit(1)


def _format_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.option("--data-dir", type=click.Path(), help="Data directory path")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, data_dir: Optional[str], debug: bool):
    """Tamper-evident audit chain with peer synchronization"""
    ctx.ensure_object(dict)

    config = ChainConfig()
    if data_dir:
        config.data_dir = Path(data_dir)

    _configure_logging(config, debug)
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def init(ctx):
    """Create the device key and genesis block."""
    config = ctx.obj["config"]

    async def do_init(node: ChainNode):
        return await node.head()

    head = _run_node(config, do_init)

    click.echo(click.style("✓ Chain ready", fg="green", bold=True))
    click.echo(f"  Data:    {config.db_path}")
    click.echo(f"  Head:    #{head.index} {head.hash[:16]}...")


@cli.command()
@click.option("--type", "action_type", required=True, help="Action type (vote, post-create, ...)")
@click.option("--label", "-l", default=None, help="Human-readable label")
@click.argument("payload")
@click.pass_context
def record(ctx, action_type: str, label: Optional[str], payload: str):
    """Append an action with a JSON PAYLOAD to the chain."""
    config = ctx.obj["config"]
    _require_chain(config)

    try:
        data = json.loads(payload)
    except ValueError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="PAYLOAD")

    async def do_record(node: ChainNode):
        return await node.record_action(data, action_type, action_label=label)

    block, receipt = _run_node(config, do_record)

    click.echo(click.style(f"✓ Block #{block.index} recorded", fg="green", bold=True))
    click.echo(f"  Hash:    {block.current_hash}")
    click.echo(f"  Receipt: {click.style(receipt.mnemonic, fg='yellow')}")
    click.echo(click.style("  Keep the receipt phrase to look this action up later.", fg="bright_black"))


@cli.command()
@click.pass_context
def head(ctx):
    """Show the current chain head."""
    config = ctx.obj["config"]
    _require_chain(config)

    async def do_head(node: ChainNode):
        return await node.head()

    chain_head = _run_node(config, do_head)
    if chain_head is None:
        click.echo("Chain is empty")
        return

    click.echo(f"#{chain_head.index} {chain_head.hash}")


@cli.command()
@click.pass_context
def show(ctx):
    """List every block in the chain."""
    config = ctx.obj["config"]
    _require_chain(config)

    async def do_show(node: ChainNode):
        return await node.blocks()

    blocks = _run_node(config, do_show)

    click.echo(click.style(f"Chain ({len(blocks)} blocks)", fg="cyan", bold=True))
    for block in blocks:
        kind = block.action_type or ("genesis" if block.is_genesis else "action")
        label = f" {block.action_label}" if block.action_label else ""
        trust = "" if block.public_key else click.style(" [legacy]", fg="yellow")
        click.echo(
            f"  #{block.index:<4} [{_format_time(block.timestamp)}] "
            f"{block.current_hash[:16]}... {kind}{label}{trust}"
        )


@cli.command()
@click.pass_context
def verify(ctx):
    """Validate the full chain."""
    config = ctx.obj["config"]
    _require_chain(config)

    async def do_verify(node: ChainNode):
        try:
            await node.ledger.check_chain()
        except BlockValidationError as e:
            return e, 0
        return None, len(await node.blocks())

    error, count = _run_node(config, do_verify)

    if error is None:
        click.echo(click.style(f"✓ Chain valid ({count} blocks)", fg="green"))
    else:
        click.echo(click.style("✗ Chain INVALID", fg="red", bold=True))
        click.echo(f"  Block #{error.index}: {error.message}")
        sys.exit(1)


@cli.command()
@click.confirmation_option("--yes", prompt="This deletes all blocks, actions and receipts. Continue?")
@click.pass_context
def reset(ctx):
    """Clear the chain and start over from a fresh genesis."""
    config = ctx.obj["config"]
    _require_chain(config)

    async def do_reset(node: ChainNode):
        return await node.reset_chain()

    genesis = _run_node(config, do_reset)
    click.echo(click.style("✓ Chain reset", fg="green"))
    click.echo(f"  Genesis: {genesis.current_hash[:16]}...")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host address to bind")
@click.option("--port", "-p", default=8080, help="Port to listen on")
def relay(host: str, port: int):
    """Run a development relay server."""
    server = RelayServer(host, port)

    async def run_relay():
        await server.start()
        click.echo(click.style(f"✓ Relay listening on {server.url}", fg="green"))
        click.echo(click.style("Press Ctrl+C to stop", fg="bright_black"))
        try:
            while True:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await server.stop()

    try:
        asyncio.run(run_relay())
    except KeyboardInterrupt:
        click.echo()
        click.echo("Stopped.")


@cli.command()
@click.option("--relay", "relay_url", default=None, help="Relay WebSocket URL")
@click.option("--wait", type=float, default=None, help="Seconds to wait for responses")
@click.pass_context
def sync(ctx, relay_url: Optional[str], wait: Optional[float]):
    """Run one resync round against peers on the relay."""
    config = ctx.obj["config"]
    if relay_url:
        config.relay_url = relay_url

    async def do_sync():
        node = ChainNode.from_config(config)
        await node.start()
        try:
            sync_round = await node.request_sync(wait)
            return sync_round, await node.head()
        finally:
            await node.stop()

    click.echo(f"Syncing via {config.relay_url}...")
    try:
        sync_round, chain_head = asyncio.run(do_sync())
    except TransportError as e:
        click.echo(click.style(f"✗ {e.message}", fg="red"))
        sys.exit(1)

    click.echo(f"  Responses: {len(sync_round.responders)}")
    click.echo(f"  Admitted:  {sync_round.admitted} block(s)")
    if sync_round.missing:
        click.echo(click.style(f"  Silent:    {len(sync_round.missing)} peer(s)", fg="yellow"))
    if chain_head is not None:
        click.echo(f"  Head:      #{chain_head.index} {chain_head.hash[:16]}...")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
