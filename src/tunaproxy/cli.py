"""CLI entry point for tunaproxy."""

from __future__ import annotations

import asyncio
import logging

import typer

from tunaproxy.client import TunaClient
from tunaproxy.config import TunaSettings
from tunaproxy.constants import Command, ProxyType
from tunaproxy.errors import TunaError
from tunaproxy.events import EventChannel, EventType
from tunaproxy.proxy import start_proxy

app = typer.Typer(
    name="tunaproxy",
    help="Run the tuna tunneling client and report its connection state.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


async def _print_events(channel: EventChannel) -> None:
    """Echo events until the process exits."""
    queue = channel.subscribe()
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            d = event.data
            if event.type == EventType.CONNECTED:
                typer.echo(f"connected: {d['ip']}")
            elif event.type == EventType.DISCONNECTED:
                typer.echo("disconnected")
            elif event.type == EventType.LISTENING:
                typer.echo(f"listening: {d['url']}")
            elif event.type == EventType.EXIT:
                typer.echo(f"exit (code={d.get('returncode')})")
                break
    finally:
        channel.unsubscribe(queue)


async def _run_node(command: Command, config_dir: str, validate_ports: bool, settings: TunaSettings) -> None:
    client = TunaClient(settings)
    printer = asyncio.create_task(_print_events(client.events))
    try:
        await client.start(command, config_dir, validate_ports=validate_ports)
        typer.echo(f"tuna {command.value} ready (ip={client.current_ip})")
        await printer
    finally:
        await client.stop()
        printer.cancel()


async def _run_proxy(settings: TunaSettings, **options: object) -> None:
    handle = await start_proxy(settings=settings, **options)
    async with handle:
        typer.echo(f"proxy ready: {handle.proxy_url or 'not listening yet'} (ip={handle.current_ip})")
        await _print_events(handle.events)


def _run(coro_factory, verbose: bool) -> None:
    setup_logging(verbose)
    try:
        asyncio.run(coro_factory())
    except KeyboardInterrupt:
        typer.echo("interrupted")
    except TunaError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def node(
    command: Command = typer.Argument(help="Mode to run tuna in: entry or exit."),
    config_dir: str = typer.Option(".", "--config-dir", "-c", help="Tuna config directory."),
    validate_ports: bool = typer.Option(
        True, "--validate-ports/--no-validate-ports", help="Wait for service ports to open."
    ),
    settings_file: str | None = typer.Option(
        None, "--settings", "-s", help="JSON settings file."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a single tuna node until it exits or Ctrl-C."""
    settings = TunaSettings.load(settings_file)
    _run(lambda: _run_node(command, config_dir, validate_ports, settings), verbose)


@app.command()
def proxy(
    proxy_type: ProxyType = typer.Option(ProxyType.HTTP, "--type", "-t", help="Proxy protocol."),
    config_dir: str = typer.Option(".", "--config-dir", "-c", help="Tuna config directory."),
    wallet_file: str | None = typer.Option(None, "--wallet", help="Wallet file."),
    wallet_password_file: str | None = typer.Option(
        None, "--wallet-password", help="Wallet password file."
    ),
    no_wallet: bool = typer.Option(False, "--no-wallet", help="Run without a wallet."),
    validate_ports: bool = typer.Option(
        True, "--validate-ports/--no-validate-ports", help="Wait for the proxy to listen."
    ),
    settings_file: str | None = typer.Option(
        None, "--settings", "-s", help="JSON settings file."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Start a local tuna proxy and print its address."""
    settings = TunaSettings.load(settings_file)
    _run(
        lambda: _run_proxy(
            settings,
            proxy_type=proxy_type.value,
            config_dir=config_dir,
            wallet_file=wallet_file,
            wallet_password_file=wallet_password_file,
            no_wallet=no_wallet,
            validate_ports=validate_ports,
        ),
        verbose,
    )


if __name__ == "__main__":
    app()
