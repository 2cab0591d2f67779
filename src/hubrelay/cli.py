"""CLI entry point for hubrelay."""

import asyncio
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import aiohttp
import click

from hubrelay import __version__
from hubrelay.config import load_config
from hubrelay.formatting import format_session_row
from hubrelay.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """hubrelay - chat relay with resumable sessions."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option("--host", default=None, help="Bind address (overrides config).")
@click.option("--port", "-p", type=int, default=None, help="Port (overrides config).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the relay server."""
    from hubrelay.server import RelayServer

    config = ctx.obj["config"]

    async def _serve():
        server = RelayServer(config=config)
        try:
            await server.start(host, port)
            click.echo(
                f"Relay listening on {host or config.bind_address}:"
                f"{server.get_port()}{config.hub_path}"
            )
            click.echo("Press Ctrl+C to stop")
            await asyncio.Event().wait()
        except OSError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)
        finally:
            await server.close()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
@click.argument("url", required=False)
@click.option("--session", "-s", "session_id", default=None, help="Session ID to resume.")
@click.pass_context
def chat(ctx: click.Context, url: str | None, session_id: str | None) -> None:
    """Interactive chat. Each input line is sent as a message."""
    from hubrelay.client import ConnectionStatus, SessionClient

    client_config = ctx.obj["config"].client
    address = url or client_config.url

    async def _chat():
        client = SessionClient(
            address,
            session_id=session_id,
            retry_delay=client_config.retry_delay,
            reconnect_delays=client_config.reconnect_delays,
            invoke_timeout=client_config.invoke_timeout,
        )

        def on_status(status: ConnectionStatus) -> None:
            click.echo(f"* {status.value}", err=True)
            if status is ConnectionStatus.CONNECTED and client.session_id:
                click.echo(f"* Resume with: {client.share_url()}", err=True)

        client.add_status_listener(on_status)
        client.add_message_listener(click.echo)

        await client.start()
        loop = asyncio.get_running_loop()
        try:
            while True:
                line = await loop.run_in_executor(None, input)
                if not line.strip():
                    continue
                if line.strip() == "/quit":
                    break
                await client.send_message(line)
        except EOFError:
            pass
        finally:
            share = client.share_url()
            await client.stop()
            if share:
                click.echo(f"* Session saved. Resume with: {share}", err=True)

    try:
        asyncio.run(_chat())
    except KeyboardInterrupt:
        pass


def _sessions_endpoint(url: str) -> str:
    parts = urlsplit(url)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, "/api/sessions", "", ""))


async def _fetch_sessions(endpoint: str) -> list[dict]:
    async with aiohttp.ClientSession() as http:
        async with http.get(endpoint, raise_for_status=True) as resp:
            data = await resp.json()
    return data.get("sessions", [])


@main.command()
@click.option("--url", default=None, help="Relay address (defaults to client.url).")
@click.pass_context
def sessions(ctx: click.Context, url: str | None) -> None:
    """List sessions known to a running relay."""
    endpoint = _sessions_endpoint(url or ctx.obj["config"].client.url)

    try:
        rows = asyncio.run(_fetch_sessions(endpoint))
    except aiohttp.ClientResponseError as e:
        click.echo(f"Error: HTTP {e.status}", err=True)
        raise SystemExit(1)
    except aiohttp.ClientError:
        click.echo("Error: Cannot connect to relay. Is it running?", err=True)
        raise SystemExit(1)

    if not rows:
        click.echo("No sessions.")
        return

    click.echo(f"{'SESSION':<40} {'STATE':<8} {'HISTORY':<8} {'LAST SEEN'}")
    click.echo("-" * 75)
    for row in rows:
        click.echo(format_session_row(row))


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"hubrelay version {__version__}")
