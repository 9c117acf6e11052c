"""
Command-line entry points for the realtime service.

    task-realtime serve     run the WebSocket/HTTP server with uvicorn
    task-realtime listen    connect a client and print received events
    task-realtime publish   post an event to a running server
"""

import asyncio
import json
import logging
import sys
from typing import Optional

import click
import httpx
import uvicorn

from .client import ClientConnectionManager, ConnectionSignals, ConnectionState
from .config import RealtimeSettings, parse_inbound_policy
from .dispatch import WILDCARD
from .exceptions import ConfigurationError
from .models import Event


def _load_settings() -> RealtimeSettings:
    try:
        return RealtimeSettings.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL or INFO)")
@click.pass_context
def main(ctx, log_level):
    """Task Realtime - organization-scoped update distribution."""
    settings = _load_settings()
    if log_level:
        settings.log_level = log_level.upper()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    ctx.obj = settings


@main.command()
@click.option("--host", default=None, help="Bind address (defaults to WS_HOST)")
@click.option("--port", type=int, default=None, help="Port (defaults to WS_PORT)")
@click.option("--simulate/--no-simulate", default=None, help="Run the task update simulator")
@click.option("--inbound-policy", default=None, type=click.Choice(["verbatim", "scoped", "disabled"]),
              help="How client-sent frames are rebroadcast")
@click.pass_obj
def serve(settings: RealtimeSettings, host, port, simulate, inbound_policy):
    """Run the realtime server."""
    from .api import create_app

    if host:
        settings.host = host
    if port:
        settings.port = port
    if simulate is not None:
        settings.simulate = simulate
    if inbound_policy:
        settings.inbound_policy = parse_inbound_policy(inbound_policy)

    click.echo(f"WebSocket server listening on port {settings.port}")
    click.echo(f"Test connection: ws://localhost:{settings.port}/ws?userId=test&organizationId=org1")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


class _EchoSignals(ConnectionSignals):
    def connected(self):
        click.echo("Connected to real-time updates", err=True)

    def transient_error(self, error):
        click.echo(f"Real-time connection error: {error}", err=True)

    def failed_permanently(self):
        click.echo("Failed to establish real-time connection", err=True)


async def _listen(client: ClientConnectionManager, user_id: str, organization_id: Optional[str],
                  event_type: str, count: Optional[int]) -> int:
    received = 0
    done = asyncio.Event()

    def on_event(event: Event):
        nonlocal received
        click.echo(event.to_wire())
        received += 1
        if count is not None and received >= count:
            done.set()

    client.subscribe(event_type, on_event)
    client.connect(user_id, organization_id)
    try:
        while not done.is_set() and client.state is not ConnectionState.FAILED:
            try:
                await asyncio.wait_for(done.wait(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
    finally:
        await client.close()
    return received


@main.command()
@click.option("--user-id", required=True, help="User id for the handshake")
@click.option("--organization-id", default=None, help="Organization scope")
@click.option("--url", default=None, help="Endpoint URL (defaults to the environment URL)")
@click.option("--type", "event_type", default=WILDCARD, show_default=True, help="Event type to print")
@click.option("--count", type=int, default=None, help="Exit after this many events")
@click.pass_obj
def listen(settings: RealtimeSettings, user_id, organization_id, url, event_type, count):
    """Connect and print received events as JSON lines."""
    client = ClientConnectionManager(
        url=url or settings.client_url,
        reconnect=settings.reconnect,
        signals=_EchoSignals(),
    )
    try:
        asyncio.run(_listen(client, user_id, organization_id, event_type, count))
    except KeyboardInterrupt:
        pass
    if client.state is ConnectionState.FAILED:
        sys.exit(1)


@main.command()
@click.option("--type", "event_type", required=True, help="Event type, e.g. task_updated")
@click.option("--payload", default="{}", help="JSON payload")
@click.option("--organization-id", default=None, help="Organization scope (omit for all)")
@click.option("--team-id", default=None)
@click.option("--user-id", default=None, help="Acting user id")
@click.option("--url", default=None, help="Server base URL (defaults to http://localhost:WS_PORT)")
@click.option("--token", default=None, envvar="REALTIME_PUBLISH_TOKEN", help="Publish token")
@click.pass_obj
def publish(settings: RealtimeSettings, event_type, payload, organization_id, team_id, user_id, url, token):
    """Publish an event through a running server."""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Payload is not valid JSON: {e}", param_hint="--payload")

    event = Event(
        type=event_type,
        payload=payload_data,
        user_id=user_id,
        organization_id=organization_id,
        team_id=team_id,
    )
    base_url = (url or f"http://localhost:{settings.port}").rstrip("/")
    headers = {"X-Publish-Token": token} if token else {}

    try:
        response = httpx.post(f"{base_url}/api/events", json=event.to_dict(), headers=headers, timeout=10.0)
    except httpx.HTTPError as e:
        raise click.ClickException(f"Failed to reach {base_url}: {e}")

    if response.status_code != 200:
        raise click.ClickException(f"Publish failed ({response.status_code}): {response.text}")

    click.echo(json.dumps(response.json()))


if __name__ == "__main__":
    main()
