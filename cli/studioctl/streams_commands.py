#!/usr/bin/env python3
"""
Stream management commands for studioctl.
Inspect, stop, force-clear and follow the per-app generation streams of a studio service.
"""

import json
import os
from typing import NoReturn, Optional

import requests
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

streams = typer.Typer(
    name="streams",
    help="Manage per-app agent streams - list, inspect, stop, clear, and watch",
    no_args_is_help=True,
)

console = Console()

DEFAULT_STUDIO_URL = "http://localhost:8000"

STATE_STYLES = {"running": "blue", "stopping": "yellow", "none": "dim"}


def get_studio_url() -> str:
    """Get studio URL from env or default."""
    return os.environ.get("STUDIO_URL", DEFAULT_STUDIO_URL)


def emit_output(data, output: str) -> bool:
    if output == "json":
        typer.echo(json.dumps(data, indent=2))
        return True
    if output == "yaml":
        import yaml

        typer.echo(yaml.dump(data, default_flow_style=False))
        return True
    return False


def fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


@streams.command("list")
def list_streams(
    studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL (default: $STUDIO_URL or localhost:8000)"),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table, json, yaml"),
):
    """List apps that currently have a stream record."""
    url = studio_url or get_studio_url()
    try:
        response = requests.get(f"{url}/api/v1/streams", timeout=10)
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    if response.status_code != 200:
        fail(f"Failed to list streams: {response.text}")

    records = response.json().get("streams", [])
    if emit_output(records, output):
        return
    if not records:
        typer.echo("No active streams.")
        return

    table = Table(title="Active Streams")
    table.add_column("App", style="cyan", no_wrap=True)
    table.add_column("State", style="magenta")
    table.add_column("Session", style="green")
    table.add_column("Instance")
    table.add_column("Started", style="yellow")
    for rec in records:
        state = rec.get("state", "unknown")
        table.add_row(
            rec.get("appId", ""),
            f"[{STATE_STYLES.get(state, 'white')}]{state}[/]",
            (rec.get("sessionId") or "-")[:12],
            rec.get("instanceId") or "-",
            (rec.get("startedAt") or "-")[:19],
        )
    console.print(table)
    console.print(f"\nTotal: {len(records)} streams")


@streams.command("status")
def stream_status(
    app_id: str = typer.Argument(..., help="Application id"),
    studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL"),
    output: str = typer.Option("pretty", "--output", "-o", help="Output format: pretty, json, yaml"),
):
    """Show whether an app has a running stream."""
    url = studio_url or get_studio_url()
    try:
        response = requests.get(f"{url}/api/v1/streams/{app_id}", timeout=10)
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    if response.status_code != 200:
        fail(f"Failed to get stream status: {response.text}")

    status = response.json()
    if emit_output(status, output):
        return
    state = status.get("state", "none")
    console.print(
        Panel(
            f"[bold]App:[/] {app_id}\n"
            f"[bold]State:[/] [{STATE_STYLES.get(state, 'white')}]{state}[/]\n"
            f"[bold]Session:[/] {status.get('sessionId') or 'N/A'}\n"
            f"[bold]Instance:[/] {status.get('instanceId') or 'N/A'}\n"
            f"[bold]Started:[/] {status.get('startedAt') or 'N/A'}\n"
            f"[bold]Updated:[/] {status.get('updatedAt') or 'N/A'}",
            title="Stream Status",
            border_style="cyan",
        )
    )


@streams.command("stop")
def stop_stream(
    app_id: str = typer.Argument(..., help="Application id"),
    studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the stream to acknowledge"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Wait budget in seconds"),
):
    """Ask an app's stream to stop."""
    url = studio_url or get_studio_url()
    params = {"wait": str(wait).lower()}
    if timeout is not None:
        params["timeout"] = timeout
    try:
        response = requests.post(
            f"{url}/api/v1/streams/{app_id}/stop",
            params=params,
            timeout=(timeout or 30) + 10,
        )
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    if response.status_code != 200:
        fail(f"Failed to stop stream: {response.text}")

    if response.json().get("stopped"):
        typer.echo(f"Stream for app '{app_id}' stopped.")
    else:
        typer.echo(f"Stream for app '{app_id}' has not stopped yet; use 'streams clear' to force it.")
        raise typer.Exit(code=2)


@streams.command("clear")
def clear_stream(
    app_id: str = typer.Argument(..., help="Application id"),
    studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
):
    """Force-clear an app's stream record without waiting for its task."""
    url = studio_url or get_studio_url()
    if not force:
        confirm = typer.confirm(
            f"Force-clear the stream for app '{app_id}'? A still-running task may keep working."
        )
        if not confirm:
            typer.echo("Cancelled.")
            return
    try:
        response = requests.delete(f"{url}/api/v1/streams/{app_id}", timeout=10)
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    if response.status_code not in (200, 204):
        fail(f"Failed to clear stream: {response.text}")
    typer.echo(f"Stream state for app '{app_id}' cleared.")


@streams.command("watch")
def watch_stream(
    app_id: str = typer.Argument(..., help="Application id"),
    studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL"),
    last_event_id: Optional[str] = typer.Option(None, "--from", help="Resume after this event id"),
    timeout_seconds: int = typer.Option(300, "--timeout", "-t", help="Watch timeout in seconds"),
):
    """Follow the latest stream of an app via SSE."""
    url = studio_url or get_studio_url()
    headers = {"Accept": "text/event-stream", "X-App-Id": app_id}
    if last_event_id:
        headers["Last-Event-ID"] = last_event_id

    console.print(f"[bold]Watching app:[/] {app_id}")
    console.print("[dim]Press Ctrl+C to stop watching[/]\n")

    try:
        response = requests.get(f"{url}/chat/stream", stream=True, timeout=timeout_seconds, headers=headers)
        if response.status_code == 404:
            fail(f"No stream for app '{app_id}'")
        if response.status_code != 200:
            fail(f"Failed to start event stream: {response.text}")

        event_type = "message"
        event_count = 0
        for line in response.iter_lines(decode_unicode=True):
            if not line:
                event_type = "message"
                continue
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_type = line[6:].strip()
                continue
            if not line.startswith("data:"):
                continue
            try:
                event = json.loads(line[5:].strip())
            except json.JSONDecodeError:
                console.print(f"[dim]  Raw: {line}[/]")
                continue
            event_count += 1

            if event_type == "text":
                console.print(event.get("delta", ""), end="")
            elif event_type == "start":
                console.print(f"[green]▶ Session {event.get('sessionId', '')[:12]} ({event.get('agent')})[/]")
            elif event_type == "tool_call":
                console.print(f"\n[blue]  → {event.get('name')} {json.dumps(event.get('args', {}))[:120]}[/]")
            elif event_type == "tool_result":
                mark = "✓" if event.get("ok") else "✗"
                console.print(f"[dim]  {mark} {event.get('name')}[/]")
            elif event_type == "finish":
                console.print("\n[green]✓ Finished[/]")
            elif event_type == "cancelled":
                console.print(f"\n[yellow]⊘ Cancelled ({event.get('reason')})[/]")
            elif event_type == "error":
                console.print(f"\n[red]✗ Failed: {event.get('message')}[/]")
            else:
                console.print(f"[dim]  {event_type}: {json.dumps(event)}[/]")

        console.print(f"\n[dim]Received {event_count} events[/]")

    except requests.exceptions.Timeout:
        fail(f"Timeout: No events received for {timeout_seconds} seconds")
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching[/]")
