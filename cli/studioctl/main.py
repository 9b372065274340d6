#!/usr/bin/env python3

import json

import requests
import typer

from cli.studioctl.streams_commands import emit_output, fail, get_studio_url, streams

app = typer.Typer(help="Operator CLI for the studio service", no_args_is_help=True)
app.add_typer(streams, name="streams")


@app.command("agent-for")
def agent_for(
    text: str = typer.Argument(..., help="Message text to route"),
    studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL"),
    output: str = typer.Option("pretty", "--output", "-o", help="Output format: pretty, json, yaml"),
):
    """Show which builder agent a message would be routed to."""
    url = studio_url or get_studio_url()
    try:
        response = requests.post(f"{url}/api/v1/agents/select", json={"text": text}, timeout=10)
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    if response.status_code != 200:
        fail(f"Failed to select agent: {response.text}")
    agent = response.json().get("agent", {})
    if emit_output(agent, output):
        return
    typer.echo(f"{agent.get('name')} ({agent.get('game_type') or 'generic'})")
    if agent.get("focus_mechanics"):
        typer.echo("  focus: " + ", ".join(agent["focus_mechanics"]))


@app.command("health")
def health(studio_url: str = typer.Option(None, "--url", "-u", help="Studio URL")):
    """Check service liveness and store adapters."""
    url = studio_url or get_studio_url()
    try:
        ready = requests.get(f"{url}/ready", timeout=5)
        info = requests.get(f"{url}/api/v1/store/info", timeout=10)
    except requests.RequestException as e:
        fail(f"Connection failed: {e}")
    typer.echo(json.dumps({"ready": ready.json(), "stores": info.json()}, indent=2))
    if ready.status_code != 200:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
