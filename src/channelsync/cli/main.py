"""channelsync CLI: talk to a running channelsync server."""

from __future__ import annotations

import json
from typing import Any

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="channelsync",
    help="channelsync: channel provisioning and sync",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()

DEFAULT_URL = "http://localhost:8000"

_CHANNEL_TYPES = ("whatsapp", "facebook", "instagram")


def _get_client(base_url: str, api_key: str | None) -> httpx.Client:
    headers = {}
    if api_key:
        headers["X-API-Key"] = api_key
    return httpx.Client(base_url=base_url, headers=headers, timeout=120.0)


def _call(client: httpx.Client, method: str, path: str, **kwargs: Any) -> dict:
    """Send a request and exit with a readable message on failure."""
    try:
        resp = client.request(method, path, **kwargs)
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print(f"[red]✗[/red] channelsync is not running at {client.base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        detail = e.response.text
        try:
            detail = e.response.json().get("detail", detail)
        except ValueError:
            pass
        console.print(f"[red]Error {e.response.status_code}:[/red] {detail}")
        raise typer.Exit(1)
    return resp.json()


def _check_type(channel_type: str) -> str:
    value = channel_type.strip().lower()
    if value not in _CHANNEL_TYPES:
        console.print(f"[red]Unknown channel type '{channel_type}'. Use: {', '.join(_CHANNEL_TYPES)}[/red]")
        raise typer.Exit(1)
    return value


@app.command()
def channels(
    owner: str = typer.Option("", "--owner", "-o", help="Only show channels of this owner"),
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="CHANNELSYNC_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="CHANNELSYNC_API_KEY"),
    raw: bool = typer.Option(False, "--raw", help="Output raw JSON response"),
) -> None:
    """List connected channels with their warnings."""
    client = _get_client(base_url, api_key or None)
    params = {"owner_id": owner} if owner else {}
    data = _call(client, "GET", "/v1/channels", params=params)

    if raw:
        console.print_json(json.dumps(data))
        return
    if not data["channels"]:
        console.print("[dim]No channels yet.[/dim]")
        return

    table = Table(title="Channels", border_style="blue")
    table.add_column("ID", style="cyan", max_width=10)
    table.add_column("Owner")
    table.add_column("Type")
    table.add_column("Resource")
    table.add_column("Connected")
    table.add_column("Warnings", style="yellow")

    for channel in data["channels"]:
        table.add_row(
            channel["id"][:8] + "...",
            channel["owner_id"],
            channel["type"],
            channel["config"].get("resource_id", ""),
            "[green]yes[/green]" if channel["is_connected"] else "[red]no[/red]",
            ", ".join(channel.get("warnings", [])),
        )

    console.print()
    console.print(table)
    console.print()


@app.command("auth-url")
def auth_url(
    channel_type: str = typer.Argument(..., help="whatsapp, facebook or instagram"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner (user) id"),
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="CHANNELSYNC_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="CHANNELSYNC_API_KEY"),
) -> None:
    """Issue a state blob and print the provider consent URL."""
    client = _get_client(base_url, api_key or None)
    kind = _check_type(channel_type)
    data = _call(client, "GET", f"/v1/channels/{kind}/auth-url", params={"owner_id": owner})

    console.print(f"[bold]state[/bold] {data['state']}")
    if data.get("url"):
        console.print(f"[bold]url[/bold]   {data['url']}")
    else:
        console.print("[dim]This provider has no consent redirect; provision directly with the state.[/dim]")


@app.command()
def provision(
    channel_type: str = typer.Argument(..., help="whatsapp, facebook or instagram"),
    state: str = typer.Option(..., "--state", "-s", help="State blob from auth-url"),
    code: str = typer.Option("", "--code", "-c", help="Authorization code from the redirect"),
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="CHANNELSYNC_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="CHANNELSYNC_API_KEY"),
) -> None:
    """Connect a channel from an authorization code."""
    client = _get_client(base_url, api_key or None)
    kind = _check_type(channel_type)
    data = _call(client, "POST", f"/v1/channels/{kind}/provision", json={"code": code, "state": state})

    channel = data["channel"]
    lines = [
        f"channel: {channel['id']}",
        f"status: {data['status']}",
        f"stages: {' → '.join(data['history'])}",
    ]
    if data.get("short_circuited"):
        lines.append("already connected, returned existing channel")
    if channel.get("warnings"):
        lines.append(f"warnings: {', '.join(channel['warnings'])}")
    if channel.get("needs_verification"):
        lines.append("identity is ambiguous, run: channelsync verify " + channel["id"])

    style = "yellow" if channel.get("degraded") else "green"
    console.print(Panel("\n".join(lines), title=f"{kind} connected", border_style=style))


@app.command()
def verify(
    channel_id: str = typer.Argument(..., help="Instagram channel id"),
    status: bool = typer.Option(False, "--status", help="Show the current challenge instead of creating one"),
    cancel: bool = typer.Option(False, "--cancel", help="Cancel the pending challenge"),
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="CHANNELSYNC_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="CHANNELSYNC_API_KEY"),
) -> None:
    """Start, inspect or cancel identity verification for an Instagram channel."""
    client = _get_client(base_url, api_key or None)
    path = f"/v1/channels/{channel_id}/verification"

    if cancel:
        data = _call(client, "DELETE", path)
        console.print("[green]✓[/green] Cancelled" if data["cancelled"] else "[dim]Nothing to cancel.[/dim]")
        return

    data = _call(client, "GET" if status else "POST", path)
    challenge = data.get("challenge")
    if not challenge:
        console.print("[dim]No verification challenge for this channel.[/dim]")
        return

    if challenge["status"] == "pending" and not status:
        console.print(
            Panel(
                f"Send [bold]{challenge['code']}[/bold] as a direct message to your Instagram account.\n"
                f"Expires at {challenge['expires_at'][:19]}",
                title="Verification",
                border_style="blue",
            )
        )
        return

    console.print(f"[cyan]{challenge['code']}[/cyan] status={challenge['status']} polling={data['polling']}")


@app.command()
def notifications(
    recipient: str = typer.Argument(..., help="Owner id to read notifications for"),
    peek: bool = typer.Option(False, "--peek", help="Do not remove notifications"),
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="CHANNELSYNC_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="CHANNELSYNC_API_KEY"),
) -> None:
    """Read pending notifications for a user."""
    client = _get_client(base_url, api_key or None)
    data = _call(
        client,
        "GET",
        f"/v1/notifications/{recipient}",
        params={"drain": "false" if peek else "true"},
    )

    items = data["notifications"]
    if not items:
        console.print("[dim]No notifications.[/dim]")
        return

    table = Table(title="Notifications", border_style="blue")
    table.add_column("When")
    table.add_column("Type", style="cyan")
    table.add_column("Subject")
    table.add_column("Payload")
    for item in items:
        table.add_row(
            item["created_at"][:19],
            item["type"],
            item.get("channel_id") or item.get("conversation_id") or "",
            json.dumps(item.get("payload", {}))[:80],
        )

    console.print()
    console.print(table)
    console.print()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Start the channelsync server."""
    import uvicorn

    console.print(Panel("Starting channelsync server...", border_style="blue"))
    uvicorn.run(
        "channelsync.main:app",
        host=host,
        port=port,
        reload=reload,
    )


def main() -> None:
    """Entrypoint."""
    app()


if __name__ == "__main__":
    main()
