"""
orglink - Main Entry Point

CLI for inspecting enterprise quotas and link requests against a seed
store, and for running the REST API.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orglink import __version__
from orglink.config.loader import find_config_file, load_seed, load_settings
from orglink.config.schema import OrgLinkSettings
from orglink.enterprise.storage import InMemoryEnterpriseStore
from orglink.exceptions import OrgLinkError
from orglink.observability.logging_config import configure_logging

load_dotenv()

app = typer.Typer(
    name="orglink",
    help="orglink - enterprise quotas, organization linking and API admission control",
)
console = Console()

PROJECT_ROOT = Path(__file__).parent


def _get_settings(config: Optional[str]) -> OrgLinkSettings:
    """Load settings and configure logging, with a friendly error on failure."""
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError) as e:
        console.print(Panel(
            f"[red]{e}[/]",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)
    configure_logging(env=settings.env.value, level=settings.log_level)
    return settings


def _get_store(settings: OrgLinkSettings, seed: Optional[str]) -> InMemoryEnterpriseStore:
    """Load the seed store named on the command line or in settings."""
    seed_path = seed or settings.seed_path
    if not seed_path:
        console.print("[yellow]No seed configured; starting with an empty store.[/]")
        return InMemoryEnterpriseStore()

    path = Path(seed_path)
    if not path.is_absolute() and not path.exists():
        path = PROJECT_ROOT / path
    try:
        return load_seed(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Could not load seed:[/] {e}")
        raise typer.Exit(code=1)


@app.command()
def info(
    config: Optional[str] = typer.Option(None, help="Path to orglink.yaml"),
):
    """Show the effective configuration."""
    settings = _get_settings(config)
    source = config or find_config_file() or "schema defaults"

    table = Table(title=f"orglink {__version__}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Config", str(source))
    table.add_row("Environment", settings.env.value)
    table.add_row("Log level", settings.log_level)
    table.add_row("Minute limit", str(settings.rate_limit.minute_limit))
    table.add_row("Burst limit", str(settings.rate_limit.burst_limit))
    table.add_row("Server", f"{settings.server.host}:{settings.server.port}")
    table.add_row("Audit", "enabled" if settings.audit.enabled else "disabled")
    table.add_row("Seed", settings.seed_path or "-")

    console.print(table)


@app.command()
def quota(
    enterprise_id: str = typer.Argument(..., help="Enterprise organization id"),
    config: Optional[str] = typer.Option(None, help="Path to orglink.yaml"),
    seed: Optional[str] = typer.Option(None, help="Seed YAML (overrides settings)"),
):
    """Show current quota usage for an enterprise."""
    from orglink.enterprise.quota import QuotaSnapshotResolver

    settings = _get_settings(config)
    store = _get_store(settings, seed)

    try:
        snapshot = QuotaSnapshotResolver(store).resolve_snapshot(enterprise_id)
    except OrgLinkError as e:
        console.print(f"[red]{e.code.value}:[/] {e.message}")
        raise typer.Exit(1)

    table = Table(title=f"Quota - {enterprise_id}")
    table.add_column("Resource", style="cyan")
    table.add_column("Used", style="white", justify="right")
    table.add_column("Limit", style="white", justify="right")
    table.add_column("Headroom", justify="right")

    summary = snapshot.to_summary()
    for resource, numbers in summary.items():
        if resource == "enterprise_id":
            continue
        headroom = numbers["limit"] - numbers["current"]
        style = "green" if headroom > 0 else "red"
        table.add_row(
            resource,
            str(numbers["current"]),
            str(numbers["limit"]),
            f"[{style}]{headroom}[/{style}]",
        )

    console.print(table)
    console.print(f"[dim]Workspaces: {', '.join(snapshot.workspace_ids) or 'none'}[/]")


@app.command(name="link-requests")
def link_requests(
    organization_id: str = typer.Argument(..., help="Recipient organization id"),
    config: Optional[str] = typer.Option(None, help="Path to orglink.yaml"),
    seed: Optional[str] = typer.Option(None, help="Seed YAML (overrides settings)"),
):
    """List PENDING link requests addressed to an organization."""
    from orglink.enterprise.linking import LinkRequestService

    settings = _get_settings(config)
    store = _get_store(settings, seed)
    requests = LinkRequestService(store).list_pending_for_organization(organization_id)

    if not requests:
        console.print("[yellow]No pending link requests.[/]")
        return

    table = Table(title=f"Pending link requests - {organization_id}")
    table.add_column("Request", style="cyan")
    table.add_column("Enterprise", style="white")
    table.add_column("Workspace", style="white")
    table.add_column("Message", style="dim")

    for request in requests:
        table.add_row(
            request.id,
            request.enterprise_id,
            request.workspace_id,
            request.message or "",
        )

    console.print(table)


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, help="Path to orglink.yaml"),
    seed: Optional[str] = typer.Option(None, help="Seed YAML (overrides settings)"),
    host: Optional[str] = typer.Option(None, help="Bind host (overrides settings)"),
    port: Optional[int] = typer.Option(None, help="Bind port (overrides settings)"),
):
    """Run the REST API against the seed store."""
    import uvicorn

    from orglink.enterprise.api_server import create_api_app
    from orglink.enterprise.provisioning import StoreBackedProvisioner

    settings = _get_settings(config)
    store = _get_store(settings, seed)
    api = create_api_app(
        store=store,
        provisioner=StoreBackedProvisioner(store),
        settings=settings,
    )

    bind_host = host or settings.server.host
    bind_port = port or settings.server.port
    console.print(Panel(
        f"[green]orglink API[/] on http://{bind_host}:{bind_port}\n"
        f"Docs: http://{bind_host}:{bind_port}/api/docs",
        title=f"orglink {__version__}",
    ))
    uvicorn.run(api, host=bind_host, port=bind_port, log_config=None)


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)
