"""Command line interface for the NexusMSP back office."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from .config import AppConfig, ConfigurationError, load_config, save_config
from .integration_state import M365_INTEGRATION_ID, IntegrationStateTracker
from .m365_client import GraphClient, M365ClientError, M365Credentials, TokenProvider
from .m365_sync import M365SyncService
from .storage import EntityStore, Repositories

app = typer.Typer(help="Manage the NexusMSP back office and its Microsoft 365 connector.")
m365_app = typer.Typer(help="Microsoft 365 synchronization.")
app.add_typer(m365_app, name="m365")

_CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _build_service(config: AppConfig) -> M365SyncService:
    repos = Repositories(EntityStore(config.storage.data_file))
    tracker = IntegrationStateTracker(repos)
    credentials = tracker.credentials_for(
        M365_INTEGRATION_ID,
        M365Credentials(
            tenant_id=config.m365.tenant_id,
            client_id=config.m365.client_id,
            client_secret=config.m365.client_secret,
        ),
    )
    graph = GraphClient(TokenProvider(credentials), timeout=config.m365.request_timeout)
    return M365SyncService(graph, repos, tracker, currency=config.m365.currency)


@m365_app.command("test")
def test_connection(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Verify Microsoft Graph connectivity."""

    config = _load_configuration(config_path)
    try:
        sku_count = _build_service(config).test_connection()
    except M365ClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    typer.echo(json.dumps({"success": True, "skuCount": sku_count}, indent=2))


@m365_app.command("sync")
def run_sync(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run a full Microsoft 365 reconciliation."""

    config = _load_configuration(config_path)
    try:
        result = _build_service(config).sync()
    except M365ClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    typer.echo(json.dumps(result.to_dict(), indent=2))


@m365_app.command("status")
def show_status(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Display the stored connection state and last summary."""

    config = _load_configuration(config_path)
    tracker = IntegrationStateTracker(Repositories(EntityStore(config.storage.data_file)))
    state = tracker.get(M365_INTEGRATION_ID)
    summary = state.config.summary
    typer.echo(
        json.dumps(
            {
                "status": state.status,
                "lastSyncedAt": state.last_synced_at,
                "summary": summary.to_dict() if summary else None,
            },
            indent=2,
        )
    )


@m365_app.command("configure")
def configure(
    tenant_id: Optional[str] = typer.Option(None, "--tenant-id", help="Microsoft Entra tenant id."),
    client_id: Optional[str] = typer.Option(None, "--client-id", help="App registration client id."),
    client_secret: Optional[str] = typer.Option(
        None, "--client-secret", help="App registration client secret.", hide_input=True
    ),
    currency: Optional[str] = typer.Option(None, "--currency", help="Currency code for summaries."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Store Microsoft 365 credentials in the settings file."""

    config = _load_configuration(config_path)
    if tenant_id:
        config.m365.tenant_id = tenant_id
    if client_id:
        config.m365.client_id = client_id
    if client_secret:
        config.m365.client_secret = client_secret
    if currency:
        config.m365.currency = currency
    target = save_config(config, config_path)
    typer.echo(f"Saved Microsoft 365 settings to '{target}'.")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Interface to bind."),
    port: int = typer.Option(5000, help="Port to listen on."),
    debug: bool = typer.Option(False, help="Enable the Flask debugger."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run the JSON API development server."""

    from .web import create_app

    create_app(config_path).run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
