"""Command-line interface for the RFQ reply tracker.

Provides commands for configuration validation, sending a batch, monitoring
replies, inspecting progress, recovery and the web server.

Usage:
    python -m rfq_tracker validate-config
    python -m rfq_tracker send --monitor
    python -m rfq_tracker monitor
    python -m rfq_tracker status
    python -m rfq_tracker serve
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rfq_tracker.config import validate_config_file
from rfq_tracker.core.logging import configure_logging

if TYPE_CHECKING:
    from rfq_tracker.auth.msal_auth import GraphAuth
    from rfq_tracker.config_schema import AppConfig
    from rfq_tracker.db.store import SqliteKeyValueStore
    from rfq_tracker.engine.controller import BatchController, BatchHandle
    from rfq_tracker.engine.records import ProgressSnapshot
    from rfq_tracker.engine.recovery import RecoveryOutcome
    from rfq_tracker.graph.client import GraphClient
    from rfq_tracker.graph.gateway import GraphMailGateway

console = Console()

STATUS_STYLES = {
    "completed": "[green]✓ completed[/green]",
    "active": "[cyan]● active[/cyan]",
    "not-started": "[dim]○ not started[/dim]",
}


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    auth: GraphAuth
    graph_client: GraphClient
    gateway: GraphMailGateway
    store: SqliteKeyValueStore
    controller: BatchController


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, initializes auth/Graph/store/controller, and returns them
    in a frozen dataclass. Prints actionable error messages and calls
    sys.exit(1) on failure.
    """
    from rfq_tracker.auth.msal_auth import GraphAuth
    from rfq_tracker.config import get_config
    from rfq_tracker.core.errors import AuthenticationError, ConfigLoadError, PersistenceError
    from rfq_tracker.db.store import SqliteKeyValueStore
    from rfq_tracker.engine.controller import BatchController
    from rfq_tracker.engine.repository import BatchRepository
    from rfq_tracker.graph.client import GraphClient
    from rfq_tracker.graph.folders import FolderManager
    from rfq_tracker.graph.gateway import GraphMailGateway
    from rfq_tracker.graph.messages import MessageManager

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, Exception) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least an [cyan]auth[/cyan] section.\n"
            "See config/config.yaml.example for a starting point."
        )
        sys.exit(1)

    # 2. Initialize auth
    try:
        auth = GraphAuth(
            client_id=config.auth.client_id,
            tenant_id=config.auth.tenant_id,
            scopes=config.auth.scopes,
            token_cache_path=config.auth.token_cache_path,
        )
    except AuthenticationError as e:
        console.print(
            f"[red]Authentication error:[/red] {e}\n\n"
            "Check your Azure AD app registration and try again."
        )
        sys.exit(1)

    # 3. Initialize Graph client and gateway
    graph_client = GraphClient(auth)
    gateway = GraphMailGateway(
        messages=MessageManager(graph_client),
        folders=FolderManager(graph_client),
        conversation_limit=config.monitor.conversation_scan_limit,
        folder_limit=config.monitor.folder_scan_limit,
        sent_lookup_attempts=config.dispatch.sent_lookup_attempts,
        sent_lookup_delay=config.dispatch.sent_lookup_delay_seconds,
    )

    # 4. Initialize store
    db_path = Path(config.storage.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = SqliteKeyValueStore(db_path)
    try:
        await store.initialize()
    except PersistenceError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)

    # 5. Batch controller
    controller = BatchController(gateway, BatchRepository(store), config)

    return CLIDeps(
        config=config,
        auth=auth,
        graph_client=graph_client,
        gateway=gateway,
        store=store,
        controller=controller,
    )


def _run(coro_fn, *args) -> None:
    """Run an async command body with the CLI's standard error handling."""
    try:
        asyncio.run(coro_fn(*args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _progress_table(snapshot: ProgressSnapshot) -> Table:
    from rfq_tracker.engine.progress import derive_stages

    table = Table(title=f"Batch {(snapshot.batch_id or '-')[:8]}", show_lines=False)
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    table.add_column("%", justify="right")
    for view in derive_stages(snapshot):
        table.add_row(
            view.stage.value.capitalize(),
            STATUS_STYLES[view.status.value],
            f"{view.count}/{view.total}",
            f"{view.percent}%",
        )
    return table


def _print_snapshot(snapshot: ProgressSnapshot) -> None:
    from rfq_tracker.engine.progress import status_message

    console.print(_progress_table(snapshot))
    console.print(f"  {status_message(snapshot)}")
    console.print(
        f"  [dim]quotes={snapshot.quote_count} clarifications={snapshot.clarification_count} "
        f"bounces={snapshot.bounce_count} failed sends={snapshot.failed_count}[/dim]"
    )
    if snapshot.material_codes:
        console.print(f"  [dim]materials: {', '.join(snapshot.material_codes)}[/dim]")


def _print_recovery(outcome: RecoveryOutcome) -> None:
    if outcome.message:
        console.print(Panel(outcome.message, title="Recovery", border_style="yellow"))


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines instead of console output")
def cli(debug: bool, json_logs: bool) -> None:
    """RFQ reply tracker - send RFQ batches and track supplier replies."""
    log_level = "DEBUG" if debug else "INFO"
    configure_logging(log_level=log_level, json_output=json_logs)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("send")
@click.option("--current-draft", "current_draft_id", default=None, help="Draft id to send last")
@click.option("--monitor", "monitor_after", is_flag=True, help="Monitor replies after sending")
def send(current_draft_id: str | None, monitor_after: bool) -> None:
    """Send every RFQ draft as one batch.

    Drafts whose subject starts with the configured prefix ("RFQ for") are
    sent, filed into their material's Sent RFQs folder and recorded.
    """
    _run(_run_send, current_draft_id, monitor_after)


async def _run_send(current_draft_id: str | None, monitor_after: bool) -> None:
    from rfq_tracker.core.errors import BatchSendError
    from rfq_tracker.engine.dispatch import AutoReplyClient, BatchSender

    deps = await _init_cli_deps()
    _print_recovery(await deps.controller.recover())

    auto_reply = AutoReplyClient(deps.config.auto_reply) if deps.config.auto_reply.enabled else None
    user_email = deps.config.user_email
    if auto_reply is not None and not user_email:
        user_email = await asyncio.to_thread(deps.graph_client.get_user_email)

    sender = BatchSender(deps.gateway, deps.controller, deps.config, auto_reply, user_email)
    try:
        result = await sender.send_batch(current_draft_id)
    except BatchSendError as e:
        console.print(f"\n[red]Send failed:[/red] {e}")
        sys.exit(1)

    console.print(f"\n[bold]Batch Send Summary[/bold] (batch {result.batch_id[:8]}...)")
    console.print(f"  Attempted:   {result.attempted}")
    console.print(f"  Sent:        {result.sent}")
    console.print(f"  Failed:      {result.failed}")
    console.print(f"  Filed:       {result.filed}")
    console.print(f"  Scheduled:   {result.scheduled}")
    for error in result.errors:
        console.print(f"  [yellow]![/yellow] {error}")

    if monitor_after:
        handle = deps.controller.current_handle()
        if handle is not None:
            await _monitor(deps.controller, handle, deps.config)


@cli.command("monitor")
def monitor() -> None:
    """Monitor supplier replies for the active batch until done or timed out."""
    try:
        asyncio.run(_run_monitor())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_monitor() -> None:
    deps = await _init_cli_deps()
    _print_recovery(await deps.controller.recover())

    handle = deps.controller.current_handle()
    if handle is None:
        console.print("[yellow]No active batch to monitor.[/yellow] Send a batch first.")
        sys.exit(1)
    await _monitor(deps.controller, handle, deps.config)


async def _monitor(controller: BatchController, handle: BatchHandle, config: AppConfig) -> None:
    """Run the poller until it stops or the user interrupts."""
    import signal

    def on_progress(snapshot: ProgressSnapshot) -> None:
        console.print(
            f"[dim]{snapshot.timestamp:%H:%M:%S}[/dim] "
            f"sent={snapshot.sent_count} received={snapshot.received_count} "
            f"filed={snapshot.filed_count} bounces={snapshot.bounce_count}"
        )

    unsubscribe = controller.subscribe(on_progress)
    await controller.start_monitoring(handle)

    console.print(
        f"Monitoring replies every {config.monitor.poll_interval_seconds:g}s "
        "for up to "
        f"{config.monitor.timeout_minutes:g} minutes. Press Ctrl+C to stop."
    )

    # Wait until the poller stops or we are interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)

    waiter = asyncio.create_task(controller.wait_monitoring())
    stopper = asyncio.create_task(stop_event.wait())
    await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()

    if stop_event.is_set() and controller.current_handle() is not None:
        await controller.cancel_monitoring(handle)
    state = await controller.wait_monitoring()
    unsubscribe()
    controller.shutdown()

    console.print(f"\nMonitoring ended: [bold]{state.value}[/bold]")
    _print_snapshot(controller.get_snapshot())


@cli.command("status")
def status() -> None:
    """Show progress of the current (or last) batch."""
    _run(_run_status)


async def _run_status() -> None:
    deps = await _init_cli_deps()
    outcome = await deps.controller.recover()
    _print_recovery(outcome)

    snapshot = deps.controller.get_snapshot()
    if snapshot.batch_id is None:
        console.print("No batch recorded yet.")
        return
    _print_snapshot(snapshot)


@cli.command("recover")
def recover() -> None:
    """Run startup recovery and report what was found."""
    _run(_run_recover)


async def _run_recover() -> None:
    deps = await _init_cli_deps()
    outcome = await deps.controller.recover()

    console.print(f"Recovery: [bold]{outcome.kind.value}[/bold]")
    _print_recovery(outcome)
    if outcome.batch is not None:
        console.print(
            f"Batch {outcome.batch.batch_id[:8]}... restored with {outcome.batch.sent_count} sent RFQ(s). "
            "Run [cyan]monitor[/cyan] to resume watching for replies."
        )


@cli.command("abandon")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def abandon(yes: bool) -> None:
    """Stop tracking the current batch and delete its stored state."""
    if not yes and not click.confirm("Abandon the current batch and discard its progress?"):
        console.print("[yellow]Cancelled.[/yellow]")
        return
    _run(_run_abandon)


async def _run_abandon() -> None:
    deps = await _init_cli_deps()
    await deps.controller.recover()
    await deps.controller.abandon()
    console.print("[green]✓[/green] Batch abandoned.")


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the progress API server."""
    import uvicorn

    from rfq_tracker.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
