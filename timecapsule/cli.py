"""Command-line interface for TimeCapsule.

Every command builds the service from the same settings the HTTP server uses,
so it can manage deliveries directly against the schedule store.

Usage:
    timecapsule serve --port 8000
    timecapsule schedule report.pdf --to friend@example.com --at 2030-01-01T09:00:00Z --owner alice
    timecapsule list --owner alice --tab pending
    timecapsule reschedule <id> --owner alice --at 2030-02-01T09:00:00Z
    timecapsule retry <id> --owner alice
    timecapsule cancel <id> --owner alice
    timecapsule dispatch
    timecapsule resolve <token>
"""

from __future__ import annotations

import asyncio
import json
import mimetypes
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from .config import configure_logging, load_settings
from .core import TimeCapsuleService
from .errors import TimeCapsuleError
from .models import DeliveryStatus, FileMeta
from .sync import STATUS_TABS, filter_deliveries

console = Console()
err_console = Console(stderr=True)

STATUS_STYLE = {
    DeliveryStatus.PENDING: "yellow",
    DeliveryStatus.SENT: "green",
    DeliveryStatus.FAILED: "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def parse_when(value: str) -> datetime:
    """Parse an ISO-8601 instant; a trailing ``Z`` means UTC."""
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"not an ISO-8601 date/time: {value}") from None


def with_service(ctx: click.Context, operation: Callable[[TimeCapsuleService], Awaitable[Any]]) -> Any:
    """Run ``operation`` against a freshly initialised service, exiting 1 on failure."""
    settings = ctx.obj["settings"]

    async def _run():
        service = TimeCapsuleService.from_settings(settings)
        await service.init()
        try:
            return await operation(service)
        finally:
            await service.stop()

    try:
        return run_async(_run())
    except TimeCapsuleError as exc:
        print_error(f"{exc} ({exc.code})")
        sys.exit(1)


owner_option = click.option(
    "--owner", "-o", envvar="TC_OWNER_ID", required=True, help="Owner id (or TC_OWNER_ID)."
)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: TC_CONFIG or ./config.ini).")
@click.version_option(package_name="timecapsule")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """TimeCapsule: schedule files for delayed delivery by email."""
    settings = load_settings(config_path)
    configure_logging(settings.get("log_level"))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from settings).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API together with the dispatch loop."""
    import uvicorn

    from .api import create_app, service_lifespan

    settings = ctx.obj["settings"]
    service = TimeCapsuleService.from_settings(settings)
    app = create_app(service, api_token=settings.get("api_token"), lifespan=service_lifespan(service))
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("schedule")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--to", "recipient", required=True, help="Recipient email address.")
@click.option("--at", "when", required=True, help="Delivery instant, ISO-8601 (e.g. 2030-01-01T09:00:00Z).")
@click.option("--content-type", default=None, help="MIME type (guessed from the name by default).")
@owner_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def schedule(ctx, file: Path, recipient: str, when: str, content_type: Optional[str], owner: str, as_json: bool) -> None:
    """Upload FILE and schedule its delivery."""
    scheduled_at = parse_when(when)
    data = file.read_bytes()
    meta = FileMeta(
        name=file.name,
        content_type=content_type or mimetypes.guess_type(file.name)[0] or "application/octet-stream",
        size=len(data),
    )
    delivery = with_service(ctx, lambda svc: svc.schedule(data, meta, recipient, scheduled_at, owner))
    if as_json:
        print_json(delivery.model_dump(mode="json"))
        return
    print_success(f"Scheduled '{delivery.file_name}' for {delivery.recipient_address} ({delivery.status.value})")
    console.print(f"  ID:    {delivery.id}")
    console.print(f"  Token: {delivery.access_token}")


@main.command("list")
@owner_option
@click.option("--status", "statuses", multiple=True, type=click.Choice([s.value for s in DeliveryStatus]),
              help="Only show these statuses (repeatable).")
@click.option("--tab", type=click.Choice(STATUS_TABS), default="all", show_default=True)
@click.option("--search", "-s", default="", help="Match file name or recipient.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_deliveries(ctx, owner: str, statuses: Tuple[str, ...], tab: str, search: str, as_json: bool) -> None:
    """List the owner's scheduled deliveries."""
    deliveries = with_service(ctx, lambda svc: svc.list(owner))
    deliveries = filter_deliveries(deliveries, search, statuses, tab)

    if as_json:
        print_json([d.model_dump(mode="json") for d in deliveries])
        return
    if not deliveries:
        console.print("[dim]No deliveries found.[/dim]")
        return

    table = Table(title="Scheduled deliveries")
    table.add_column("ID", style="cyan")
    table.add_column("File")
    table.add_column("Recipient")
    table.add_column("Scheduled (UTC)")
    table.add_column("Status", justify="center")
    for d in deliveries:
        style = STATUS_STYLE[d.status]
        table.add_row(
            d.id,
            d.file_name,
            d.recipient_address or "-",
            d.scheduled_at.strftime("%Y-%m-%d %H:%M"),
            f"[{style}]{d.status.value}[/{style}]",
        )
    console.print(table)


@main.command("reschedule")
@click.argument("delivery_id")
@owner_option
@click.option("--to", "recipient", default=None, help="New recipient email address.")
@click.option("--at", "when", default=None, help="New delivery instant, ISO-8601.")
@click.pass_context
def reschedule(ctx, delivery_id: str, owner: str, recipient: Optional[str], when: Optional[str]) -> None:
    """Change recipient or instant of a pending delivery."""
    scheduled_at = parse_when(when) if when else None
    delivery = with_service(
        ctx, lambda svc: svc.reschedule(delivery_id, owner, recipient=recipient, scheduled_at=scheduled_at)
    )
    print_success(f"Delivery '{delivery.id}' is {delivery.status.value}, due {delivery.scheduled_at.isoformat()}")


@main.command("retry")
@click.argument("delivery_id")
@owner_option
@click.pass_context
def retry(ctx, delivery_id: str, owner: str) -> None:
    """Reset a failed delivery to pending."""
    delivery = with_service(ctx, lambda svc: svc.retry(delivery_id, owner))
    print_success(f"Delivery '{delivery.id}' is {delivery.status.value}")


@main.command("cancel")
@click.argument("delivery_id")
@owner_option
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def cancel(ctx, delivery_id: str, owner: str, force: bool) -> None:
    """Delete a delivery and its stored file."""
    if not force and not click.confirm(f"Delete delivery '{delivery_id}'?"):
        console.print("[dim]Aborted.[/dim]")
        return
    with_service(ctx, lambda svc: svc.cancel(delivery_id, owner))
    print_success(f"Delivery '{delivery_id}' deleted.")


@main.command("dispatch")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def dispatch(ctx, as_json: bool) -> None:
    """Send every due delivery now."""
    result = with_service(ctx, lambda svc: svc.run_dispatch("manual"))
    if as_json:
        print_json(result.model_dump(mode="json"))
        return
    if not result.processed:
        console.print("[dim]Nothing due.[/dim]")
        return
    console.print(
        f"Processed {result.processed}: [green]{result.success} sent[/green], "
        f"[red]{result.failed} failed[/red], {result.skipped} skipped"
    )
    for detail in result.details:
        if detail.error:
            marker = "[yellow]![/yellow]" if detail.anomaly else "[red]✗[/red]"
            console.print(f"  {marker} {detail.id}: {detail.error}")


@main.command("resolve")
@click.argument("token")
@click.pass_context
def resolve(ctx, token: str) -> None:
    """Print the download link behind an access token."""
    resolved = with_service(ctx, lambda svc: svc.resolve(token))
    console.print(f"[bold]{resolved.file_name}[/bold] ({resolved.file_type})")
    console.print(resolved.download_url, soft_wrap=True)


if __name__ == "__main__":
    main()
