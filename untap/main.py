"""Entry point for the untap monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from untap.config import settings
from untap.health.engine import CheckResult
from untap.health.incidents import IncidentEvaluator
from untap.health.scheduler import HealthScheduler
from untap.health.status import ServiceStatus, service_status
from untap.health.store import HealthStore, StoreUnavailableError
from untap.notifications import NotificationManager
from untap.services.registry import Service, ServiceRegistry

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_STATUS_STYLE = {
    ServiceStatus.OK: "green",
    ServiceStatus.DEGRADED: "yellow",
    ServiceStatus.DOWN: "bold red",
}


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting untap API Server", style="bold green"))
    uvicorn.run(
        "untap.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def run_seed(store: HealthStore) -> None:
    count = ServiceRegistry().seed(store)
    console.print(f"[green]Seeded {count} services[/green] into {settings.db_path}")


def run_check(store: HealthStore) -> None:
    """Run one check cycle and print each result."""
    table = Table(title="Check results")
    for col in ("Service", "Type", "Result", "Latency", "HTTP", "Error"):
        table.add_column(col)

    def add_row(service: Service, result: CheckResult) -> None:
        table.add_row(
            service.slug,
            result.check_type,
            "[green]ok[/green]" if result.success else "[red]fail[/red]",
            f"{result.latency_ms}ms" if result.latency_ms is not None else "-",
            str(result.http_status or "-"),
            result.error_code or "",
        )

    async def _run():
        scheduler = HealthScheduler(
            store, IncidentEvaluator(store, NotificationManager()), on_result=add_row,
        )
        try:
            return await scheduler.run_once()
        finally:
            scheduler.close()

    with console.status("[bold green]Probing services..."):
        summary = asyncio.run(_run())

    console.print(table)
    console.print(f"\n[dim]checked={summary.checked} failed={summary.failed}[/dim]")


def run_status(store: HealthStore) -> None:
    """Print the live status of every active service."""
    table = Table(title="Service status")
    for col in ("Service", "Category", "Status", "Failure rate", "Samples", "Open incident"):
        table.add_column(col)

    for service in store.list_active_services():
        live = service_status(store, service.id)
        incident = store.get_open_incident(service.id)
        style = _STATUS_STYLE[live.status]
        table.add_row(
            service.slug,
            service.category or "",
            f"[{style}]{live.status.value}[/{style}]",
            f"{live.failure_percent}%",
            str(live.sample_count),
            f"#{incident.id} since {incident.started_at:%Y-%m-%d %H:%M}" if incident else "",
        )
    console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(description="untap: synthetic service monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")
    sub.add_parser("seed", help="Load services.yaml into the store")
    sub.add_parser("check", help="Run one check cycle now")
    sub.add_parser("status", help="Show live status per service")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
        return
    if args.command not in ("seed", "check", "status"):
        parser.print_help()
        sys.exit(1)

    try:
        store = HealthStore()
    except StoreUnavailableError as e:
        console.print(f"[red]Store unavailable:[/red] {e}")
        sys.exit(2)

    try:
        if args.command == "seed":
            run_seed(store)
        elif args.command == "check":
            run_check(store)
        else:
            run_status(store)
    except StoreUnavailableError as e:
        console.print(f"[red]Store unavailable:[/red] {e}")
        sys.exit(2)
    finally:
        store.close()


if __name__ == "__main__":
    main()
