#!/usr/bin/env python3
"""
Mediator Simulation CLI - load-test a DIDComm mediator with simulated agents.

Usage:
    mediator-sim run --name "Load Test" --agents 3 --messages 5 --duration 60000
    mediator-sim tests
    mediator-sim status <test-id>
    mediator-sim totals <test-id>
    mediator-sim report <test-id> --consolidated

Examples:
    # Quick dry run against the simulated provider
    mediator-sim run -n "Smoke" -a 3 -m 2 -d 5000

    # Keep a finished test's agents alive for 10s of manual traffic
    mediator-sim activate <test-id> --cleanup-delay-ms 10000

    # Mark runs left behind by a crashed process as failed
    mediator-sim recover --grace-ms 0
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import typer
from pydantic import ValidationError
from redis.exceptions import RedisError
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..config import Settings, get_settings
from ..errors import SimulationError
from ..infrastructure.records import RunRecord, RunStatus, SimulationConfig
from ..service import SimulationTestService
from ..sim_logging import configure_logging

app = typer.Typer(
    name="mediator-sim",
    help="DIDComm mediator load simulation - create agents, drive traffic, report timings",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    RunStatus.RUNNING: "cyan",
    RunStatus.STOPPING: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.STOPPED: "yellow",
    RunStatus.FAILED: "red",
}


def build_service(settings: Settings) -> SimulationTestService:
    """Service factory; replaced in tests."""
    return SimulationTestService.from_settings(settings)


def _execute(action: Callable[[SimulationTestService], Awaitable[Any]]) -> Any:
    """Run one async action against a connected service, mapping errors to exit codes."""

    async def runner() -> Any:
        async with build_service(get_settings()) as service:
            return await action(service)

    try:
        return asyncio.run(runner())
    except SimulationError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    except RedisError as e:
        console.print(f"[red]Ledger store error:[/] {e}")
        raise typer.Exit(1)


def _status_text(status: RunStatus) -> str:
    return f"[{STATUS_STYLES[status]}]{status.value}[/]"


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Log level (default: MEDIATOR_SIM_LOG_LEVEL or INFO)",
    ),
    json_logs: Optional[bool] = typer.Option(
        None,
        "--json-logs/--console-logs",
        help="Emit JSON log lines",
    ),
):
    """Configure logging for every command."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_output=settings.log_json if json_logs is None else json_logs,
    )


@app.command()
def run(
    name: str = typer.Option(..., "--name", "-n", help="Test name"),
    description: Optional[str] = typer.Option(None, "--description", help="Optional test description"),
    agents: int = typer.Option(3, "--agents", "-a", help="Number of agents to create", min=1),
    messages: int = typer.Option(5, "--messages", "-m", help="Messages per batch for each agent", min=1),
    duration: int = typer.Option(60_000, "--duration", "-d", help="Test duration in milliseconds", min=1000),
    rate: int = typer.Option(100, "--rate", "-r", help="Milliseconds between batches", min=10),
    prefix: str = typer.Option("Agent", "--prefix", "-p", help="Agent name prefix"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up waiting after N seconds"),
):
    """
    Run a simulation and wait for it to settle.

    Ctrl+C requests a cooperative stop; the command then waits for the
    run to drain and clean up.
    """
    try:
        config = SimulationConfig(
            test_name=name,
            test_description=description,
            agent_count=agents,
            messages_per_batch=messages,
            duration_ms=duration,
            message_rate_ms=rate,
            agent_prefix=prefix,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        raise typer.Exit(1)

    async def action(service: SimulationTestService) -> tuple[RunRecord, dict]:
        result = await service.simulate_test(config)
        test_id = result["testId"]
        console.print(f"[cyan]Started test[/] {test_id}")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task(f"Running '{name}' with {agents} agents...", total=None)
            try:
                record = await service.wait_for_run(test_id, timeout=timeout)
            except asyncio.CancelledError:
                console.print("[yellow]Interrupted, stopping test...[/]")
                await service.stop_simulation(test_id)
                record = await service.wait_for_run(test_id)
            except asyncio.TimeoutError:
                console.print(f"[yellow]Still running after {timeout}s, stopping test...[/]")
                await service.stop_simulation(test_id)
                record = await service.wait_for_run(test_id)

        return record, await service.calculate_totals(test_id)

    record, totals = _execute(action)
    _display_run(record, totals)
    if record.status == RunStatus.FAILED:
        raise typer.Exit(1)


def _display_run(record: RunRecord, totals: dict) -> None:
    table = Table(title=f"Test {record.test_name}", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Test ID", record.test_id)
    table.add_row("Status", _status_text(record.status))
    table.add_row("Agents", str(record.config.agent_count))
    if record.summary:
        table.add_row("Messages sent", str(record.summary.messages_sent))
        table.add_row("Send failures", str(record.summary.send_failures))
        table.add_row("No peer available", str(record.summary.peer_unavailable))
        table.add_row("Expected messages", str(record.summary.expected_messages))
    table.add_row("Delivered", str(totals.get("totalMessages", 0)))
    avg = totals.get("averageProcessingTimeMs")
    table.add_row("Avg processing (ms)", "N/A" if avg is None else str(avg))
    console.print(table)

    if record.error:
        console.print(Panel(record.error, title="Failure", style="red"))


@app.command()
def tests():
    """List all recorded tests, newest first."""
    records = _execute(lambda service: service.get_tests())
    if not records:
        console.print("[dim]No tests recorded.[/]")
        return

    table = Table(title="Tests", show_header=True, header_style="bold magenta")
    table.add_column("Test ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Agents", justify="right")
    table.add_column("Started")
    for record in records:
        table.add_row(
            record.test_id,
            record.test_name,
            _status_text(record.status),
            str(record.config.agent_count),
            record.start_time.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def status(test_id: str = typer.Argument(..., help="Test ID")):
    """Show one test record."""
    record = _execute(lambda service: service.get_test(test_id))
    console.print_json(record.model_dump_json(by_alias=True))


@app.command()
def messages(
    test_id: str = typer.Argument(..., help="Test ID"),
    limit: int = typer.Option(20, "--limit", "-l", help="Rows to display", min=1),
):
    """Show message records of a test."""
    records = _execute(lambda service: service.get_messages_by_test_id(test_id))
    console.print(f"{len(records)} messages recorded for {test_id}")
    if not records:
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("From", style="cyan")
    table.add_column("To")
    table.add_column("Sent")
    table.add_column("Processing (ms)", justify="right")
    for record in sorted(records, key=lambda r: r.timestamp)[:limit]:
        table.add_row(
            record.from_tenant_id,
            record.to_tenant_id,
            record.timestamp.strftime("%H:%M:%S.%f")[:-3],
            "-" if record.processing_time_ms is None else str(record.processing_time_ms),
        )
    console.print(table)


@app.command()
def metrics(test_id: str = typer.Argument(..., help="Test ID")):
    """Show messages grouped by sending agent."""
    grouped = _execute(lambda service: service.calculate_metrics_by_agent(test_id))
    console.print_json(json.dumps(grouped, default=str))


@app.command()
def totals(test_id: str = typer.Argument(..., help="Test ID")):
    """Show delivered-message totals of a test."""
    result = _execute(lambda service: service.calculate_totals(test_id))
    if not result:
        console.print(f"[dim]No deliveries recorded for {test_id}.[/]")
        return
    console.print_json(json.dumps(result))


@app.command()
def report(
    test_id: str = typer.Argument(..., help="Test ID"),
    consolidated: bool = typer.Option(
        False,
        "--consolidated",
        help="Include every message record instead of per-agent metrics",
    ),
):
    """Write a JSON report for a test."""
    if consolidated:
        result = _execute(lambda service: service.generate_consolidated_report(test_id))
    else:
        result = _execute(lambda service: service.generate_report(test_id))
    console.print(f"[green]Report saved to:[/] {result['reportPath']}")


@app.command()
def activate(
    test_id: str = typer.Argument(..., help="Test ID"),
    cleanup_delay_ms: Optional[int] = typer.Option(
        None,
        "--cleanup-delay-ms",
        help="Keep the tenants alive this long (default: MEDIATOR_SIM_CLEANUP_DELAY_MS)",
        min=0,
    ),
):
    """Recreate a test's agents so delayed messages can still reach them."""

    async def action(service: SimulationTestService) -> dict:
        result = await service.activate_tenants_for_test(test_id, cleanup_delay_ms)
        console.print(
            f"[cyan]Activated {len(result['tenantIds'])} tenants[/] for {result['cleanupDelayMs']} ms"
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Waiting for delayed messages...", total=None)
            await asyncio.sleep(result["cleanupDelayMs"] / 1000)
        return result

    result = _execute(action)
    console.print(f"Tenants released: {', '.join(result['tenantIds']) or '-'}")


@app.command()
def recover(
    grace_ms: Optional[int] = typer.Option(
        None,
        "--grace-ms",
        help="Only fail runs whose estimated end passed this long ago",
        min=0,
    ),
):
    """Mark runs left running by a dead process as failed."""
    recovered = _execute(lambda service: service.recover_interrupted_runs(grace_ms))
    if not recovered:
        console.print("[green]No interrupted runs found.[/]")
        return
    for test_id in recovered:
        console.print(f"[yellow]Marked failed:[/] {test_id}")


@app.command("clear-db")
def clear_db(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Wipe the whole ledger database."""
    if not yes:
        typer.confirm("This deletes every key in the Redis database. Continue?", abort=True)
    _execute(lambda service: service.clear_database())
    console.print("[green]Database cleared.[/]")


if __name__ == "__main__":
    app()
