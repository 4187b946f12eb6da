"""Main CLI entry point for agentloop."""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .backlog import load_backlog, save_backlog
from .bridge import AgentBridge
from .config import Settings, load_settings
from .ledger import IterationLedger
from .loop import AgentLoop
from .models import IterationStatus, StreamEvent, StreamEventType, ToolKind

console = Console()

TOOL_CHOICE = click.Choice([tool.value for tool in ToolKind])


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _ledger(settings: Settings) -> IterationLedger:
    return IterationLedger(
        settings.history_dir,
        progress_file=settings.progress_file,
        memory_snippets=settings.memory_snippets,
    )


def _status_style(status: IterationStatus) -> str:
    return "green" if status is IterationStatus.SUCCESS else "red"


def _mark(passed: bool) -> str:
    return "[green]✓[/green]" if passed else "[red]✗[/red]"


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding iteration history (default: .agentloop)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, state_dir: Path | None, verbose: bool) -> None:
    """Autonomous agent loop.

    Schedules backlog items into dependency-aware batches, runs them through an
    agent CLI (cursor-agent, claude, gemini) and records every iteration.
    """
    _configure_logging(verbose)
    overrides = {"state_dir": state_dir} if state_dir is not None else {}
    ctx.obj = load_settings(**overrides)


@main.command()
@click.pass_obj
def tools(settings: Settings) -> None:
    """Show which agent CLIs are installed."""
    infos = asyncio.run(AgentBridge(settings).detect_cli_tools())

    table = Table(title="Agent CLIs")
    table.add_column("Tool", style="cyan")
    table.add_column("Command")
    table.add_column("Available")
    table.add_column("Version")
    for info in infos:
        table.add_row(info.tool.value, info.command, _mark(info.available), info.version or "-")
    console.print(table)


@main.command()
@click.argument("backlog", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-concurrency", type=int, default=None, help="Items per batch")
@click.pass_obj
def plan(settings: Settings, backlog: Path, max_concurrency: int | None) -> None:
    """Show the batch plan for BACKLOG without running anything."""
    if max_concurrency is not None:
        settings = settings.model_copy(update={"max_concurrency": max_concurrency})
    batch_plan = AgentLoop(settings).plan(load_backlog(backlog))
    if not len(batch_plan):
        console.print("[green]Nothing pending.[/green]")
        return

    table = Table(title=f"Batch Plan ({len(batch_plan)} batches)")
    table.add_column("Batch", style="cyan")
    table.add_column("Item")
    table.add_column("Title")
    table.add_column("Depends On", style="dim")
    for index, batch in enumerate(batch_plan, start=1):
        for item in batch:
            deps = sorted(batch_plan.dependencies.get(item.id, ()))
            flag = " [yellow](flushed)[/yellow]" if item.id in batch_plan.flushed_ids else ""
            table.add_row(str(index), item.id + flag, escape(item.title), ", ".join(deps) or "-")
    console.print(table)

    if batch_plan.deadlocked:
        console.print(
            "[yellow]Circular or unresolvable dependencies; flushed items run "
            "without ordering guarantees.[/yellow]"
        )


@main.command()
@click.argument("backlog", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tool", type=TOOL_CHOICE, default=None, help="Agent CLI (default: first found)")
@click.option("--max-concurrency", type=int, default=None, help="Items per batch")
@click.option("--max-iterations", type=int, default=None, help="Stop after this many items")
@click.option("--timeout-ms", type=int, default=None, help="Per-item timeout override")
@click.option("--dry-run", is_flag=True, help="Plan only, do not start agents")
@click.option("--stream", is_flag=True, help="Print agent events as they arrive")
@click.pass_obj
def run(
    settings: Settings,
    backlog: Path,
    tool: str | None,
    max_concurrency: int | None,
    max_iterations: int | None,
    timeout_ms: int | None,
    dry_run: bool,
    stream: bool,
) -> None:
    """Run pending items of BACKLOG through an agent CLI."""
    if max_concurrency is not None:
        settings = settings.model_copy(update={"max_concurrency": max_concurrency})
    items = load_backlog(backlog)
    agent_loop = AgentLoop(settings)

    def print_event(event: StreamEvent) -> None:
        if event.type is StreamEventType.TOOL:
            console.print(f"[dim]  {event.message}[/dim]")
        elif event.type is StreamEventType.COMPLETION:
            console.print(f"[bold]  {event.message}[/bold]")

    report = asyncio.run(
        agent_loop.run(
            items,
            tool=ToolKind(tool) if tool else None,
            dry_run=dry_run,
            max_iterations=max_iterations,
            timeout_ms=timeout_ms,
            on_event=print_event if stream else None,
            handle_signals=True,
        )
    )

    if report.dry_run:
        console.print(
            f"[cyan]Dry run:[/cyan] {sum(len(b) for b in report.plan)} item(s) "
            f"in {len(report.plan)} batch(es)"
        )
        return

    if report.outcomes:
        table = Table(title=f"Iterations ({report.tool.value if report.tool else '-'})")
        table.add_column("#", style="cyan")
        table.add_column("Item")
        table.add_column("Status")
        table.add_column("Duration")
        table.add_column("Error", style="dim")
        for outcome in report.outcomes:
            record = outcome.record
            style = _status_style(record.status)
            table.add_row(
                str(record.iteration),
                record.task_id,
                f"[{style}]{record.status.value}[/{style}]",
                f"{record.duration_ms / 1000:.1f}s",
                escape(outcome.result.error or ""),
            )
        console.print(table)
        # Persist passes=True for completed items
        save_backlog(backlog, items)

    if report.stopped:
        console.print("[yellow]Stopped before the backlog was finished.[/yellow]")
    if not report.succeeded:
        raise SystemExit(1)
    console.print("[green]All scheduled items completed.[/green]")


@main.command()
@click.option("--limit", default=10, help="Number of iterations to show")
@click.option("--task", "task_id", default=None, help="Only this work item")
@click.pass_obj
def history(settings: Settings, limit: int, task_id: str | None) -> None:
    """List recent iterations."""
    records = _ledger(settings).history(limit=limit, task_id=task_id)
    if not records:
        console.print("[dim]No iterations recorded.[/dim]")
        return

    table = Table(title="Iteration History")
    table.add_column("#", style="cyan")
    table.add_column("Item")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Lint")
    table.add_column("Tests")
    table.add_column("Coverage")
    table.add_column("Commit", style="dim")
    for record in records:
        q = record.quality_checks
        style = _status_style(record.status)
        table.add_row(
            str(record.iteration),
            record.task_id,
            escape(record.task_title),
            f"[{style}]{record.status.value}[/{style}]",
            _mark(q.type_check),
            _mark(q.lint),
            _mark(q.tests),
            _mark(q.coverage_met),
            (record.git_commit or "-")[:7],
        )
    console.print(table)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Machine readable output")
@click.pass_obj
def stats(settings: Settings, as_json: bool) -> None:
    """Aggregate statistics over all iterations."""
    statistics = _ledger(settings).statistics()
    if as_json:
        click.echo(json.dumps(statistics.to_dict(), indent=2))
        return

    breakdown = statistics.quality_breakdown
    console.print(
        Panel(
            f"Total: [bold]{statistics.total}[/bold]\n"
            f"Success: [green]{statistics.success_count}[/green]  "
            f"Failed: [red]{statistics.failed_count}[/red]\n"
            f"Success rate: {statistics.success_rate * 100:.1f}%\n"
            f"Average duration: {statistics.avg_duration_ms}ms\n\n"
            f"Type check: {breakdown['type_check']}  Lint: {breakdown['lint']}  "
            f"Tests: {breakdown['tests']}  Coverage: {breakdown['coverage']}",
            title="Iteration Statistics",
        )
    )


@main.command()
@click.option("--recent", "recent_count", type=int, default=None, help="Full-detail iterations")
@click.option("--threshold", type=int, default=None, help="Compress from this many iterations")
@click.pass_obj
def context(settings: Settings, recent_count: int | None, threshold: int | None) -> None:
    """Print the compressed context the next prompt would receive."""
    text = asyncio.run(
        _ledger(settings).build_compressed_context(
            recent_count=recent_count if recent_count is not None else settings.recent_count,
            threshold=threshold if threshold is not None else settings.compression_threshold,
        )
    )
    if not text:
        console.print("[dim]No iterations recorded.[/dim]")
        return
    click.echo(text)


@main.command()
@click.option("--task", "task_id", default=None, help="Insights for one work item")
@click.pass_obj
def learnings(settings: Settings, task_id: str | None) -> None:
    """Show what past iterations tell us."""
    ledger = _ledger(settings)
    if task_id:
        insights = ledger.task_insights(task_id)
        if not insights.total:
            console.print(f"[dim]No iterations for {task_id}.[/dim]")
            return
        distribution = ", ".join(f"{k}: {v}" for k, v in insights.status_distribution.items())
        trend = " -> ".join(f"{value:.0f}%" for value in insights.quality_trend)
        console.print(
            Panel(
                f"Iterations: {insights.total}\n"
                f"Status: {distribution}\n"
                f"Average duration: {insights.avg_duration_ms}ms\n"
                f"Quality trend: {trend}",
                title=f"Insights: {task_id}",
            )
        )
        return

    lines = ledger.learnings()
    if not lines:
        console.print("[dim]No iterations recorded.[/dim]")
        return
    for line in lines:
        console.print(f"• {escape(line)}")


if __name__ == "__main__":
    main()
