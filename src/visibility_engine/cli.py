"""Command-line interface using Typer."""

from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from visibility_engine import __version__
from visibility_engine.logging import setup_logging

# Setup logging
setup_logging()

app = typer.Typer(
    name="visibility-engine",
    help="LLM Visibility Engine - batch citation checks across AI assistants",
    add_completion=False,
)

# Subcommand groups
accounts_app = typer.Typer(help="Account and keyword commands")
credits_app = typer.Typer(help="Credit balance commands")
runs_app = typer.Typer(help="Batch run commands")
schedules_app = typer.Typer(help="Recurring schedule commands")
app.add_typer(accounts_app, name="accounts")
app.add_typer(credits_app, name="credits")
app.add_typer(runs_app, name="runs")
app.add_typer(schedules_app, name="schedules")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"LLM Visibility Engine v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """LLM Visibility Engine - track whether AI assistants cite your site."""
    pass


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[bold red]Invalid {label}: {value}[/bold red]")
        raise typer.Exit(code=1)


@app.command()
def initdb() -> None:
    """Create database tables (development only; use migrations in production)."""
    from visibility_engine.db.session import create_all

    create_all()
    console.print("[bold green]Tables created[/bold green]")


# =============================================================================
# ACCOUNTS COMMANDS
# =============================================================================


@accounts_app.command("create")
def accounts_create(
    name: str = typer.Option(..., "--name", "-n", help="Account name"),
    domain: str = typer.Option(..., "--domain", "-d", help="Website domain to look for"),
    business_name: Optional[str] = typer.Option(None, "--brand", "-b", help="Brand name"),
) -> None:
    """Create an account to track."""
    from uuid import uuid4

    from visibility_engine.db.models import AccountModel
    from visibility_engine.db.session import get_session_context

    with get_session_context() as session:
        account = AccountModel(
            id=uuid4(),
            name=name,
            business_name=business_name or name,
            website_domain=domain,
        )
        session.add(account)

    console.print("[bold green]Account created[/bold green]")
    console.print(f"[cyan]ID:[/cyan] {account.id}")


@accounts_app.command("add-keyword")
def accounts_add_keyword(
    account_id: str = typer.Argument(..., help="Account ID"),
    phrase: str = typer.Option(..., "--phrase", "-p", help="Keyword concept"),
    questions: list[str] = typer.Option(
        ..., "--question", "-q", help="Question to ask the assistants (repeatable)"
    ),
) -> None:
    """Add a keyword concept with its questions."""
    from uuid import uuid4

    from visibility_engine.db.models import KeywordModel
    from visibility_engine.db.session import get_session_context

    account_uuid = _parse_uuid(account_id, "account ID")
    with get_session_context() as session:
        keyword = KeywordModel(
            id=uuid4(),
            account_id=account_uuid,
            phrase=phrase,
            related_questions=list(questions),
        )
        session.add(keyword)

    console.print(f"[bold green]Keyword added[/bold green] ({len(questions)} questions)")
    console.print(f"[cyan]ID:[/cyan] {keyword.id}")


# =============================================================================
# CREDITS COMMANDS
# =============================================================================


@credits_app.command("balance")
def credits_balance(account_id: str = typer.Argument(..., help="Account ID")) -> None:
    """Show an account's credit balance."""
    from visibility_engine.db.session import get_session_context
    from visibility_engine.services import credits

    with get_session_context() as session:
        snapshot = credits.balance(session, _parse_uuid(account_id, "account ID"))

    console.print(f"[cyan]Available:[/cyan] {snapshot.available}")
    console.print(f"[cyan]Reserved:[/cyan]  {snapshot.reserved}")


@credits_app.command("grant")
def credits_grant(
    account_id: str = typer.Argument(..., help="Account ID"),
    amount: int = typer.Option(..., "--amount", "-a", min=1, help="Credits to add"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """Add credits to an account."""
    from visibility_engine.db.session import get_session_context
    from visibility_engine.services import credits

    with get_session_context() as session:
        snapshot = credits.grant(
            session, _parse_uuid(account_id, "account ID"), amount, description=description
        )

    console.print(f"[bold green]Granted {amount} credits[/bold green]")
    console.print(f"[cyan]Available:[/cyan] {snapshot.available}")


@credits_app.command("ledger")
def credits_ledger(
    account_id: str = typer.Argument(..., help="Account ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
) -> None:
    """Show recent ledger entries."""
    from visibility_engine.db.session import get_session_context
    from visibility_engine.services import credits

    with get_session_context() as session:
        entries = credits.history(session, _parse_uuid(account_id, "account ID"), limit=limit)

        if not entries:
            console.print("[dim]No ledger entries[/dim]")
            return

        table = Table(title="Credit Ledger")
        table.add_column("When")
        table.add_column("Type", style="cyan")
        table.add_column("Amount", justify="right")
        table.add_column("Available", justify="right")
        table.add_column("Reserved", justify="right")
        table.add_column("Description", style="dim")

        for entry in entries:
            table.add_row(
                entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else "-",
                entry.entry_type,
                str(entry.amount),
                str(entry.available_after),
                str(entry.reserved_after),
                (entry.description or "")[:40],
            )

    console.print(table)


# =============================================================================
# RUNS COMMANDS
# =============================================================================


def _show_run(run_id: UUID) -> None:
    from visibility_engine.services.orchestrator import RunNotFoundError, get_batch_run_orchestrator

    try:
        snapshot = get_batch_run_orchestrator().status(run_id)
    except RunNotFoundError:
        console.print(f"[bold red]Batch run not found: {run_id}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title="Batch Run")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Run ID", str(snapshot.run_id))
    table.add_row("Status", str(snapshot.status))
    table.add_row("Providers", ", ".join(str(p) for p in snapshot.providers))
    table.add_row("Questions", f"{snapshot.processed_questions}/{snapshot.total_questions}")
    table.add_row("Checks", f"{snapshot.processed_checks}/{snapshot.total_checks}")
    table.add_row("Succeeded", str(snapshot.successful_checks))
    table.add_row("Failed", str(snapshot.failed_checks))
    table.add_row("Progress", f"{snapshot.progress}%")
    table.add_row("Credits", str(snapshot.estimated_credits))
    if snapshot.scheduled_for:
        table.add_row("Scheduled For", snapshot.scheduled_for.isoformat())
    if snapshot.error_message:
        table.add_row("Error", f"[red]{snapshot.error_message}[/red]")

    console.print(table)


@runs_app.command("preview")
def runs_preview(
    account_id: str = typer.Argument(..., help="Account ID"),
    providers: Optional[str] = typer.Option(
        None, "--providers", "-p", help="Comma-separated providers (default: all)"
    ),
    runs: int = typer.Option(1, "--runs", "-r", help="Runs per question"),
) -> None:
    """Show what a batch run would cost."""
    from visibility_engine.services.orchestrator import BatchRunError, get_batch_run_orchestrator

    requested = providers.split(",") if providers else None
    try:
        preview = get_batch_run_orchestrator().preview(
            _parse_uuid(account_id, "account ID"), requested, runs_per_question=runs
        )
    except BatchRunError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1)

    lines = [
        f"[cyan]Questions:[/cyan] {preview.total_questions} across {preview.keyword_count} keywords",
        f"[cyan]Providers:[/cyan] {', '.join(str(p) for p in preview.providers)}",
        f"[cyan]Checks:[/cyan] {preview.total_checks}",
        f"[cyan]Credits:[/cyan] {preview.total_credits} "
        f"(available {preview.available_credits}, reserved {preview.reserved_credits})",
    ]
    if preview.active_run:
        lines.append(
            f"[yellow]Active run:[/yellow] {preview.active_run.run_id} ({preview.active_run.status})"
        )
    border = "green" if preview.has_credits and not preview.active_run else "red"
    console.print(Panel.fit("\n".join(lines), title="Batch Run Preview", border_style=border))


@runs_app.command("start")
def runs_start(
    account_id: str = typer.Argument(..., help="Account ID"),
    providers: str = typer.Option(..., "--providers", "-p", help="Comma-separated providers"),
    runs: int = typer.Option(1, "--runs", "-r", help="Runs per question"),
    inline: bool = typer.Option(
        False, "--inline", help="Dispatch in this process instead of queueing to Celery"
    ),
) -> None:
    """Start a batch run now."""
    from visibility_engine.services.credits import InsufficientCreditsError
    from visibility_engine.services.orchestrator import (
        ActiveRunConflictError,
        BatchRunError,
        BatchRunOrchestrator,
    )
    from visibility_engine.utils.async_utils import run_async

    queued: list[UUID] = []
    orchestrator = BatchRunOrchestrator(dispatcher=queued.append) if inline else BatchRunOrchestrator()

    try:
        snapshot = orchestrator.start(
            _parse_uuid(account_id, "account ID"), providers.split(","), runs_per_question=runs
        )
    except ActiveRunConflictError as e:
        console.print(f"[bold red]Run {e.run_id} is already {e.status}[/bold red]")
        raise typer.Exit(code=1)
    except InsufficientCreditsError as e:
        console.print(
            f"[bold red]Insufficient credits: {e.required} required, {e.available} available[/bold red]"
        )
        raise typer.Exit(code=1)
    except BatchRunError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"[bold green]Batch run accepted:[/bold green] {snapshot.run_id}")

    if inline:
        with console.status("Running checks..."):
            for run_id in queued:
                run_async(orchestrator.dispatch(run_id))

    _show_run(snapshot.run_id)


@runs_app.command("status")
def runs_status(run_id: str = typer.Argument(..., help="Batch run ID")) -> None:
    """Show progress of a batch run."""
    _show_run(_parse_uuid(run_id, "run ID"))


@runs_app.command("list")
def runs_list(
    account_id: str = typer.Argument(..., help="Account ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
) -> None:
    """List recent batch runs."""
    from visibility_engine.services.orchestrator import get_batch_run_orchestrator

    snapshots = get_batch_run_orchestrator().list_runs(
        _parse_uuid(account_id, "account ID"), limit=limit
    )
    if not snapshots:
        console.print("[dim]No batch runs found[/dim]")
        return

    table = Table(title="Batch Runs")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Status", style="green")
    table.add_column("Questions", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Created")

    for snapshot in snapshots:
        table.add_row(
            str(snapshot.run_id)[:8] + "...",
            str(snapshot.status),
            f"{snapshot.processed_questions}/{snapshot.total_questions}",
            str(snapshot.successful_checks),
            str(snapshot.failed_checks),
            str(snapshot.estimated_credits),
            snapshot.created_at.strftime("%Y-%m-%d %H:%M") if snapshot.created_at else "-",
        )

    console.print(table)


@runs_app.command("cancel")
def runs_cancel(
    account_id: str = typer.Argument(..., help="Account ID"),
    run_id: str = typer.Argument(..., help="Scheduled batch run ID"),
) -> None:
    """Cancel a scheduled run and refund its credits."""
    from visibility_engine.services.orchestrator import BatchRunError, get_batch_run_orchestrator

    try:
        refunded = get_batch_run_orchestrator().cancel_scheduled(
            _parse_uuid(account_id, "account ID"), _parse_uuid(run_id, "run ID")
        )
    except BatchRunError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"[bold green]Cancelled[/bold green], {refunded} credits refunded")


# =============================================================================
# SCHEDULES COMMANDS
# =============================================================================


@schedules_app.command("tick")
def schedules_tick() -> None:
    """Run one scheduler tick now (activate due runs, fire due schedules)."""
    from visibility_engine.services.orchestrator import get_batch_run_orchestrator
    from visibility_engine.services.scheduler import tick

    result = tick(get_batch_run_orchestrator())

    console.print(f"[cyan]Activated runs:[/cyan] {len(result.activated_run_ids)}")
    console.print(f"[cyan]Started runs:[/cyan] {len(result.started_run_ids)}")
    for schedule_id, reason in result.skipped.items():
        console.print(f"[yellow]Skipped[/yellow] {schedule_id}: {reason}")


# =============================================================================
# SUMMARIES COMMAND
# =============================================================================


@app.command()
def rebuild_summaries(account_id: str = typer.Argument(..., help="Account ID")) -> None:
    """Recompute cached visibility summaries from the check store."""
    from visibility_engine.db.session import get_session_context
    from visibility_engine.services import aggregator

    with get_session_context() as session:
        summaries = aggregator.rebuild_account(session, _parse_uuid(account_id, "account ID"))

        table = Table(title="Visibility Summaries")
        table.add_column("Keyword", style="dim")
        table.add_column("Questions", justify="right")
        table.add_column("Cited", justify="right")
        table.add_column("Score", justify="right", style="green")

        for summary in summaries:
            table.add_row(
                str(summary.keyword_id)[:8] + "...",
                str(summary.total_questions),
                str(summary.questions_with_citation),
                f"{summary.visibility_score}%",
            )

    console.print(table)


if __name__ == "__main__":
    app()
