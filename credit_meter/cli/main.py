"""
CLI interface for the credit meter.

Provides command-line access to usage summaries, ledger maintenance and
the metered operations.
"""

import sys
from dataclasses import replace
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from credit_meter.config.loader import MeterConfig, load_meter_config
from credit_meter.core.errors import GenerationError, InsufficientCreditsError
from credit_meter.core.logging import configure_logging
from credit_meter.sdk.assets import AssetRequest
from credit_meter.sdk.context import MeterContext, build_context
from credit_meter.sdk.events import DistillationRequest
from credit_meter.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"config_path": None, "db_path": None}


def _load_config() -> MeterConfig:
    """Resolve configuration from the global --config/--db options."""
    if _state["config_path"]:
        config = load_meter_config(_state["config_path"])
        if _state["db_path"]:
            config = replace(config, runtime=replace(config.runtime, db_path=_state["db_path"]))
        return config
    return MeterConfig.default(db_path=_state["db_path"])


def _open_context() -> MeterContext:
    config = _load_config()
    configure_logging(config.runtime.log_level, json_logs=config.runtime.json_logs)
    return build_context(config)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", help="Path to the SQLite database (overrides config)"
    ),
):
    """Credit Meter CLI."""
    _state["config_path"] = config
    _state["db_path"] = db
    if ctx.invoked_subcommand is None:
        console.print("Credit Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the credit meter database."""
    try:
        initialize_schema(_load_config().runtime.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Show remaining credits and cache size."""
    try:
        with _open_context() as meter:
            summary = meter.usage_summary()
            stats = meter.cache.stats()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Credit meter is initialized")
    console.print(
        f"{summary.remaining:,} credits remaining ({summary.percentage_used:.1f}% used)"
    )
    console.print(f"{stats.entries} cached results")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage():
    """Show the current month's credit usage summary."""
    try:
        with _open_context() as meter:
            summary = meter.usage_summary()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Monthly Credit Usage")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Used", f"{summary.monthly_used:,}")
    table.add_row("Limit", f"{summary.monthly_limit:,}")
    table.add_row("Remaining", f"{summary.remaining:,}")
    table.add_row("Used %", f"{summary.percentage_used:.1f}%")
    table.add_row("Est. days remaining", str(summary.estimated_days_remaining))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
    operation: Optional[str] = typer.Option(
        None, "--operation", "-o", help="Filter to one operation kind"
    ),
):
    """List recent usage records, newest first."""
    try:
        with _open_context() as meter:
            records = meter.ledger.recent_usage(limit=limit, operation_kind=operation)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("\n[bold yellow]No usage recorded yet[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent Usage")
    for column in ("Timestamp (UTC)", "Operation", "Feature", "Actor", "Credits"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.operation_kind,
            record.feature_id,
            record.actor_id or "-",
            str(record.credits_consumed),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("generate-asset")
def generate_asset(
    asset_kind: str = typer.Argument(..., help="badge, terrain_tile, avatar, icon, background or orb"),
    context_text: str = typer.Argument(..., help="What the asset should depict"),
    size: str = typer.Option("medium", "--size", "-s", help="small, medium or large"),
    actor: Optional[str] = typer.Option(None, "--actor", "-a", help="Requesting actor id"),
    modifier: Optional[List[str]] = typer.Option(
        None, "--modifier", "-m", help="Extra style modifier (repeatable)"
    ),
):
    """Generate a visual asset, reusing a cached one when possible."""
    request = AssetRequest(
        asset_kind=asset_kind,
        context_text=context_text,
        size=size,
        actor_id=actor,
        style_modifiers=tuple(modifier or ()),
    )
    try:
        with _open_context() as meter:
            response = meter.assets.generate_asset(request)
    except InsufficientCreditsError as e:
        console.print(f"[red]Budget exceeded:[/] required {e.required}, available {e.available}")
        sys.exit(EXIT_CODE_FAIL)
    except (ValueError, GenerationError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    source = "cache" if response.from_cache else "generated"
    console.print(f"[green]✓[/] {response.asset_id} ({source})")
    console.print(f"Location: {response.asset_location}")
    console.print(f"Credits used: {response.credits_used}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def distill(
    raw_text: str = typer.Argument(..., help="Raw input to distill"),
    input_kind: str = typer.Option("note_text", "--kind", "-k", help="Input data kind"),
    complexity: str = typer.Option("standard", "--complexity", help="simple, standard or complex"),
    actor: Optional[str] = typer.Option(None, "--actor", "-a", help="Requesting actor id"),
):
    """Distill raw text into a structured life event."""
    request = DistillationRequest(
        raw_text=raw_text,
        input_kind=input_kind,
        complexity=complexity,
        actor_id=actor,
    )
    try:
        with _open_context() as meter:
            response = meter.events.distill(request)
    except InsufficientCreditsError as e:
        console.print(f"[red]Budget exceeded:[/] required {e.required}, available {e.available}")
        sys.exit(EXIT_CODE_FAIL)
    except (ValueError, GenerationError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    event = response.event
    console.print(f"\n[bold]{event.title}[/bold] [dim]({event.category})[/]")
    console.print(f"Entities: {', '.join(entity.name for entity in event.entities) or '-'}")
    console.print(f"Action items: {'; '.join(item.text for item in event.action_items) or '-'}")
    console.print(f"Tags: {', '.join(event.tags)}")
    console.print(f"Credits used: {response.credits_used} ({'cache' if response.from_cache else 'generated'})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    month: Optional[str] = typer.Option(None, "--month", help="Month key YYYY-MM (default: current)"),
):
    """Rebuild a month's usage total from the usage log."""
    try:
        with _open_context() as meter:
            aggregate = meter.ledger.reconcile(month)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {aggregate.month_key}: {aggregate.total_consumed:,} credits consumed")
    sys.exit(EXIT_CODE_PASS)


@app.command("evict-cache")
def evict_cache():
    """Apply the configured cache eviction policy."""
    try:
        with _open_context() as meter:
            if meter.cache.eviction is None:
                console.print("[yellow]No cache eviction policy configured[/]")
                sys.exit(EXIT_CODE_PASS)
            removed = meter.cache.evict()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Evicted {removed} cache entries")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
