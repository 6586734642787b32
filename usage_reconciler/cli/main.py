"""
CLI interface for Usage Reconciler.

Provides command-line access to invoice parsing and snapshot building.
"""

import json
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_reconciler.config.loader import (
    CacheBackend,
    EngineConfig,
    load_engine_config,
)
from usage_reconciler.core.aggregator import PeriodUsage, aggregate_period
from usage_reconciler.core.engine import UsageFetchError, build_usage_snapshot
from usage_reconciler.core.payloads import MonthlyInvoice, PayloadError, parse_timestamp
from usage_reconciler.core.periods import BillingPeriod, period_containing
from usage_reconciler.core.reconciler import SpendReconciler, UsageSnapshot
from usage_reconciler.core.session import SessionIdentity, SessionTokenError
from usage_reconciler.core.team import TeamMembershipCache
from usage_reconciler.core.unknown_models import UnknownModelDetector
from usage_reconciler.log import configure_logging
from usage_reconciler.sources.fixtures import FixtureUsageSource
from usage_reconciler.storage.db import DEFAULT_DB_PATH
from usage_reconciler.storage.repository import (
    InMemoryMembershipStore,
    JsonFileMembershipStore,
    SqliteMembershipStore,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


def _load_config(config_path: Optional[str]) -> EngineConfig:
    if config_path is None:
        return EngineConfig.default()
    return load_engine_config(config_path)


def _build_store(config: EngineConfig):
    if config.cache.backend == CacheBackend.MEMORY:
        return InMemoryMembershipStore()
    if config.cache.backend == CacheBackend.JSON:
        return JsonFileMembershipStore(config.cache.path)
    return SqliteMembershipStore(config.cache.path)


def _format_currency(amount: Decimal) -> str:
    """Format a dollar amount for display."""
    return f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Usage Reconciler CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Usage Reconciler - Use --help to see available commands")


@app.command()
def init(
    db_path: str = typer.Option(
        DEFAULT_DB_PATH,
        "--db",
        help="Path to the membership cache database"
    )
):
    """Initialize the membership cache database."""
    try:
        initialize_schema(db_path)
        console.print("[green]✓[/] Membership cache initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing membership cache:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("parse-invoice")
def parse_invoice(
    invoice_path: str = typer.Argument(..., help="Monthly invoice JSON file"),
    anchor: Optional[str] = typer.Option(
        None,
        "--anchor",
        "-a",
        help="Subscription start (ISO-8601); defaults to the 1st of the current month"
    )
):
    """
    Parse a monthly invoice and show the per-item breakdown.

    Lines that cannot be costed or counted are skipped, never fatal.
    """
    try:
        with open(invoice_path, 'r', encoding='utf-8') as f:
            invoice = MonthlyInvoice.from_dict(json.load(f))

        now = datetime.now(timezone.utc)
        start = parse_timestamp(anchor) if anchor else now.replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        detector = UnknownModelDetector()
        usage = aggregate_period(period_containing(start, now), invoice, detector)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_period(usage, "Invoice Breakdown")
    report = detector.take_report()
    if report:
        console.print(f"\n[yellow]Unknown models detected:[/] {', '.join(report)}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def snapshot(
    fixtures_dir: str = typer.Argument(..., help="Directory of payload JSON files"),
    token: str = typer.Option(..., "--token", "-t", help="Session token"),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Engine configuration YAML file"
    ),
    now: Optional[str] = typer.Option(
        None,
        "--now",
        help="Evaluation time (ISO-8601), defaults to the current time"
    )
):
    """
    Build a usage snapshot from fixture payloads.

    Exits with an error code only when individual usage is unavailable
    or the inputs are invalid.
    """
    try:
        config = _load_config(config_path)
        configure_logging(config.logging.level)
        session = SessionIdentity.from_token(token)
        source = FixtureUsageSource(fixtures_dir)
        evaluated_at = parse_timestamp(now) if now else None

        result = build_usage_snapshot(
            session=session,
            source=source,
            cache=TeamMembershipCache(_build_store(config)),
            detector=UnknownModelDetector(),
            reconciler=SpendReconciler(
                primary_model=config.usage.primary_model,
                default_request_limit=config.usage.default_request_limit
            ),
            now=evaluated_at
        )
    except UsageFetchError as e:
        console.print(f"[red]Error:[/] could not fetch {e.call}: {e.cause}")
        sys.exit(EXIT_CODE_FAIL)
    except (SessionTokenError, PayloadError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_snapshot(result)
    sys.exit(EXIT_CODE_OK)


def _period_label(period: BillingPeriod) -> str:
    return f"{period.start_date:%d %b %Y} - {period.end_date:%d %b %Y}"


def _display_period(usage: PeriodUsage, title: str):
    """Display one period's items and totals."""
    table = Table(title=f"{title} ({_period_label(usage.period)})")
    table.add_column("Requests", justify="right")
    table.add_column("Model")
    table.add_column("Per request", justify="right")
    table.add_column("Total", justify="right")

    for item in usage.items:
        model = item.model_id
        if item.is_discounted:
            model = f"{model} (discounted)"
        approx = "~" if item.is_token_based else ""
        table.add_row(
            str(item.request_count),
            model,
            f"${item.cost_per_request:.3f}{approx}",
            _format_currency(item.cost_dollars)
        )
    console.print(table)

    console.print(f"Total cost: {_format_currency(usage.total_cost)}")
    if usage.mid_month_payment > 0:
        console.print(f"Mid-month payment: {_format_currency(usage.mid_month_payment)}")
        console.print(f"Unpaid: {_format_currency(usage.unpaid_balance)}")
    if usage.has_unpaid_mid_month_invoice:
        console.print("[yellow]Unpaid mid-month invoice pending[/]")


def _display_snapshot(result: UsageSnapshot):
    """Display a snapshot summary."""
    console.print("\n[bold]Usage Snapshot[/bold]")
    console.print("-" * 40)

    premium = result.premium_requests
    console.print(
        f"Premium requests: {premium.current}/{premium.limit} ({premium.percent}%)"
    )
    source = "team spend" if result.is_team_sourced else "monthly invoice"
    console.print(f"Cost source: {source}")
    console.print(f"Actual cost: {_format_currency(result.actual_cost)}")
    if not result.is_team_sourced:
        console.print(f"Unpaid: {_format_currency(result.unpaid_balance)}")
    if result.usage_based.is_enabled and result.usage_based.limit_dollars:
        console.print(
            f"Usage-based limit: {_format_currency(result.usage_based.limit_dollars)} "
            f"({result.usage_based_percent:.1f}% used)"
        )

    if not result.is_team_sourced and result.active_period.items:
        console.print()
        _display_period(result.active_period, "Active Period")

    if result.unknown_models:
        console.print(
            f"\n[yellow]Unknown models detected:[/] {', '.join(result.unknown_models)}"
        )


if __name__ == "__main__":
    app()
