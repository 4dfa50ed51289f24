"""Command-line interface for evledger."""

import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config, ensure_directories, load_config
from .db import Database
from .db.enums import PayoutStatus
from .errors import EngineError
from .logging import configure_logging

# Create Typer app with subcommands
app = typer.Typer(
    name="evledger",
    help="Billing and settlement engine for EV charging sessions.",
    no_args_is_help=True,
)

# Subcommand groups
tariffs_app = typer.Typer(help="Inspect tariffs.")
sessions_app = typer.Typer(help="Inspect charging sessions.")
payouts_app = typer.Typer(help="Generate and manage payout statements.")
roaming_app = typer.Typer(help="Roaming CDR clearing.")
payments_app = typer.Typer(help="Payment captures and webhooks.")

app.add_typer(tariffs_app, name="tariffs")
app.add_typer(sessions_app, name="sessions")
app.add_typer(payouts_app, name="payouts")
app.add_typer(roaming_app, name="roaming")
app.add_typer(payments_app, name="payments")

# Rich console for nice output
console = Console()

# Global options
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file"),
]
UserOption = Annotated[
    Optional[str],
    typer.Option("--user", "-u", help="Operator performing the action"),
]


def get_config(config_path: Path | None) -> Config:
    """Load configuration and set up logging."""
    config = load_config(config_path)
    configure_logging(config)
    return config


def get_db(config: Config) -> Database:
    """Get database connection and ensure it's initialized."""
    ensure_directories(config)
    db = Database(config.database.path)
    db.initialize()
    return db


def fail(error: EngineError) -> None:
    """Print an engine error and exit non-zero."""
    code = f" ({error.code})" if error.code else ""
    console.print(f"[red]{error.kind.value}{code}: {error.message}[/red]")
    raise typer.Exit(1)


def read_json(file: Path) -> dict:
    try:
        return json.loads(file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {file}: {e}[/red]")
        raise typer.Exit(1)


def money(amount: float | None, currency: str = "") -> str:
    if amount is None:
        return ""
    return f"{amount:,.2f} {currency}".strip()


@app.command()
def version():
    """Show version information."""
    console.print(f"evledger version {__version__}")


@app.command("init-db")
def init_db(config_path: ConfigOption = None):
    """Create the database schema."""
    config = get_config(config_path)
    db = get_db(config)
    db.close()
    console.print(f"[green]Database initialized at {config.database.path}[/green]")


# Tariff subcommands


@tariffs_app.command("resolve")
def tariffs_resolve(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    station: Annotated[str, typer.Argument(help="Station ID")],
    connector: Annotated[
        Optional[str],
        typer.Option("--connector", help="Connector ID"),
    ] = None,
    at: Annotated[
        Optional[str],
        typer.Option("--at", help="ISO-8601 time (default: now)"),
    ] = None,
    config_path: ConfigOption = None,
):
    """Show which tariff applies to a station or connector."""
    from .pricing.tariffs import TariffService

    config = get_config(config_path)
    db = get_db(config)

    try:
        try:
            tariff = TariffService(db).resolve_active_tariff(workspace, station, connector, at)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

        if not tariff:
            console.print("[yellow]No tariff applies[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Tariff for {station}" + (f"/{connector}" if connector else ""))
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Tariff", f"{tariff.name} (id={tariff.id}, v{tariff.version})")
        table.add_row("Price / kWh", money(tariff.base_price_per_kwh, tariff.currency))
        table.add_row("Price / minute", money(tariff.price_per_minute, tariff.currency))
        table.add_row("Start fee", money(tariff.session_start_fee, tariff.currency))
        table.add_row("Platform fee", f"{tariff.ms_fee_percent * 100:.2f}%")
        table.add_row("Valid", f"{tariff.valid_from} - {tariff.valid_until or 'open'}")

        console.print(table)

    finally:
        db.close()


# Session subcommands


@sessions_app.command("show")
def sessions_show(
    session_id: Annotated[int, typer.Argument(help="Session ID")],
    config_path: ConfigOption = None,
):
    """Show a session's billing, payment and clearing state."""
    config = get_config(config_path)
    db = get_db(config)

    try:
        session = db.get_session(session_id)
        if not session:
            console.print(f"[red]Session {session_id} not found[/red]")
            raise typer.Exit(1)

        table = Table(title=f"Session {session_id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("Workspace", session.workspace_id)
        table.add_row("Station", f"{session.station_id}/{session.connector_id or '-'}")
        table.add_row("Status", f"{session.status.value} / {session.billing_status.value}")
        table.add_row("Energy", f"{session.energy_kwh or 0:.3f} kWh")
        table.add_row("Duration", f"{session.duration_seconds or 0}s")
        table.add_row(
            "Tariff",
            f"{session.tariff_snapshot_id} v{session.tariff_snapshot_version}"
            if session.has_tariff_snapshot
            else "[yellow]none[/yellow]",
        )
        table.add_row("Gross", money(session.gross_amount, session.currency))
        table.add_row("Platform fee", money(session.ms_fee_amount, session.currency))
        table.add_row("Operator earning", money(session.sub_cpo_earning_amount, session.currency))
        table.add_row("Payment", session.payment_status.value)
        if session.payment_last_error_code:
            table.add_row("Payment error", session.payment_last_error_code)
        if session.roaming_type.value != "NONE":
            table.add_row("Roaming", f"{session.roaming_type.value} {session.hubject_session_id}")
            table.add_row("Clearing", session.clearing_status.value)
            if session.clearing_dispute_reason:
                table.add_row("Dispute", session.clearing_dispute_reason)
        table.add_row("Payout statement", str(session.payout_statement_id or ""))

        console.print(table)

    finally:
        db.close()


# Payout subcommands


def _print_payout(result) -> None:
    title = "Payout Preview" if result.mode == "preview" else f"Payout Statement {result.statement.id}"
    table = Table(title=f"{title} - {result.workspace_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("Period", f"{result.period_start} - {result.period_end}")
    table.add_row("Sessions", str(result.total_sessions))
    table.add_row("Energy", f"{result.total_energy_kwh:,.3f} kWh")
    table.add_row("Gross", money(result.total_gross_amount, result.currency))
    table.add_row("Platform fee", money(result.total_ms_fee_amount, result.currency))
    table.add_row("Operator earning", money(result.total_sub_cpo_earning, result.currency))
    if result.statement:
        table.add_row("Status", result.statement.status.value)

    console.print(table)


def _generate(workspace: str, start: str, end: str, mode: str, user: str | None, config_path):
    from .processing.payouts import PayoutService

    config = get_config(config_path)
    db = get_db(config)

    try:
        result = PayoutService(db, config.payouts, config.currency).generate_payout_statement(
            workspace, start, end, mode=mode, created_by=user
        )
        if not result.ok:
            fail(result.error)
        _print_payout(result.value)
    finally:
        db.close()


@payouts_app.command("preview")
def payouts_preview(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    start: Annotated[str, typer.Option("--start", help="Period start (ISO-8601)")],
    end: Annotated[str, typer.Option("--end", help="Period end (ISO-8601)")],
    config_path: ConfigOption = None,
):
    """Show what a payout statement would contain without saving it."""
    _generate(workspace, start, end, "preview", None, config_path)


@payouts_app.command("commit")
def payouts_commit(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    start: Annotated[str, typer.Option("--start", help="Period start (ISO-8601)")],
    end: Annotated[str, typer.Option("--end", help="Period end (ISO-8601)")],
    user: UserOption = None,
    config_path: ConfigOption = None,
):
    """Create a DRAFT payout statement and claim its sessions."""
    _generate(workspace, start, end, "commit", user, config_path)


def _statement_action(action: str, workspace: str, statement_id: int, config_path, **kwargs):
    from .processing.payouts import PayoutService

    config = get_config(config_path)
    db = get_db(config)

    try:
        service = PayoutService(db, config.payouts, config.currency)
        result = getattr(service, action)(workspace, statement_id, **kwargs)
        if not result.ok:
            fail(result.error)
        console.print(
            f"[green]Payout statement {statement_id} is now {result.value.status.value}[/green]"
        )
    finally:
        db.close()


@payouts_app.command("issue")
def payouts_issue(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    statement_id: Annotated[int, typer.Argument(help="Statement ID")],
    user: UserOption = None,
    config_path: ConfigOption = None,
):
    """Issue a DRAFT statement."""
    _statement_action("issue_payout_statement", workspace, statement_id, config_path, user=user)


@payouts_app.command("paid")
def payouts_paid(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    statement_id: Annotated[int, typer.Argument(help="Statement ID")],
    reference: Annotated[
        Optional[str],
        typer.Option("--reference", "-r", help="Bank transfer reference"),
    ] = None,
    user: UserOption = None,
    config_path: ConfigOption = None,
):
    """Mark an ISSUED statement as paid."""
    _statement_action(
        "mark_payout_paid", workspace, statement_id, config_path, reference=reference, user=user
    )


@payouts_app.command("cancel")
def payouts_cancel(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    statement_id: Annotated[int, typer.Argument(help="Statement ID")],
    user: UserOption = None,
    config_path: ConfigOption = None,
):
    """Cancel a statement and release its sessions."""
    _statement_action("cancel_payout_statement", workspace, statement_id, config_path, user=user)


@payouts_app.command("list")
def payouts_list(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    status: Annotated[
        Optional[PayoutStatus],
        typer.Option("--status", help="Filter by status"),
    ] = None,
    config_path: ConfigOption = None,
):
    """List payout statements of a workspace."""
    config = get_config(config_path)
    db = get_db(config)

    try:
        statements = db.list_statements(workspace, status=status)

        if not statements:
            console.print("[yellow]No payout statements found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Payout Statements - {workspace}")
        table.add_column("ID", style="cyan")
        table.add_column("Period", style="white")
        table.add_column("Status", style="white")
        table.add_column("Sessions", justify="right")
        table.add_column("Operator earning", style="green", justify="right")

        for statement in statements:
            status_style = {
                "DRAFT": "yellow",
                "ISSUED": "blue",
                "PAID": "green",
                "CANCELLED": "dim",
            }.get(statement.status.value, "white")

            table.add_row(
                str(statement.id),
                f"{statement.period_start:%Y-%m-%d} - {statement.period_end:%Y-%m-%d}",
                f"[{status_style}]{statement.status.value}[/{status_style}]",
                str(statement.total_sessions),
                money(statement.total_sub_cpo_earning, statement.currency),
            )

        console.print(table)

    finally:
        db.close()


@sessions_app.command("revenue")
def sessions_revenue(
    workspace: Annotated[str, typer.Argument(help="Workspace ID")],
    from_date: Annotated[str, typer.Option("--from", help="First day (YYYY-MM-DD)")],
    to_date: Annotated[str, typer.Option("--to", help="Last day (YYYY-MM-DD)")],
    config_path: ConfigOption = None,
):
    """Show revenue of completed sessions per day and top stations."""
    from .processing.revenue import RevenueService

    config = get_config(config_path)
    db = get_db(config)

    try:
        result = RevenueService(db).get_revenue_summary(workspace, from_date, to_date)
        if not result.ok:
            fail(result.error)
        summary = result.value
        currency = summary.currency or config.currency

        table = Table(title=f"Revenue - {workspace} ({summary.first_day} - {summary.last_day})")
        table.add_column("Day", style="cyan")
        table.add_column("Sessions", justify="right")
        table.add_column("Energy", justify="right")
        table.add_column("Gross", style="green", justify="right")
        table.add_column("Platform fee", justify="right")
        table.add_column("Operator earning", justify="right")

        rows = [(str(day.day), day) for day in summary.daily] + [("Total", summary.totals)]
        for label, bucket in rows:
            table.add_row(
                label,
                str(bucket.sessions_count),
                f"{bucket.total_energy_kwh:,.3f} kWh",
                money(float(bucket.gross_revenue), currency),
                money(float(bucket.ms_fees), currency),
                money(float(bucket.sub_cpo_earnings), currency),
            )
        console.print(table)

        if summary.top_stations:
            stations = Table(title="Top stations")
            stations.add_column("Station", style="cyan")
            stations.add_column("Sessions", justify="right")
            stations.add_column("Gross", style="green", justify="right")
            for station in summary.top_stations:
                stations.add_row(
                    station.station_id,
                    str(station.sessions_count),
                    money(float(station.gross_revenue), currency),
                )
            console.print(stations)
    finally:
        db.close()


# Roaming subcommands


@roaming_app.command("cdr")
def roaming_cdr(
    file: Annotated[Path, typer.Argument(help="CDR JSON file")],
    config_path: ConfigOption = None,
):
    """Match a CDR file with its roaming session."""
    from .processing.clearing import ClearingService

    payload = read_json(file)
    hubject_session_id = payload.get("hubject_session_id")
    if not hubject_session_id:
        console.print("[red]CDR has no hubject_session_id[/red]")
        raise typer.Exit(1)

    config = get_config(config_path)
    db = get_db(config)

    try:
        result = ClearingService(db, config.reconciliation).match_cdr_with_session(
            hubject_session_id, payload
        )
        if not result.ok:
            fail(result.error)

        outcome = result.value
        if outcome.already_processed:
            console.print(f"[yellow]CDR already processed ({outcome.clearing_status.value})[/yellow]")
        elif outcome.matched:
            console.print(f"[green]Session {outcome.session_id} MATCHED[/green]")
        else:
            console.print(f"[red]Session {outcome.session_id} DISPUTED[/red]")
            for mismatch in outcome.mismatches:
                console.print(f"  - {mismatch}")
    finally:
        db.close()


# Payment subcommands


@payments_app.command("webhook")
def payments_webhook(
    file: Annotated[Path, typer.Argument(help="Webhook event JSON file")],
    signature: Annotated[
        Optional[str],
        typer.Option("--signature", help="Stripe-Signature header to verify"),
    ] = None,
    config_path: ConfigOption = None,
):
    """Apply a stored or replayed payment webhook event."""
    from .payments.lifecycle import PaymentService
    from .payments.processor import WebhookEvent, parse_webhook_event

    config = get_config(config_path)

    try:
        if signature:
            event = parse_webhook_event(
                file.read_bytes(), signature, config.payments.webhook_secret
            )
        else:
            event = WebhookEvent.from_dict(read_json(file))
    except (OSError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    db = get_db(config)

    try:
        outcome = PaymentService(db, config=config.payments).apply_webhook_event(event)
        if outcome.processed:
            console.print(
                f"[green]Event {event.id} applied: session {outcome.session_id} "
                f"is {outcome.payment_status.value}[/green]"
            )
        else:
            console.print(f"[yellow]Event {event.id} not applied: {outcome.reason}[/yellow]")
    finally:
        db.close()


@payments_app.command("capture")
def payments_capture(
    session_id: Annotated[int, typer.Argument(help="Session ID")],
    amount: Annotated[
        Optional[float],
        typer.Option("--amount", help="Amount to capture (default: session gross)"),
    ] = None,
    config_path: ConfigOption = None,
):
    """Capture a session's payment hold."""
    from .payments.lifecycle import PaymentService
    from .payments.processor import StripeProcessor

    config = get_config(config_path)
    try:
        processor = StripeProcessor.from_config(config.payments)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    db = get_db(config)

    try:
        result = PaymentService(db, processor, config.payments).capture_hold(session_id, amount)
        if not result.ok:
            fail(result.error)
        capture = result.value
        note = " (already captured)" if capture.already_captured else ""
        console.print(
            f"[green]Captured {capture.captured_amount_cents} cents for session "
            f"{session_id}{note}[/green]"
        )
    finally:
        db.close()


if __name__ == "__main__":
    app()
