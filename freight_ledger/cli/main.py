"""
CLI interface for Freight Ledger.

Provides command-line access to code minting, the expense lifecycle
and reconciliation.
"""

import logging
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from freight_ledger.config.loader import load_config
from freight_ledger.core.errors import FreightLedgerError
from freight_ledger.core.ledger import Ledger, build_ledger
from freight_ledger.core.reconciliation import SweepReport
from freight_ledger.storage.models import ApplicationStatus, CostStatus, CostType, PartyKind

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")


def _ledger(config_path: Optional[str]) -> Ledger:
    return build_ledger(load_config(config_path))


def _fail(error: Exception) -> None:
    if isinstance(error, FreightLedgerError):
        console.print(f"[red]Error ({error.reason}):[/] {error.message}")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _display_report(report: Optional[SweepReport], title: str = "Reconciliation") -> None:
    if report is None:
        console.print("[yellow]Reconciliation did not complete; it will be retried on the next pass[/]")
        return

    table = Table(title=title)
    table.add_column("Step")
    table.add_column("Rows", justify="right")
    for step, count in report.as_dict().items():
        table.add_row(step.replace("_", " "), str(count))
    console.print(table)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log core activity to stderr")
):
    """Freight Ledger CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if ctx.invoked_subcommand is None:
        console.print("Freight Ledger - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = CONFIG_OPTION):
    """Create the tables of every store."""
    try:
        _ledger(config).initialize()
        console.print("[green]✓[/] Stores initialized successfully")
    except Exception as e:
        _fail(e)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sweep(config: Optional[str] = CONFIG_OPTION):
    """Run one reconciliation pass and show what was repaired."""
    try:
        report = _ledger(config).sweeper.run()
    except Exception as e:
        _fail(e)
    _display_report(report)
    sys.exit(EXIT_CODE_PASS)


@app.command("serve-sweeper")
def serve_sweeper(
    config: Optional[str] = CONFIG_OPTION,
    interval: Optional[float] = typer.Option(
        None, "--interval", "-i", help="Seconds between passes (overrides config)"
    )
):
    """Run reconciliation passes on a timer until interrupted."""
    try:
        periodic = _ledger(config).periodic_sweeper()
    except Exception as e:
        _fail(e)
    if interval is not None:
        periodic.interval_seconds = interval
    periodic.start()
    console.print(f"Sweeping every {periodic.interval_seconds:g}s, press Ctrl+C to stop")
    try:
        periodic.wait()
    except KeyboardInterrupt:
        pass
    finally:
        periodic.stop()
    sys.exit(EXIT_CODE_PASS)


@app.command("new-shipment")
def new_shipment(
    config: Optional[str] = CONFIG_OPTION,
    bl_number: Optional[str] = typer.Option(None, "--bl", help="Bill of lading number")
):
    """Create a shipment under the next code for today."""
    try:
        shipment = _ledger(config).codes.create_shipment(bl_number=bl_number)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Shipment {shipment.code} ({shipment.id})")
    sys.exit(EXIT_CODE_PASS)


@app.command("new-customer")
def new_customer(name: str, config: Optional[str] = CONFIG_OPTION):
    """Create a customer under a random 7-digit code."""
    try:
        party = _ledger(config).codes.create_customer(name)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Customer {party.code} {party.name}")
    sys.exit(EXIT_CODE_PASS)


@app.command("new-supplier")
def new_supplier(name: str, config: Optional[str] = CONFIG_OPTION):
    """Create a supplier under a random 7-digit code."""
    try:
        party = _ledger(config).codes.create_supplier(name)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Supplier {party.code} {party.name}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def apply(
    cost_ids: List[str],
    due_date: datetime = typer.Option(..., "--due-date", "-d", formats=["%Y-%m-%d"]),
    remarks: Optional[str] = typer.Option(None, "--remarks", "-r"),
    config: Optional[str] = CONFIG_OPTION
):
    """Submit unapplied costs as one expense application."""
    try:
        result = _ledger(config).lifecycle.apply(cost_ids, due_date.date(), remarks)
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Application {result.application_number}: "
        f"{result.applied_costs} costs, {result.total_amount} {result.currency}"
    )
    _display_report(result.reconciliation)
    sys.exit(EXIT_CODE_PASS)


@app.command("cancel-application")
def cancel_application(application_number: str, config: Optional[str] = CONFIG_OPTION):
    """Cancel an application and return its costs to unapplied."""
    try:
        result = _ledger(config).lifecycle.cancel_application(application_number)
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Application {result.application_number} canceled, "
        f"{result.affected_costs} costs unapplied"
    )
    _display_report(result.reconciliation)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def settle(
    cost_ids: List[str],
    settlement_date: Optional[datetime] = typer.Option(
        None, "--date", formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]
    ),
    remarks: Optional[str] = typer.Option(None, "--remarks", "-r"),
    config: Optional[str] = CONFIG_OPTION
):
    """Mark applied costs as settled."""
    try:
        result = _ledger(config).lifecycle.settle(cost_ids, settlement_date, remarks)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Settled {result.settled_costs} costs")
    _display_report(result.reconciliation)
    sys.exit(EXIT_CODE_PASS)


@app.command("cancel-settlement")
def cancel_settlement(cost_ids: List[str], config: Optional[str] = CONFIG_OPTION):
    """Return settled costs to applied; other costs are ignored."""
    try:
        result = _ledger(config).lifecycle.cancel_settlement(cost_ids)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Reverted settlement of {result.affected_costs} costs")
    _display_report(result.reconciliation)
    sys.exit(EXIT_CODE_PASS)


@app.command("delete-shipment")
def delete_shipment(shipment_ids: List[str], config: Optional[str] = CONFIG_OPTION):
    """Delete shipments with their costs; shipments with settled costs are kept."""
    try:
        result = _ledger(config).cascade.bulk_delete_shipments(shipment_ids)
    except Exception as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Deleted {result.deleted_shipments} shipments and {result.deleted_costs} costs"
    )
    if result.blocked_ids:
        console.print(f"[yellow]Blocked by settled costs:[/] {', '.join(result.blocked_ids)}")
    _display_report(result.reconciliation)
    if result.missing_ids:
        console.print(f"[red]Shipments not found:[/] {', '.join(result.missing_ids)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


def _amount(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation:
        raise ValueError(f"{text!r} is not a decimal amount")


@app.command("add-cost")
def add_cost(
    shipment_id: str,
    type: CostType = typer.Option(..., "--type", "-t"),
    amount: str = typer.Option(..., "--amount", "-a"),
    description: str = typer.Option(..., "--description", "-d"),
    subject: int = typer.Option(..., "--subject", help="Financial subject id"),
    unit_type: PartyKind = typer.Option(..., "--unit-type", help="Kind of party settling the cost"),
    unit_id: str = typer.Option(..., "--unit-id", help="Id of the party settling the cost"),
    currency: str = typer.Option("THB", "--currency"),
    remarks: Optional[str] = typer.Option(None, "--remarks", "-r"),
    config: Optional[str] = CONFIG_OPTION
):
    """Add an unapplied cost to a shipment."""
    try:
        result = _ledger(config).costs.add_cost(
            shipment_id,
            type=type,
            amount=_amount(amount),
            description=description,
            financial_subject_id=subject,
            settlement_unit_type=unit_type,
            settlement_unit_id=unit_id,
            currency=currency,
            remarks=remarks
        )
    except Exception as e:
        _fail(e)
    cost = result.cost
    console.print(f"[green]✓[/] Cost {cost.id}: {cost.amount} {cost.currency}")
    _display_report(result.reconciliation)
    sys.exit(EXIT_CODE_PASS)


@app.command("update-cost")
def update_cost(
    cost_id: str,
    amount: Optional[str] = typer.Option(None, "--amount", "-a"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    currency: Optional[str] = typer.Option(None, "--currency"),
    remarks: Optional[str] = typer.Option(None, "--remarks", "-r"),
    config: Optional[str] = CONFIG_OPTION
):
    """Change the amount, description, currency or remarks of a cost."""
    changes = {
        "description": description,
        "currency": currency,
        "remarks": remarks,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    try:
        if amount is not None:
            changes["amount"] = _amount(amount)
        if not changes:
            raise ValueError("Nothing to change")
        result = _ledger(config).costs.update_cost(cost_id, **changes)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Cost {cost_id}: {result.cost.amount} {result.cost.currency}")
    _display_report(result.reconciliation)
    sys.exit(EXIT_CODE_PASS)


@app.command("list-costs")
def list_costs(
    shipment: Optional[str] = typer.Option(None, "--shipment", "-s", help="Shipment id"),
    application: Optional[str] = typer.Option(None, "--application", help="Application number"),
    status: Optional[CostStatus] = typer.Option(None, "--status"),
    type: Optional[CostType] = typer.Option(None, "--type", "-t"),
    currency: Optional[str] = typer.Option(None, "--currency"),
    unit: Optional[str] = typer.Option(None, "--unit", help="Settlement unit id"),
    config: Optional[str] = CONFIG_OPTION
):
    """List costs matching every given filter."""
    try:
        costs = _ledger(config).finance.list_costs(
            shipment_ids=[shipment] if shipment else None,
            application_number=application,
            status=status,
            type=type,
            currency=currency,
            settlement_unit_id=unit
        )
    except Exception as e:
        _fail(e)

    if not costs:
        console.print("[yellow]No costs found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Costs ({len(costs)})")
    table.add_column("ID", overflow="fold")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Currency")
    table.add_column("Description")
    table.add_column("Application")
    for cost in costs:
        table.add_row(
            cost.id,
            cost.type.value,
            cost.status.value,
            str(cost.amount),
            cost.currency or "",
            cost.description or "",
            cost.application_number or "-"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("list-applications")
def list_applications(
    type: Optional[CostType] = typer.Option(None, "--type", "-t"),
    status: Optional[ApplicationStatus] = typer.Option(None, "--status"),
    created_from: Optional[datetime] = typer.Option(
        None, "--from", formats=["%Y-%m-%d"], help="First creation day"
    ),
    created_to: Optional[datetime] = typer.Option(
        None, "--to", formats=["%Y-%m-%d"], help="Last creation day, included"
    ),
    config: Optional[str] = CONFIG_OPTION
):
    """List expense applications matching every given filter."""
    try:
        applications = _ledger(config).finance.list_applications(
            type=type,
            status=status,
            created_from=created_from.date() if created_from else None,
            created_to=created_to.date() if created_to else None
        )
    except Exception as e:
        _fail(e)

    if not applications:
        console.print("[yellow]No applications found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Applications ({len(applications)})")
    table.add_column("Number")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Costs", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Currency")
    table.add_column("Due")
    for application in applications:
        table.add_row(
            application.application_number,
            application.type.value,
            application.status.value,
            str(application.cost_count),
            str(application.total_amount),
            application.currency or "",
            application.due_date.isoformat() if application.due_date else "-"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
