"""Rich output formatters for the orderkeeper CLI.

Each function accepts plain data and returns a Rich renderable (Table,
Panel, etc.).  The caller is responsible for printing via
``console.print()``.  This separation keeps the formatters testable
without capturing stdout.
"""

from __future__ import annotations

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

_STATUS_COLORS = {
    "PENDING": "cyan",
    "RUNNING": "blue",
    "SUCCEEDED": "green",
    "FAILED": "yellow",
    "DEAD_LETTER": "red",
    "SUBMITTING": "cyan",
    "SUBMITTED": "blue",
    "PARTIALLY_FILLED": "blue",
    "FILLED": "green",
    "CANCELED": "dim",
    "REJECTED": "red",
}


def _styled(status: str) -> str:
    color = _STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _ts(value: str | None) -> str:
    # date + time, no fraction
    if not value:
        return "-"
    return value[:19]


def _num(value: float | None, fmt: str = ".2f") -> str:
    return "-" if value is None else format(value, fmt)


def format_status_table(
    counts: dict[str, int],
    limits,
    needs_review: int,
    last_run: dict | None,
) -> Table:
    """Build a Rich Table showing engine health at a glance.

    Parameters
    ----------
    counts : dict[str, int]
        Work item count per status value.
    limits : RiskLimits
        Current risk limits row.
    needs_review : int
        Orders flagged for operator review.
    last_run : dict | None
        Most recent entry of ``OrderLedger.list_reconciliation_runs()``.
    """
    table = Table(title="OrderKeeper Status", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    for status in ("PENDING", "RUNNING", "SUCCEEDED", "DEAD_LETTER"):
        n = counts.get(status, 0)
        if status == "DEAD_LETTER":
            flag = "[red]ALERT[/red]" if n else "[green]OK[/green]"
        else:
            flag = "[green]OK[/green]"
        table.add_row(f"Work Items {status}", str(n), flag)

    table.add_row(
        "Orders Needing Review",
        str(needs_review),
        "[yellow]REVIEW[/yellow]" if needs_review else "[green]OK[/green]",
    )

    if limits.kill_switch_active:
        table.add_row(
            "Kill Switch",
            escape(limits.kill_switch_reason or "active"),
            "[bold red]ACTIVE[/bold red]",
        )
    else:
        table.add_row("Kill Switch", "off", "[green]OK[/green]")
    table.add_row("Trading Mode", limits.mode.value, "")

    if last_run is None:
        table.add_row("Last Reconciliation", "never", "[yellow]WATCH[/yellow]")
    else:
        run_status = last_run["status"]
        flag = {
            "completed": "[green]OK[/green]",
            "running": "[blue]RUNNING[/blue]",
        }.get(run_status, "[red]FAILED[/red]")
        table.add_row("Last Reconciliation", _ts(last_run["started_at"]), flag)

    return table


def format_work_items_table(items: list) -> Table:
    """Render work items, newest first.

    Parameters
    ----------
    items : list[WorkItem]
        Output of ``WorkItemStore.list_items()``.
    """
    table = Table(title="Work Items", show_lines=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Next Run")
    table.add_column("Last Error")

    for item in items:
        error = item.last_error or ""
        if item.last_error_kind:
            error = f"({item.last_error_kind}) {error}"
        table.add_row(
            item.id[:12],
            item.type.value,
            _styled(item.status.value),
            f"{item.attempts}/{item.max_attempts}",
            _ts(item.next_run_at),
            escape(error[:60]),
        )

    return table


def format_orders_table(orders: list) -> Table:
    """Render ledger orders.

    Parameters
    ----------
    orders : list[OrderExecutionRecord]
        Output of ``OrderLedger.list_orders()``.
    """
    table = Table(title="Orders", show_lines=False)
    table.add_column("Client Order ID", no_wrap=True)
    table.add_column("Broker ID", style="dim")
    table.add_column("Symbol", style="bold")
    table.add_column("Side", justify="center")
    table.add_column("Qty", justify="right")
    table.add_column("Filled", justify="right")
    table.add_column("Avg Price", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Review", justify="center")

    for order in orders:
        side = "[green]BUY[/green]" if order.side == "buy" else "[red]SELL[/red]"
        size = _num(order.qty, "g") if order.qty is not None else f"${_num(order.notional)}"
        table.add_row(
            order.client_order_id,
            order.broker_order_id or "-",
            order.symbol,
            side,
            size,
            _num(order.filled_qty, "g"),
            _num(order.filled_avg_price),
            _styled(order.status.value),
            "[yellow]YES[/yellow]" if order.needs_review else "",
        )

    return table


def format_limits_panel(limits) -> Panel:
    """Render the risk limits row and kill switch state as a Panel."""
    lines: list[str] = []

    if limits.kill_switch_active:
        lines.append("[bold red]KILL SWITCH ACTIVE[/bold red]")
        lines.append(f"  Reason:        {escape(limits.kill_switch_reason or '-')}")
        lines.append(f"  Activated by:  {limits.kill_switch_activated_by or '-'}")
        lines.append(f"  Activated at:  {_ts(limits.kill_switch_activated_at)}")
    else:
        lines.append("[green]Kill switch off[/green]")

    lines.append("")
    lines.append(f"  Mode:                  {limits.mode.value}")
    lines.append(f"  Max position size:     {limits.max_position_size_percent:g}%")
    lines.append(f"  Max total exposure:    {limits.max_total_exposure_percent:g}%")
    lines.append(f"  Max positions:         {limits.max_positions_count}")
    lines.append(f"  Daily loss limit:      {limits.daily_loss_limit_percent:g}%")

    border = "red" if limits.kill_switch_active else "blue"
    return Panel("\n".join(lines), title="Risk Limits", border_style=border)


def format_reconciliation_report(report) -> Panel:
    """Render a ReconciliationReport as a Rich Panel.

    Parameters
    ----------
    report : ReconciliationReport
        Output of ``Reconciler.reconcile()``.
    """
    lines: list[str] = []
    lines.append(f"[bold]Run {report.run_id[:12]}[/bold] ({report.trigger})")
    lines.append(f"  Started:    {_ts(report.started_at)}")
    lines.append(f"  Completed:  {_ts(report.completed_at)}")
    lines.append(f"  Mutations:  {report.mutations}")
    lines.append("")

    for category, n in report.counts.items():
        lines.append(f"  {category:<18} {n}")

    divergences = report.divergences
    if divergences:
        lines.append("")
        lines.append("[bold]Divergences[/bold]")
        for finding in divergences:
            color = "red" if finding.resolution.value == "NEEDS_OPERATOR" else "yellow"
            ref = finding.local_ref or finding.broker_ref or "-"
            lines.append(
                f"  [{color}]{finding.category.value}[/{color}] {finding.kind} "
                f"{finding.symbol} {ref}: {finding.resolution.value}"
            )
    else:
        lines.append("")
        lines.append("[green]Ledger matches brokerage.[/green]")

    if report.kill_switch_triggered:
        lines.append("")
        lines.append("[bold red]Daily loss limit breached: kill switch activated.[/bold red]")

    return Panel(
        "\n".join(lines),
        title="Reconciliation Report",
        border_style="blue",
    )


def format_unreal_orders_table(orders: list) -> Table:
    """Render brokerage orders judged unreal.

    Parameters
    ----------
    orders : list[UnrealOrder]
        Output of ``Reconciler.identify_unreal_orders()``.
    """
    table = Table(title="Unreal Orders", show_lines=False)
    table.add_column("Broker ID", style="dim")
    table.add_column("Client Order ID")
    table.add_column("Symbol", style="bold")
    table.add_column("Status", justify="center")
    table.add_column("Reason")
    table.add_column("Open", justify="center")
    table.add_column("Created")

    for order in orders:
        table.add_row(
            order.broker_order_id,
            order.client_order_id or "-",
            order.symbol,
            order.status,
            order.reason,
            "[yellow]YES[/yellow]" if order.is_open else "no",
            _ts(order.created_at),
        )

    return table
