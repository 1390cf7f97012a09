"""orderkeeper CLI -- operator control surface for the execution engine.

Commands:
    status        -- Queue depth, dead letters, review flags, kill switch
    work-items    -- List work items with status/type filters
    retry         -- Move a dead-lettered item back to PENDING
    dead-letter   -- Force a PENDING item to DEAD_LETTER
    orders        -- List ledger orders (``--needs-review`` for orphans)
    limits        -- Show or update risk limits and trading mode
    kill-switch   -- activate / deactivate
    submit        -- Enqueue a manual ORDER_SUBMIT
    reconcile     -- Run a reconciliation now against the brokerage
    unreal        -- Identify (and optionally cancel) unreal brokerage orders
    run           -- Start the long-running engine (worker + reconciliation)

Commands that only read or enqueue never connect to the brokerage; a
running engine picks the enqueued items up on its next poll.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from orderkeeper.cli.formatters import (
    format_limits_panel,
    format_orders_table,
    format_reconciliation_report,
    format_status_table,
    format_unreal_orders_table,
    format_work_items_table,
)
from orderkeeper.config.settings import EngineConfig
from orderkeeper.errors import InvalidWorkItemError
from orderkeeper.execution.runner import ExecutionEngine
from orderkeeper.execution.types import OrderIntent, OrderStatus
from orderkeeper.logging_setup import configure_logging
from orderkeeper.risk.modes import SubmissionSource
from orderkeeper.work.types import WorkItemFilter, WorkItemStatus, WorkItemType

app = typer.Typer(
    name="orderkeeper",
    help="Durable order execution and reconciliation engine",
    rich_markup_mode="rich",
)
kill_switch_app = typer.Typer(help="Activate or clear the kill switch")
app.add_typer(kill_switch_app, name="kill-switch")
console = Console()

_db_path: Optional[str] = None


def _build_engine() -> ExecutionEngine:
    overrides = {"db_path": _db_path} if _db_path else None
    return ExecutionEngine(EngineConfig.from_env(overrides))


def _fail(message: str, title: str) -> None:
    console.print(Panel(f"[red]{message}[/red]", title=title, border_style="red"))
    raise typer.Exit(1)


@app.callback()
def main(
    db_path: Optional[str] = typer.Option(
        None, "--db-path", help="SQLite database (default: ORDERKEEPER_DB_PATH)"
    ),
    log_level: str = typer.Option("WARNING", help="Log level for engine events"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """Durable order execution and reconciliation engine."""
    global _db_path
    _db_path = db_path
    configure_logging(log_level, json_output=json_logs)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Display engine health: queue depth, dead letters, reviews, kill switch."""
    engine = _build_engine()
    try:
        counts = {s.value: engine.get_work_item_count(status=s) for s in WorkItemStatus}
        needs_review = len(engine.ledger.list_orders(needs_review=True, limit=10_000))
        runs = engine.ledger.list_reconciliation_runs(limit=1)
        table = format_status_table(
            counts, engine.get_risk_limits(), needs_review, runs[0] if runs else None
        )
    finally:
        engine.close()
    console.print(table)


# ---------------------------------------------------------------------------
# work items
# ---------------------------------------------------------------------------


@app.command(name="work-items")
def work_items(
    status: Optional[str] = typer.Option(None, help="Filter by status, e.g. DEAD_LETTER"),
    type: Optional[str] = typer.Option(None, help="Filter by type, e.g. ORDER_SUBMIT"),
    since: Optional[str] = typer.Option(None, help="Created on or after (ISO 8601)"),
    limit: int = typer.Option(50, help="Maximum number of results to display"),
) -> None:
    """List work items, newest first."""
    try:
        item_filter = WorkItemFilter(
            status=WorkItemStatus(status.upper()) if status else None,
            type=WorkItemType(type.upper()) if type else None,
            since=since,
            limit=limit,
        )
    except ValueError as exc:
        _fail(str(exc), "Work Items")

    engine = _build_engine()
    try:
        items = engine.get_work_items(item_filter)
    finally:
        engine.close()

    if not items:
        console.print(
            Panel(
                "[dim]No work items found matching the given filters.[/dim]",
                title="Work Items",
                border_style="dim",
            )
        )
        return

    console.print(format_work_items_table(items))
    console.print(f"\n[dim]{len(items)} result(s) shown[/dim]")


@app.command()
def retry(item_id: str = typer.Argument(help="Dead-lettered work item id")) -> None:
    """Move a DEAD_LETTER item back to PENDING with a fresh attempt budget."""
    engine = _build_engine()
    try:
        item = engine.retry_work_item(item_id)
    finally:
        engine.close()
    if item is None:
        _fail(f"No DEAD_LETTER work item with id {item_id}", "Retry")
    console.print(
        Panel(
            f"[green]{item.type.value} {item.id} is PENDING again[/green]",
            title="Retry",
            border_style="green",
        )
    )


@app.command(name="dead-letter")
def dead_letter(
    item_id: str = typer.Argument(help="PENDING work item id"),
    reason: str = typer.Option("operator", help="Recorded as the item's last error"),
) -> None:
    """Force a PENDING item to DEAD_LETTER so it never runs."""
    engine = _build_engine()
    try:
        item = engine.force_dead_letter(item_id, reason)
    finally:
        engine.close()
    if item is None:
        _fail(f"No PENDING work item with id {item_id}", "Dead Letter")
    console.print(
        Panel(
            f"[yellow]{item.type.value} {item.id} dead-lettered[/yellow]",
            title="Dead Letter",
            border_style="yellow",
        )
    )


# ---------------------------------------------------------------------------
# orders
# ---------------------------------------------------------------------------


@app.command()
def orders(
    status: Optional[str] = typer.Option(None, help="Filter by status, e.g. SUBMITTED"),
    symbol: Optional[str] = typer.Option(None, help="Filter by symbol"),
    needs_review: bool = typer.Option(
        False, "--needs-review", help="Only orders flagged for operator review"
    ),
    limit: int = typer.Option(50, help="Maximum number of results to display"),
) -> None:
    """List ledger orders."""
    try:
        order_status = OrderStatus(status.upper()) if status else None
    except ValueError as exc:
        _fail(str(exc), "Orders")

    engine = _build_engine()
    try:
        records = engine.ledger.list_orders(
            status=order_status,
            symbol=symbol.upper() if symbol else None,
            needs_review=True if needs_review else None,
            limit=limit,
        )
    finally:
        engine.close()

    if not records:
        console.print(
            Panel(
                "[dim]No orders found matching the given filters.[/dim]",
                title="Orders",
                border_style="dim",
            )
        )
        return

    console.print(format_orders_table(records))
    console.print(f"\n[dim]{len(records)} order(s) shown[/dim]")


# ---------------------------------------------------------------------------
# limits / kill switch
# ---------------------------------------------------------------------------


@app.command()
def limits(
    max_position_size: Optional[float] = typer.Option(None, help="Percent of equity"),
    max_total_exposure: Optional[float] = typer.Option(None, help="Percent of equity"),
    max_positions: Optional[int] = typer.Option(None, help="Open positions"),
    daily_loss_limit: Optional[float] = typer.Option(None, help="Percent of prior equity"),
    mode: Optional[str] = typer.Option(None, help="autonomous, semi-auto or manual"),
) -> None:
    """Show risk limits; update them when any option is given."""
    changes = {
        key: value
        for key, value in (
            ("max_position_size_percent", max_position_size),
            ("max_total_exposure_percent", max_total_exposure),
            ("max_positions_count", max_positions),
            ("daily_loss_limit_percent", daily_loss_limit),
            ("mode", mode),
        )
        if value is not None
    }

    engine = _build_engine()
    try:
        current = engine.update_risk_limits(**changes) if changes else engine.get_risk_limits()
    except ValueError as exc:
        engine.close()
        _fail(str(exc), "Risk Limits")
    engine.close()
    console.print(format_limits_panel(current))


@kill_switch_app.command("activate")
def kill_switch_activate(
    reason: str = typer.Option(..., help="Why trading is being stopped"),
    close_positions: bool = typer.Option(
        False, "--close-positions", help="Also flatten every position"
    ),
) -> None:
    """Refuse new submissions now and queue cancel-all (and flatten)."""
    engine = _build_engine()
    try:
        item = engine.activate_kill_switch(reason, close_positions=close_positions)
        current = engine.get_risk_limits()
    finally:
        engine.close()
    console.print(format_limits_panel(current))
    console.print(f"[dim]KILL_SWITCH work item {item.id} queued[/dim]")


@kill_switch_app.command("deactivate")
def kill_switch_deactivate(
    by: str = typer.Option("operator", help="Recorded as the operator clearing it"),
) -> None:
    """Clear the kill switch. Nothing else ever clears it."""
    engine = _build_engine()
    try:
        current = engine.deactivate_kill_switch(by)
    finally:
        engine.close()
    console.print(format_limits_panel(current))


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------


@app.command()
def submit(
    symbol: str = typer.Argument(help="Ticker"),
    side: str = typer.Argument(help="buy or sell"),
    qty: Optional[float] = typer.Option(None, help="Share quantity"),
    notional: Optional[float] = typer.Option(None, help="Dollar amount (market orders)"),
    limit_price: Optional[float] = typer.Option(None, help="Limit price; implies a limit order"),
    reference_price: Optional[float] = typer.Option(
        None, help="Price the risk gate sizes market orders with"
    ),
    client_order_id: Optional[str] = typer.Option(None, help="Generated if omitted"),
    time_in_force: str = typer.Option("day", help="day or gtc"),
) -> None:
    """Enqueue a manual ORDER_SUBMIT; a running engine executes it."""
    intent = OrderIntent(
        client_order_id=client_order_id or "",
        symbol=symbol.upper(),
        side=side.lower(),
        qty=qty,
        notional=notional,
        order_type="limit" if limit_price is not None else "market",
        limit_price=limit_price,
        time_in_force=time_in_force,
        reference_price=reference_price,
    )
    engine = _build_engine()
    try:
        item = engine.submit_order(intent, source=SubmissionSource.MANUAL)
    except InvalidWorkItemError as exc:
        engine.close()
        _fail(str(exc), "Submit")
    engine.close()
    console.print(
        Panel(
            f"[green]Queued {intent.side.upper()} {intent.symbol}[/green]\n\n"
            f"  Client order id:  {intent.client_order_id}\n"
            f"  Work item:        {item.id}\n"
            f"  Status:           {item.status.value}",
            title="Submit",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# brokerage-connected commands
# ---------------------------------------------------------------------------


async def _with_broker(engine: ExecutionEngine, operation):
    await engine.broker.connect()
    try:
        return await operation()
    finally:
        await engine.broker.disconnect()


@app.command()
def reconcile() -> None:
    """Reconcile the ledger against the brokerage now."""
    engine = _build_engine()
    try:
        report = asyncio.run(_with_broker(engine, engine.reconcile_now))
    except Exception as exc:
        engine.close()
        _fail(f"Reconciliation failed: {exc}", "Reconcile")
    engine.close()
    console.print(format_reconciliation_report(report))


@app.command()
def unreal(
    cleanup: bool = typer.Option(
        False, "--cleanup", help="Cancel unreal orders that are still open"
    ),
) -> None:
    """Identify brokerage orders that will never become real positions."""
    engine = _build_engine()

    async def scan() -> tuple[list, dict | None]:
        found = await engine.identify_unreal_orders()
        if cleanup and found:
            return found, await engine.cleanup_unreal_orders()
        return found, None

    try:
        unreal_orders, result = asyncio.run(_with_broker(engine, scan))
    except Exception as exc:
        engine.close()
        _fail(f"Brokerage scan failed: {exc}", "Unreal Orders")
    engine.close()

    if not unreal_orders:
        console.print(
            Panel("[green]No unreal orders.[/green]", title="Unreal Orders", border_style="green")
        )
        return
    console.print(format_unreal_orders_table(unreal_orders))
    if result is not None:
        console.print(
            f"\n[dim]{len(result['canceled'])} canceled, {len(result['failed'])} failed[/dim]"
        )


@app.command()
def run(
    yes_i_mean_live: bool = typer.Option(
        False,
        "--yes-i-mean-live",
        help="Required confirmation flag for live trading ports",
    ),
) -> None:
    """Start the engine: worker poll loop plus periodic reconciliation."""
    engine = _build_engine()
    if engine.is_live and not yes_i_mean_live:
        engine.close()
        console.print(
            Panel(
                "[bold red]DANGER: Live trading port detected![/bold red]\n\n"
                f"Port {engine.config.broker_port} is a LIVE trading port.\n"
                "Add [bold]--yes-i-mean-live[/bold] and set "
                "ORDERKEEPER_LIVE_CONFIRMED=true to trade a live account.\n\n"
                "[dim]Paper trading ports: 4002 (Gateway), 7497 (TWS)[/dim]",
                title="Live Port Warning",
                border_style="red",
            )
        )
        raise typer.Exit(1)

    mode = "LIVE" if engine.is_live else "PAPER"
    color = "red" if engine.is_live else "green"
    console.print(
        Panel(
            f"[bold {color}]{mode} TRADING[/bold {color}]\n\n"
            f"  Port:        {engine.config.broker_port}\n"
            f"  Client ID:   {engine.config.broker_client_id}\n"
            f"  Database:    {engine.config.db_path}\n"
            f"  Worker:      {engine.worker.worker_id}\n"
            f"  Reconcile:   every {engine.config.reconcile_interval_seconds}s",
            title=f"OrderKeeper Engine ({mode})",
            border_style=color,
        )
    )

    async def serve() -> None:
        await engine.start()
        try:
            await asyncio.Event().wait()
        finally:
            await engine.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        console.print("[yellow]Engine stopped[/yellow]")
    except (ValueError, ConnectionError, OSError) as exc:
        engine.close()
        _fail(f"Engine failed to start: {exc}", "OrderKeeper Engine")
