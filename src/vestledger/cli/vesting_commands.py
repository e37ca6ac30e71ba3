#!/usr/bin/env python3
"""
vestledger CLI - vesting administration and reporting

Operates on a local SQLite snapshot holding the custody token, the
capability assignments and the engine state:
- Deployment (init) and allocation plans (setup)
- Schedule management (add, revoke, restore)
- Releases (release, release-for)
- Admin controls (pause, unpause, set-start, set-cap, grant-role, revoke-role)
- The emergency withdrawal escape hatch
- Status, schedule and category reports

The CLI is the invoking context, so it is the only place the system clock is
read; ``--now`` overrides it for simulations and audits.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vestledger.core import config
from vestledger.core.access_control import Capability, RoleBasedCapabilityChecker
from vestledger.core.categories import VestingCategory, default_category_caps
from vestledger.core.config import ConfigurationError, load_allocation_plan
from vestledger.core.structured_logger import LogContext, configure_logging
from vestledger.core.token_ledger import CustodyToken, TokenLedgerError
from vestledger.core.vesting_engine import VestingEngine
from vestledger.core.vesting_exceptions import (
    VestingError,
    get_error_context,
    is_recoverable_error,
)
from vestledger.database.storage_manager import (
    ENGINE_KEY,
    ROLES_KEY,
    TOKEN_KEY,
    StorageManager,
)

logger = logging.getLogger(__name__)
console = Console()

DAY = 86400
DEFAULT_CUSTODY_ADDRESS = "vestledger-custody"

CLI_ERRORS = (VestingError, ConfigurationError, TokenLedgerError, click.ClickException)


def _cli_fail(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler for consistent messaging."""
    logger.error("CLI error: %s", exc, extra={"event": "cli.error", **get_error_context(exc)})
    console.print(f"[bold red]Error:[/] {exc}")
    if is_recoverable_error(exc):
        console.print("[yellow]This error is transient; the command can be retried.[/]")
    sys.exit(exit_code)


def to_base_units(amount: str, decimals: int) -> int:
    """Convert a whole-token decimal string to base units."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise click.BadParameter(f"Invalid amount: {amount}") from None
    scaled = value * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise click.BadParameter(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def format_amount(base_units: int, decimals: int) -> str:
    value = Decimal(base_units) / (Decimal(10) ** decimals)
    text = f"{value:,.{min(decimals, 6)}f}"
    return text.rstrip("0").rstrip(".") if "." in text else text


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class VestingSession:
    """Loads the persisted token, capabilities and engine, and saves them back."""

    def __init__(self, db_path: Path):
        self.storage = StorageManager(db_path)
        self.token: Optional[CustodyToken] = None
        self.capabilities: Optional[RoleBasedCapabilityChecker] = None
        self.engine: Optional[VestingEngine] = None

    @property
    def initialized(self) -> bool:
        return self.storage.has(ENGINE_KEY)

    def load(self) -> VestingEngine:
        if not self.initialized:
            raise click.ClickException("No vesting state found. Run 'vestledger init' first.")
        self.token = CustodyToken.from_dict(self.storage.get(TOKEN_KEY))
        self.capabilities = RoleBasedCapabilityChecker.from_dict(self.storage.get(ROLES_KEY))
        self.engine = VestingEngine.from_dict(
            self.storage.get(ENGINE_KEY), self.token, self.capabilities
        )
        return self.engine

    def save(self) -> None:
        self.storage.set_many({
            TOKEN_KEY: self.token.to_dict(),
            ROLES_KEY: self.capabilities.to_dict(),
            ENGINE_KEY: self.engine.to_dict(),
        })

    def close(self) -> None:
        self.storage.close()


def _session(ctx: click.Context) -> VestingSession:
    session = VestingSession(ctx.obj["db"])
    ctx.call_on_close(session.close)
    return session


def _decimals(session: VestingSession) -> int:
    return session.token.decimals if session.token else config.TOKEN_DECIMALS


def _emit(ctx: click.Context, payload: dict[str, Any], message: str) -> None:
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        console.print(message)


caller_option = click.option(
    "--caller",
    envvar="VESTLEDGER_CALLER",
    required=True,
    help="Identity performing the action",
)


@click.group()
@click.option(
    "--db",
    type=click.Path(dir_okay=False, path_type=Path),
    default=lambda: str(config.STATE_DB_PATH),
    help="State database file",
    show_default="~/.vestledger/vesting_state.db",
)
@click.option("--now", "now_override", type=int, help="Unix time to use instead of the system clock")
@click.option("--json-output", is_flag=True, help="Output raw JSON")
@click.option("--verbose", is_flag=True, help="Show info-level logs on the console")
@click.pass_context
def cli(ctx: click.Context, db: Path, now_override: Optional[int], json_output: bool, verbose: bool):
    """
    vestledger - token vesting administration

    Manage capped allocation categories, per-beneficiary vesting schedules,
    releases and the emergency withdrawal escape hatch.
    """
    ctx.ensure_object(dict)
    configure_logging(
        log_dir=config.LOG_DIR,
        log_level=config.LOG_LEVEL,
        json_logs=config.JSON_LOGS,
        console_level="INFO" if verbose else "WARNING",
    )
    ctx.with_resource(LogContext())

    ctx.obj["db"] = Path(db)
    ctx.obj["now"] = now_override if now_override is not None else int(time.time())
    ctx.obj["json_output"] = json_output


# ============================================================================
# Deployment
# ============================================================================


@cli.command("init")
@click.option("--admin", required=True, help="Address receiving every capability")
@click.option("--start", "start", type=int, help="Global vesting start (unix time)")
@click.option("--start-in-days", type=int, default=14, show_default=True, help="Start this many days from now")
@click.option("--name", default="Vested Token", show_default=True)
@click.option("--symbol", default="VEST", show_default=True)
@click.option("--decimals", type=click.IntRange(0, 36), default=config.TOKEN_DECIMALS, show_default=True)
@click.option("--supply", default="1000000", show_default=True, help="Whole tokens minted into custody")
@click.option("--custody", default=DEFAULT_CUSTODY_ADDRESS, show_default=True, help="Custody address of the engine")
@click.option("--force", is_flag=True, help="Overwrite existing state")
@click.pass_context
def init_command(
    ctx: click.Context,
    admin: str,
    start: Optional[int],
    start_in_days: int,
    name: str,
    symbol: str,
    decimals: int,
    supply: str,
    custody: str,
    force: bool,
):
    """Deploy a custody token and vesting engine with launch category caps."""
    now = ctx.obj["now"]
    session = _session(ctx)
    try:
        if session.initialized and not force:
            raise click.ClickException("Vesting state already exists. Use --force to overwrite.")

        global_start = start if start is not None else now + start_in_days * DAY
        token = CustodyToken(name=name, symbol=symbol, decimals=decimals, owner=admin.lower())
        engine = VestingEngine.deploy(
            token,
            custody,
            admin,
            global_start,
            now=now,
            category_caps=default_category_caps(decimals),
        )
        token.mint(admin, engine.custody_address, to_base_units(supply, decimals))

        session.token = token
        session.capabilities = engine.capabilities
        session.engine = engine
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)

    _emit(
        ctx,
        {"global_vesting_start": global_start, "custody": engine.custody_address, **engine.get_contract_stats()},
        f"[bold green]Vesting engine deployed.[/] Global start {_format_time(global_start)}, "
        f"custody {engine.custody_address} holds {format_amount(engine.custody_balance(), decimals)} {symbol}",
    )


@cli.command("setup")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@caller_option
@click.pass_context
def setup_command(ctx: click.Context, plan_file: Path, caller: str):
    """
    Create every schedule of a YAML allocation plan in one batch.

    Example plan:

    \b
        category_caps:
          core_team: 200000
        schedules:
          - beneficiary: "0xabc..."
            amount: 50000
            category: core_team
            cliff_days: 365
            duration_days: 1095
    """
    now = ctx.obj["now"]
    session = _session(ctx)
    try:
        engine = session.load()
        decimals = _decimals(session)
        plan = load_allocation_plan(plan_file)

        for category_name, tokens in plan.get("category_caps", {}).items():
            engine.update_category_allocation(
                caller, VestingCategory.parse(category_name), to_base_units(tokens, decimals), now=now
            )

        entries = []
        for item in plan.get("schedules", []):
            try:
                entries.append({
                    "beneficiary": item["beneficiary"],
                    "amount": to_base_units(item["amount"], decimals),
                    "category": item["category"],
                    "start": item.get("start"),
                    "cliff": int(item.get("cliff_days", 0)) * DAY,
                    "duration": int(item["duration_days"]) * DAY,
                })
            except KeyError as exc:
                raise ConfigurationError(f"Plan schedule missing field {exc}") from None

        created = engine.add_vesting_batch(caller, entries, now=now) if entries else []
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)

    _emit(
        ctx,
        {"created": [schedule.to_dict() for schedule in created]},
        f"[bold green]Created {len(created)} vesting schedule(s)[/] from {plan_file}",
    )


# ============================================================================
# Schedules
# ============================================================================


@cli.command("add")
@click.argument("beneficiary")
@click.argument("amount")
@click.option(
    "--category",
    type=click.Choice([c.value for c in VestingCategory]),
    required=True,
)
@click.option("--cliff-days", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--duration-days", type=click.IntRange(min=1), required=True)
@click.option("--start", type=int, help="Custom start (unix time); defaults to the global start")
@caller_option
@click.pass_context
def add_command(
    ctx: click.Context,
    beneficiary: str,
    amount: str,
    category: str,
    cliff_days: int,
    duration_days: int,
    start: Optional[int],
    caller: str,
):
    """Create a vesting schedule (AMOUNT in whole tokens)."""
    now = ctx.obj["now"]
    session = _session(ctx)
    try:
        engine = session.load()
        decimals = _decimals(session)
        schedule = engine.add_vesting(
            caller,
            beneficiary,
            to_base_units(amount, decimals),
            start,
            cliff_days * DAY,
            duration_days * DAY,
            category,
            now=now,
        )
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)

    _emit(
        ctx,
        schedule.to_dict(),
        f"[bold green]Vesting added[/] for {schedule.beneficiary}: "
        f"{format_amount(schedule.total_amount, decimals)} ({schedule.category.value})",
    )


@cli.command("revoke")
@click.argument("beneficiary")
@caller_option
@click.pass_context
def revoke_command(ctx: click.Context, beneficiary: str, caller: str):
    """Revoke a beneficiary's schedule."""
    session = _session(ctx)
    try:
        schedule = session.load().revoke_vesting(caller, beneficiary, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(ctx, schedule.to_dict(), f"[yellow]Vesting revoked[/] for {schedule.beneficiary}")


@cli.command("restore")
@click.argument("beneficiary")
@caller_option
@click.pass_context
def restore_command(ctx: click.Context, beneficiary: str, caller: str):
    """Restore a revoked schedule."""
    session = _session(ctx)
    try:
        schedule = session.load().restore_vesting(caller, beneficiary, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(ctx, schedule.to_dict(), f"[green]Vesting restored[/] for {schedule.beneficiary}")


# ============================================================================
# Releases
# ============================================================================


@cli.command("release")
@click.argument("beneficiary", required=False)
@caller_option
@click.pass_context
def release_command(ctx: click.Context, beneficiary: Optional[str], caller: str):
    """Release vested tokens (the caller's own unless BENEFICIARY is given)."""
    session = _session(ctx)
    try:
        result = session.load().release(caller, beneficiary, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    decimals = _decimals(session)
    _emit(
        ctx,
        asdict(result),
        f"[bold green]Released[/] {format_amount(result.amount, decimals)} to {result.beneficiary}",
    )


@cli.command("release-for")
@click.argument("beneficiary")
@caller_option
@click.pass_context
def release_for_command(ctx: click.Context, beneficiary: str, caller: str):
    """Release vested tokens on behalf of a beneficiary."""
    session = _session(ctx)
    try:
        result = session.load().release_for(caller, beneficiary, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    decimals = _decimals(session)
    _emit(
        ctx,
        asdict(result),
        f"[bold green]Released[/] {format_amount(result.amount, decimals)} to {result.beneficiary}",
    )


# ============================================================================
# Admin controls
# ============================================================================


@cli.command("pause")
@caller_option
@click.pass_context
def pause_command(ctx: click.Context, caller: str):
    """Pause releases."""
    session = _session(ctx)
    try:
        session.load().pause(caller, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(ctx, {"paused": True}, "[yellow]Releases paused[/]")


@cli.command("unpause")
@caller_option
@click.pass_context
def unpause_command(ctx: click.Context, caller: str):
    """Resume releases."""
    session = _session(ctx)
    try:
        session.load().unpause(caller, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(ctx, {"paused": False}, "[green]Releases resumed[/]")


@cli.command("set-start")
@click.argument("new_start", type=int)
@caller_option
@click.pass_context
def set_start_command(ctx: click.Context, new_start: int, caller: str):
    """Move the global vesting start (only before it has passed)."""
    session = _session(ctx)
    try:
        previous = session.load().update_global_vesting_start(caller, new_start, now=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(
        ctx,
        {"previous": previous, "global_vesting_start": new_start},
        f"Global vesting start moved from {_format_time(previous)} to {_format_time(new_start)}",
    )


@cli.command("set-cap")
@click.argument("category", type=click.Choice([c.value for c in VestingCategory]))
@click.argument("amount")
@caller_option
@click.pass_context
def set_cap_command(ctx: click.Context, category: str, amount: str, caller: str):
    """Change a category cap (AMOUNT in whole tokens)."""
    session = _session(ctx)
    try:
        engine = session.load()
        decimals = _decimals(session)
        previous = engine.update_category_allocation(
            caller, category, to_base_units(amount, decimals), now=ctx.obj["now"]
        )
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(
        ctx,
        {"category": category, "previous": previous, **engine.get_category_stats(category)},
        f"Cap for {category}: {format_amount(previous, decimals)} -> {amount}",
    )


@cli.command("grant-role")
@click.argument("role", type=click.Choice([c.value for c in Capability]))
@click.argument("address")
@caller_option
@click.pass_context
def grant_role_command(ctx: click.Context, role: str, address: str, caller: str):
    """Grant a capability to an address."""
    session = _session(ctx)
    try:
        session.load()
        session.capabilities.grant_role(caller, Capability(role), address, timestamp=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(ctx, {"role": role, "address": address.strip().lower()}, f"Granted {role} to {address}")


@cli.command("revoke-role")
@click.argument("role", type=click.Choice([c.value for c in Capability]))
@click.argument("address")
@caller_option
@click.pass_context
def revoke_role_command(ctx: click.Context, role: str, address: str, caller: str):
    """Revoke a capability from an address."""
    session = _session(ctx)
    try:
        session.load()
        session.capabilities.revoke_role(caller, Capability(role), address, timestamp=ctx.obj["now"])
        session.save()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    _emit(ctx, {"role": role, "address": address.strip().lower()}, f"Revoked {role} from {address}")


@cli.command("emergency-withdraw")
@click.argument("to")
@click.argument("amount")
@click.option("--reason", required=True, help="Mandatory justification recorded in the audit trail")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@caller_option
@click.pass_context
def emergency_withdraw_command(ctx: click.Context, to: str, amount: str, reason: str, yes: bool, caller: str):
    """Move tokens out of custody, bypassing all schedule accounting."""
    session = _session(ctx)
    try:
        engine = session.load()
        decimals = _decimals(session)
        base_units = to_base_units(amount, decimals)
        if not yes:
            click.confirm(
                f"Withdraw {amount} tokens from custody to {to}, bypassing vesting accounting?",
                abort=True,
            )
        record = engine.emergency_withdraw(caller, to, base_units, reason, now=ctx.obj["now"])
        session.save()
        solvency = engine.solvency_report()
    except CLI_ERRORS as exc:
        _cli_fail(exc)

    message = f"[bold red]Emergency withdrawal[/] of {amount} to {record['to']} recorded"
    if not solvency["solvent"]:
        message += (
            f"\n[bold red]Warning:[/] custody is short of obligations by "
            f"{format_amount(-solvency['surplus'], decimals)}"
        )
    _emit(ctx, {"withdrawal": record, "solvency": solvency}, message)


# ============================================================================
# Reports
# ============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context):
    """Show contract totals, solvency and category usage."""
    session = _session(ctx)
    try:
        engine = session.load()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    decimals = _decimals(session)

    stats = engine.get_contract_stats()
    solvency = engine.solvency_report()
    payload = {
        **stats,
        "global_vesting_start": engine.global_vesting_start,
        "paused": engine.paused,
        "schedules": len(engine.schedules),
        "solvency": solvency,
        "categories": engine.get_all_category_stats(),
    }
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(show_header=False, box=box.ROUNDED)
    table.add_row("[bold cyan]Global Start", _format_time(engine.global_vesting_start))
    table.add_row("[bold cyan]Paused", "yes" if engine.paused else "no")
    table.add_row("[bold cyan]Schedules", str(len(engine.schedules)))
    table.add_row("[bold green]Total Allocated", format_amount(stats["total_allocated"], decimals))
    table.add_row("[bold green]Total Released", format_amount(stats["total_released"], decimals))
    table.add_row("[bold yellow]Custody Balance", format_amount(stats["custody_balance"], decimals))
    table.add_row("[bold yellow]Obligations", format_amount(solvency["obligations"], decimals))
    table.add_row(
        "[bold magenta]Solvent",
        "[green]yes[/]" if solvency["solvent"] else "[bold red]NO[/]",
    )
    console.print(Panel(table, title="[bold green]Vesting Status", border_style="green"))
    console.print(_category_table(engine, decimals))


@cli.command("categories")
@click.pass_context
def categories_command(ctx: click.Context):
    """Show category caps and usage."""
    session = _session(ctx)
    try:
        engine = session.load()
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(engine.get_all_category_stats(), indent=2))
        return
    console.print(_category_table(engine, _decimals(session)))


@cli.command("schedule")
@click.argument("beneficiary")
@click.pass_context
def schedule_command(ctx: click.Context, beneficiary: str):
    """Show a beneficiary's schedule with vested and releasable amounts."""
    session = _session(ctx)
    try:
        engine = session.load()
        info = engine.get_vesting_info(beneficiary, now=ctx.obj["now"])
    except CLI_ERRORS as exc:
        _cli_fail(exc)
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(info, indent=2))
        return

    decimals = _decimals(session)
    table = Table(show_header=False, box=box.ROUNDED)
    table.add_row("[bold cyan]Beneficiary", info["beneficiary"])
    table.add_row("[bold cyan]Category", info["category"])
    table.add_row("[bold green]Total", format_amount(info["total_amount"], decimals))
    table.add_row("[bold green]Vested", format_amount(info["vested_amount"], decimals))
    table.add_row("[bold green]Released", format_amount(info["released_amount"], decimals))
    table.add_row("[bold yellow]Releasable", format_amount(info["releasable_amount"], decimals))
    table.add_row("[cyan]Start", _format_time(info["effective_start"]))
    table.add_row("[cyan]Cliff Ends", _format_time(info["cliff_end"]))
    table.add_row("[cyan]Vesting Ends", _format_time(info["vesting_end"]))
    table.add_row("[cyan]Revoked", "[red]yes[/]" if info["revoked"] else "no")
    console.print(Panel(table, title="[bold green]Vesting Schedule", border_style="green"))


def _category_table(engine: VestingEngine, decimals: int) -> Table:
    table = Table(title="Allocation Categories", box=box.SIMPLE)
    table.add_column("Category", style="cyan")
    table.add_column("Allocated", justify="right", style="green")
    table.add_column("Cap", justify="right")
    table.add_column("Remaining", justify="right", style="yellow")
    for name, stats in engine.get_all_category_stats().items():
        table.add_row(
            name,
            format_amount(stats["allocated"], decimals),
            format_amount(stats["max_allocation"], decimals),
            format_amount(stats["remaining"], decimals),
        )
    return table
