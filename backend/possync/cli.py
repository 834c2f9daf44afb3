# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/possync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to possync (PowerShell: $env:FLASK_APP="possync").
# - Use: python -m flask <group> <command> [options]
#
# Branches:
# - python -m flask branches create --tenant-id <uuid> --name "Riverside"
# - python -m flask branches list [--tenant-id <uuid>]
# - python -m flask branches freeze --tenant-id <uuid> --branch-id <uuid>
#   Frozen branches reject every sync operation (BRANCH_FROZEN).
# - python -m flask branches unfreeze --tenant-id <uuid> --branch-id <uuid>
#
# Registers:
# - python -m flask registers create --tenant-id <uuid> --branch-id <uuid> --name "Front Counter"
# - python -m flask registers list --tenant-id <uuid> [--branch-id <uuid>] [--all]
# - python -m flask registers deactivate --tenant-id <uuid> --register-id <uuid>
#
# Cash sessions (manager):
# - python -m flask cash take-over --tenant-id <uuid> --branch-id <uuid> [--register-id <uuid>] --actor-id <uuid> --reason "Shift change"
# - python -m flask cash force-close --tenant-id <uuid> --session-id <uuid> --actor-id <uuid> --reason "Cashier left" [--counted-usd 120]
# - python -m flask cash paid-in --tenant-id <uuid> --session-id <uuid> --actor-id <uuid> --amount-usd 20 --reason "Change top-up"
# - python -m flask cash paid-out --tenant-id <uuid> --session-id <uuid> --actor-id <uuid> --amount-usd 15 --reason "Ice delivery" [--manager-approved]
#   Paid-outs above CASH_PAID_OUT_LIMIT_USD/KHR need --manager-approved.
#
# Sales policies:
# - python -m flask policies set --tenant-id <uuid> --branch-id <uuid> --fx-rate 4100 --vat-percent 10 --rounding-mode NEAREST
# - python -m flask policies show --tenant-id <uuid> --branch-id <uuid>
# - python -m flask policies add-discount --tenant-id <uuid> --branch-id <uuid> --scope ORDER --type percentage --value 10
#
# Menu:
# - python -m flask menu add-item --tenant-id <uuid> --name "Iced Coffee" --price-usd 1.50
# - python -m flask menu set-availability --branch-id <uuid> --menu-item-id <uuid> [--unavailable] [--price-usd 1.75]
#
# Outbox:
# - python -m flask outbox pending [--limit 20]
# - python -m flask outbox dispatch [--limit 100]
#   Deliver pending events to the built-in consumers (cash movements).
# - python -m flask outbox cleanup [--retention-days 7]
#
# Sync ledger:
# - python -m flask sync show --tenant-id <uuid> --client-op-id <uuid>
#
# Sales & audit:
# - python -m flask sales show --tenant-id <uuid> --sale-id <uuid>
# - python -m flask audit list --tenant-id <uuid> [--action SYNC_OPERATION_FAILED] [--resource-id <id>]

import json

import click
from flask.cli import with_appcontext

from .domain.cash_session import CashSessionError
from .extensions import db
from .services import (
    audit_service,
    branch_service,
    cash_session_service,
    menu_service,
    operation_ledger_service,
    outbox_service,
    policy_service,
    sales_service,
)
from .services.branch_service import BranchError
from .services.cash_session_service import RegisterError
from .services.menu_service import MenuError
from .services.policy_service import PolicyError
from .validation import ValidationError


# =============================================================================
# BRANCHES
# =============================================================================

@click.group('branches')
def branches_group():
    """Branch management commands."""


@branches_group.command('create')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--name', required=True, help='Branch name')
@click.option('--branch-id', help='Explicit branch ID (uuid); generated if omitted')
@with_appcontext
def create_branch_cli(tenant_id, name, branch_id):
    try:
        branch = branch_service.create_branch(tenant_id, name, branch_id=branch_id)
    except BranchError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id})")


@branches_group.command('list')
@click.option('--tenant-id', help='Filter by tenant ID')
@with_appcontext
def list_branches_cli(tenant_id):
    branches = branch_service.list_branches(tenant_id)
    if not branches:
        click.echo("No branches found")
        return
    for branch in branches:
        click.echo(f"{branch.id}  {branch.status:<7} {branch.name}  (tenant {branch.tenant_id})")


@branches_group.command('freeze')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--actor-id', help='Actor recorded in the audit log')
@with_appcontext
def freeze_branch_cli(tenant_id, branch_id, actor_id):
    try:
        branch = branch_service.freeze_branch(tenant_id, branch_id, actor_id=actor_id)
    except BranchError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Branch {branch.id} is {branch.status}")


@branches_group.command('unfreeze')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--actor-id', help='Actor recorded in the audit log')
@with_appcontext
def unfreeze_branch_cli(tenant_id, branch_id, actor_id):
    try:
        branch = branch_service.unfreeze_branch(tenant_id, branch_id, actor_id=actor_id)
    except BranchError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Branch {branch.id} is {branch.status}")


# =============================================================================
# REGISTERS
# =============================================================================

@click.group('registers')
def registers_group():
    """Cash register management commands."""


@registers_group.command('create')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--name', required=True, help='Register name')
@with_appcontext
def create_register_cli(tenant_id, branch_id, name):
    """
    Create a new cash register.

    Example:
        flask registers create --tenant-id <uuid> --branch-id <uuid> --name "Front Counter 1"
    """
    try:
        register = cash_session_service.create_register(tenant_id, branch_id, name)
    except RegisterError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created register: {register.name}")
    click.echo(f"   Register ID: {register.id}")


@registers_group.command('list')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', help='Filter by branch ID')
@click.option('--all', 'show_all', is_flag=True, help='Show inactive registers too')
@with_appcontext
def list_registers_cli(tenant_id, branch_id, show_all):
    registers = cash_session_service.list_registers(tenant_id, branch_id, include_inactive=show_all)
    if not registers:
        click.echo("No registers found")
        return
    for register in registers:
        click.echo(f"{register.id}  {register.status:<8} {register.name}  (branch {register.branch_id})")


@registers_group.command('deactivate')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--register-id', required=True, help='Register ID')
@with_appcontext
def deactivate_register_cli(tenant_id, register_id):
    try:
        register = cash_session_service.deactivate_register(tenant_id, register_id)
    except RegisterError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Register {register.id} is {register.status}")


# =============================================================================
# CASH SESSIONS (manager)
# =============================================================================

@click.group('cash')
def cash_group():
    """Manager cash session commands."""


@cash_group.command('take-over')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--register-id', help='Register ID (omit for the branch session)')
@click.option('--actor-id', required=True, help='Manager taking the drawer over')
@click.option('--reason', required=True, help='Why the session is taken over')
@click.option('--float-usd', type=float, default=0, help='Opening float of the new session (USD)')
@click.option('--float-khr', type=int, default=0, help='Opening float of the new session (KHR)')
@with_appcontext
def take_over_cli(tenant_id, branch_id, register_id, actor_id, reason, float_usd, float_khr):
    try:
        new_session = cash_session_service.take_over_session(
            tenant_id=tenant_id,
            branch_id=branch_id,
            register_id=register_id,
            new_opened_by=actor_id,
            reason=reason,
            opening_float_usd=float_usd,
            opening_float_khr=float_khr,
            actor_role='manager',
        )
    except (CashSessionError, ValidationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Session taken over: {new_session.id}")


@cash_group.command('force-close')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--session-id', required=True, help='Session ID')
@click.option('--actor-id', required=True, help='Manager closing the session')
@click.option('--reason', required=True, help='Why the session is force-closed')
@click.option('--counted-usd', type=float, help='Counted USD (defaults to expected)')
@click.option('--counted-khr', type=int, help='Counted KHR (defaults to expected)')
@with_appcontext
def force_close_cli(tenant_id, session_id, actor_id, reason, counted_usd, counted_khr):
    try:
        closed = cash_session_service.force_close_session(
            tenant_id=tenant_id,
            session_id=session_id,
            closed_by=actor_id,
            reason=reason,
            counted_cash_usd=counted_usd,
            counted_cash_khr=counted_khr,
            actor_role='manager',
        )
    except CashSessionError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Session {closed.id} is {closed.status} (variance USD {closed.variance_usd})")


def _movement_cli(movement_type, tenant_id, session_id, actor_id, amount_usd, amount_khr, reason, approved):
    try:
        movement = cash_session_service.record_cash_movement(
            tenant_id=tenant_id,
            session_id=session_id,
            actor_id=actor_id,
            movement_type=movement_type,
            amount_usd=amount_usd,
            amount_khr=amount_khr,
            reason=reason,
            manager_approved=approved,
        )
    except (CashSessionError, ValidationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Recorded {movement.type}: ${movement.amount_usd} / {movement.amount_khr} KHR")


@cash_group.command('paid-in')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--session-id', required=True, help='Session ID')
@click.option('--actor-id', required=True, help='Employee recording the movement')
@click.option('--amount-usd', type=float, default=0, help='Amount (USD)')
@click.option('--amount-khr', type=int, default=0, help='Amount (KHR)')
@click.option('--reason', required=True, help='Reason (3-120 chars)')
@with_appcontext
def paid_in_cli(tenant_id, session_id, actor_id, amount_usd, amount_khr, reason):
    _movement_cli('PAID_IN', tenant_id, session_id, actor_id, amount_usd, amount_khr, reason, False)


@cash_group.command('paid-out')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--session-id', required=True, help='Session ID')
@click.option('--actor-id', required=True, help='Employee recording the movement')
@click.option('--amount-usd', type=float, default=0, help='Amount (USD)')
@click.option('--amount-khr', type=int, default=0, help='Amount (KHR)')
@click.option('--reason', required=True, help='Reason (3-120 chars)')
@click.option('--manager-approved', is_flag=True, help='Allow amounts above the paid-out limit')
@with_appcontext
def paid_out_cli(tenant_id, session_id, actor_id, amount_usd, amount_khr, reason, manager_approved):
    _movement_cli('PAID_OUT', tenant_id, session_id, actor_id, amount_usd, amount_khr, reason, manager_approved)


# =============================================================================
# POLICIES
# =============================================================================

@click.group('policies')
def policies_group():
    """Branch sales policy commands."""


@policies_group.command('set')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--fx-rate', help='KHR per USD')
@click.option('--vat/--no-vat', 'vat_enabled', default=None, help='Enable or disable VAT')
@click.option('--vat-percent', help='VAT rate in percent (e.g. 10)')
@click.option('--rounding/--no-rounding', 'rounding_enabled', default=None, help='KHR cash rounding')
@click.option('--rounding-mode', type=click.Choice(['NEAREST', 'UP', 'DOWN']), help='KHR rounding mode')
@click.option('--rounding-granularity', type=int, help='KHR rounding step (e.g. 100)')
@with_appcontext
def set_policy_cli(tenant_id, branch_id, fx_rate, vat_enabled, vat_percent, rounding_enabled, rounding_mode, rounding_granularity):
    try:
        row = policy_service.set_branch_policy(
            tenant_id,
            branch_id,
            fx_rate_khr_per_usd=fx_rate,
            vat_enabled=vat_enabled,
            vat_rate_percent=vat_percent,
            khr_rounding_enabled=rounding_enabled,
            khr_rounding_mode=rounding_mode,
            khr_rounding_granularity=rounding_granularity,
        )
    except PolicyError as e:
        raise click.ClickException(str(e))
    click.echo("PASS Policy updated")
    click.echo(json.dumps(row.to_dict(), indent=2))


@policies_group.command('show')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@with_appcontext
def show_policy_cli(tenant_id, branch_id):
    row = policy_service.get_branch_policy(tenant_id, branch_id)
    if row is None:
        click.echo("No branch policy; configuration defaults apply")
        return
    click.echo(json.dumps(row.to_dict(), indent=2))


@policies_group.command('add-discount')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--scope', type=click.Choice(['ITEM', 'ORDER']), required=True)
@click.option('--type', 'discount_type', type=click.Choice(['percentage', 'fixed']), required=True)
@click.option('--value', required=True, help='Percent (0-100) or USD amount')
@click.option('--menu-item-id', help='Menu item (ITEM scope only)')
@with_appcontext
def add_discount_cli(tenant_id, branch_id, scope, discount_type, value, menu_item_id):
    try:
        row = policy_service.create_discount_policy(
            tenant_id, branch_id, scope=scope, discount_type=discount_type, value=value, menu_item_id=menu_item_id,
        )
    except PolicyError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created {scope} discount policy {row.id}")


# =============================================================================
# MENU
# =============================================================================

@click.group('menu')
def menu_group():
    """Menu item commands."""


@menu_group.command('add-item')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--name', required=True, help='Item name')
@click.option('--price-usd', required=True, help='Base price in USD')
@with_appcontext
def add_menu_item_cli(tenant_id, name, price_usd):
    try:
        item = menu_service.create_menu_item(tenant_id, name, price_usd)
    except MenuError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created menu item: {item.name} (ID: {item.id})")


@menu_group.command('set-availability')
@click.option('--branch-id', required=True, help='Branch ID')
@click.option('--menu-item-id', required=True, help='Menu item ID')
@click.option('--available/--unavailable', default=True, help='Whether the branch sells this item')
@click.option('--price-usd', help='Branch price override in USD')
@with_appcontext
def set_availability_cli(branch_id, menu_item_id, available, price_usd):
    row = menu_service.set_branch_availability(
        branch_id, menu_item_id, is_available=available, price_override_usd=price_usd,
    )
    state = "available" if row.is_available else "unavailable"
    click.echo(f"PASS Menu item {menu_item_id} is {state} in branch {branch_id}")


# =============================================================================
# OUTBOX
# =============================================================================

@click.group('outbox')
def outbox_group():
    """Outbox inspection and delivery commands."""


@outbox_group.command('pending')
@click.option('--limit', type=int, default=20, help='Maximum events to show')
@with_appcontext
def pending_outbox_cli(limit):
    events = outbox_service.get_unsent(limit)
    if not events:
        click.echo("No pending events")
        return
    for event in events:
        suffix = f"  last_error={event.last_error}" if event.last_error else ""
        click.echo(f"{event.id:>6}  {event.type:<28} attempts={event.attempts}{suffix}")


@outbox_group.command('dispatch')
@click.option('--limit', type=int, help='Maximum events to deliver')
@with_appcontext
def dispatch_outbox_cli(limit):
    stats = outbox_service.dispatch_pending(cash_session_service.default_handlers(), limit)
    click.echo(f"PASS Dispatched: {stats['sent']} sent, {stats['failed']} failed")


@outbox_group.command('cleanup')
@click.option('--retention-days', type=int, help='Delete sent events older than this many days')
@with_appcontext
def cleanup_outbox_cli(retention_days):
    deleted = outbox_service.cleanup_sent(retention_days)
    click.echo(f"PASS Deleted {deleted} sent events")


# =============================================================================
# SYNC LEDGER
# =============================================================================

@click.group('sync')
def sync_group():
    """Offline sync ledger inspection."""


@sync_group.command('show')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--client-op-id', required=True, help='Client operation ID')
@with_appcontext
def show_operation_cli(tenant_id, client_op_id):
    record = operation_ledger_service.find_by_key(db.session, tenant_id, client_op_id)
    if record is None:
        raise click.ClickException("Operation not found")
    click.echo(json.dumps(record.to_dict(), indent=2))


# =============================================================================
# SALES & AUDIT
# =============================================================================

@click.group('sales')
def sales_group():
    """Sale inspection commands."""


@sales_group.command('show')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--sale-id', required=True, help='Sale ID')
@with_appcontext
def show_sale_cli(tenant_id, sale_id):
    row = sales_service.get_sale_record(db.session, tenant_id, sale_id)
    if row is None:
        raise click.ClickException("Sale not found")
    click.echo(json.dumps(row.to_dict(), indent=2))


@click.group('audit')
def audit_group():
    """Audit log inspection."""


@audit_group.command('list')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--branch-id', help='Filter by branch ID')
@click.option('--action', 'action_type', help='Filter by action type (e.g. SYNC_OPERATION_FAILED)')
@click.option('--resource-id', help='Filter by resource ID')
@click.option('--limit', type=int, default=100, help='Maximum rows')
@with_appcontext
def list_audit_cli(tenant_id, branch_id, action_type, resource_id, limit):
    rows = audit_service.list_audit_logs(
        tenant_id, branch_id=branch_id, action_type=action_type, resource_id=resource_id, limit=limit,
    )
    if not rows:
        click.echo("No audit entries")
        return
    for row in rows:
        reason = f" ({row.denial_reason})" if row.denial_reason else ""
        click.echo(f"{row.id:>6}  {row.action_type:<30} {row.outcome:<8} {row.resource_type}:{row.resource_id}{reason}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(branches_group)
    app.cli.add_command(registers_group)
    app.cli.add_command(cash_group)
    app.cli.add_command(policies_group)
    app.cli.add_command(menu_group)
    app.cli.add_command(outbox_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(sales_group)
    app.cli.add_command(audit_group)
