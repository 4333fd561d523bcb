# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/shiftledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Idempotent bootstrap: creates tables, roles, permissions, and default users.
#
# Users:
# - python -m flask users list
#   List all users with roles and active status.
# - python -m flask users create --username sam --password "Password123!" --role supervisor --pin 4321
#   Create a user (prompts if options are omitted).
# - python -m flask users set-pin sam 4321
#   Set the supervisor PIN used to authorize overrides.
#
# Catalog:
# - python -m flask products add --sku BURGER --name "Burger" --category FOOD --price-cents 1200 --tax-bps 1600
#   Add a sellable product.
#
# Permissions:
# - python -m flask perms check sam VOID_RECEIPT
#   Check whether a user has a permission.
# - python -m flask perms grant cashier VOID_RECEIPT
# - python -m flask perms revoke cashier VOID_RECEIPT
#
# Dispatch queue (printing, payment and tax notifications):
# - python -m flask dispatch run --limit 50
#   Process due side-effect jobs once.
# - python -m flask dispatch list --status FAILED
# - python -m flask dispatch requeue 12
#
# Z reports:
# - python -m flask zreports verify 3
#   Recompute a stored Z report hash.
# - python -m flask zreports gaps --register-group MAIN
#   List missing report numbers.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .models import Product, Role, User
from .services.auth_service import (
    create_user, create_default_roles, assign_role, set_pin,
    PasswordValidationError, PinValidationError,
)
from .services import dispatch_service, permission_service, report_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the ledger: tables, roles, permissions and default users.

    Creates:
    - Roles: admin, manager, supervisor, cashier
    - Users: admin, manager, supervisor, cashier
    - All passwords default to: "Password123!"
    - Supervisor PIN defaults to 4321, manager PIN to 9876

    SECURITY: Change passwords and PINs immediately in production!
    """
    click.echo("START Initializing ledger...")
    db.create_all()

    click.echo("\nLIST Creating roles...")
    create_default_roles()
    roles = db.session.query(Role).all()
    click.echo(f"PASS Roles: {', '.join(r.name for r in roles)}")

    click.echo("\nSECURITY Initializing permissions...")
    perm_count = permission_service.initialize_permissions()
    assignment_count = permission_service.assign_default_role_permissions()
    click.echo(f"PASS Created {perm_count} permissions, {assignment_count} role assignments")

    click.echo("\nUSERS Creating default users...")
    default_password = "Password123!"
    default_users = [
        ("admin", "admin", None),
        ("manager", "manager", "9876"),
        ("supervisor", "supervisor", "4321"),
        ("cashier", "cashier", None),
    ]

    for username, role_name, pin in default_users:
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            user = create_user(username=username, password=default_password, pin=pin)
            assign_role(user.id, role_name)
            click.echo(f"PASS Created user: {username} with role '{role_name}'")
        except (PasswordValidationError, PinValidationError, ValueError) as e:
            db.session.rollback()
            click.echo(f"FAIL Failed to create user '{username}': {e}")

    click.echo("\n" + "=" * 60)
    click.echo("DONE Ledger initialized")
    click.echo("=" * 60)
    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    click.echo("   admin / manager / supervisor / cashier -> Password123!")
    click.echo("")


# =============================================================================
# USER COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with roles."""
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 70)
    click.echo(f"{'ID':<5} {'Username':<20} {'Roles':<30} {'Active':<8} {'PIN'}")
    click.echo("=" * 70)
    for user in users:
        role_names = permission_service.get_user_role_names(user.id)
        active_str = "Yes" if user.is_active else "No"
        pin_str = "Yes" if user.pin_hash else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {', '.join(role_names) or '-':<30} {active_str:<8} {pin_str}")
    click.echo("=" * 70 + "\n")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(['admin', 'manager', 'supervisor', 'cashier']), prompt=True, help='Role')
@click.option('--display-name', default=None, help='Display name')
@click.option('--pin', default=None, help='Override PIN (4-6 digits)')
@with_appcontext
def create_user_cli(username, password, role, display_name, pin):
    """Create a new user."""
    try:
        user = create_user(username=username, password=password, display_name=display_name, pin=pin)
        assign_role(user.id, role)
        click.echo(f"PASS Created user '{username}' (ID: {user.id}) with role '{role}'")
    except (PasswordValidationError, PinValidationError, ValueError) as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")


@users_group.command('set-pin')
@click.argument('username')
@click.argument('pin')
@with_appcontext
def set_pin_cli(username, pin):
    """Set a user's override PIN."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return
    try:
        set_pin(user.id, pin)
        click.echo(f"PASS PIN updated for '{username}'")
    except PinValidationError as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")


# =============================================================================
# CATALOG COMMANDS
# =============================================================================

@click.group('products')
def products_group():
    """Catalog commands."""


@products_group.command('add')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--category', default='GENERAL')
@click.option('--price-cents', type=int, required=True)
@click.option('--tax-bps', type=int, default=0, help='Tax rate in basis points (1600 = 16%)')
@click.option('--track-stock/--no-track-stock', default=False)
@click.option('--on-hand', type=int, default=0)
@with_appcontext
def add_product(sku, name, category, price_cents, tax_bps, track_stock, on_hand):
    """Add a sellable product."""
    if db.session.query(Product).filter_by(sku=sku).first():
        click.echo(f"FAIL Product with SKU '{sku}' already exists")
        return
    product = Product(
        sku=sku,
        name=name,
        category=category,
        price_cents=price_cents,
        tax_rate_bps=tax_bps,
        track_stock=track_stock,
        on_hand_qty=on_hand,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {sku} (ID: {product.id})")


# =============================================================================
# PERMISSION COMMANDS
# =============================================================================

@click.group('perms')
def perms_group():
    """Permission inspection and repair commands."""


@perms_group.command('check')
@click.argument('username')
@click.argument('permission_code')
@with_appcontext
def check_permission(username, permission_code):
    """Check whether a user has a permission."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return
    if permission_service.user_has_permission(user.id, permission_code):
        click.echo(f"PASS {username} has {permission_code}")
    else:
        click.echo(f"DENY {username} does not have {permission_code}")


@perms_group.command('grant')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def grant_permission(role_name, permission_code):
    """Grant a permission to a role."""
    try:
        if permission_service.grant_permission_to_role(role_name, permission_code):
            click.echo(f"PASS Granted {permission_code} to {role_name}")
        else:
            click.echo(f"WARN {role_name} already has {permission_code}")
    except ValueError as e:
        click.echo(f"FAIL {e}")


@perms_group.command('revoke')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def revoke_permission(role_name, permission_code):
    """Revoke a permission from a role."""
    try:
        if permission_service.revoke_permission_from_role(role_name, permission_code):
            click.echo(f"PASS Revoked {permission_code} from {role_name}")
        else:
            click.echo(f"WARN {role_name} does not have {permission_code}")
    except ValueError as e:
        click.echo(f"FAIL {e}")


# =============================================================================
# DISPATCH COMMANDS
# =============================================================================

@click.group('dispatch')
def dispatch_group():
    """Side-effect queue commands."""


@dispatch_group.command('run')
@click.option('--limit', type=int, default=50)
@with_appcontext
def run_dispatch(limit):
    """Process due side-effect jobs once."""
    summary = dispatch_service.process_due_jobs(limit=limit)
    click.echo(
        f"PASS processed={summary['processed']} succeeded={summary['succeeded']} "
        f"retrying={summary['retrying']} failed={summary['failed']} skipped={summary['skipped']}"
    )


@dispatch_group.command('list')
@click.option('--status', default=None)
@click.option('--limit', type=int, default=50)
@with_appcontext
def list_dispatch(status, limit):
    """List side-effect jobs."""
    jobs = dispatch_service.list_jobs(status=status, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(
            f"{job.id:<6} {job.kind:<16} receipt={job.receipt_id or '-':<6} "
            f"{job.status:<10} attempts={job.attempts} {job.last_error or ''}"
        )


@dispatch_group.command('requeue')
@click.argument('job_id', type=int)
@with_appcontext
def requeue_dispatch(job_id):
    """Put a FAILED job back in the queue."""
    try:
        job = dispatch_service.requeue_job(job_id)
        click.echo(f"PASS Job {job.id} re-queued")
    except LedgerError as e:
        click.echo(f"FAIL {e}")


# =============================================================================
# Z REPORT COMMANDS
# =============================================================================

@click.group('zreports')
def zreports_group():
    """Z report inspection commands."""


@zreports_group.command('verify')
@click.argument('report_id', type=int)
@with_appcontext
def verify_zreport(report_id):
    """Recompute a stored Z report hash and compare."""
    try:
        result = report_service.verify_z_report(report_id)
    except LedgerError as e:
        click.echo(f"FAIL {e}")
        return
    if result["valid"]:
        click.echo(f"PASS Z report #{result['report_number']} hash matches")
    else:
        click.echo(f"FAIL Z report #{result['report_number']} hash mismatch")
        click.echo(f"   stored:   {result['stored_hash']}")
        click.echo(f"   computed: {result['computed_hash']}")


@zreports_group.command('gaps')
@click.option('--register-group', default=None)
@with_appcontext
def zreport_gaps(register_group):
    """List missing Z report numbers for a register group."""
    group = register_group or current_app.config["DEFAULT_REGISTER_GROUP"]
    gaps = report_service.find_report_number_gaps(group)
    if gaps:
        click.echo(f"WARN Missing report numbers for {group}: {', '.join(str(n) for n in gaps)}")
    else:
        click.echo(f"PASS No gaps for {group}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(perms_group)
    app.cli.add_command(dispatch_group)
    app.cli.add_command(zreports_group)
