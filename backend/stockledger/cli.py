# Overview: Flask CLI command groups for bootstrap, users/tokens, ledger checks and queues.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create tables (when no migrations were run) and the default warehouse outlet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users and API tokens:
# - python -m flask users create --username owner --email owner@example.com --role OWNER
# - python -m flask users list
# - python -m flask users issue-token owner [--hours 720]
#   Prints a bearer token once; only its hash is stored.
# - python -m flask users revoke-tokens owner
#
# Ledger:
# - python -m flask ledger verify
#   Compare stocks with the movement log; exit code 1 on divergence.
# - python -m flask ledger rebuild --yes
#   Recompute every stock row from the movement log.
#
# Queues:
# - python -m flask webhooks retry --status UNMAPPED [--channel SHOPEE] [--limit 100]
# - python -m flask outbox drain [--limit 100]

import sys

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import ROLES
from .models.integrations import WEBHOOK_RETRYABLE_STATUSES
from .services import ledger_service, notification_service, session_service, webhook_service
from .services.auth_service import create_user, PasswordValidationError
from .services.outlet_service import get_or_create_warehouse_outlet


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Idempotent bootstrap: tables and the default warehouse outlet.

    Users are not seeded; create the first OWNER with `flask users create`.
    """
    click.echo("START Initializing stock ledger...")
    db.create_all()
    outlet = get_or_create_warehouse_outlet()
    db.session.commit()
    click.echo(f"PASS Default warehouse: {outlet.name} (ID: {outlet.id})")

    if not db.session.query(User).count():
        click.echo("WARN  No users yet. Run 'python -m flask users create --role OWNER'.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """Staff accounts and API tokens."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(ROLES, case_sensitive=False), default='STAFF', show_default=True)
@with_appcontext
def create_user_cli(username, email, password, role):
    """Create a staff account (password hashed with bcrypt)."""
    try:
        user = create_user(username=username, email=email, password=password, role=role)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        sys.exit(1)
    except ValueError as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")
        sys.exit(1)

    click.echo(f"PASS Created user: {user.username} ({user.email}) role={user.role} id={user.id}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with role and active status."""
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<6} {status}  {user.email}")


@users_group.command('issue-token')
@click.argument('username')
@click.option('--hours', type=int, default=None, help='Lifetime in hours (default SESSION_TTL_HOURS)')
@with_appcontext
def issue_token_cli(username, hours):
    """Issue a bearer token. The plaintext is printed once and never stored."""
    user = db.session.query(User).filter_by(username=username).first()
    if user is None:
        click.echo(f"FAIL User '{username}' not found")
        sys.exit(1)
    try:
        session, token = session_service.issue_token(user.id, ttl_hours=hours)
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        sys.exit(1)

    click.echo(f"PASS Token for {user.username} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('revoke-tokens')
@click.argument('username')
@with_appcontext
def revoke_tokens_cli(username):
    """Revoke every active token of a user."""
    user = db.session.query(User).filter_by(username=username).first()
    if user is None:
        click.echo(f"FAIL User '{username}' not found")
        sys.exit(1)
    count = session_service.revoke_all_user_tokens(user.id)
    click.echo(f"PASS Revoked {count} token(s) for {user.username}")


@click.group('ledger')
def ledger_group():
    """Stock vs movement-log consistency."""


@ledger_group.command('verify')
@with_appcontext
def verify_ledger_cli():
    """Report every (outlet, variant) whose stock differs from its movement sum."""
    divergences = ledger_service.verify_ledger()
    if not divergences:
        click.echo("PASS Stocks match the movement log")
        return
    for row in divergences:
        click.echo(
            f"FAIL outlet={row['outlet_id']} variant={row['variant_id']} "
            f"stock={row['stock_qty']} ledger={row['ledger_qty']} diff={row['diff']}"
        )
    click.echo(f"FAIL {len(divergences)} divergence(s)")
    sys.exit(1)


@ledger_group.command('rebuild')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def rebuild_ledger_cli(yes):
    """Overwrite stock rows with the movement sums."""
    if not yes:
        click.confirm("WARN This overwrites every stock quantity from the movement log. Continue?", abort=True)
    try:
        changed = ledger_service.rebuild_stock_from_movements()
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        sys.exit(1)
    for row in changed:
        click.echo(f"FIX  outlet={row['outlet_id']} variant={row['variant_id']} {row['stock_qty']} -> {row['ledger_qty']}")
    click.echo(f"PASS Rebuilt {len(changed)} stock row(s)")


@click.group('webhooks')
def webhooks_group():
    """Webhook event queue."""


@webhooks_group.command('retry')
@click.option('--status', type=click.Choice(WEBHOOK_RETRYABLE_STATUSES, case_sensitive=False), default='UNMAPPED', show_default=True)
@click.option('--channel', default=None, help='SHOPEE or TIKTOK')
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def retry_webhooks_cli(status, channel, limit):
    """Re-process stored events from their payload."""
    outcome = webhook_service.retry_events(status=status, channel=channel, limit=limit)
    if not outcome:
        click.echo(f"No {status.upper()} events.")
        return
    summary = ", ".join(f"{k}={v}" for k, v in sorted(outcome.items()))
    click.echo(f"PASS Retried {sum(outcome.values())} event(s): {summary}")


@click.group('outbox')
def outbox_group():
    """Notification outbox."""


@outbox_group.command('drain')
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def drain_outbox_cli(limit):
    """Deliver pending notifications (to the application log)."""
    result = notification_service.drain_outbox(limit=limit)
    click.echo(
        f"PASS delivered={result['delivered']} failed={result['failed']} pending={result['pending']}"
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(webhooks_group)
    app.cli.add_command(outbox_group)
