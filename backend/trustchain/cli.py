# Overview: Flask CLI command groups for bootstrap, profile mirroring, and fraud review.

# backend/trustchain/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create any missing tables (dev; production uses `flask db upgrade`).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Profile mirror (identity provider accounts):
# - python -m flask users upsert --user-id drv-1 --role driver --name "Jane Driver" --phone 0712345678
#   Create or update a profile.
# - python -m flask users list [--role driver]
#   List mirrored profiles.
#
# Fraud review:
# - python -m flask fraud check --user-id cust-1 [--order-id 12]
#   Run the fraud heuristics and print any alerts raised.
# - python -m flask fraud alerts [--open-only] [--severity high]
#   List fraud alerts.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models.states import VALID_ROLES, VALID_SEVERITIES
from .services import fraud_service, profile_service
from .validation import TrustchainError


# =============================================================================
# SYSTEM COMMANDS
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    click.echo("BUILD  Creating tables...")
    db.create_all()
    click.echo("PASS Schema ready.")


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

    click.echo("PASS Database reset complete. Mirror profiles with 'python -m flask users upsert'.")


# =============================================================================
# PROFILE COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """Profile mirror commands."""


@users_group.command('upsert')
@click.option('--user-id', required=True, help='Identity-provider user id')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), required=True, help='Role')
@click.option('--name', 'full_name', required=True, help='Full name')
@click.option('--phone', default=None, help='Phone number (used for SMS)')
@click.option('--verified/--unverified', default=None, help='Verification flag')
@with_appcontext
def upsert_user_cli(user_id, role, full_name, phone, verified):
    """Create or update a profile."""
    try:
        profile = profile_service.upsert_profile(
            user_id=user_id,
            role=role,
            full_name=full_name,
            phone=phone,
            verified=verified,
        )
    except TrustchainError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Profile {profile.id} ({profile.role}) saved: {profile.full_name}")


@users_group.command('list')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), default=None, help='Filter by role')
@with_appcontext
def list_users_cli(role):
    """List mirrored profiles."""
    profiles = profile_service.list_profiles(role=role)

    if not profiles:
        click.echo("No profiles found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<20} {'Role':<10} {'Name':<30} {'Rating':<8} {'Deliveries':<11} {'Verified'}")
    click.echo("="*90)

    for p in profiles:
        verified_str = "Yes" if p.verified else "No"
        click.echo(f"{p.id:<20} {p.role:<10} {p.full_name[:30]:<30} {p.rating:<8.2f} {p.total_deliveries:<11} {verified_str}")

    click.echo("="*90 + "\n")


# =============================================================================
# FRAUD COMMANDS
# =============================================================================

@click.group('fraud')
def fraud_group():
    """Fraud heuristics and alert review."""


@fraud_group.command('check')
@click.option('--user-id', default=None, help='User to evaluate')
@click.option('--order-id', type=int, default=None, help='Order to evaluate')
@click.option('--action', default='manual_check', show_default=True, help='Triggering action label')
@with_appcontext
def fraud_check_cli(user_id, order_id, action):
    """Run the fraud heuristics and print the alerts raised."""
    try:
        alerts = fraud_service.run_fraud_check(user_id=user_id, order_id=order_id, action=action)
    except TrustchainError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    if not alerts:
        click.echo("PASS No alerts raised.")
        return

    click.echo(f"WARN {len(alerts)} alert(s) raised:")
    for a in alerts:
        click.echo(f"   #{a.id} {a.alert_type} [{a.severity}] user={a.user_id or '-'} order={a.order_id or '-'}")


@fraud_group.command('alerts')
@click.option('--open-only', is_flag=True, help='Only unresolved alerts')
@click.option('--severity', type=click.Choice(VALID_SEVERITIES), default=None)
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def fraud_alerts_cli(open_only, severity, limit):
    """List fraud alerts, newest first."""
    alerts = fraud_service.list_alerts(
        resolved=False if open_only else None,
        severity=severity,
        limit=limit,
    )

    if not alerts:
        click.echo("No alerts found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<6} {'Type':<30} {'Severity':<10} {'User':<20} {'Order':<8} {'Resolved'}")
    click.echo("="*100)

    for a in alerts:
        resolved_str = "Yes" if a.resolved else "No"
        click.echo(
            f"{a.id:<6} {a.alert_type:<30} {a.severity:<10} {(a.user_id or '-'):<20} "
            f"{str(a.order_id or '-'):<8} {resolved_str}"
        )

    click.echo("="*100 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(fraud_group)
