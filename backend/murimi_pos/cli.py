# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/murimi_pos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-password "Password123!"]
#   Idempotent bootstrap: creates tables, default settings and an admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system set-setting business_name "Murimi Shop"
#   Set a business setting printed on receipts.
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with role and active status.
# - python -m flask users create --username jane --email jane@murimi.local --password "Password123!" --role CASHIER
#   Create a user (prompts if options are omitted).
#
# Offline sync queue:
# - python -m flask sync status
#   Queue counts by status.
# - python -m flask sync purge [--retention-days 7]
#   Delete completed queue rows older than the retention window.
#
# Maintenance:
# - python -m flask maintenance cleanup-rate-limits
#   Delete expired rate limit counters.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import ROLE_ADMIN, VALID_ROLES
from .services.auth_service import create_user, PasswordValidationError
from .services import offline_sync_service, rate_limit_service, settings_service
from .errors import AppError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', show_default=True)
@click.option('--admin-email', default='admin@murimi.local', show_default=True)
@click.option('--admin-password', default='Password123!', help='Initial admin password')
@with_appcontext
def init_system(admin_username, admin_email, admin_password):
    """
    Initialize Murimi POS: schema, default settings and the first admin.

    Safe to run repeatedly; existing rows are left alone.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing Murimi POS...")

    db.create_all()
    click.echo("PASS Schema ready")

    created = settings_service.seed_default_settings()
    click.echo(f"PASS Seeded {created} default settings")

    existing = db.session.query(User).filter_by(username=admin_username).first()
    if existing:
        click.echo(f"PASS Using existing admin user: {existing.username} (ID: {existing.id})")
        return

    try:
        user = create_user(
            username=admin_username,
            email=admin_email,
            password=admin_password,
            role=ROLE_ADMIN,
            first_name="System",
            last_name="Administrator",
        )
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        return
    click.echo(f"PASS Created admin user: {user.username} ({user.email})")
    click.echo("SECURITY Password securely hashed with bcrypt")


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


@system_group.command('set-setting')
@click.argument('key')
@click.argument('value')
@with_appcontext
def set_setting_cli(key, value):
    """Set a business setting (e.g. business_name, receipt_footer)."""
    if key not in settings_service.DEFAULT_SETTINGS:
        click.echo(f"WARN {key} is not a known setting; storing it anyway")
    row = settings_service.upsert_setting(key, value)
    click.echo(f"PASS {row.key} = {row.value}")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(VALID_ROLES, case_sensitive=False), prompt=True, help='Role')
@click.option('--first-name', default='', help='First name')
@click.option('--last-name', default='', help='Last name')
@with_appcontext
def create_user_cli(username, email, password, role, first_name, last_name):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(
            username=username,
            email=email,
            password=password,
            role=role,
            first_name=first_name,
            last_name=last_name,
        )
        click.echo(f"PASS Created user: {user.username} ({user.email}) with role '{user.role}'")
        click.echo("SECURITY Password securely hashed with bcrypt")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except AppError as e:
        click.echo(f"FAIL Failed to create user: {e.message}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<30} {'Role':<10} {'Active'}")
    click.echo("="*90)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<30} {user.role:<10} {active_str}")

    click.echo("="*90 + "\n")


@click.group('sync')
def sync_group():
    """Offline sync queue commands."""


@sync_group.command('status')
@with_appcontext
def sync_status_cli():
    """Show queue counts by status."""
    status = offline_sync_service.get_queue_status()
    for key in ("pending", "completed", "failed", "exhausted", "total"):
        click.echo(f"{key:<10} {status[key]}")


@sync_group.command('purge')
@click.option('--retention-days', type=int, default=None, help='Defaults to OFFLINE_SYNC_RETENTION_DAYS')
@with_appcontext
def sync_purge_cli(retention_days):
    """Delete completed queue rows older than the retention window."""
    deleted = offline_sync_service.purge_completed(retention_days=retention_days)
    click.echo(f"Deleted {deleted} completed sync items.")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-rate-limits')
@with_appcontext
def cleanup_rate_limits_cli():
    """Delete rate limit counters whose window has ended."""
    deleted = rate_limit_service.purge_expired()
    click.echo(f"Deleted {deleted} expired rate limit counters.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(maintenance_group)
