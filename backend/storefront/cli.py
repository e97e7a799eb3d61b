# Overview: Flask CLI command groups for bootstrap, user management, and outbox maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: python -m flask --app storefront <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask --app storefront system init
#   Idempotent bootstrap: tables, store settings, welcome coupon and an admin account.
# - python -m flask --app storefront system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask --app storefront users list [--role admin]
# - python -m flask --app storefront users create --email a@b.c --password "Password123!" --role delivery
# - python -m flask --app storefront users set-role owner@example.com admin
#
# Notifications (outbox):
# - python -m flask --app storefront notifications dispatch [--limit 100]
#   Deliver pending notifications; run from cron so retries eventually go out.
# - python -m flask --app storefront notifications purge --older-than-days 30
#   Delete delivered outbox rows older than the window.
# - python -m flask --app storefront notifications failed
#   List outbox events that exhausted their retries.

import click
from datetime import timedelta
from flask import current_app
from flask.cli import with_appcontext

from .errors import StorefrontError
from .extensions import db
from .models import Coupon, OutboxEvent, User
from .models.auth import ROLE_ADMIN, VALID_ROLES
from .models.communications import OUTBOX_STATUS_FAILED
from .models.promotions import DISCOUNT_TYPE_PERCENTAGE
from .services import notification_service, settings_service, user_service
from .time_utils import utcnow


WELCOME_COUPON_CODE = "WELCOME50"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-email', default=None, help='Admin account email (defaults to ADMIN_EMAIL)')
@click.option('--admin-password', default='Password123!', help='Admin account password')
@with_appcontext
def init_system(admin_email, admin_password):
    """
    Initialize the store: schema, settings, a welcome coupon and an admin.

    Safe to run repeatedly; existing rows are left alone.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing storefront...")

    db.create_all()
    click.echo("PASS Tables ready")

    settings = settings_service.ensure_settings()
    click.echo(f"PASS Store settings: {settings.store_name}")

    coupon = db.session.query(Coupon).filter_by(code=WELCOME_COUPON_CODE).first()
    if coupon is None:
        coupon = Coupon(
            code=WELCOME_COUPON_CODE,
            discount_type=DISCOUNT_TYPE_PERCENTAGE,
            discount_value=1000,
            min_order_value_paise=50000,
            expiry_date=utcnow() + timedelta(days=365),
            is_active=True,
        )
        db.session.add(coupon)
        db.session.commit()
        click.echo(f"PASS Created coupon {coupon.code} (10% off orders over 500 rupees)")
    else:
        click.echo(f"SKIP Coupon {coupon.code} already exists")

    admin_email = (admin_email or current_app.config.get("ADMIN_EMAIL") or "admin@storefront.local").lower()
    admin = db.session.query(User).filter_by(email=admin_email).first()
    if admin is None:
        try:
            admin = user_service.register(admin_email, admin_password, display_name="Store Admin")
        except StorefrontError as e:
            click.echo(f"FAIL Could not create admin: {e.message}")
            raise SystemExit(1)
        click.echo(f"PASS Created admin account {admin.email}")
    else:
        click.echo(f"SKIP Admin account {admin.email} already exists")

    if admin.role != ROLE_ADMIN:
        user_service.set_role(admin.id, ROLE_ADMIN)
        click.echo(f"PASS Granted admin role to {admin.email}")

    click.echo("\nDONE Storefront initialized")


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

    click.echo("PASS Database reset complete. Run 'python -m flask --app storefront system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and role management commands."""


@users_group.command('list')
@click.option('--role', type=click.Choice(VALID_ROLES), default=None)
@with_appcontext
def list_users_cli(role):
    users = user_service.list_users(role)
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>5}  {user.email:<40} {user.role:<10} {status}")


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--name', 'display_name', default=None, help='Display name')
@click.option('--role', type=click.Choice(VALID_ROLES), default='customer', show_default=True)
@with_appcontext
def create_user_cli(email, password, display_name, role):
    """
    Create a local account.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = user_service.register(email, password, display_name=display_name)
        if role != user.role:
            user = user_service.set_role(user.id, role)
    except StorefrontError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Created {user.role} {user.email} (ID: {user.id})")


@users_group.command('set-role')
@click.argument('email')
@click.argument('role', type=click.Choice(VALID_ROLES))
@with_appcontext
def set_role_cli(email, role):
    """Change a user's role. Their sessions are revoked."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if user is None:
        click.echo(f"FAIL No user with email {email}")
        raise SystemExit(1)

    user_service.set_role(user.id, role)
    click.echo(f"PASS {user.email} is now {role}")


@click.group('notifications')
def notifications_group():
    """Notification outbox maintenance."""


@notifications_group.command('dispatch')
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def dispatch_cli(limit):
    result = notification_service.get_dispatcher().dispatch_pending(limit=limit)
    click.echo(
        f"Sent {result['sent']}, retrying {result['retrying']}, failed {result['failed']}."
    )


@notifications_group.command('purge')
@click.option('--older-than-days', type=int, default=30, show_default=True)
@with_appcontext
def purge_cli(older_than_days):
    deleted = notification_service.purge_sent(older_than_days=older_than_days)
    click.echo(f"Deleted {deleted} delivered notifications older than {older_than_days} days.")


@notifications_group.command('failed')
@with_appcontext
def failed_cli():
    events = (
        db.session.query(OutboxEvent)
        .filter_by(status=OUTBOX_STATUS_FAILED)
        .order_by(OutboxEvent.id.asc())
        .all()
    )
    if not events:
        click.echo("No failed notifications.")
        return
    for event in events:
        click.echo(f"{event.id:>6}  {event.event:<22} attempts={event.attempts}  {event.last_error or ''}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(notifications_group)
