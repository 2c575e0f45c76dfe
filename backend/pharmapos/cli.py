# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/pharmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and the default staff accounts.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with role and active status.
# - python -m flask users create --email tech@pharmapos.local --full-name "Jane Tech" --password "Password123!" --role pharmtech
#   Create a user (prompts if options are omitted).
# - python -m flask users deactivate --email tech@pharmapos.local
#   Deactivate a user and revoke their sessions.
#
# Catalog:
# - python -m flask products seed
#   Load the sample pharmacy catalog (skips barcodes already present).
# - python -m flask products alerts [--days 90]
#   Print out-of-stock, low-stock and expiring-soon products.
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions --older-than-days 30
#   Delete expired/revoked session tokens.
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import Product, User
from .models.auth import ROLES
from .errors import PosError
from .services.auth_service import create_user, deactivate_user
from .services import catalog_service
from .services import maintenance_service
from .time_utils import utcnow


# name, category, supplier, batch, days to expiry, cost (KES), price (KES), stock, minimum, barcode, Rx
SAMPLE_CATALOG = [
    ("Panadol Extra", "Pain Relief", "GlaxoSmithKline", "PE2024001", 440, 120, 150, 250, 50, "1234567890123", False),
    ("Amoxicillin 500mg", "Antibiotics", "Cipla Kenya", "AM2024002", 60, 300, 350, 15, 25, "1234567890124", True),
    ("Vitamin C Tablets", "Supplements", "Cosmos Limited", "VC2024003", 670, 80, 120, 180, 30, "1234567890125", False),
    ("Cough Syrup", "Cold & Flu", "Shelys Pharmaceuticals", "CS2024004", 30, 150, 200, 45, 20, "1234567890126", False),
    ("Aspirin 100mg", "Pain Relief", "Bayer", "AS2024005", 350, 90, 120, 300, 50, "1234567890127", False),
]

DEFAULT_PASSWORD = "Password123!"

DEFAULT_USERS = [
    ("admin@pharmapos.local", "System Administrator", "super_admin"),
    ("pharmtech@pharmapos.local", "Pharmacy Technician", "pharmtech"),
    ("cashier@pharmapos.local", "Front Counter Cashier", "cashier"),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize PharmaPOS: tables and default staff accounts.

    Creates:
    - All tables (no-op for tables that already exist)
    - Users: admin@pharmapos.local (super_admin), pharmtech@pharmapos.local,
      cashier@pharmapos.local
    - All passwords default to: "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing PharmaPOS...")

    db.create_all()
    click.echo("PASS Tables created")

    click.echo("\nUSERS Creating default users...")
    for email, full_name, role in DEFAULT_USERS:
        existing = db.session.query(User).filter_by(email=email).first()
        if existing:
            click.echo(f"WARN  User '{email}' already exists, skipping...")
            continue
        try:
            create_user(email=email, full_name=full_name, password=DEFAULT_PASSWORD, role=role)
            click.echo(f"PASS Created user: {email} with role '{role}'")
        except PosError as e:
            click.echo(f"FAIL Failed to create user '{email}': {e.message}")

    click.echo("\n" + "="*60)
    click.echo("DONE PharmaPOS Initialized Successfully!")
    click.echo("="*60)
    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    for email, _, role in DEFAULT_USERS:
        click.echo(f"   {role:<12} -> {email:<28} / {DEFAULT_PASSWORD}")
    click.echo("")


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
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address (login)')
@click.option('--full-name', prompt=True, help='Display name on receipts')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ROLES)), prompt=True, help='Role')
@click.option('--phone', default='', help='Phone number')
@with_appcontext
def create_user_cli(email, full_name, password, role, phone):
    """
    Create a new user interactively.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(email=email, full_name=full_name, password=password, role=role, phone=phone)
    except PosError as e:
        click.echo(f"FAIL Failed to create user: {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Created user: {user.email} with role '{user.role}' (ID: {user.id})")
    click.echo("SECURITY Password securely hashed with bcrypt")


@users_group.command('list')
@click.option('--role', type=click.Choice(list(ROLES)), help='Filter by role')
@with_appcontext
def list_users(role):
    """List all users with their roles."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)

    users = query.order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Email':<32} {'Name':<28} {'Active':<8} {'Role'}")
    click.echo("="*100)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<32} {user.full_name:<28} {active_str:<8} {user.role}")

    click.echo("="*100 + "\n")


@users_group.command('deactivate')
@click.option('--email', prompt=True, help='Email of the account to deactivate')
@with_appcontext
def deactivate_user_cli(email):
    """Deactivate a user and revoke all of their sessions."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL No user with email '{email}'")
        raise SystemExit(1)

    try:
        deactivate_user(user.id)
    except PosError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Deactivated {user.email}; sessions revoked")


@click.group('products')
def products_group():
    """Catalog bootstrap and inspection commands."""


@products_group.command('seed')
@with_appcontext
def seed_products():
    """Load the sample pharmacy catalog."""
    today = utcnow().date()
    created = 0

    for (name, category, supplier, batch, expiry_days, cost, price,
         stock, minimum, barcode, rx) in SAMPLE_CATALOG:
        if db.session.query(Product.id).filter_by(barcode=barcode).first():
            click.echo(f"WARN  {name} ({barcode}) already exists, skipping...")
            continue
        catalog_service.create_product(patch={
            "name": name,
            "category": category,
            "supplier": supplier,
            "batch_number": batch,
            "expiry_date": today + timedelta(days=expiry_days),
            "cost_price_cents": cost * 100,
            "selling_price_cents": price * 100,
            "stock_level": stock,
            "minimum_stock": minimum,
            "barcode": barcode,
            "prescription_required": rx,
        })
        created += 1
        click.echo(f"PASS Created product: {name}")

    click.echo(f"\nDONE {created} product(s) created")


@products_group.command('alerts')
@click.option('--days', type=int, default=None, help='Expiry warning window (default EXPIRY_WARNING_DAYS)')
@with_appcontext
def product_alerts(days):
    """Print out-of-stock, low-stock and expiring-soon products."""
    alerts = catalog_service.catalog_alerts(warning_days=days)

    click.echo(f"\nAlerts as of {alerts['as_of']} (expiry window {alerts['warning_days']} days)")

    click.echo(f"\nOUT OF STOCK ({len(alerts['out_of_stock'])})")
    for p in alerts["out_of_stock"]:
        click.echo(f"   {p['id']:<5} {p['name']}")

    click.echo(f"\nLOW STOCK ({len(alerts['low_stock'])})")
    for p in alerts["low_stock"]:
        click.echo(f"   {p['id']:<5} {p['name']:<32} {p['stock_level']:>6} / min {p['minimum_stock']}")

    click.echo(f"\nEXPIRING SOON ({len(alerts['expiring_soon'])})")
    for p in alerts["expiring_soon"]:
        state = "EXPIRED" if p["days_to_expiry"] < 0 else f"{p['days_to_expiry']} days"
        click.echo(f"   {p['id']:<5} {p['name']:<32} {p['expiry_date']}  {state}")
    click.echo("")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@click.option('--older-than-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sessions_cli(older_than_days):
    """Delete expired or revoked session tokens."""
    deleted = maintenance_service.cleanup_sessions(older_than_days=older_than_days)
    click.echo(f"Deleted {deleted} session tokens older than {older_than_days} days.")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(maintenance_group)
