# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog seed
#   Load demo categories, products, variants and stock (skips existing slugs).
#
# Users:
# - python -m flask users list
#   List users with role and active status.
# - python -m flask users set-role jane@example.com ADMIN
#   Change a user's role (users are created on first sign-in).
#
# Inventory:
# - python -m flask inventory low-stock
#   List stock-tracked variants at or below their threshold.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Category, Product, User
from .errors import NotFoundError
from .validation import ValidationError
from .services import catalog_service, identity_service, inventory_service, session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables. Use 'flask db upgrade' for managed schemas."""
    db.create_all()
    click.echo("PASS Tables created.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask catalog seed' for demo data.")


# =============================================================================
# CATALOG
# =============================================================================

SEED_CATEGORIES = [
    {"name": "Electronics", "slug": "electronics", "description": "Phones, audio and gadgets", "sort_order": 1},
    {"name": "Fashion", "slug": "fashion", "description": "Clothing and accessories", "sort_order": 2},
    {"name": "Home & Living", "slug": "home-living", "description": "Kitchen and home goods", "sort_order": 3},
]

SEED_PRODUCTS = [
    {
        "category": "electronics",
        "patch": {
            "name": "Galaxy S24", "slug": "galaxy-s24", "sku": "GS24",
            "short_description": "Flagship smartphone", "brand": "Samsung",
            "price_cents": 1200000, "compare_price_cents": 1350000, "featured": True,
        },
        "images": [{"url": "https://via.placeholder.com/800x800.png?text=Galaxy+S24"}],
        "variants": [
            {"name": "256GB Black", "sku": "GS24-256-BK", "attributes": {"storage": "256GB", "color": "black"},
             "price_cents": 1200000, "stock": 50},
            {"name": "512GB White", "sku": "GS24-512-WH", "attributes": {"storage": "512GB", "color": "white"},
             "price_cents": 1400000, "stock": 30},
        ],
    },
    {
        "category": "electronics",
        "patch": {
            "name": "AirPods Pro (3rd gen)", "slug": "airpods-pro-3rd", "sku": "APP3",
            "short_description": "Noise-cancelling earbuds", "brand": "Apple",
            "price_cents": 350000, "featured": True,
        },
        "images": [{"url": "https://via.placeholder.com/800x800.png?text=AirPods+Pro"}],
        "variants": [
            {"name": "White", "sku": "APP3-WH", "attributes": {"color": "white"}, "stock": 100},
        ],
    },
    {
        "category": "fashion",
        "patch": {
            "name": "Basic Cotton T-Shirt", "slug": "basic-cotton-tshirt", "sku": "TEE-BASIC",
            "short_description": "Everyday cotton tee", "brand": "Basic",
            "price_cents": 29000,
        },
        "images": [{"url": "https://via.placeholder.com/800x800.png?text=T-Shirt"}],
        "variants": [
            {"name": "S White", "sku": "TEE-S-WH", "attributes": {"size": "S", "color": "white"}, "stock": 40},
            {"name": "M Black", "sku": "TEE-M-BK", "attributes": {"size": "M", "color": "black"}, "stock": 40},
            {"name": "L Navy", "sku": "TEE-L-NV", "attributes": {"size": "L", "color": "navy"}, "stock": 3},
        ],
    },
    {
        "category": "home-living",
        "patch": {
            "name": "Nespresso Essenza Mini", "slug": "nespresso-essenza-mini", "sku": "NESP-MINI",
            "short_description": "Compact espresso machine", "brand": "Nespresso",
            "price_cents": 180000,
        },
        "images": [{"url": "https://via.placeholder.com/800x800.png?text=Essenza+Mini"}],
        "variants": [
            {"name": "White", "sku": "NESP-MINI-WH", "attributes": {"color": "white"}, "stock": 20},
            {"name": "Black", "sku": "NESP-MINI-BK", "attributes": {"color": "black"}, "stock": 20},
        ],
    },
]


@click.group('catalog')
def catalog_group():
    """Catalog bootstrap commands."""


@catalog_group.command('seed')
@with_appcontext
def seed_catalog():
    """Load demo catalog data. Existing slugs are left untouched."""
    categories = {}
    for entry in SEED_CATEGORIES:
        category = db.session.query(Category).filter_by(slug=entry["slug"]).first()
        if category is None:
            category = catalog_service.create_category(**entry)
            click.echo(f"PASS Category {category.slug}")
        categories[entry["slug"]] = category

    for entry in SEED_PRODUCTS:
        slug = entry["patch"]["slug"]
        if db.session.query(Product).filter_by(slug=slug).first() is not None:
            click.echo(f"SKIP Product {slug} already exists")
            continue

        patch = dict(entry["patch"], category_id=categories[entry["category"]].id)
        product = catalog_service.create_product(patch=patch, images=entry["images"], variants=entry["variants"])
        click.echo(f"PASS Product {product.slug} ({len(product.variants)} variants)")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection commands."""


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their role."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Provider':<10} {'Email':<35} {'Name':<20} {'Active':<8} {'Role'}")
    click.echo("="*100)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(
            f"{user.id:<5} {user.provider:<10} {(user.email or '-'):<35} "
            f"{(user.name or '-'):<20} {active_str:<8} {user.role}"
        )

    click.echo("="*100 + "\n")


@users_group.command('set-role')
@click.argument('email')
@click.argument('role')
@with_appcontext
def set_role(email, role):
    """Change a user's role and revoke their live sessions."""
    try:
        user = identity_service.set_user_role(email, role.upper())
    except (NotFoundError, ValidationError) as e:
        raise click.ClickException(str(e))

    revoked = session_service.revoke_all_user_sessions(user.id)
    click.echo(f"PASS {user.email} is now {user.role} ({revoked} sessions revoked)")


# =============================================================================
# INVENTORY
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('low-stock')
@with_appcontext
def low_stock():
    """List variants at or below their low-stock threshold."""
    items = inventory_service.list_low_stock()
    if not items:
        click.echo("No low-stock variants.")
        return

    click.echo(f"{'Variant':<8} {'SKU':<16} {'Product':<30} {'Qty':>5} {'Threshold':>10}")
    for inventory in items:
        variant = inventory.variant
        click.echo(
            f"{variant.id:<8} {(variant.sku or '-'):<16} {variant.product.name[:30]:<30} "
            f"{inventory.quantity:>5} {inventory.low_stock_threshold:>10}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(users_group)
    app.cli.add_command(inventory_group)
