"""
Seed script to populate the default permission catalog and system roles.

Run this script after database initialization to create:
- Default permissions for every resource
- The six system roles
- Their role-permission assignments

Safe to run repeatedly: permissions and roles are upserted and each system
role's permission set is replaced with the configured one.

Usage:
    uv run python -m scripts.seed_rbac
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.engine import get_db, init_db
from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.models import Permission, Role
from rbac_service.utils import get_logger


log = get_logger(__name__)


# (code, name, description)
DEFAULT_PERMISSIONS = [
    # Users
    ("users:read", "View Users", "View user profiles and list users"),
    ("users:write", "Edit Users", "Create and edit user profiles"),
    ("users:delete", "Delete Users", "Delete or deactivate users"),
    ("users:manage", "Manage Users", "Full user management including roles and permissions"),

    # Roles
    ("roles:read", "View Roles", "View roles and permissions"),
    ("roles:write", "Edit Roles", "Create and edit roles"),
    ("roles:delete", "Delete Roles", "Delete roles"),
    ("roles:manage", "Manage Roles", "Full role management including permission assignment"),

    # Transactions
    ("transactions:read", "View Transactions", "View transaction history and details"),
    ("transactions:write", "Create Transactions", "Process new transactions"),
    ("transactions:refund", "Process Refunds", "Issue refunds and voids"),
    ("transactions:manage", "Manage Transactions", "Full transaction management including disputes"),
    ("transactions:export", "Export Transactions", "Export transaction data"),

    # Orders
    ("orders:read", "View Orders", "View orders and order history"),
    ("orders:write", "Create Orders", "Create and edit orders"),
    ("orders:delete", "Cancel Orders", "Cancel and delete orders"),
    ("orders:manage", "Manage Orders", "Full order management"),
    ("orders:export", "Export Orders", "Export order data"),

    # Products
    ("products:read", "View Products", "View product catalog"),
    ("products:write", "Edit Products", "Create and edit products"),
    ("products:delete", "Delete Products", "Delete products"),
    ("products:manage", "Manage Products", "Full product management including inventory"),
    ("products:import", "Import Products", "Bulk import products"),
    ("products:export", "Export Products", "Export product data"),

    # Customers
    ("customers:read", "View Customers", "View customer profiles"),
    ("customers:write", "Edit Customers", "Create and edit customer profiles"),
    ("customers:delete", "Delete Customers", "Delete customer records"),
    ("customers:manage", "Manage Customers", "Full customer management"),
    ("customers:export", "Export Customers", "Export customer data"),

    # Subscriptions
    ("subscriptions:read", "View Subscriptions", "View subscription details"),
    ("subscriptions:write", "Edit Subscriptions", "Create and modify subscriptions"),
    ("subscriptions:cancel", "Cancel Subscriptions", "Cancel active subscriptions"),
    ("subscriptions:manage", "Manage Subscriptions", "Full subscription management"),

    # Analytics
    ("analytics:read", "View Analytics", "View reports and dashboards"),
    ("analytics:export", "Export Analytics", "Export reports and data"),
    ("analytics:manage", "Manage Analytics", "Configure reports and dashboards"),

    # Settings
    ("settings:read", "View Settings", "View system settings"),
    ("settings:write", "Edit Settings", "Modify system settings"),
    ("settings:manage", "Manage Settings", "Full settings management"),

    # Integrations
    ("integrations:read", "View Integrations", "View integration configurations"),
    ("integrations:write", "Edit Integrations", "Configure integrations"),
    ("integrations:manage", "Manage Integrations", "Full integration management"),

    # Billing
    ("billing:read", "View Billing", "View billing and invoices"),
    ("billing:write", "Edit Billing", "Modify billing settings"),
    ("billing:manage", "Manage Billing", "Full billing management"),

    # Audit logs
    ("audit:read", "View Audit Logs", "View audit trail and activity logs"),
    ("audit:export", "Export Audit Logs", "Export audit data"),

    # Fulfillment
    ("fulfillment:read", "View Fulfillment", "View shipments and fulfillment status"),
    ("fulfillment:write", "Process Fulfillment", "Create and update shipments"),
    ("fulfillment:manage", "Manage Fulfillment", "Full fulfillment management"),

    # Wildcard
    ("*", "Super Admin", "Full access to all features"),
]

# Categories that differ from the code's resource part
_CATEGORY_OVERRIDES = {"*": "admin"}


DEFAULT_ROLES = {
    "platform_admin": {
        "name": "Platform Administrator",
        "description": "Full platform access with all permissions",
        "color": "#dc2626",
        "scope_type": ScopeType.ORGANIZATION,
        "is_default": False,
        "priority": 1,
        "permissions": ["*"],
    },
    "client_admin": {
        "name": "Client Administrator",
        "description": "Full access to client and all companies within",
        "color": "#ea580c",
        "scope_type": ScopeType.CLIENT,
        "is_default": False,
        "priority": 10,
        "permissions": [
            "users:manage", "roles:manage",
            "transactions:manage", "transactions:export",
            "orders:manage", "orders:export",
            "products:manage", "products:import", "products:export",
            "customers:manage", "customers:export",
            "subscriptions:manage",
            "analytics:manage", "analytics:export",
            "settings:manage",
            "integrations:manage",
            "billing:manage",
            "audit:read", "audit:export",
            "fulfillment:manage",
        ],
    },
    "company_admin": {
        "name": "Company Administrator",
        "description": "Full access to company resources",
        "color": "#ca8a04",
        "scope_type": ScopeType.COMPANY,
        "is_default": False,
        "priority": 20,
        "permissions": [
            "users:manage", "roles:read",
            "transactions:manage", "transactions:export",
            "orders:manage", "orders:export",
            "products:manage", "products:import", "products:export",
            "customers:manage", "customers:export",
            "subscriptions:manage",
            "analytics:read", "analytics:export",
            "settings:write",
            "integrations:read",
            "fulfillment:manage",
        ],
    },
    "manager": {
        "name": "Manager",
        "description": "Team management and operational access",
        "color": "#16a34a",
        "scope_type": ScopeType.COMPANY,
        "is_default": False,
        "priority": 30,
        "permissions": [
            "users:read", "users:write",
            "transactions:read", "transactions:write", "transactions:refund",
            "orders:read", "orders:write",
            "products:read", "products:write",
            "customers:read", "customers:write",
            "subscriptions:read", "subscriptions:write",
            "analytics:read",
            "fulfillment:read", "fulfillment:write",
        ],
    },
    "staff": {
        "name": "Staff",
        "description": "Standard operational access",
        "color": "#0284c7",
        "scope_type": ScopeType.COMPANY,
        "is_default": True,
        "priority": 40,
        "permissions": [
            "transactions:read", "transactions:write",
            "orders:read", "orders:write",
            "products:read",
            "customers:read", "customers:write",
            "subscriptions:read",
            "fulfillment:read",
        ],
    },
    "viewer": {
        "name": "Viewer",
        "description": "Read-only access",
        "color": "#6b7280",
        "scope_type": ScopeType.COMPANY,
        "is_default": False,
        "priority": 50,
        "permissions": [
            "transactions:read",
            "orders:read",
            "products:read",
            "customers:read",
            "subscriptions:read",
            "analytics:read",
            "fulfillment:read",
        ],
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create or update default permissions.

    Returns:
        Dictionary mapping permission codes to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}

    for code, name, description in DEFAULT_PERMISSIONS:
        category = _CATEGORY_OVERRIDES.get(code, code.split(":", 1)[0])
        result = await db.execute(select(Permission).where(Permission.code == code))
        permission = result.scalars().first()

        if permission:
            permission.name = name
            permission.description = description
            permission.category = category
            log.debug(f"Permission '{code}' already exists, updated")
        else:
            permission = Permission(code=code, name=name, description=description, category=category)
            db.add(permission)
            log.info(f"Created permission: {code}")
        permissions_map[code] = permission

    await db.commit()
    log.info(f"Seeded {len(permissions_map)} permissions")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> dict[str, Role]:
    """
    Create or update the global system roles and replace their permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission code -> Permission object
    """
    log.info("Creating system roles...")
    roles_map = {}

    for slug, role_config in DEFAULT_ROLES.items():
        result = await db.execute(
            select(Role).where(
                Role.slug == slug,
                Role.scope_type == role_config["scope_type"],
                Role.scope_id.is_(None),
                Role.deleted_at.is_(None),
            )
        )
        role = result.scalars().first()

        if role is None:
            role = Role(slug=slug, scope_type=role_config["scope_type"], scope_id=None)
            db.add(role)

        role.name = role_config["name"]
        role.description = role_config["description"]
        role.color = role_config["color"]
        role.is_system = True
        role.is_default = role_config["is_default"]
        role.priority = role_config["priority"]

        role_permissions = []
        for code in role_config["permissions"]:
            if code in permissions_map:
                role_permissions.append(permissions_map[code])
            else:
                log.warning(f"Permission '{code}' not found for role '{slug}'")
        role.permissions = role_permissions
        roles_map[slug] = role
        log.info(f"Seeded role '{slug}' with {len(role_permissions)} permissions")

    await db.commit()
    log.info("System roles seeded successfully")
    return roles_map


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting RBAC seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)

            log.info("RBAC seeding completed successfully!")
            log.info("")
            log.info("System roles:")
            for slug, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {slug} ({role_config['scope_type'].value}): {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding RBAC: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
