# Overview: Authorization policy; the single (role, action) -> allow/deny table.

"""
Permission definitions and the default role -> permission mapping.

Every authorization decision in the application goes through
`is_allowed(role, action)`: route decorators, service-boundary re-checks
and the CLI all call it. Nothing else inspects role strings.

Each permission is defined as: (code, name, description, category)
"""


class PermissionCategory:
    """Permission categories for grouping and UI display."""
    SALES = "SALES"
    CATALOG = "CATALOG"
    REPORTS = "REPORTS"
    USERS = "USERS"


PERMISSION_DEFINITIONS = [
    (
        "CHECKOUT",
        "Checkout",
        "Build a cart and complete sales (POS access)",
        PermissionCategory.SALES,
    ),
    (
        "VIEW_SALES",
        "View Sales",
        "View completed sales and reprint receipts",
        PermissionCategory.SALES,
    ),
    (
        "VIEW_CATALOG",
        "View Catalog",
        "View products, stock levels and catalog alerts",
        PermissionCategory.CATALOG,
    ),
    (
        "MANAGE_PRODUCTS",
        "Manage Products",
        "Create, edit, restock and delete products",
        PermissionCategory.CATALOG,
    ),
    (
        "VIEW_REPORTS",
        "View Reports",
        "View sales reports and the dashboard",
        PermissionCategory.REPORTS,
    ),
    (
        "MANAGE_USERS",
        "Manage Users",
        "Create, edit, deactivate and delete staff accounts",
        PermissionCategory.USERS,
    ),
]


DEFAULT_ROLE_PERMISSIONS = {
    "super_admin": [
        "CHECKOUT",
        "VIEW_SALES",
        "VIEW_CATALOG",
        "MANAGE_PRODUCTS",
        "VIEW_REPORTS",
        "MANAGE_USERS",
    ],

    "pharmtech": [
        # Pharmacy technician: POS plus catalog maintenance
        "CHECKOUT",
        "VIEW_SALES",
        "VIEW_CATALOG",
        "MANAGE_PRODUCTS",
        "VIEW_REPORTS",
    ],

    "cashier": [
        "CHECKOUT",
        "VIEW_SALES",
        "VIEW_CATALOG",
        "VIEW_REPORTS",
    ],
}

_ROLE_PERMISSION_SETS = {role: frozenset(codes) for role, codes in DEFAULT_ROLE_PERMISSIONS.items()}


def get_permission_definition(code):
    """Get full definition for a permission code."""
    for perm in PERMISSION_DEFINITIONS:
        if perm[0] == code:
            return {
                "code": perm[0],
                "name": perm[1],
                "description": perm[2],
                "category": perm[3],
            }
    return None


def permissions_for_role(role: str) -> frozenset[str]:
    return _ROLE_PERMISSION_SETS.get(role, frozenset())


def is_allowed(role: str, action: str) -> bool:
    """Fail closed: unknown roles and unknown actions are denied."""
    return action in permissions_for_role(role)
