"""
Permission catalog and default role grants.

Permissions are dotted capability tokens: "<table>[.<column>].<r|w>".
The wildcard "*" grants everything.
"""

WILDCARD = "*"

# Each permission is defined as: (name, description)
PERMISSION_DEFINITIONS = [
    (WILDCARD, "All permissions"),
    ("events.r", "Read the event log"),
    ("inventory.id.r", "Read inventory ids"),
    ("inventory.created_at.r", "Read inventory creation time"),
    ("inventory.updated_at.r", "Read inventory update time"),
    ("inventory.deleted_at.r", "Read inventory deletion time"),
    ("inventory.deleted_at.w", "Soft-delete inventory entities"),
    ("inventory_tx.r", "Read inventory transaction history"),
    ("inventory_schema_tx.r", "Read schema transaction history"),
    ("roles.r", "Read roles and their permissions"),
    ("roles.w", "Grant, revoke and assign roles"),
    ("users.r", "Read users"),
    ("users.w", "Soft-delete users"),
    ("config.r", "Read config and the inventory schema"),
    ("config.w", "Write config and alter the inventory schema"),
]

# Roles seeded on init, in id order: (name, display_name)
DEFAULT_ROLES = [
    ("admin", "Administrator"),
    ("member", "Member"),
]

ADMIN_ROLE_ID = 1
MEMBER_ROLE_ID = 2

# Only the admin role is granted anything by default
DEFAULT_ROLE_PERMISSIONS = {
    "admin": [WILDCARD],
    "member": [],
}


def column_permission(column_name: str, mode: str) -> str:
    """Permission name for reading ("r") or writing ("w") one inventory column."""
    if mode not in ("r", "w"):
        raise ValueError("mode must be 'r' or 'w'")
    return f"inventory.{column_name}.{mode}"
