from .auth import User, Role, Permission, RolePermission, SessionToken
from .inventory import (
    inventory_table,
    INVENTORY_FIXED_COLUMNS,
    SchemaAction,
    EntityAction,
    InventorySchemaColumn,
    SchemaTransaction,
    InventoryTransaction,
)
from .events import Event, EventAction
from .settings import ConfigEntry

__all__ = [
    'User', 'Role', 'Permission', 'RolePermission', 'SessionToken',
    'inventory_table', 'INVENTORY_FIXED_COLUMNS', 'SchemaAction', 'EntityAction',
    'InventorySchemaColumn', 'SchemaTransaction', 'InventoryTransaction',
    'Event', 'EventAction',
    'ConfigEntry',
]
