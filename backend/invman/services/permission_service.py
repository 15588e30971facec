# Overview: Service-layer operations for permissions; role grants and principal authorization.

"""
Permission Checking

DESIGN PRINCIPLES:
- Fail closed: deny by default, require explicit permission grant.
- user -> role -> permission set; "*" on a role grants everything.
- Denials are logged; the error itself is generic so callers cannot tell a
  missing permission from a missing resource.
- Checks run before any resource lookup.
"""

from flask import current_app

from ..extensions import db
from ..models import Role, RolePermission, Permission, User
from ..permissions import PERMISSION_DEFINITIONS, DEFAULT_ROLES, DEFAULT_ROLE_PERMISSIONS, WILDCARD
from ..errors import PermissionDenied, ValidationError, NotFound
from .concurrency import atomic, storage_errors


def get_role_permissions(role_id: int) -> set[str]:
    """Permission names granted to a role."""
    with storage_errors():
        rows = (
            db.session.query(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .filter(RolePermission.role_id == role_id)
            .all()
        )
    return {name for (name,) in rows}


def get_user_permissions(user_id: int) -> set[str]:
    user = db.session.get(User, user_id)
    if user is None:
        return set()
    return get_role_permissions(user.role_id)


def authorize(principal, permission: str) -> bool:
    """True if the principal's role holds the exact permission or the wildcard."""
    permissions = principal.permissions
    return WILDCARD in permissions or permission in permissions


def require_permission(principal, permission: str) -> None:
    """
    Raise PermissionDenied unless the principal holds the permission.

    Usage:
        require_permission(principal, "config.w")
    """
    if authorize(principal, permission):
        return

    current_app.logger.warning(
        "Permission denied: user_id=%s permission=%s", principal.user_id, permission
    )
    raise PermissionDenied("Permission denied")


def require_all(principal, permissions) -> None:
    for permission in permissions:
        require_permission(principal, permission)


# =============================================================================
# Seeding
# =============================================================================

def ensure_permission(name: str, description: str | None = None) -> Permission:
    """Get or create a permission. Flushes, never commits."""
    permission = db.session.query(Permission).filter_by(name=name).first()
    if permission is None:
        permission = Permission(name=name, description=description)
        db.session.add(permission)
        db.session.flush()
    return permission


def initialize_permissions() -> int:
    """
    Create Permission records for the catalog.

    Idempotent: Safe to run multiple times.
    """
    created_count = 0
    with atomic():
        for name, description in PERMISSION_DEFINITIONS:
            if db.session.query(Permission).filter_by(name=name).first() is None:
                db.session.add(Permission(name=name, description=description))
                created_count += 1
    return created_count


def create_default_roles() -> list[Role]:
    """Create admin (id 1) and member (id 2) if they don't exist."""
    with atomic():
        for role_id, (name, display_name) in enumerate(DEFAULT_ROLES, start=1):
            if db.session.query(Role).filter_by(name=name).first() is None:
                db.session.add(Role(id=role_id, name=name, display_name=display_name))
    return db.session.query(Role).order_by(Role.id.asc()).all()


def assign_default_role_permissions() -> int:
    """
    Link roles to their default permissions.

    Idempotent: skips existing grants and unknown roles/permissions.
    """
    created_count = 0
    with atomic():
        for role_name, permission_names in DEFAULT_ROLE_PERMISSIONS.items():
            role = db.session.query(Role).filter_by(name=role_name).first()
            if not role:
                continue

            for permission_name in permission_names:
                permission = db.session.query(Permission).filter_by(name=permission_name).first()
                if not permission:
                    continue

                existing = db.session.query(RolePermission).filter_by(
                    role_id=role.id,
                    permission_id=permission.id
                ).first()
                if not existing:
                    db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                    created_count += 1
    return created_count


# =============================================================================
# Role administration
# =============================================================================

def _get_role(role_name: str) -> Role:
    with storage_errors():
        role = db.session.query(Role).filter_by(name=role_name, deleted_at=None).first()
    if not role:
        raise NotFound(f"Role '{role_name}' not found")
    return role


def list_roles(principal) -> list[dict]:
    """Roles with their permission names."""
    require_permission(principal, "roles.r")
    with storage_errors():
        roles = db.session.query(Role).filter(Role.deleted_at.is_(None)).order_by(Role.id.asc()).all()
    result = []
    for role in roles:
        data = role.to_dict()
        data["permissions"] = sorted(get_role_permissions(role.id))
        result.append(data)
    return result


def _get_permission(permission_name: str) -> Permission:
    with storage_errors():
        permission = db.session.query(Permission).filter_by(name=permission_name).first()
    if not permission:
        raise ValidationError(f"Permission '{permission_name}' not found")
    return permission


def _get_grant(role: Role, permission: Permission) -> RolePermission | None:
    with storage_errors():
        return db.session.query(RolePermission).filter_by(
            role_id=role.id,
            permission_id=permission.id
        ).first()


def grant_permission_to_role(principal, role_name: str, permission_name: str) -> RolePermission:
    """Grant a permission to a role. Unknown permission names are rejected."""
    require_permission(principal, "roles.w")
    role = _get_role(role_name)
    permission = _get_permission(permission_name)

    existing = _get_grant(role, permission)
    if existing:
        return existing  # Already granted

    with atomic():
        role_permission = RolePermission(role_id=role.id, permission_id=permission.id)
        db.session.add(role_permission)
    return role_permission


def revoke_permission_from_role(principal, role_name: str, permission_name: str) -> bool:
    """Revoke a permission from a role. Returns False if it wasn't granted."""
    require_permission(principal, "roles.w")
    role = _get_role(role_name)
    permission = _get_permission(permission_name)

    role_permission = _get_grant(role, permission)
    if not role_permission:
        return False

    with atomic():
        db.session.delete(role_permission)
    return True


def assign_role(principal, username: str, role_name: str) -> User:
    """Replace a user's role."""
    require_permission(principal, "roles.w")
    role = _get_role(role_name)

    with storage_errors():
        user = db.session.query(User).filter_by(username=username, deleted_at=None).first()
    if not user:
        raise NotFound(f"User '{username}' not found")

    with atomic():
        user.role_id = role.id
    return user
