"""
Authorization tests.

Verifies:
- seeding is idempotent
- admin (role 1) holds '*', member (role 2) holds nothing by default
- denials are generic and role administration needs roles.w
"""

import pytest

from conftest import grant, principal
from invman import init_database
from invman.extensions import db
from invman.errors import NotFound, PermissionDenied, ValidationError
from invman.models import Permission, Role, RolePermission, User
from invman.permissions import PERMISSION_DEFINITIONS, column_permission
from invman.services import permission_service


class TestSeeding:

    def test_default_roles(self, app):
        roles = db.session.query(Role).order_by(Role.id).all()
        assert [(r.id, r.name) for r in roles] == [(1, "admin"), (2, "member")]

    def test_catalog_seeded(self, app):
        names = {p.name for p in db.session.query(Permission).all()}
        assert names == {name for name, _ in PERMISSION_DEFINITIONS}

    def test_seeding_is_idempotent(self, app):
        before = db.session.query(RolePermission).count()
        summary = init_database()
        assert summary["permissions_created"] == 0
        assert summary["grants_created"] == 0
        assert db.session.query(RolePermission).count() == before

    def test_role_grants(self, app):
        assert permission_service.get_role_permissions(1) == {"*"}
        assert permission_service.get_role_permissions(2) == set()


class TestAuthorize:

    def test_wildcard_grants_everything(self, admin):
        assert permission_service.authorize(admin, "config.w")
        assert permission_service.authorize(admin, column_permission("anything", "w"))

    def test_member_denied_by_default(self, member):
        assert not permission_service.authorize(member, "config.r")
        with pytest.raises(PermissionDenied) as excinfo:
            permission_service.require_permission(member, "config.r")
        assert str(excinfo.value) == "Permission denied"

    def test_require_all_stops_at_first_missing(self, member):
        grant("member", "events.r")
        with pytest.raises(PermissionDenied):
            permission_service.require_all(principal("member"), ["events.r", "roles.r"])

    def test_denial_is_logged(self, member, caplog):
        with caplog.at_level("WARNING"):
            with pytest.raises(PermissionDenied):
                permission_service.require_permission(member, "roles.w")
        assert "roles.w" in caplog.text

    def test_column_permission_modes(self):
        assert column_permission("name", "r") == "inventory.name.r"
        with pytest.raises(ValueError):
            column_permission("name", "x")


class TestRoleAdministration:

    def test_grant_and_revoke(self, admin, member):
        grant("member", "events.r")
        assert permission_service.authorize(principal("member"), "events.r")

        assert permission_service.revoke_permission_from_role(admin, "member", "events.r") is True
        assert permission_service.revoke_permission_from_role(admin, "member", "events.r") is False
        assert not permission_service.authorize(principal("member"), "events.r")

    def test_grant_is_idempotent(self, admin):
        first = permission_service.grant_permission_to_role(admin, "member", "events.r")
        second = permission_service.grant_permission_to_role(admin, "member", "events.r")
        assert first.id == second.id

    def test_grant_unknown_permission(self, admin):
        with pytest.raises(ValidationError):
            permission_service.grant_permission_to_role(admin, "member", "inventory.ghost.w")

    def test_grant_unknown_role(self, admin):
        with pytest.raises(NotFound):
            permission_service.grant_permission_to_role(admin, "auditor", "events.r")

    def test_assign_role(self, admin, member):
        permission_service.assign_role(admin, "member", "admin")
        assert db.session.query(User).filter_by(username="member").one().role_id == 1
        assert permission_service.authorize(principal("member"), "config.w")

    def test_role_administration_requires_roles_w(self, member):
        with pytest.raises(PermissionDenied):
            permission_service.grant_permission_to_role(member, "member", "events.r")
        with pytest.raises(PermissionDenied):
            permission_service.assign_role(member, "member", "admin")
        with pytest.raises(PermissionDenied):
            permission_service.list_roles(member)

    def test_list_roles(self, admin):
        roles = permission_service.list_roles(admin)
        assert [(r["name"], r["permissions"]) for r in roles] == [("admin", ["*"]), ("member", [])]
