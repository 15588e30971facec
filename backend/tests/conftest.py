"""
Pytest fixtures for invman tests.

Every test gets its own app bound to a fresh in-memory SQLite database with
roles, permissions and settings seeded.
"""

import pytest

from invman import create_app, init_database
from invman.extensions import db
from invman.models import User
from invman.services import auth_service, permission_service, schema_service
from invman.services.session_service import principal_for_user

PASSWORD = "Password123!"


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'BCRYPT_ROUNDS': 4,
    })

    with app.app_context():
        init_database()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    return app.test_cli_runner()


def principal(username: str):
    """Fresh principal for a user; permissions are resolved at call time."""
    user = db.session.query(User).filter_by(username=username).one()
    return principal_for_user(user)


@pytest.fixture(scope='function')
def admin(app):
    """First registered user: role 1 (admin, '*')."""
    auth_service.register("admin", PASSWORD)
    return principal("admin")


@pytest.fixture(scope='function')
def member(app, admin):
    """Second registered user: role 2 (member, no grants)."""
    auth_service.register("member", PASSWORD)
    return principal("member")


@pytest.fixture(scope='function')
def name_column(admin):
    """Schema with a single name:TEXT column."""
    return schema_service.apply_schema_change(admin, "ADD", "name", "TEXT")


@pytest.fixture(scope='function')
def stock_schema(admin):
    """name:TEXT (required), qty:INT >= 0, weight:REAL, active:BOOL default true."""
    schema_service.apply_schema_change(admin, "ADD", "name", "TEXT", nullable=False)
    schema_service.apply_schema_change(admin, "ADD", "qty", "INT", min=0)
    schema_service.apply_schema_change(admin, "ADD", "weight", "REAL")
    schema_service.apply_schema_change(admin, "ADD", "active", "BOOL", default="true")
    return schema_service.current_schema()


def grant(role_name: str, *permissions: str) -> None:
    """Grant permissions to a role as the admin user."""
    admin_principal = principal("admin")
    for permission in permissions:
        permission_service.grant_permission_to_role(admin_principal, role_name, permission)
