"""
Storage contention tests.

Verifies:
- a locked database surfaces as StorageBusy on schema and entity writes
- run_with_retry retries StorageBusy only
- each store keeps its own busy timeout
"""

import sqlite3

import pytest
from sqlalchemy.exc import OperationalError

from conftest import PASSWORD, principal
from invman import create_app, init_database
from invman.extensions import db
from invman.errors import InvalidValue, StorageBusy, StorageError
from invman.services import auth_service, entity_service, schema_service, session_service
from invman.services.concurrency import run_with_retry, translate_storage_error


def _busy_timeout():
    return db.session.connection().exec_driver_sql("PRAGMA busy_timeout").scalar()


@pytest.fixture
def file_store(tmp_path):
    """Store on a file database with a short busy timeout."""
    path = tmp_path / "store.sqlite3"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{path}",
        'SQLITE_BUSY_TIMEOUT_MS': 50,
        'BCRYPT_ROUNDS': 4,
    })

    with app.app_context():
        init_database()
        auth_service.register("admin", PASSWORD)
        admin = principal("admin")
        schema_service.apply_schema_change(admin, "ADD", "name", "TEXT")
        entity_id = entity_service.create_entity(admin, {"name": "bolt"})
        db.session.commit()
        yield path, admin, entity_id
        db.session.remove()
        db.drop_all()


@pytest.fixture
def locked(file_store):
    """Hold an exclusive lock from a second connection."""
    path, admin, entity_id = file_store
    other = sqlite3.connect(str(path), isolation_level=None)
    other.execute("BEGIN EXCLUSIVE")
    yield admin, entity_id
    other.execute("ROLLBACK")
    other.close()


# =============================================================================
# Lock contention
# =============================================================================


class TestLockedDatabase:

    def test_schema_change_raises_storage_busy(self, locked):
        admin, _ = locked
        with pytest.raises(StorageBusy):
            schema_service.apply_schema_change(admin, "ADD", "weight", "REAL")

    def test_entity_writes_raise_storage_busy(self, locked):
        admin, entity_id = locked
        with pytest.raises(StorageBusy):
            entity_service.create_entity(admin, {"name": "nut"})
        with pytest.raises(StorageBusy):
            entity_service.edit_entity(admin, entity_id, {"name": "screw"})
        with pytest.raises(StorageBusy):
            entity_service.soft_delete_entity(admin, entity_id)

    def test_identity_paths_raise_storage_busy(self, locked):
        with pytest.raises(StorageBusy):
            auth_service.register("bob", PASSWORD)
        with pytest.raises(StorageBusy):
            session_service.login("admin", PASSWORD)
        with pytest.raises(StorageBusy):
            session_service.validate_session("some-token")

    def test_nothing_written_after_release(self, file_store):
        path, admin, entity_id = file_store
        other = sqlite3.connect(str(path), isolation_level=None)
        other.execute("BEGIN EXCLUSIVE")
        with pytest.raises(StorageBusy):
            schema_service.apply_schema_change(admin, "ADD", "weight", "REAL")
        other.execute("ROLLBACK")
        other.close()

        assert [c.name for c in schema_service.current_schema()] == ["name"]
        schema_service.verify_schema()
        entity_service.verify_entity(entity_id)


# =============================================================================
# Error translation / retry
# =============================================================================


class TestRetry:

    def test_lock_errors_become_storage_busy(self):
        locked = OperationalError("SELECT 1", {}, Exception("database is locked"))
        assert isinstance(translate_storage_error(locked), StorageBusy)

    def test_other_errors_stay_storage_error(self):
        broken = OperationalError("SELECT 1", {}, Exception("no such table: nowhere"))
        error = translate_storage_error(broken)
        assert isinstance(error, StorageError)
        assert not isinstance(error, StorageBusy)
        assert "no such table" in str(error)

    def test_retries_busy_then_succeeds(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageBusy("Storage busy")
            return "done"

        assert run_with_retry(flaky, attempts=3, backoff_base=0) == "done"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self):
        calls = []

        def always_busy():
            calls.append(1)
            raise StorageBusy("Storage busy")

        with pytest.raises(StorageBusy):
            run_with_retry(always_busy, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_validation_errors_are_not_retried(self):
        calls = []

        def invalid():
            calls.append(1)
            raise InvalidValue("Field qty must be an integer")

        with pytest.raises(InvalidValue):
            run_with_retry(invalid, attempts=3, backoff_base=0)
        assert len(calls) == 1


# =============================================================================
# Store isolation
# =============================================================================


class TestBusyTimeoutPerStore:

    def test_each_store_keeps_its_timeout(self):
        first = create_app({'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:', 'SQLITE_BUSY_TIMEOUT_MS': 50})
        second = create_app({'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:', 'SQLITE_BUSY_TIMEOUT_MS': 60000})

        with second.app_context():
            assert _busy_timeout() == 60000
            db.session.remove()
        with first.app_context():
            assert _busy_timeout() == 50
            db.session.remove()
