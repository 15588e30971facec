"""
CLI tests through app.test_cli_runner().
"""

import json

import pytest

from conftest import PASSWORD
from invman.services import entity_service, schema_service

AUTH = ["--auth", f"admin:{PASSWORD}"]


def invoke(runner, *args):
    return runner.invoke(args=list(args))


def invoke_json(runner, *args):
    result = invoke(runner, *args, "--output", "json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


@pytest.fixture
def registered(runner):
    result = invoke(runner, "user", "register", "admin", "--password", PASSWORD)
    assert result.exit_code == 0, result.output
    return result


class TestUserCommands:

    def test_register_first_user(self, registered):
        assert "PASS Registered user admin" in registered.output

    def test_login_whoami_logout(self, runner, registered):
        token = invoke_json(runner, "user", "login", "admin", "--password", PASSWORD)["token"]

        me = invoke_json(runner, "user", "whoami", "--token", token)
        assert me["username"] == "admin"
        assert me["permissions"] == ["*"]

        assert invoke_json(runner, "user", "logout", "--token", token) == {"revoked": True}

        result = invoke(runner, "user", "whoami", "--token", token)
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_bad_credentials(self, runner, registered):
        result = invoke(runner, "user", "whoami", "--auth", "admin:nope")
        assert result.exit_code == 1
        assert "Either username or password is incorrect" in result.output

    def test_missing_credentials(self, runner, registered):
        result = invoke(runner, "schema", "list")
        assert result.exit_code == 1
        assert "Authentication required" in result.output


class TestSchemaCommands:

    def test_add_list_remove(self, runner, registered):
        result = invoke(runner, "schema", "add", "weight", "REAL", "--min", "0", *AUTH)
        assert result.exit_code == 0, result.output

        columns = invoke_json(runner, "schema", "list", *AUTH)
        assert [(c["name"], c["column_type"], c["min"]) for c in columns] == [("weight", "REAL", 0)]

        invoke_json(runner, "schema", "remove", "weight", *AUTH)
        assert invoke_json(runner, "schema", "list", *AUTH) == []

        history = invoke_json(runner, "schema", "history", "--column", "weight", *AUTH)
        assert [row["action"] for row in history] == ["ADD", "REMOVE"]

    def test_alter_adds_then_edits(self, runner, registered):
        first = invoke_json(runner, "schema", "alter", "name", "TEXT", *AUTH)
        second = invoke_json(runner, "schema", "alter", "name", "--max-length", "40", *AUTH)

        assert first["action"] == "ADD"
        assert second["action"] == "EDIT"
        assert second["column"]["max_length"] == 40

    def test_invalid_definition_exit_code(self, runner, registered):
        result = invoke(runner, "schema", "add", "code", "VARCHAR", *AUTH)
        assert result.exit_code == 1
        assert "max_length" in result.output

    def test_verify(self, runner, registered):
        invoke_json(runner, "schema", "add", "name", "TEXT", *AUTH)
        assert invoke_json(runner, "schema", "verify", *AUTH)["ok"] is True


class TestInventoryCommands:

    @pytest.fixture
    def schema(self, runner, registered):
        invoke_json(runner, "schema", "add", "name", "TEXT", *AUTH)
        invoke_json(runner, "schema", "add", "qty", "INT", *AUTH)

    def test_add_edit_remove(self, runner, schema):
        created = invoke_json(runner, "inventory", "add", "name=bolt", "qty=3", *AUTH)
        entity_id = created["id"]

        changes = invoke_json(runner, "inventory", "edit", "-i", str(entity_id), "-s", "name=screw", *AUTH)
        assert [(c["from_val"], c["to_val"]) for c in changes] == [("bolt", "screw")]

        rows = invoke_json(runner, "inventory", "list", *AUTH)
        assert [(r["name"], r["qty"]) for r in rows] == [("screw", 3)]

        invoke_json(runner, "inventory", "remove", str(entity_id), *AUTH)
        assert invoke_json(runner, "inventory", "list", *AUTH) == []
        assert len(invoke_json(runner, "inventory", "list", "--include-deleted", *AUTH)) == 1

        history = invoke_json(runner, "inventory", "history", str(entity_id), *AUTH)
        assert [row["action"] for row in history] == ["CREATE", "CREATE", "UPDATE", "DELETE"]

        assert invoke_json(runner, "inventory", "verify", *AUTH) == {"ok": True, "verified": 1}

    def test_list_filters(self, runner, schema):
        for name, qty in [("bolt", 3), ("nut", 12), ("washer", 7)]:
            invoke_json(runner, "inventory", "add", f"name={name}", f"qty={qty}", *AUTH)

        rows = invoke_json(runner, "inventory", "list", "--where", '"qty" > ?', "--param", "5",
                           "--sort", "-qty", *AUTH)
        assert [r["name"] for r in rows] == ["nut", "washer"]

        rows = invoke_json(runner, "inventory", "list", "--condition", "name=bolt", *AUTH)
        assert [r["qty"] for r in rows] == [3]

        rows = invoke_json(runner, "inventory", "list", "--limit", "1", *AUTH)
        assert len(rows) == 1

    def test_plain_output(self, runner, schema):
        invoke_json(runner, "inventory", "add", "name=bolt", *AUTH)
        result = invoke(runner, "inventory", "list", *AUTH)
        assert result.exit_code == 0
        assert "bolt" in result.output
        assert "name" in result.output

    def test_unknown_column(self, runner, schema):
        result = invoke(runner, "inventory", "add", "colour=red", *AUTH)
        assert result.exit_code == 1
        assert "colour" in result.output

    def test_malformed_assignment(self, runner, schema):
        result = invoke(runner, "inventory", "add", "justaname", *AUTH)
        assert result.exit_code != 0

    def test_raw_query(self, runner, schema):
        invoke_json(runner, "inventory", "add", "name=bolt", "qty=3", *AUTH)
        rows = invoke_json(runner, "inventory", "raw", 'SELECT "name" FROM inventory WHERE "qty" = ?',
                           "--param", "3", *AUTH)
        assert rows == [{"name": "bolt"}]

    def test_member_cannot_write_or_query(self, runner, schema):
        invoke(runner, "user", "register", "member", "--password", PASSWORD)
        member = ["--auth", f"member:{PASSWORD}"]

        result = invoke(runner, "inventory", "add", "name=bolt", *member)
        assert result.exit_code == 1
        assert "Permission denied" in result.output

        result = invoke(runner, "inventory", "raw", "SELECT 1", *member)
        assert result.exit_code == 1

        assert list(entity_service.list_entities()) == []

    def test_member_sees_only_readable_columns(self, runner, schema):
        invoke_json(runner, "inventory", "add", "name=bolt", "qty=3", *AUTH)
        invoke(runner, "user", "register", "member", "--password", PASSWORD)
        invoke_json(runner, "roles", "grant", "member", "inventory.name.r", *AUTH)

        rows = invoke_json(runner, "inventory", "list", "--auth", f"member:{PASSWORD}")
        assert rows == [{"name": "bolt"}]


class TestSystemAndConfigCommands:

    def test_init_is_idempotent(self, runner):
        summary = invoke_json(runner, "system", "init")
        assert summary["roles"] == ["admin", "member"]
        assert summary["permissions_created"] == 0

    def test_config_set_and_get(self, runner, registered):
        invoke_json(runner, "config", "set", "allow_registration", "false", *AUTH)
        assert invoke_json(runner, "config", "get", "allow_registration", *AUTH)["value"] == "false"

        result = invoke(runner, "user", "register", "late", "--password", PASSWORD)
        assert result.exit_code == 1
        assert "Registration is disabled" in result.output

    def test_events_list(self, runner, registered):
        invoke_json(runner, "schema", "add", "name", "TEXT", *AUTH)
        events = invoke_json(runner, "events", "list", "--action", "300", *AUTH)
        assert [e["action"] for e in events] == ["SCHEMA_ALTER"]

    def test_reset_db(self, runner, registered):
        invoke_json(runner, "schema", "add", "name", "TEXT", *AUTH)
        result = invoke(runner, "system", "reset-db", "--yes")
        assert result.exit_code == 0, result.output
        assert schema_service.current_schema() == []
        assert "name" not in schema_service.physical_columns()
