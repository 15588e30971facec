# Overview: Flask CLI command groups for the inventory store.

# backend/invman/cli.py
# Commands Legend:
# Prereqs:
# - pip install -e . (installs the `invman` console script)
# - Database location: INVMAN_DATABASE_URL (default sqlite:///invman.sqlite3)
# - Credentials on every command: --auth user:password or --token TOKEN
#   (or INVMAN_AUTH / INVMAN_TOKEN); --output json|plain
#
# System bootstrap/repair:
# - invman system init
#   Create tables and seed roles, permissions and settings (idempotent).
# - invman system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - invman system cleanup-sessions --older-than-days 30
#   Purge sessions that expired or were revoked long ago.
#
# Users and sessions:
# - invman user register alice --password "Password123!"
#   The first user becomes admin; later users get the member role.
# - invman user login alice --password "Password123!"
#   Prints a session token for --token.
# - invman user logout --token TOKEN
# - invman user whoami --token TOKEN
# - invman user delete bob --auth alice:Password123!
#
# Roles:
# - invman roles list | grant member inventory.name.w | revoke member inventory.name.w | assign bob admin
#
# Schema:
# - invman schema alter name TEXT --not-nullable
#   Adds the column if it is not live, edits it otherwise.
# - invman schema add weight REAL --min 0
# - invman schema edit weight --max 1000
# - invman schema remove weight
# - invman schema list | history [--column weight] | verify
#
# Inventory:
# - invman inventory add name=bolt weight=1.5
# - invman inventory list --sort -weight --condition name=bolt --limit 10
# - invman inventory list --where '"weight" > ?' --param 1
# - invman inventory edit -i 1 -s name=screw
# - invman inventory remove 1
# - invman inventory show 1 | history 1 | verify [1]
# - invman inventory raw 'SELECT count(*) AS n FROM inventory WHERE "weight" > ?' --param 1
#
# Config and events:
# - invman config get allow_registration | set allow_registration false | list
# - invman events list --action 200 --limit 20

from __future__ import annotations

import json
from functools import wraps

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from .extensions import db
from .errors import InvmanError, InvalidCredentials, PermissionDenied
from .models import SchemaAction
from .permissions import WILDCARD, column_permission
from .services import (
    auth_service,
    config_service,
    entity_service,
    event_service,
    permission_service,
    schema_service,
    session_service,
)
from .services.concurrency import run_with_retry
from .services.session_service import principal_for_user
from .time_utils import to_utc_z

OUTPUT_FORMATS = ("plain", "json")


# =============================================================================
# Shared plumbing
# =============================================================================

def resolve_principal(auth: str | None, token: str | None):
    """
    Principal for --token, or for --auth user:password.

    Raises InvalidCredentials when neither is given.
    """
    if token:
        return session_service.validate_session(token)
    if auth:
        username, sep, password = auth.partition(":")
        if not sep:
            raise InvalidCredentials("--auth must be user:password")
        user = auth_service.authenticate(username, password)
        return principal_for_user(user)
    raise InvalidCredentials("Authentication required: pass --auth user:password or --token TOKEN")


def invman_command(group, name, *, authenticated=True, pass_token=False):
    """
    Register a command on a group with credential and output options.

    The callback receives `principal` (None when not authenticated) and
    `output`, plus the raw `token` when pass_token is set. InvmanError
    becomes a one-line "Error: ..." and exit code 1; anything else is logged
    and re-raised.
    """
    def decorator(f):
        @wraps(f)
        def wrapper(*args, auth=None, token=None, output="plain", **kwargs):
            try:
                principal = resolve_principal(auth, token) if authenticated else None
                if pass_token:
                    kwargs["token"] = token
                return f(*args, principal=principal, output=output, **kwargs)
            except InvmanError as exc:
                raise click.ClickException(str(exc)) from exc
            except click.ClickException:
                raise
            except Exception:
                current_app.logger.exception("Command '%s %s' failed", group.name, name)
                raise

        command = with_appcontext(wrapper)
        command = click.option('--output', type=click.Choice(OUTPUT_FORMATS), default="plain",
                               envvar="INVMAN_OUTPUT", show_default=True, help='Output format')(command)
        command = click.option('--token', envvar="INVMAN_TOKEN", help='Session token')(command)
        command = click.option('--auth', envvar="INVMAN_AUTH", help='Credentials as user:password')(command)
        return group.command(name)(command)
    return decorator


def emit(output: str, data, plain=None) -> None:
    if output == "json":
        click.echo(json.dumps(data, indent=2, sort_keys=False, default=str))
    elif plain is not None:
        plain(data)
    else:
        click.echo(data)


def print_table(rows: list[dict], columns: list[str]) -> None:
    if not rows:
        click.echo("No rows.")
        return
    widths = {
        col: max(len(col), *(len(_cell(row.get(col))) for row in rows))
        for col in columns
    }
    width = sum(widths.values()) + 2 * (len(columns) - 1)
    click.echo("=" * width)
    click.echo("  ".join(f"{col:<{widths[col]}}" for col in columns))
    click.echo("=" * width)
    for row in rows:
        click.echo("  ".join(f"{_cell(row.get(col)):<{widths[col]}}" for col in columns))
    click.echo("=" * width)


def _cell(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_assignments(pairs) -> dict:
    """['name=bolt', 'qty=3'] -> {'name': 'bolt', 'qty': '3'}."""
    values = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected name=value, got '{pair}'")
        values[name.strip()] = value
    return values


def column_options(f):
    """Column definition options shared by schema alter/add/edit."""
    options = [
        click.option('--display-name', default=None, help='Label shown to users'),
        click.option('--nullable/--not-nullable', default=None, help='Allow empty values'),
        click.option('--unique/--not-unique', default=None, help='Reject duplicate live values'),
        click.option('--default', 'default', default=None, help='Default value (CURRENT_TIMESTAMP for now)'),
        click.option('--min-length', type=int, default=None),
        click.option('--max-length', type=int, default=None),
        click.option('--min', 'min_', type=float, default=None),
        click.option('--max', 'max_', type=float, default=None),
        click.option('--hint', default=None),
        click.option('--layout', default=None),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _number(value):
    if value is not None and float(value).is_integer():
        return int(value)
    return value


def _definition_options(display_name, nullable, unique, default, min_length, max_length, min_, max_, hint, layout):
    return dict(
        display_name=display_name,
        nullable=nullable,
        unique=unique,
        default=default,
        min_length=min_length,
        max_length=max_length,
        min=_number(min_),
        max=_number(max_),
        hint=hint,
        layout=layout,
    )


def _readable(principal, data: dict) -> dict:
    """Drop inventory columns the principal may not read."""
    return {
        name: value for name, value in data.items()
        if permission_service.authorize(principal, column_permission(name, "r"))
    }


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@invman_command(system_group, 'init', authenticated=False)
def init_system(principal, output):
    """
    Create tables and seed roles, permissions and settings.

    Idempotent: safe to run on an initialized database.
    """
    from . import init_database

    summary = init_database()

    def plain(data):
        click.echo(f"PASS Roles: {', '.join(data['roles'])}")
        click.echo(f"PASS Created {data['permissions_created']} permissions, {data['grants_created']} role grants")
        click.echo(f"PASS Created {data['settings_created']} settings")
        click.echo("Register the first user (becomes admin): invman user register <name>")

    emit(output, summary, plain)


@invman_command(system_group, 'reset-db', authenticated=False)
@click.option('--yes', is_flag=True, help='Skip confirmation')
def reset_db(principal, output, yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    from . import init_database

    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    db.session.remove()
    db.drop_all()
    init_database()
    emit(output, {"reset": True}, lambda _: click.echo("PASS Database reset complete"))


@invman_command(system_group, 'cleanup-sessions', authenticated=False)
@click.option('--older-than-days', type=int, default=30, show_default=True)
def cleanup_sessions(principal, output, older_than_days):
    """Delete sessions that expired or were revoked long ago."""
    deleted = run_with_retry(lambda: session_service.cleanup_expired_sessions(older_than_days))
    emit(output, {"deleted": deleted}, lambda d: click.echo(f"PASS Deleted {d['deleted']} sessions"))


# =============================================================================
# USERS / SESSIONS
# =============================================================================

@click.group('user')
def user_group():
    """Registration, login and user administration."""


@invman_command(user_group, 'register', authenticated=False)
@click.argument('username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--display-name', default=None)
def register_cli(principal, output, username, password, display_name):
    """
    Register a user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    user_id = run_with_retry(lambda: auth_service.register(username, password, display_name))
    emit(output, {"id": user_id, "username": username},
         lambda d: click.echo(f"PASS Registered user {d['username']} (ID: {d['id']})"))


@invman_command(user_group, 'login', authenticated=False)
@click.argument('username')
@click.option('--password', prompt=True, hide_input=True, help='Password')
def login_cli(principal, output, username, password):
    """Open a session and print its token."""
    session, token = run_with_retry(lambda: session_service.login(username, password))
    data = {"token": token, "valid_until": to_utc_z(session.valid_until)}
    emit(output, data, lambda d: click.echo(d["token"]))


@invman_command(user_group, 'logout', authenticated=False, pass_token=True)
def logout_cli(principal, output, token):
    """Revoke the session given with --token."""
    if not token:
        raise click.UsageError("logout needs --token")
    revoked = run_with_retry(lambda: session_service.revoke_session(token))

    def plain(data):
        if data["revoked"]:
            click.echo("PASS Logged out")
        else:
            click.echo("WARN  Session was not active")

    emit(output, {"revoked": revoked}, plain)


@invman_command(user_group, 'whoami')
def whoami_cli(principal, output):
    """Show the authenticated principal."""
    def plain(data):
        click.echo(f"{data['username']} (ID: {data['user_id']}, role: {data['role_id']})")
        click.echo(f"Permissions: {', '.join(data['permissions']) or 'none'}")

    emit(output, principal.to_dict(), plain)


@invman_command(user_group, 'delete')
@click.argument('username')
def delete_user_cli(principal, output, username):
    """Soft-delete a user and revoke their sessions."""
    user = run_with_retry(lambda: auth_service.soft_delete_user(principal, username))
    emit(output, user.to_dict(), lambda d: click.echo(f"PASS Deleted user {d['username']}"))


# =============================================================================
# ROLES
# =============================================================================

@click.group('roles')
def roles_group():
    """Role and permission administration."""


@invman_command(roles_group, 'list')
def list_roles_cli(principal, output):
    """List roles with their permissions."""
    roles = permission_service.list_roles(principal)

    def plain(data):
        for role in data:
            click.echo(f"{role['id']:<4} {role['name']:<12} {', '.join(role['permissions']) or 'none'}")

    emit(output, roles, plain)


@invman_command(roles_group, 'grant')
@click.argument('role_name')
@click.argument('permission_name')
def grant_permission_cli(principal, output, role_name, permission_name):
    """Grant a permission to a role."""
    run_with_retry(lambda: permission_service.grant_permission_to_role(principal, role_name, permission_name))
    emit(output, {"role": role_name, "permission": permission_name, "granted": True},
         lambda d: click.echo(f"PASS Granted '{permission_name}' to role '{role_name}'"))


@invman_command(roles_group, 'revoke')
@click.argument('role_name')
@click.argument('permission_name')
def revoke_permission_cli(principal, output, role_name, permission_name):
    """Revoke a permission from a role."""
    revoked = run_with_retry(
        lambda: permission_service.revoke_permission_from_role(principal, role_name, permission_name)
    )

    def plain(data):
        if data["revoked"]:
            click.echo(f"PASS Revoked '{permission_name}' from role '{role_name}'")
        else:
            click.echo(f"WARN  Permission '{permission_name}' was not granted to '{role_name}'")

    emit(output, {"role": role_name, "permission": permission_name, "revoked": revoked}, plain)


@invman_command(roles_group, 'assign')
@click.argument('username')
@click.argument('role_name')
def assign_role_cli(principal, output, username, role_name):
    """Give a user a different role."""
    user = run_with_retry(lambda: permission_service.assign_role(principal, username, role_name))
    emit(output, user.to_dict(), lambda d: click.echo(f"PASS {d['username']} now has role '{role_name}'"))


# =============================================================================
# SCHEMA
# =============================================================================

@click.group('schema')
def schema_group():
    """Inventory schema commands."""


def _emit_version(output, version):
    emit(output, version.to_dict(),
         lambda d: click.echo(f"PASS {d['action']} {d['column']['name']} ({d['column']['column_type']}) tx {d['tx_id']}"))


@invman_command(schema_group, 'alter')
@click.argument('column_name')
@click.argument('column_type', required=False)
@column_options
def alter_column_cli(principal, output, column_name, column_type, **options):
    """Add the column if it is not live, otherwise edit it."""
    definition = _definition_options(**options)

    def apply():
        live = column_name in schema_service.live_columns()
        action = SchemaAction.EDIT if live else SchemaAction.ADD
        return schema_service.apply_schema_change(principal, action, column_name, column_type, **definition)

    _emit_version(output, run_with_retry(apply))


@invman_command(schema_group, 'add')
@click.argument('column_name')
@click.argument('column_type')
@column_options
def add_column_cli(principal, output, column_name, column_type, **options):
    """Add a column."""
    definition = _definition_options(**options)
    version = run_with_retry(lambda: schema_service.apply_schema_change(
        principal, SchemaAction.ADD, column_name, column_type, **definition
    ))
    _emit_version(output, version)


@invman_command(schema_group, 'edit')
@click.argument('column_name')
@click.option('--type', 'column_type', default=None, help='New column type')
@column_options
def edit_column_cli(principal, output, column_name, column_type, **options):
    """Change a column; options not given keep their value."""
    definition = _definition_options(**options)
    version = run_with_retry(lambda: schema_service.apply_schema_change(
        principal, SchemaAction.EDIT, column_name, column_type, **definition
    ))
    _emit_version(output, version)


@invman_command(schema_group, 'remove')
@click.argument('column_name')
def remove_column_cli(principal, output, column_name):
    """Remove a column. Its history stays."""
    version = run_with_retry(lambda: schema_service.apply_schema_change(
        principal, SchemaAction.REMOVE, column_name
    ))
    _emit_version(output, version)


@invman_command(schema_group, 'list')
def list_schema_cli(principal, output):
    """List live columns."""
    permission_service.require_permission(principal, "config.r")
    columns = [column.to_dict() for column in schema_service.current_schema()]
    emit(output, columns, lambda rows: print_table(
        rows, ["name", "column_type", "display_name", "nullable", "unique", "default"]
    ))


@invman_command(schema_group, 'history')
@click.option('--column', 'column_name', default=None, help='Only this column')
@click.option('--since', type=int, default=None, help='Only transactions after this id')
def schema_history_cli(principal, output, column_name, since):
    """Show the schema transaction log."""
    permission_service.require_permission(principal, "inventory_schema_tx.r")
    rows = [tx.to_dict() for tx in schema_service.schema_history(column_name, since)]

    def plain(data):
        print_table(
            [{**row, "to_type": (row["to_val"] or {}).get("column_type")} for row in data],
            ["id", "action", "column_name", "to_type", "dispatcher", "created_at"],
        )

    emit(output, rows, plain)


@invman_command(schema_group, 'verify')
def verify_schema_cli(principal, output):
    """Check the schema projection against its log and the inventory table."""
    permission_service.require_permission(principal, "config.r")
    columns = schema_service.verify_schema()
    emit(output, {"ok": True, "columns": len(columns)},
         lambda d: click.echo(f"PASS Schema consistent ({d['columns']} columns)"))


# =============================================================================
# INVENTORY
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Inventory entity commands."""


@invman_command(inventory_group, 'add')
@click.argument('fields', nargs=-1, required=True)
def add_entity_cli(principal, output, fields):
    """Create an entry from name=value pairs."""
    values = parse_assignments(fields)
    entity_id = run_with_retry(lambda: entity_service.create_entity(principal, values))
    emit(output, {"id": entity_id}, lambda d: click.echo(f"PASS Created inventory entry {d['id']}"))


@invman_command(inventory_group, 'list')
@click.option('--limit', type=int, default=None, help='Maximum rows (-1 for all)')
@click.option('--sort', multiple=True, help="Column to sort by, '-' prefix for descending")
@click.option('--condition', multiple=True, help='name=value equality filter')
@click.option('--where', default=None, help="Raw SQL condition with '?' placeholders (unsanitized)")
@click.option('--param', multiple=True, help='Positional parameter for --where')
@click.option('--include-deleted', is_flag=True, help='Include soft-deleted entries')
def list_entities_cli(principal, output, limit, sort, condition, where, param, include_deleted):
    """List inventory entries."""
    entities = entity_service.list_entities(
        where=where,
        params=list(param),
        conditions=parse_assignments(condition),
        sort=list(sort) or None,
        limit=limit,
        include_deleted=include_deleted,
    )
    rows = [_readable(principal, entity.to_dict()) for entity in entities]
    columns = [name for name in ["id", *[c.name for c in schema_service.current_schema()]]
               if permission_service.authorize(principal, column_permission(name, "r"))]
    emit(output, rows, lambda data: print_table(data, columns))


@invman_command(inventory_group, 'show')
@click.argument('entity_id', type=int)
@click.option('--include-deleted', is_flag=True)
def show_entity_cli(principal, output, entity_id, include_deleted):
    """Show one entry."""
    entity = entity_service.get_entity(entity_id, include_deleted=include_deleted)
    data = _readable(principal, entity.to_dict())

    def plain(d):
        for name, value in d.items():
            click.echo(f"{name:<20} {_cell(value)}")

    emit(output, data, plain)


@invman_command(inventory_group, 'edit')
@click.option('-i', '--id', 'entity_id', type=int, required=True, help='Entry id')
@click.option('-s', '--set', 'assignments', multiple=True, required=True, help='name=value')
def edit_entity_cli(principal, output, entity_id, assignments):
    """Change fields of an entry."""
    values = parse_assignments(assignments)
    transactions = run_with_retry(lambda: entity_service.edit_entity(principal, entity_id, values))
    data = [tx.to_dict() for tx in transactions]

    def plain(rows):
        if not rows:
            click.echo("WARN  Nothing changed")
        for row in rows:
            click.echo(f"PASS {row['column_name']}: {_cell(row['from_val'])} -> {_cell(row['to_val'])}")

    emit(output, data, plain)


@invman_command(inventory_group, 'remove')
@click.argument('entity_id', type=int)
@click.option('--reason', default=None)
def remove_entity_cli(principal, output, entity_id, reason):
    """Soft-delete an entry."""
    run_with_retry(lambda: entity_service.soft_delete_entity(principal, entity_id, reason=reason))
    emit(output, {"id": entity_id, "deleted": True},
         lambda d: click.echo(f"PASS Deleted inventory entry {d['id']}"))


@invman_command(inventory_group, 'history')
@click.argument('entity_id', type=int)
def entity_history_cli(principal, output, entity_id):
    """Show the transaction log of an entry."""
    permission_service.require_permission(principal, "inventory_tx.r")
    rows = [tx.to_dict() for tx in entity_service.entity_history(entity_id)]
    emit(output, rows, lambda data: print_table(
        data, ["id", "action", "column_name", "from_val", "to_val", "dispatcher", "created_at"]
    ))


@invman_command(inventory_group, 'verify')
@click.argument('entity_id', type=int, required=False)
def verify_entity_cli(principal, output, entity_id):
    """Replay the log of one entry (or all) and compare with the live table."""
    permission_service.require_permission(principal, "inventory_tx.r")
    if entity_id is not None:
        ids = [entity_id]
    else:
        schema_service.verify_schema()
        ids = [entity.id for entity in entity_service.list_entities(include_deleted=True)]
    for one_id in ids:
        entity_service.verify_entity(one_id)
    emit(output, {"ok": True, "verified": len(ids)},
         lambda d: click.echo(f"PASS {d['verified']} inventory entries consistent"))


@invman_command(inventory_group, 'raw')
@click.argument('sql')
@click.option('--param', multiple=True, help="Positional parameter for '?' placeholders")
def raw_query_cli(principal, output, sql, param):
    """Run a raw SQL query (unsanitized; requires every permission)."""
    if not permission_service.authorize(principal, WILDCARD):
        current_app.logger.warning("Permission denied: user_id=%s permission=%s", principal.user_id, WILDCARD)
        raise PermissionDenied("Permission denied")
    rows = entity_service.raw_query(sql, list(param))
    columns = list(rows[0]) if rows else []
    emit(output, rows, lambda data: print_table(data, columns))


# =============================================================================
# CONFIG
# =============================================================================

@click.group('config')
def config_group():
    """Runtime settings."""


@invman_command(config_group, 'get')
@click.argument('name')
def get_config_cli(principal, output, name):
    """Show one setting."""
    permission_service.require_permission(principal, "config.r")
    value = config_service.get_config(name)
    emit(output, {"name": name, "value": value}, lambda d: click.echo(_cell(d["value"])))


@invman_command(config_group, 'set')
@click.argument('name')
@click.argument('value')
def set_config_cli(principal, output, name, value):
    """Create or change a setting."""
    entry = run_with_retry(lambda: config_service.set_config(name, value, principal=principal))
    emit(output, entry.to_dict(), lambda d: click.echo(f"PASS {d['name']} = {d['value']}"))


@invman_command(config_group, 'list')
def list_config_cli(principal, output):
    """List settings."""
    permission_service.require_permission(principal, "config.r")
    rows = [entry.to_dict() for entry in config_service.list_config()]
    emit(output, rows, lambda data: print_table(data, ["name", "value", "updated_at"]))


# =============================================================================
# EVENTS
# =============================================================================

@click.group('events')
def events_group():
    """Event log."""


@invman_command(events_group, 'list')
@click.option('--action', 'action_no', type=int, default=None, help='Action number (e.g. 200)')
@click.option('--dispatcher', type=int, default=None, help='User id')
@click.option('--target', type=int, default=None)
@click.option('--limit', type=int, default=None)
def list_events_cli(principal, output, action_no, dispatcher, target, limit):
    """List events in the order they happened."""
    permission_service.require_permission(principal, "events.r")
    rows = [
        ev.to_dict()
        for ev in event_service.list_events(action_no=action_no, dispatcher=dispatcher, target=target, limit=limit)
    ]
    emit(output, rows, lambda data: print_table(
        data, ["id", "action", "dispatcher", "target", "reason", "created_at"]
    ))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(user_group)
    app.cli.add_command(roles_group)
    app.cli.add_command(schema_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(config_group)
    app.cli.add_command(events_group)


def _create_app():
    from . import create_app
    return create_app()


cli = FlaskGroup(create_app=_create_app, add_default_commands=False, help="invman inventory tracker")
