# Overview: Service-layer operations for the inventory schema registry; versioned column definitions.

"""
Schema Registry

The schema log (inventory_schema_tx) is the source of truth. The
inventory_schema projection and the physical columns of the inventory table
are caches that are only ever changed together with one log append, inside
one transaction.

INVARIANTS:
- Every accepted change appends exactly one log row.
- Column names are unique among live columns.
- REMOVE is logical: the physical column and every log row stay.
- Re-adding a removed column starts a new generation; the physical column is
  cleared so values from the old generation never resurface.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, Optional

import sqlalchemy as sa
from flask import current_app

from ..extensions import db
from ..models import (
    INVENTORY_FIXED_COLUMNS,
    InventorySchemaColumn,
    SchemaAction,
    SchemaTransaction,
    EventAction,
    inventory_table,
)
from ..errors import (
    DuplicateColumn,
    InvalidColumnDefinition,
    InvalidValue,
    StorageCorrupt,
    UnknownColumn,
)
from ..permissions import column_permission
from ..validation import ColumnDefinition, check_type_change, coerce_value, from_storage
from invman.time_utils import to_utc_z
from .concurrency import atomic, storage_errors
from .event_service import append_event
from . import permission_service

INVENTORY_TABLE = "inventory"
REBUILD_TABLE = "inventory_rebuild"


@dataclass(frozen=True)
class SchemaVersion:
    """Result of an accepted schema change."""
    tx_id: int
    action: str
    column: ColumnDefinition
    created_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "action": self.action,
            "column": self.column.to_dict(),
            "created_at": to_utc_z(self.created_at),
        }


def parse_action(action) -> int:
    """Accept 1/2/3 or ADD/EDIT/REMOVE (any case)."""
    if isinstance(action, int) and not isinstance(action, bool):
        if action in SchemaAction.NAMES:
            return action
    elif isinstance(action, str):
        for number, name in SchemaAction.NAMES.items():
            if action.strip().upper() == name:
                return number
    raise InvalidColumnDefinition(f"Unknown schema action: {action!r}")


# =============================================================================
# Physical table helpers
# =============================================================================

def _quote(name: str) -> str:
    return db.session.get_bind().dialect.identifier_preparer.quote(name)


def physical_columns() -> dict[str, sa.types.TypeEngine]:
    """Columns of the live inventory table as the database reports them."""
    inspector = sa.inspect(db.session.connection())
    return {col["name"]: col["type"] for col in inspector.get_columns(INVENTORY_TABLE)}


def _compile_type(type_: sa.types.TypeEngine) -> str:
    return type_.compile(dialect=db.session.get_bind().dialect)


def _add_physical_column(definition: ColumnDefinition) -> None:
    ddl = "ALTER TABLE {table} ADD COLUMN {column} {type}".format(
        table=_quote(INVENTORY_TABLE),
        column=_quote(definition.name),
        type=_compile_type(definition.storage_type()),
    )
    db.session.connection().exec_driver_sql(ddl)


def _clear_physical_column(name: str) -> None:
    db.session.connection().exec_driver_sql(
        "UPDATE {table} SET {column} = NULL".format(
            table=_quote(INVENTORY_TABLE), column=_quote(name)
        )
    )


def _rebuild_inventory_table(type_overrides: dict[str, sa.types.TypeEngine]) -> None:
    """
    Recreate the inventory table with new storage types for some columns.

    SQLite cannot ALTER COLUMN, so: create a copy with the new types, copy the
    rows, drop the original, rename the copy. Runs inside the caller's
    transaction.
    """
    conn = db.session.connection()
    existing = sa.inspect(conn).get_columns(INVENTORY_TABLE)

    metadata = sa.MetaData()
    rebuilt = inventory_table.to_metadata(metadata, name=REBUILD_TABLE)
    for col in existing:
        if col["name"] in INVENTORY_FIXED_COLUMNS:
            continue
        rebuilt.append_column(sa.Column(col["name"], type_overrides.get(col["name"], col["type"])))

    names = [col["name"] for col in existing]
    rebuilt.create(conn)
    conn.execute(
        rebuilt.insert().from_select(
            names,
            sa.select(*[sa.column(name) for name in names]).select_from(sa.table(INVENTORY_TABLE)),
        )
    )
    conn.exec_driver_sql(f"DROP TABLE {_quote(INVENTORY_TABLE)}")
    conn.exec_driver_sql(f"ALTER TABLE {_quote(REBUILD_TABLE)} RENAME TO {_quote(INVENTORY_TABLE)}")


def _needs_rebuild(name: str, definition: ColumnDefinition) -> bool:
    current = physical_columns().get(name)
    if current is None:
        return False
    return _compile_type(current) != _compile_type(definition.storage_type())


def _check_existing_values(old_def: ColumnDefinition, new_def: ColumnDefinition) -> None:
    """
    Reject an EDIT whose constraints the live rows already break.

    Soft-deleted rows are not checked.
    """
    name = new_def.name
    tbl = sa.table(INVENTORY_TABLE, sa.column(name), sa.column("deleted_at"))
    live = tbl.c.deleted_at.is_(None)

    for (raw,) in db.session.execute(sa.select(tbl.c[name]).where(live)):
        try:
            coerce_value(new_def, from_storage(old_def, raw))
        except InvalidValue as exc:
            raise InvalidColumnDefinition(f"Existing entries conflict with the new definition: {exc}") from exc

    if new_def.unique and not old_def.unique:
        duplicate = db.session.execute(
            sa.select(tbl.c[name])
            .where(live, tbl.c[name].is_not(None))
            .group_by(tbl.c[name])
            .having(sa.func.count() > 1)
            .limit(1)
        ).first()
        if duplicate is not None:
            raise InvalidColumnDefinition(f"Existing entries hold duplicate values for '{name}'")


def _append_schema_tx(
    dispatcher: int,
    action_no: int,
    column_name: str,
    before: Optional[ColumnDefinition],
    after: Optional[ColumnDefinition],
) -> SchemaTransaction:
    tx = SchemaTransaction(
        dispatcher=dispatcher,
        action_no=action_no,
        column_name=column_name,
        from_val=before.to_json() if before else "",
        to_val=after.to_json() if after else "",
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def _next_position() -> int:
    current = db.session.query(sa.func.max(InventorySchemaColumn.position)).scalar()
    return (current or 0) + 1


# =============================================================================
# Changes
# =============================================================================

def apply_schema_change(
    principal,
    action,
    column_name: str,
    column_type: Optional[str] = None,
    **definition,
) -> SchemaVersion:
    """
    Add, edit or remove one inventory column.

    ADD needs column_type; EDIT changes only the options given (None keeps the
    previous value); REMOVE ignores both.

    Raises:
        PermissionDenied: principal lacks config.w
        DuplicateColumn: ADD of a name that is live
        UnknownColumn: EDIT/REMOVE of a name that is not live
        InvalidColumnDefinition: bad name, type or options
    """
    permission_service.require_permission(principal, "config.w")
    action_no = parse_action(action)

    if column_name in INVENTORY_FIXED_COLUMNS:
        raise InvalidColumnDefinition(f"Column name '{column_name}' is reserved")

    with storage_errors():
        row = db.session.query(InventorySchemaColumn).filter_by(name=column_name).first()

    if action_no == SchemaAction.ADD:
        return _add_column(principal, row, column_name, column_type, definition)
    if action_no == SchemaAction.EDIT:
        return _edit_column(principal, row, column_name, column_type, definition)
    return _remove_column(principal, row, column_name)


def _add_column(principal, row, column_name, column_type, options) -> SchemaVersion:
    if row is not None and row.is_active:
        raise DuplicateColumn(f"Column '{column_name}' already exists")
    if not column_type:
        raise InvalidColumnDefinition("ADD requires a column type")

    new_def = ColumnDefinition.build(column_name, column_type, **options)

    with atomic():
        if row is None:
            _add_physical_column(new_def)
        else:
            if _needs_rebuild(column_name, new_def):
                _rebuild_inventory_table({column_name: new_def.storage_type()})
            _clear_physical_column(column_name)

        tx = _append_schema_tx(principal.user_id, SchemaAction.ADD, column_name, None, new_def)

        if row is None:
            row = InventorySchemaColumn(name=column_name, position=_next_position())
            db.session.add(row)
        row.column_type = new_def.column_type
        row.definition = new_def.to_dict()
        row.is_active = True
        row.last_tx_id = tx.id
        row.added_tx_id = tx.id

        permission_service.ensure_permission(
            column_permission(column_name, "r"), f"Read inventory column {column_name}"
        )
        permission_service.ensure_permission(
            column_permission(column_name, "w"), f"Write inventory column {column_name}"
        )
        append_event(
            action_no=EventAction.SCHEMA_ALTER,
            dispatcher=principal.user_id,
            target=tx.id,
            reason=f"ADD {column_name}",
        )

    current_app.logger.info(
        "Schema ADD %s %s (tx=%s, user_id=%s)", column_name, new_def.column_type, tx.id, principal.user_id
    )
    return SchemaVersion(tx_id=tx.id, action="ADD", column=new_def, created_at=tx.created_at)


def _edit_column(principal, row, column_name, column_type, options) -> SchemaVersion:
    if row is None or not row.is_active:
        raise UnknownColumn(f"Column '{column_name}' does not exist")

    old_def = row.as_definition()
    new_def = old_def.updated(column_type=column_type, **options)
    check_type_change(old_def, new_def)
    if new_def == old_def:
        raise InvalidColumnDefinition(f"Column '{column_name}' is unchanged")

    with atomic():
        _check_existing_values(old_def, new_def)
        if _needs_rebuild(column_name, new_def):
            _rebuild_inventory_table({column_name: new_def.storage_type()})

        tx = _append_schema_tx(principal.user_id, SchemaAction.EDIT, column_name, old_def, new_def)

        row.column_type = new_def.column_type
        row.definition = new_def.to_dict()
        row.last_tx_id = tx.id

        append_event(
            action_no=EventAction.SCHEMA_ALTER,
            dispatcher=principal.user_id,
            target=tx.id,
            reason=f"EDIT {column_name}",
        )

    current_app.logger.info("Schema EDIT %s (tx=%s, user_id=%s)", column_name, tx.id, principal.user_id)
    return SchemaVersion(tx_id=tx.id, action="EDIT", column=new_def, created_at=tx.created_at)


def _remove_column(principal, row, column_name) -> SchemaVersion:
    if row is None or not row.is_active:
        raise UnknownColumn(f"Column '{column_name}' does not exist")

    old_def = row.as_definition()

    with atomic():
        tx = _append_schema_tx(principal.user_id, SchemaAction.REMOVE, column_name, old_def, None)
        row.is_active = False
        row.last_tx_id = tx.id
        append_event(
            action_no=EventAction.SCHEMA_REMOVE,
            dispatcher=principal.user_id,
            target=tx.id,
            reason=f"REMOVE {column_name}",
        )

    current_app.logger.info("Schema REMOVE %s (tx=%s, user_id=%s)", column_name, tx.id, principal.user_id)
    return SchemaVersion(tx_id=tx.id, action="REMOVE", column=old_def, created_at=tx.created_at)


# =============================================================================
# Reads
# =============================================================================

def live_columns() -> dict[str, InventorySchemaColumn]:
    """Projection rows of the live columns, by name, in position order."""
    with storage_errors():
        rows = (
            db.session.query(InventorySchemaColumn)
            .filter(InventorySchemaColumn.is_active.is_(True))
            .order_by(InventorySchemaColumn.position.asc())
            .all()
        )
    return {row.name: row for row in rows}


def _latest_tx_per_column() -> dict[str, tuple[int, int]]:
    latest = (
        db.session.query(
            SchemaTransaction.column_name,
            sa.func.max(SchemaTransaction.id).label("tx_id"),
        )
        .group_by(SchemaTransaction.column_name)
        .subquery()
    )
    rows = (
        db.session.query(SchemaTransaction.column_name, SchemaTransaction.id, SchemaTransaction.action_no)
        .join(latest, SchemaTransaction.id == latest.c.tx_id)
        .all()
    )
    return {name: (tx_id, action_no) for name, tx_id, action_no in rows}


def _check_projection(columns: dict[str, InventorySchemaColumn]) -> None:
    latest = _latest_tx_per_column()
    for name, (tx_id, action_no) in latest.items():
        live = columns.get(name)
        if action_no == SchemaAction.REMOVE:
            if live is not None:
                raise StorageCorrupt(f"Schema projection lists removed column '{name}'")
            continue
        if live is None:
            raise StorageCorrupt(f"Schema projection is missing column '{name}'")
        if live.last_tx_id != tx_id:
            raise StorageCorrupt(
                f"Schema projection of '{name}' is at tx {live.last_tx_id}, log is at tx {tx_id}"
            )
    stray = set(columns) - set(latest)
    if stray:
        raise StorageCorrupt(f"Schema projection has columns without history: {', '.join(sorted(stray))}")


def current_schema() -> list[ColumnDefinition]:
    """Live column definitions in display order."""
    columns = live_columns()
    with storage_errors():
        _check_projection(columns)
    return [row.as_definition() for row in columns.values()]


def get_column(column_name: str) -> ColumnDefinition:
    row = live_columns().get(column_name)
    if row is None:
        raise UnknownColumn(f"Column '{column_name}' does not exist")
    return row.as_definition()


def schema_history(column_name: Optional[str] = None, since: Optional[int] = None) -> Iterator[SchemaTransaction]:
    """
    Schema log rows in application order.

    since: only rows with id > since. Each call starts a fresh query.
    """
    q = db.session.query(SchemaTransaction)
    if column_name is not None:
        q = q.filter(SchemaTransaction.column_name == column_name)
    if since is not None:
        q = q.filter(SchemaTransaction.id > since)
    q = q.order_by(SchemaTransaction.id.asc())

    with storage_errors():
        yield from q.yield_per(100)


def replay_schema(transactions: Iterable[SchemaTransaction]) -> dict[str, ColumnDefinition]:
    """
    Fold schema log rows into the live definitions.

    Pure: touches no storage. Order follows each name's first ADD, matching
    the position assigned by the registry.
    """
    order: list[str] = []
    state: dict[str, ColumnDefinition] = {}
    for tx in transactions:
        if tx.column_name not in order:
            order.append(tx.column_name)
        if tx.action_no in (SchemaAction.ADD, SchemaAction.EDIT):
            state[tx.column_name] = ColumnDefinition.from_json(tx.to_val)
        elif tx.action_no == SchemaAction.REMOVE:
            state.pop(tx.column_name, None)
    return {name: state[name] for name in order if name in state}


def verify_schema() -> list[ColumnDefinition]:
    """
    Check projection, log replay and physical table agree.

    Raises StorageCorrupt on the first divergence found.
    """
    replayed = replay_schema(schema_history())
    projected = {name: row.as_definition() for name, row in live_columns().items()}

    if list(replayed) != list(projected):
        raise StorageCorrupt(
            f"Schema projection {list(projected)} does not match log replay {list(replayed)}"
        )
    for name, definition in replayed.items():
        if projected[name] != definition:
            raise StorageCorrupt(f"Schema projection of '{name}' does not match log replay")

    with storage_errors():
        physical = physical_columns()
        _check_projection(live_columns())
        known = db.session.query(InventorySchemaColumn.name).all()
    missing = [name for (name,) in known if name not in physical]
    if missing:
        raise StorageCorrupt(f"Inventory table is missing column(s): {', '.join(sorted(missing))}")

    return list(replayed.values())
