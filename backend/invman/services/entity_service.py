# Overview: Service-layer operations for inventory entities; dynamic-column rows with a field-level log.

"""
Entity Store

Live rows live in the inventory table, whose columns follow the schema
registry. Every change to a row is recorded field by field in inventory_tx,
in the same transaction as the row change, so replaying the log of one
inventory_id reconstructs its live values.

Rows are never physically deleted; soft_delete_entity sets deleted_at.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

import sqlalchemy as sa
from flask import current_app

from ..extensions import db
from ..models import (
    INVENTORY_FIXED_COLUMNS,
    EntityAction,
    EventAction,
    InventorySchemaColumn,
    InventoryTransaction,
    SchemaTransaction,
)
from ..errors import InvalidValue, NotFound, StorageCorrupt, UnknownColumn, ValidationError
from ..permissions import column_permission
from ..validation import (
    ColumnDefinition,
    coerce_value,
    deserialize_value,
    from_storage,
    resolve_default,
    serialize_value,
    to_storage,
)
from invman.time_utils import utcnow, to_utc_z, parse_iso_datetime
from .concurrency import atomic, storage_errors
from .event_service import append_event
from . import permission_service
from . import schema_service

DELETED_AT_PERMISSION = column_permission("deleted_at", "w")


@dataclass
class Entity:
    """One live inventory row: fixed columns plus typed values per live column."""
    id: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    deleted_at: Optional[datetime]
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            **self.fields,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "deleted_at": to_utc_z(self.deleted_at),
        }


# =============================================================================
# Helpers
# =============================================================================

def _definitions(columns: Mapping[str, InventorySchemaColumn]) -> dict[str, ColumnDefinition]:
    return {name: row.as_definition() for name, row in columns.items()}


def _live_table(names: Iterable[str]) -> sa.TableClause:
    """Lightweight Core construct for the inventory table as it is right now."""
    return sa.table(
        "inventory",
        sa.column("id", sa.Integer),
        sa.column("created_at", sa.DateTime),
        sa.column("updated_at", sa.DateTime),
        sa.column("deleted_at", sa.DateTime),
        *[sa.column(name) for name in names],
    )


def _quote(name: str) -> str:
    return db.session.get_bind().dialect.identifier_preparer.quote(name)


def _as_datetime(raw) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return parse_iso_datetime(str(raw))


def _row_to_entity(row: Mapping[str, Any], definitions: Mapping[str, ColumnDefinition]) -> Entity:
    return Entity(
        id=row["id"],
        created_at=_as_datetime(row["created_at"]),
        updated_at=_as_datetime(row["updated_at"]),
        deleted_at=_as_datetime(row["deleted_at"]),
        fields={name: from_storage(defn, row[name]) for name, defn in definitions.items()},
    )


def _check_known(field_values: Mapping[str, Any], definitions: Mapping[str, ColumnDefinition]) -> None:
    unknown = [name for name in field_values if name not in definitions]
    if unknown:
        raise UnknownColumn(f"Unknown column(s): {', '.join(unknown)}")


def _check_unique(
    definitions: Mapping[str, ColumnDefinition],
    values: Mapping[str, Any],
    exclude_id: Optional[int] = None,
) -> None:
    """Unique columns reject a value held by another live entity."""
    for name, value in values.items():
        definition = definitions[name]
        if not definition.unique or value is None:
            continue
        tbl = _live_table([name])
        q = sa.select(tbl.c.id).where(
            tbl.c[name] == to_storage(definition, value),
            tbl.c.deleted_at.is_(None),
        )
        if exclude_id is not None:
            q = q.where(tbl.c.id != exclude_id)
        with storage_errors():
            taken = db.session.execute(q.limit(1)).first() is not None
        if taken:
            raise InvalidValue(f"Field {name} must be unique")


def _append_inventory_tx(
    *,
    dispatcher: int,
    schema_id: Optional[int],
    inventory_id: int,
    action_no: int,
    column_name: Optional[str] = None,
    from_val: Optional[str] = None,
    to_val: Optional[str] = None,
) -> InventoryTransaction:
    tx = InventoryTransaction(
        dispatcher=dispatcher,
        schema_id=schema_id,
        inventory_id=inventory_id,
        column_name=column_name,
        action_no=action_no,
        from_val=from_val,
        to_val=to_val,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


# =============================================================================
# Writes
# =============================================================================

def create_entity(principal, field_values: Mapping[str, Any]) -> int:
    """
    Insert one inventory row and return its id.

    Omitted columns take their default, if any. Non-nullable columns without
    a value or default are rejected.

    Raises PermissionDenied, UnknownColumn, InvalidValue.
    """
    permission_service.require_all(principal, [column_permission(name, "w") for name in field_values])

    columns = schema_service.live_columns()
    definitions = _definitions(columns)
    _check_known(field_values, definitions)

    values: dict[str, Any] = {}
    for name, definition in definitions.items():
        if name in field_values:
            values[name] = coerce_value(definition, field_values[name])
            continue
        default = resolve_default(definition)
        if default is not None:
            values[name] = default
        elif not definition.nullable:
            raise InvalidValue(f"Field {name} is required")

    _check_unique(definitions, values)

    now = utcnow()
    tbl = _live_table(values)
    row = {name: to_storage(definitions[name], value) for name, value in values.items()}
    row.update(created_at=now, updated_at=now)

    with atomic():
        result = db.session.execute(tbl.insert().values(row))
        entity_id = result.lastrowid

        for name, value in values.items():
            _append_inventory_tx(
                dispatcher=principal.user_id,
                schema_id=columns[name].last_tx_id,
                inventory_id=entity_id,
                action_no=EntityAction.CREATE,
                column_name=name,
                to_val=serialize_value(definitions[name], value),
            )

        append_event(action_no=EventAction.INVENTORY_ADD, dispatcher=principal.user_id, target=entity_id)

    return entity_id


def edit_entity(principal, entity_id: int, field_values: Mapping[str, Any]) -> list[InventoryTransaction]:
    """
    Change fields of one live entity.

    Fields whose new value equals the current one are skipped. Returns the
    UPDATE transactions written (empty when nothing changed).

    Raises PermissionDenied, NotFound, UnknownColumn, InvalidValue.
    """
    permission_service.require_all(principal, [column_permission(name, "w") for name in field_values])

    columns = schema_service.live_columns()
    definitions = _definitions(columns)
    entity = _fetch_one(entity_id, definitions, include_deleted=False)
    _check_known(field_values, definitions)

    changes: dict[str, tuple[Any, Any]] = {}
    for name, raw in field_values.items():
        new = coerce_value(definitions[name], raw)
        old = entity.fields.get(name)
        if new != old:
            changes[name] = (old, new)

    if not changes:
        return []

    _check_unique(definitions, {name: new for name, (_, new) in changes.items()}, exclude_id=entity_id)

    tbl = _live_table(changes)
    values = {name: to_storage(definitions[name], new) for name, (_, new) in changes.items()}
    values["updated_at"] = utcnow()

    transactions = []
    with atomic():
        result = db.session.execute(
            tbl.update()
            .where(tbl.c.id == entity_id, tbl.c.deleted_at.is_(None))
            .values(values)
        )
        if result.rowcount != 1:
            raise NotFound(f"Inventory entry {entity_id} not found")

        for name, (old, new) in changes.items():
            transactions.append(_append_inventory_tx(
                dispatcher=principal.user_id,
                schema_id=columns[name].last_tx_id,
                inventory_id=entity_id,
                action_no=EntityAction.UPDATE,
                column_name=name,
                from_val=serialize_value(definitions[name], old),
                to_val=serialize_value(definitions[name], new),
            ))

        append_event(
            action_no=EventAction.INVENTORY_EDIT,
            dispatcher=principal.user_id,
            target=entity_id,
            reason=", ".join(changes),
        )

    return transactions


def soft_delete_entity(principal, entity_id: int, reason: Optional[str] = None) -> None:
    """
    Mark one live entity deleted.

    Raises PermissionDenied, NotFound (absent or already deleted).
    """
    permission_service.require_permission(principal, DELETED_AT_PERMISSION)

    now = utcnow()
    tbl = _live_table([])

    with atomic():
        result = db.session.execute(
            tbl.update()
            .where(tbl.c.id == entity_id, tbl.c.deleted_at.is_(None))
            .values(deleted_at=now, updated_at=now)
        )
        if result.rowcount != 1:
            raise NotFound(f"Inventory entry {entity_id} not found")

        latest_schema_tx = db.session.query(sa.func.max(SchemaTransaction.id)).scalar()
        _append_inventory_tx(
            dispatcher=principal.user_id,
            schema_id=latest_schema_tx,
            inventory_id=entity_id,
            action_no=EntityAction.DELETE,
            to_val=to_utc_z(now),
        )
        append_event(
            action_no=EventAction.INVENTORY_REMOVE,
            dispatcher=principal.user_id,
            target=entity_id,
            reason=reason,
        )

    current_app.logger.info("Soft-deleted inventory entry %s (user_id=%s)", entity_id, principal.user_id)


# =============================================================================
# Reads
# =============================================================================

def _fetch_one(entity_id: int, definitions: Mapping[str, ColumnDefinition], include_deleted: bool) -> Entity:
    tbl = _live_table(definitions)
    q = sa.select(tbl).where(tbl.c.id == entity_id)
    if not include_deleted:
        q = q.where(tbl.c.deleted_at.is_(None))
    with storage_errors():
        row = db.session.execute(q).mappings().first()
    if row is None:
        raise NotFound(f"Inventory entry {entity_id} not found")
    return _row_to_entity(row, definitions)


def get_entity(entity_id: int, include_deleted: bool = False) -> Entity:
    definitions = _definitions(schema_service.live_columns())
    return _fetch_one(entity_id, definitions, include_deleted)


def _parse_sort(sort: Sequence[str], known: Iterable[str]) -> list[str]:
    known = set(known)
    terms = []
    for term in sort:
        descending = term.startswith("-")
        name = term[1:] if descending else term
        if name not in known:
            raise UnknownColumn(f"Cannot sort by unknown column '{name}'")
        terms.append(f"{_quote(name)} {'DESC' if descending else 'ASC'}")
    return terms


def list_entities(
    where: Optional[str] = None,
    params: Sequence[Any] = (),
    conditions: Optional[Mapping[str, Any]] = None,
    sort: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
    include_deleted: bool = False,
) -> Iterator[Entity]:
    """
    Live inventory rows, lazily.

    Columns, conditions and sort terms are checked on the call; rows are
    fetched as the result is iterated.

    where: raw SQL fragment, unsanitized; bound positionally with params
        using '?' placeholders. Caller values never go into the text.
    conditions: column -> value equality filters, coerced like writes.
    sort: column names, '-' prefix for descending. Defaults to id.
    limit: maximum rows; None or a negative number means no limit.
    """
    definitions = _definitions(schema_service.live_columns())
    selectable = list(INVENTORY_FIXED_COLUMNS) + list(definitions)

    clauses: list[str] = []
    bind: list[Any] = []

    if not include_deleted:
        clauses.append(f"{_quote('deleted_at')} IS NULL")

    for name, value in (conditions or {}).items():
        if name == "id":
            try:
                bind.append(int(value))
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid id: {value!r}")
        elif name in definitions:
            bind.append(to_storage(definitions[name], coerce_value(definitions[name], value)))
        else:
            raise UnknownColumn(f"Unknown column: {name}")
        clauses.append(f"{_quote(name)} = ?")

    if where:
        clauses.append(f"({where})")
        bind.extend(params)

    sql = "SELECT {columns} FROM {table}".format(
        columns=", ".join(_quote(name) for name in selectable),
        table=_quote("inventory"),
    )
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY " + ", ".join(_parse_sort(sort or ["id"], selectable))
    if limit is not None and limit >= 0:
        sql += " LIMIT ?"
        bind.append(int(limit))

    return _iter_entities(sql, tuple(bind), definitions)


def _iter_entities(sql: str, bind: tuple, definitions: Mapping[str, ColumnDefinition]) -> Iterator[Entity]:
    with storage_errors():
        result = db.session.connection().exec_driver_sql(sql, bind)
        for row in result.mappings():
            yield _row_to_entity(row, definitions)


def raw_query(sql: str, params: Sequence[Any] = ()) -> list[dict]:
    """
    Run a caller-supplied query with positional '?' parameters.

    Errors from the database are raised as StorageError with the driver's
    message.
    """
    with storage_errors():
        result = db.session.connection().exec_driver_sql(sql, tuple(params))
        if not result.returns_rows:
            return []
        return [dict(row) for row in result.mappings()]


# =============================================================================
# History
# =============================================================================

def entity_history(entity_id: int) -> Iterator[InventoryTransaction]:
    """Log rows of one entity in application order."""
    q = (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.inventory_id == entity_id)
        .order_by(InventoryTransaction.id.asc())
    )
    with storage_errors():
        yield from q.yield_per(100)


def replay_entity(
    transactions: Iterable[InventoryTransaction],
    columns: Mapping[str, InventorySchemaColumn],
) -> dict[str, Any]:
    """
    Fold log rows into field values for the given live columns.

    Pure: rows for columns not in `columns`, and rows written before a
    column's current generation began, are ignored.
    """
    definitions = _definitions(columns)
    values: dict[str, Any] = {name: None for name in definitions}
    for tx in transactions:
        if tx.action_no not in (EntityAction.CREATE, EntityAction.UPDATE):
            continue
        column = columns.get(tx.column_name)
        if column is None or (tx.schema_id or 0) < column.added_tx_id:
            continue
        values[tx.column_name] = deserialize_value(definitions[tx.column_name], tx.to_val)
    return values


def verify_entity(entity_id: int) -> Entity:
    """
    Check that the log of one entity reproduces its live row.

    Raises NotFound, StorageCorrupt.
    """
    columns = schema_service.live_columns()
    entity = _fetch_one(entity_id, _definitions(columns), include_deleted=True)
    history = list(entity_history(entity_id))

    replayed = replay_entity(history, columns)
    for name, value in replayed.items():
        if entity.fields.get(name) != value:
            raise StorageCorrupt(
                f"Inventory entry {entity_id}: field {name} is {entity.fields.get(name)!r}, "
                f"log replays to {value!r}"
            )

    deletes = [tx for tx in history if tx.action_no == EntityAction.DELETE]
    if entity.is_deleted != bool(deletes) or len(deletes) > 1:
        raise StorageCorrupt(f"Inventory entry {entity_id}: deletion state does not match its log")

    return entity
