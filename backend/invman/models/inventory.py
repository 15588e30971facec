"""
Inventory storage layout.

- inventory: the live rows. Only the four fixed columns below are declared
  here; one physical column per schema column is added at runtime by the
  schema registry, so the table is never mapped as an ORM class.
- inventory_schema: materialized projection of the schema log (one row per
  column name ever defined; is_active=False once removed).
- inventory_schema_tx / inventory_tx: append-only logs. Never updated,
  never deleted.
"""

from __future__ import annotations

import json

from ..extensions import db
from invman.time_utils import to_utc_z
from invman.validation import ColumnDefinition


# Reserved names; schema columns may not shadow them
INVENTORY_FIXED_COLUMNS = ("id", "created_at", "updated_at", "deleted_at")

inventory_table = db.Table(
    "inventory",
    db.Column("id", db.Integer, primary_key=True),
    db.Column("created_at", db.DateTime, nullable=False, server_default=db.func.now()),
    db.Column("updated_at", db.DateTime, nullable=False, server_default=db.func.now()),
    db.Column("deleted_at", db.DateTime, nullable=True),
    sqlite_autoincrement=True,
)


class SchemaAction:
    ADD = 1
    EDIT = 2
    REMOVE = 3

    NAMES = {1: "ADD", 2: "EDIT", 3: "REMOVE"}


class EntityAction:
    CREATE = 1
    UPDATE = 2
    DELETE = 3

    NAMES = {1: "CREATE", 2: "UPDATE", 3: "DELETE"}


class InventorySchemaColumn(db.Model):
    """
    Live projection of one schema column.

    Written only by the schema registry, always in the same transaction as the
    schema log row referenced by last_tx_id.
    """
    __tablename__ = "inventory_schema"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, unique=True, index=True)

    # Display order; assigned on first ADD and kept across EDIT/REMOVE/re-ADD
    position = db.Column(db.Integer, nullable=False)

    column_type = db.Column(db.String(16), nullable=False)
    definition = db.Column(db.JSON, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    last_tx_id = db.Column(db.Integer, db.ForeignKey("inventory_schema_tx.id"), nullable=False)

    # ADD that started the current generation; older inventory_tx rows for
    # this name belong to a removed column and are ignored by replay
    added_tx_id = db.Column(db.Integer, db.ForeignKey("inventory_schema_tx.id"), nullable=False)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    last_tx = db.relationship("SchemaTransaction", foreign_keys=[last_tx_id])

    def as_definition(self) -> ColumnDefinition:
        return ColumnDefinition.from_dict(self.definition)

    def to_dict(self) -> dict:
        return {
            **self.definition,
            "position": self.position,
            "is_active": self.is_active,
            "last_tx_id": self.last_tx_id,
            "added_tx_id": self.added_tx_id,
        }


class SchemaTransaction(db.Model):
    """
    One schema alteration.

    from_val / to_val hold the JSON column definition before and after the
    change; the empty string means "no definition" (ADD has no from_val,
    REMOVE has no to_val).
    """
    __tablename__ = "inventory_schema_tx"
    __table_args__ = (
        db.Index("ix_inventory_schema_tx_column", "column_name", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    dispatcher = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    action_no = db.Column(db.Integer, nullable=False)
    column_name = db.Column(db.String(255), nullable=False)
    from_val = db.Column(db.Text, nullable=False, default="")
    to_val = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def action(self) -> str:
        return SchemaAction.NAMES.get(self.action_no, str(self.action_no))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispatcher": self.dispatcher,
            "action_no": self.action_no,
            "action": self.action,
            "column_name": self.column_name,
            "from_val": json.loads(self.from_val) if self.from_val else None,
            "to_val": json.loads(self.to_val) if self.to_val else None,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryTransaction(db.Model):
    """
    One field-level mutation of one inventory row.

    schema_id points at the schema log row that defined the column version the
    value was written against. DELETE rows carry no field detail.
    """
    __tablename__ = "inventory_tx"
    __table_args__ = (
        db.Index("ix_inventory_tx_inventory", "inventory_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    dispatcher = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    schema_id = db.Column(db.Integer, db.ForeignKey("inventory_schema_tx.id"), nullable=True)

    # Not a foreign key: the live table is rebuilt on column type changes
    inventory_id = db.Column(db.Integer, nullable=False)

    column_name = db.Column(db.String(255), nullable=True)
    action_no = db.Column(db.Integer, nullable=False)
    from_val = db.Column(db.Text, nullable=True)
    to_val = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def action(self) -> str:
        return EntityAction.NAMES.get(self.action_no, str(self.action_no))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispatcher": self.dispatcher,
            "schema_id": self.schema_id,
            "inventory_id": self.inventory_id,
            "column_name": self.column_name,
            "action_no": self.action_no,
            "action": self.action,
            "from_val": self.from_val,
            "to_val": self.to_val,
            "created_at": to_utc_z(self.created_at),
        }
