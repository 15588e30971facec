from __future__ import annotations

from ..extensions import db
from invman.time_utils import to_utc_z


class EventAction:
    USER_REGISTER = 100
    USER_LOGIN = 101
    USER_LOGOUT = 102

    INVENTORY_ADD = 200
    INVENTORY_EDIT = 201
    INVENTORY_REMOVE = 202

    SCHEMA_ALTER = 300
    SCHEMA_REMOVE = 301

    NAMES = {
        100: "USER_REGISTER",
        101: "USER_LOGIN",
        102: "USER_LOGOUT",
        200: "INVENTORY_ADD",
        201: "INVENTORY_EDIT",
        202: "INVENTORY_REMOVE",
        300: "SCHEMA_ALTER",
        301: "SCHEMA_REMOVE",
    }


class Event(db.Model):
    """
    Coarse lifecycle record (registration, logins, inventory/schema actions).

    IMMUTABLE: Never update or delete. Append-only, independent of the
    schema and inventory logs.
    """
    __tablename__ = "events"
    __table_args__ = (
        db.Index("ix_events_action_created", "action_no", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    action_no = db.Column(db.Integer, nullable=False)
    dispatcher = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    target = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action_no": self.action_no,
            "action": EventAction.NAMES.get(self.action_no, str(self.action_no)),
            "dispatcher": self.dispatcher,
            "target": self.target,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
