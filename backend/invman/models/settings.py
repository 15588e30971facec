from __future__ import annotations

from ..extensions import db
from invman.time_utils import to_utc_z


class ConfigEntry(db.Model):
    """
    Process-wide name/value settings (allow_registration, session_ttl_minutes, ...).

    Not versioned; updated_at tracks the last write.
    """
    __tablename__ = "config"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False, unique=True)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "value": self.value,
            "updated_at": to_utc_z(self.updated_at),
        }
