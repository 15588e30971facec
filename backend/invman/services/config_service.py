# Overview: Service-layer operations for runtime config; name/value settings in the config table.

from __future__ import annotations

from ..extensions import db
from ..models import ConfigEntry
from ..config import DEFAULT_RUNTIME_CONFIG
from .concurrency import atomic, storage_errors
from . import permission_service

_TRUE_VALUES = {"true", "1", "yes", "on"}


def get_config(name: str, default: str | None = None) -> str | None:
    with storage_errors():
        entry = db.session.query(ConfigEntry).filter_by(name=name).first()
    if entry is None or entry.value is None:
        return default
    return entry.value


def get_bool(name: str, default: bool = False) -> bool:
    value = get_config(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def get_int(name: str, default: int) -> int:
    value = get_config(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def list_config() -> list[ConfigEntry]:
    with storage_errors():
        return db.session.query(ConfigEntry).order_by(ConfigEntry.name.asc()).all()


def _upsert(name: str, value: str | None) -> ConfigEntry:
    entry = db.session.query(ConfigEntry).filter_by(name=name).first()
    if entry is None:
        entry = ConfigEntry(name=name, value=value)
        db.session.add(entry)
    else:
        entry.value = value
    db.session.flush()
    return entry


def set_config(name: str, value: str | None, principal=None) -> ConfigEntry:
    """
    Create or overwrite a setting.

    When a principal is given it must hold "config.w". Internal callers
    (system init) pass no principal.
    """
    if principal is not None:
        permission_service.require_permission(principal, "config.w")

    with atomic():
        entry = _upsert(name, value)
    return entry


def seed_defaults() -> int:
    """Insert default settings that don't exist yet. Returns count created."""
    created = 0
    with atomic():
        for name, value in DEFAULT_RUNTIME_CONFIG.items():
            if db.session.query(ConfigEntry).filter_by(name=name).first() is None:
                db.session.add(ConfigEntry(name=name, value=value))
                created += 1
    return created
