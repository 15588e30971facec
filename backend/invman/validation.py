from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, asdict, fields, replace
from typing import Any

import sqlalchemy as sa

from invman.errors import InvalidColumnDefinition, InvalidValue
from invman.time_utils import utcnow, to_utc_z


class ColumnType:
    TEXT = "TEXT"
    VARCHAR = "VARCHAR"
    INT = "INT"
    REAL = "REAL"
    BOOL = "BOOL"

    ALL = (TEXT, VARCHAR, INT, REAL, BOOL)
    STRINGS = (TEXT, VARCHAR)
    NUMBERS = (INT, REAL)

    ALIASES = {
        "STRING": TEXT,
        "INTEGER": INT,
        "FLOAT": REAL,
        "DOUBLE": REAL,
        "BOOLEAN": BOOL,
    }

    @classmethod
    def parse(cls, value: str) -> str:
        if not isinstance(value, str):
            raise InvalidColumnDefinition(f"Unknown column type: {value!r}")
        upper = value.strip().upper()
        upper = cls.ALIASES.get(upper, upper)
        if upper not in cls.ALL:
            raise InvalidColumnDefinition(
                f"Unknown column type '{value}' (expected one of {', '.join(cls.ALL)})"
            )
        return upper


# Type changes an EDIT may apply to a column that already holds data
COMPATIBLE_TYPE_CHANGES = {
    (ColumnType.TEXT, ColumnType.VARCHAR),
    (ColumnType.VARCHAR, ColumnType.TEXT),
    (ColumnType.INT, ColumnType.REAL),
}

COLUMN_NAME_RE = re.compile(r"^[a-z_][a-z0-9_\-]*$")
MAX_COLUMN_NAME_LENGTH = 64
CURRENT_TIMESTAMP = "CURRENT_TIMESTAMP"

# SQLite INTEGER is a signed 64-bit value
INT_MIN = -2 ** 63
INT_MAX = 2 ** 63 - 1

_TRUE = {"true", "1"}
_FALSE = {"false", "0"}


def default_display_name(name: str) -> str:
    """'unit_price' -> 'Unit price'."""
    spaced = name.replace("-", " ").replace("_", " ").strip()
    if not spaced:
        return ""
    return spaced[0].upper() + spaced[1:].lower()


@dataclass(frozen=True)
class ColumnDefinition:
    """
    Definition of one inventory schema column.

    Constraints (nullable, unique, bounds, default) are enforced when values
    are written; the physical column only carries the storage type.
    """
    name: str
    column_type: str
    display_name: str = ""
    nullable: bool = True
    unique: bool = False
    default: str | None = None
    min_length: int | None = None
    max_length: int | None = None
    min: float | None = None
    max: float | None = None
    hint: str = ""
    layout: str = ""

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, name: str, column_type: str, **options) -> "ColumnDefinition":
        unknown = set(options) - {f.name for f in fields(cls)}
        if unknown:
            raise InvalidColumnDefinition(f"Unknown column option(s): {', '.join(sorted(unknown))}")
        options = {k: v for k, v in options.items() if v is not None}
        definition = cls(name=name, column_type=ColumnType.parse(column_type), **options)
        if not definition.display_name:
            definition = replace(definition, display_name=default_display_name(name))
        definition.validate()
        return definition

    def updated(self, column_type: str | None = None, **options) -> "ColumnDefinition":
        """Copy with the given options changed; None means 'keep'."""
        unknown = set(options) - {f.name for f in fields(self)}
        if unknown or "name" in options:
            raise InvalidColumnDefinition(f"Unknown column option(s): {', '.join(sorted(unknown or {'name'}))}")
        changes = {k: v for k, v in options.items() if v is not None}
        if column_type is not None:
            changes["column_type"] = ColumnType.parse(column_type)
        definition = replace(self, **changes)
        definition.validate()
        return definition

    def validate(self) -> None:
        if not COLUMN_NAME_RE.match(self.name or "") or len(self.name) > MAX_COLUMN_NAME_LENGTH:
            raise InvalidColumnDefinition(
                f"Invalid column name '{self.name}': use lowercase letters, digits, '-' and '_'"
            )

        for attr in ("nullable", "unique"):
            if not isinstance(getattr(self, attr), bool):
                raise InvalidColumnDefinition(f"{attr} must be true or false")

        for attr in ("min_length", "max_length"):
            value = getattr(self, attr)
            if value is None:
                continue
            if self.column_type not in ColumnType.STRINGS:
                raise InvalidColumnDefinition(f"{attr} only applies to TEXT and VARCHAR columns")
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidColumnDefinition(f"{attr} must be a non-negative integer")

        for attr in ("min", "max"):
            value = getattr(self, attr)
            if value is None:
                continue
            if self.column_type not in ColumnType.NUMBERS:
                raise InvalidColumnDefinition(f"{attr} only applies to INT and REAL columns")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidColumnDefinition(f"{attr} must be a number")

        if self.min_length is not None and self.max_length is not None and self.min_length > self.max_length:
            raise InvalidColumnDefinition("min_length cannot be larger than max_length")

        if self.min is not None and self.max is not None and self.min > self.max:
            raise InvalidColumnDefinition("min cannot be larger than max")

        if self.column_type == ColumnType.VARCHAR and not self.max_length:
            raise InvalidColumnDefinition("VARCHAR columns require max_length > 0")

        if self.default is not None:
            if self.default == CURRENT_TIMESTAMP and self.column_type not in ColumnType.STRINGS:
                raise InvalidColumnDefinition("CURRENT_TIMESTAMP defaults require a TEXT or VARCHAR column")
            # CURRENT_TIMESTAMP is checked against the length limits too
            try:
                resolve_default(self)
            except InvalidValue as exc:
                raise InvalidColumnDefinition(f"Invalid default: {exc}") from exc

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def storage_type(self) -> sa.types.TypeEngine:
        if self.column_type == ColumnType.VARCHAR:
            return sa.String(self.max_length)
        if self.column_type == ColumnType.INT:
            return sa.Integer()
        if self.column_type == ColumnType.REAL:
            return sa.REAL()
        if self.column_type == ColumnType.BOOL:
            return sa.Boolean()
        return sa.Text()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnDefinition":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_json(cls, raw: str) -> "ColumnDefinition":
        return cls.from_dict(json.loads(raw))


def check_type_change(old: ColumnDefinition, new: ColumnDefinition) -> None:
    if old.column_type == new.column_type:
        return
    if (old.column_type, new.column_type) not in COMPATIBLE_TYPE_CHANGES:
        raise InvalidColumnDefinition(
            f"Cannot change column '{old.name}' from {old.column_type} to {new.column_type}"
        )


# =============================================================================
# Values
# =============================================================================

def coerce_value(definition: ColumnDefinition, value: Any) -> Any:
    """
    Convert an incoming value (CLI string or Python object) to the column's
    Python type and check the column's constraints.

    Raises InvalidValue.
    """
    name = definition.name
    ctype = definition.column_type

    if value is None:
        if not definition.nullable:
            raise InvalidValue(f"Field {name} must not be null")
        return None

    if ctype == ColumnType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
        raise InvalidValue(f"Field {name} must be true or false")

    if ctype == ColumnType.INT:
        if isinstance(value, bool):
            raise InvalidValue(f"Field {name} must be an integer")
        if isinstance(value, int):
            result = value
        elif isinstance(value, str):
            stripped = value.strip()
            if not re.fullmatch(r"[+-]?\d+", stripped):
                raise InvalidValue(f"Field {name} must be a plain integer")
            result = int(stripped)
        else:
            raise InvalidValue(f"Field {name} must be an integer")
        if not INT_MIN <= result <= INT_MAX:
            raise InvalidValue(f"Field {name} is out of range for a 64-bit integer")
        _check_bounds(definition, result)
        return result

    if ctype == ColumnType.REAL:
        if isinstance(value, bool):
            raise InvalidValue(f"Field {name} must be a number")
        if isinstance(value, (int, float)):
            result = float(value)
        elif isinstance(value, str):
            try:
                result = float(value.strip())
            except ValueError:
                raise InvalidValue(f"Field {name} must be a number")
        else:
            raise InvalidValue(f"Field {name} must be a number")
        if math.isnan(result) or math.isinf(result):
            raise InvalidValue(f"Field {name} must be a finite number")
        _check_bounds(definition, result)
        return result

    # TEXT / VARCHAR
    if not isinstance(value, str):
        raise InvalidValue(f"Field {name} must be a string")
    length = len(value)
    if definition.min_length is not None and length < definition.min_length:
        raise InvalidValue(f"Field {name} is shorter than {definition.min_length} characters")
    if definition.max_length is not None and length > definition.max_length:
        raise InvalidValue(f"Field {name} is longer than {definition.max_length} characters")
    return value


def _check_bounds(definition: ColumnDefinition, value) -> None:
    if definition.min is not None and value < definition.min:
        raise InvalidValue(f"Field {definition.name} is smaller than {definition.min}")
    if definition.max is not None and value > definition.max:
        raise InvalidValue(f"Field {definition.name} is larger than {definition.max}")


def resolve_default(definition: ColumnDefinition) -> Any:
    """Value used when a create omits the column, or None."""
    if definition.default is None:
        return None
    if definition.default == CURRENT_TIMESTAMP:
        return coerce_value(definition, to_utc_z(utcnow()))
    return coerce_value(definition, definition.default)


def serialize_value(definition: ColumnDefinition, value: Any) -> str | None:
    """Log representation: text as-is, numbers via str/repr, bools as true/false."""
    if value is None:
        return None
    if definition.column_type == ColumnType.BOOL:
        return "true" if value else "false"
    if definition.column_type == ColumnType.REAL:
        return repr(float(value))
    return str(value)


def deserialize_value(definition: ColumnDefinition, raw: str | None) -> Any:
    if raw is None:
        return None
    if definition.column_type == ColumnType.BOOL:
        return raw.lower() in _TRUE
    if definition.column_type == ColumnType.INT:
        return int(raw)
    if definition.column_type == ColumnType.REAL:
        return float(raw)
    return raw


def to_storage(definition: ColumnDefinition, value: Any) -> Any:
    if value is None:
        return None
    if definition.column_type == ColumnType.BOOL:
        return 1 if value else 0
    return value


def from_storage(definition: ColumnDefinition, raw: Any) -> Any:
    """Convert a raw driver value back to the column's Python type."""
    if raw is None:
        return None
    ctype = definition.column_type
    try:
        if ctype == ColumnType.BOOL:
            if isinstance(raw, str):
                return raw.strip().lower() in _TRUE
            return bool(raw)
        if ctype == ColumnType.INT:
            return int(raw)
        if ctype == ColumnType.REAL:
            return float(raw)
    except (TypeError, ValueError):
        return raw
    return raw if isinstance(raw, str) else str(raw)
