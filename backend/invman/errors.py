"""
Error kinds raised by the invman core.

Every rejected operation raises one of these with a human-readable reason.
Validation errors are raised before any mutation, so catching one never
means a partial write happened.
"""


class InvmanError(Exception):
    """Base class for every error the core reports to its caller."""


# -----------------------------------------------------------------------------
# Input validation
# -----------------------------------------------------------------------------

class ValidationError(InvmanError):
    """Input problem detected before touching storage."""


class InvalidColumnDefinition(ValidationError):
    """Column definition is malformed or self-contradictory."""


class InvalidValue(ValidationError):
    """Field value does not satisfy its column definition."""


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


# -----------------------------------------------------------------------------
# Identity / sessions
# -----------------------------------------------------------------------------

class DuplicateUsername(InvmanError):
    pass


class InvalidCredentials(InvmanError):
    pass


class SessionExpired(InvmanError):
    pass


class PermissionDenied(InvmanError):
    """Raised when a principal lacks the required permission."""


class RegistrationClosed(InvmanError):
    pass


# -----------------------------------------------------------------------------
# Schema / entities
# -----------------------------------------------------------------------------

class DuplicateColumn(InvmanError):
    pass


class UnknownColumn(InvmanError):
    pass


class NotFound(InvmanError):
    """Entity does not exist or is soft-deleted."""


# -----------------------------------------------------------------------------
# Storage
# -----------------------------------------------------------------------------

class StorageError(InvmanError):
    """Backend error surfaced verbatim (syntax, constraint violations, ...)."""


class StorageBusy(StorageError):
    """Database is locked by another writer. Safe to retry."""


class StorageCorrupt(StorageError):
    """Live tables and transaction logs disagree. Never auto-recovered."""
