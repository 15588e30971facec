# Overview: Service-layer operations for auth; registration, password hashing and credential checks.

"""
Authentication Service

Every action must be attributable, so every mutation needs a registered,
non-deleted user as its dispatcher.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, upper/lower case, digit and special char required
- Unknown user and wrong password produce the same error
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User, EventAction
from ..permissions import ADMIN_ROLE_ID, MEMBER_ROLE_ID
from ..errors import (
    DuplicateUsername,
    InvalidCredentials,
    PasswordValidationError,
    RegistrationClosed,
    ValidationError,
    NotFound,
)
from invman.time_utils import utcnow
from .concurrency import atomic, storage_errors
from .event_service import append_event
from . import config_service
from . import permission_service

_INVALID_CREDENTIALS = "Either username or password is incorrect"


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def validate_username(username: str) -> None:
    # ':' separates user from password in --auth
    if not username or not username.strip():
        raise ValidationError("Username must not be empty")
    if ":" in username:
        raise ValidationError("Username must not contain ':'")
    if len(username) > 1024:
        raise ValidationError("Username is too long")


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. Malformed hashes never match.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def register(username: str, password: str, display_name: str | None = None) -> int:
    """
    Register a new user and return its id.

    The first active user becomes admin (role 1); everyone after that gets
    the member role (role 2). Registration can be closed with the
    allow_registration setting, except for the very first user.

    Raises:
        DuplicateUsername: username is taken (soft-deleted users keep theirs)
        RegistrationClosed: allow_registration is false
        PasswordValidationError: password doesn't meet requirements
    """
    validate_username(username)

    with storage_errors():
        existing = db.session.query(User).filter_by(username=username).first()
        active_users = db.session.query(User).filter(User.deleted_at.is_(None)).count()
    if existing:
        raise DuplicateUsername(f"Username '{username}' is already taken")

    if active_users > 0 and not config_service.get_bool("allow_registration", default=True):
        raise RegistrationClosed("Registration is disabled by the inventory administrator")

    role_id = ADMIN_ROLE_ID if active_users == 0 else MEMBER_ROLE_ID
    password_hash = hash_password(password)

    with atomic():
        user = User(
            username=username,
            display_name=display_name,
            role_id=role_id,
            password_hash=password_hash,
        )
        db.session.add(user)
        db.session.flush()
        append_event(action_no=EventAction.USER_REGISTER, dispatcher=user.id, target=user.id)

    current_app.logger.info("Registered user %s (id=%s, role_id=%s)", username, user.id, role_id)
    return user.id


def authenticate(username: str, password: str) -> User:
    """
    Check credentials and return the user.

    Raises InvalidCredentials for unknown or soft-deleted users and for wrong
    passwords alike.
    """
    with storage_errors():
        user = db.session.query(User).filter(
            User.username == username,
            User.deleted_at.is_(None),
        ).first()

    if not user or not verify_password(password, user.password_hash):
        raise InvalidCredentials(_INVALID_CREDENTIALS)

    return user


def soft_delete_user(principal, username: str) -> User:
    """
    Mark a user deleted. Their log entries stay attributable.

    Active sessions are revoked in the same transaction.
    """
    permission_service.require_permission(principal, "users.w")

    with storage_errors():
        user = db.session.query(User).filter_by(username=username, deleted_at=None).first()
    if not user:
        raise NotFound(f"User '{username}' not found")

    now = utcnow()
    with atomic():
        user.deleted_at = now
        for session in user.sessions:
            if session.revoked_at is None:
                session.revoked_at = now
    return user
