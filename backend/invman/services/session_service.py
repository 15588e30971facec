# Overview: Service-layer operations for sessions; token issuance, validation and revocation.

"""
Session Token Management

- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage; the plaintext is only returned once
- Lifetime from the session_ttl_minutes setting (default 24 hours)
- A session is valid iff now < valid_until and it is not revoked
- Expired sessions are left in place until cleanup_expired_sessions runs
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import timedelta

from ..extensions import db
from ..models import SessionToken, User, EventAction
from ..errors import InvalidCredentials, SessionExpired
from invman.time_utils import utcnow
from .concurrency import atomic, storage_errors
from .event_service import append_event
from . import auth_service
from . import config_service
from . import permission_service

DEFAULT_SESSION_TTL_MINUTES = 24 * 60


@dataclass(frozen=True)
class Principal:
    """
    An authenticated user plus the permission set resolved from their role.

    Permissions are resolved once, when the principal is built.
    """
    user_id: int
    username: str
    role_id: int
    permissions: frozenset = field(default_factory=frozenset)
    session_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role_id": self.role_id,
            "permissions": sorted(self.permissions),
            "session_id": self.session_id,
        }


def principal_for_user(user: User, session: SessionToken | None = None) -> Principal:
    return Principal(
        user_id=user.id,
        username=user.username,
        role_id=user.role_id,
        permissions=frozenset(permission_service.get_role_permissions(user.role_id)),
        session_id=session.id if session is not None else None,
    )


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    SHA-256 of the token for storage.

    Tokens are already high-entropy, so a fast hash is enough.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(user: User) -> tuple[SessionToken, str]:
    """
    Create a session for an already authenticated user.

    Returns (session_record, plaintext_token).
    """
    ttl_minutes = config_service.get_int("session_ttl_minutes", DEFAULT_SESSION_TTL_MINUTES)
    plaintext_token = generate_token()
    now = utcnow()

    with atomic():
        session = SessionToken(
            user_id=user.id,
            token_hash=hash_token(plaintext_token),
            created_at=now,
            valid_until=now + timedelta(minutes=ttl_minutes),
        )
        db.session.add(session)
        db.session.flush()
        append_event(action_no=EventAction.USER_LOGIN, dispatcher=user.id, target=session.id)

    return session, plaintext_token


def login(username: str, password: str) -> tuple[SessionToken, str]:
    """authenticate + create_session. Raises InvalidCredentials."""
    user = auth_service.authenticate(username, password)
    return create_session(user)


def validate_session(token: str) -> Principal:
    """
    Resolve a token to a Principal.

    Raises:
        InvalidCredentials: token unknown, or its user was deleted
        SessionExpired: token expired or revoked
    """
    with storage_errors():
        session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
        user = session.user if session else None
    if not session:
        raise InvalidCredentials("Invalid session token")

    if session.revoked_at is not None or utcnow() >= session.valid_until:
        raise SessionExpired("Session expired, log in again")

    if not user or user.deleted_at is not None:
        raise InvalidCredentials("Invalid session token")

    return principal_for_user(user, session)


def revoke_session(token: str) -> bool:
    """
    Revoke a session (logout).

    Returns True if an active session was revoked, False if not found or
    already revoked.
    """
    with storage_errors():
        session = db.session.query(SessionToken).filter_by(
            token_hash=hash_token(token),
            revoked_at=None,
        ).first()
    if not session:
        return False

    with atomic():
        session.revoked_at = utcnow()
        append_event(action_no=EventAction.USER_LOGOUT, dispatcher=session.user_id, target=session.id)
    return True


def revoke_all_user_sessions(user_id: int) -> int:
    """Revoke every active session of a user. Returns count revoked."""
    now = utcnow()
    count = 0
    with atomic():
        sessions = db.session.query(SessionToken).filter_by(user_id=user_id, revoked_at=None).all()
        for session in sessions:
            session.revoked_at = now
            count += 1
    return count


def cleanup_expired_sessions(older_than_days: int = 30) -> int:
    """
    Delete sessions that expired or were revoked more than older_than_days ago.

    Returns count of sessions deleted.
    """
    cutoff = utcnow() - timedelta(days=older_than_days)

    with atomic():
        deleted = db.session.query(SessionToken).filter(
            db.or_(
                SessionToken.valid_until < cutoff,
                SessionToken.revoked_at < cutoff,
            )
        ).delete(synchronize_session=False)
    return deleted
