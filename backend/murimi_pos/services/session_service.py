# Overview: Service-layer operations for session; encapsulates business logic and database work.

"""
Bearer token sessions for till and back-office logins.

WHY: Every sale, refund and void is attributed to the user behind the
token, so a token left open on an unattended till must die on its own.

- 32 random bytes, hex encoded, handed to the client once at login
- Only the SHA-256 hash is stored
- Absolute lifetime SESSION_ABSOLUTE_HOURS, idle limit SESSION_IDLE_MINUTES
- Revoked on logout, idle expiry, or when the account is deactivated
"""

import secrets
import hashlib
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from murimi_pos.errors import NotFoundError
from murimi_pos.time_utils import utcnow


@dataclass
class SessionContext:
    user: User
    session: SessionToken


def _absolute_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_ABSOLUTE_HOURS", 14))


def _idle_timeout() -> timedelta:
    return timedelta(minutes=current_app.config.get("SESSION_IDLE_MINUTES", 120))


def hash_token(token: str) -> str:
    # Tokens carry 256 bits of entropy; a fast hash is enough
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """Open a session for a user. Returns (session_record, plaintext_token)."""
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    token = secrets.token_hex(32)
    now = utcnow()

    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=(user_agent or "")[:255] or None,
        ip_address=(ip_address or "")[:64] or None,
        is_revoked=False
    )
    db.session.add(session)
    db.session.commit()

    return session, token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def _active_session(token: str) -> SessionToken | None:
    return db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a bearer token to its user.

    None for unknown, revoked, expired or idle tokens and for deactivated
    users. A successful lookup slides last_used_at forward.
    """
    session = _active_session(token)
    if not session:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None

    if now - session.last_used_at > _idle_timeout():
        _revoke(session, "Idle timeout")
        return None

    user = session.user
    if not user or not user.is_active:
        _revoke(session, "User account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(user=user, session=session)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Revoke by plaintext token. False when no live session matches."""
    session = _active_session(token)
    if not session:
        return False

    _revoke(session, reason)
    return True
