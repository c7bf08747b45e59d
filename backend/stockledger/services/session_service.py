# Overview: Bearer token issue, validation and revocation for API access.

"""
Session token management.

- Tokens are 32 random bytes (64 hex chars), shown to the operator once.
- Only the SHA-256 of a token is stored; tokens are high-entropy so a fast
  hash is enough.
- A token stops working when it expires, when it is revoked, or when its
  user is deactivated.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from stockledger.time_utils import utcnow


@dataclass
class SessionContext:
    """What require_auth puts on g.actor."""
    user_id: int
    role: str
    session_id: int

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "role": self.role}


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_token(user_id: int, ttl_hours: int | None = None) -> tuple[SessionToken, str]:
    """
    Create a token for an active user.

    Returns (session_record, plaintext_token). Raises ValueError when the
    user does not exist or is inactive.
    """
    user = db.session.get(User, user_id)
    if user is None:
        raise ValueError("User not found")
    if not user.is_active:
        raise ValueError("User is not active")

    if ttl_hours is None:
        ttl_hours = int(current_app.config.get("SESSION_TTL_HOURS", 24))

    plaintext = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(plaintext),
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.session.add(session)
    db.session.commit()
    current_app.logger.info("Issued API token for user %s (expires %s)", user.username, session.expires_at)
    return session, plaintext


def validate_token(token: str) -> SessionContext | None:
    """Resolve a plaintext token; None when unknown, expired, revoked or the user is inactive."""
    if not token:
        return None
    session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if session is None or session.revoked_at is not None:
        return None

    expires_at = session.expires_at
    if expires_at.tzinfo is not None:
        expires_at = expires_at.replace(tzinfo=None)
    if expires_at < utcnow():
        return None

    user = session.user
    if user is None or not user.is_active:
        return None
    return SessionContext(user_id=user.id, role=user.role, session_id=session.id)


def revoke_all_user_tokens(user_id: int) -> int:
    count = (
        db.session.query(SessionToken)
        .filter(SessionToken.user_id == user_id, SessionToken.revoked_at.is_(None))
        .update({"revoked_at": utcnow()}, synchronize_session=False)
    )
    db.session.commit()
    return count
