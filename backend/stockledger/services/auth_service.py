# Overview: Staff accounts: bcrypt password hashing and user creation.

"""
Staff accounts exist so every stock change can be attributed to a person.
There is no login screen; operators create users and issue API tokens from
the CLI.
"""

import re

import bcrypt

from ..extensions import db
from ..models import User
from ..models.auth import ROLES


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    if len(password or "") < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain letters and digits")


def hash_password(password: str) -> str:
    """Bcrypt, cost factor 12. Strength is validated first."""
    validate_password_strength(password)
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


def create_user(username: str, email: str, password: str, role: str = "STAFF") -> User:
    """
    Raises:
        ValueError: unknown role, or username/email already taken
        PasswordValidationError: weak password
    """
    username = (username or "").strip()
    email = (email or "").strip().lower()
    role = (role or "").strip().upper()
    if not username or not email:
        raise ValueError("username and email are required")
    if role not in ROLES:
        raise ValueError(f"role must be one of {', '.join(ROLES)}")

    if db.session.query(User).filter_by(username=username).first():
        raise ValueError(f"Username '{username}' already exists")
    if db.session.query(User).filter_by(email=email).first():
        raise ValueError(f"Email '{email}' already exists")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user

