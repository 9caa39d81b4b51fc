# Overview: Identity service; users, bcrypt passwords, bearer session tokens and the resolved Principal.

"""
Identity: users, passwords and session tokens.

Routes never inspect tokens themselves. The decorators call
resolve_principal() and hand the resulting Principal to services.

SECURITY:
- Passwords hashed with bcrypt
- Session tokens are 32 random bytes; only their SHA-256 hash is stored
- Sessions expire after SESSION_TTL_HOURS and are revocable on logout
- The tenant and role are captured at login and fixed for the session
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta

import bcrypt
from flask import current_app, has_app_context

from ..errors import AccessDeniedError, ValidationFailedError
from ..extensions import db
from ..models import SessionToken, Theater, User
from cinepos.time_utils import utcnow


ROLE_SUPER_ADMIN = "super_admin"
ROLE_THEATER_ADMIN = "theater_admin"
ROLE_STAFF = "staff"
ROLE_KIOSK = "kiosk"
ROLE_CUSTOMER = "customer"

ROLES = (ROLE_SUPER_ADMIN, ROLE_THEATER_ADMIN, ROLE_STAFF, ROLE_KIOSK, ROLE_CUSTOMER)
STAFF_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_THEATER_ADMIN, ROLE_STAFF})
CATALOG_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_THEATER_ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. tenant_id is None only for super_admin."""
    user_id: int | None
    role: str
    tenant_id: int | None

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "role": self.role, "tenant_id": self.tenant_id}


def validate_password_strength(password: str) -> None:
    """
    Minimum 8 characters with at least one letter and one digit.

    Raises ValidationFailedError if requirements not met.
    """
    if not password or len(password) < 8:
        raise ValidationFailedError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise ValidationFailedError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise ValidationFailedError("Password must contain at least one digit")


def _bcrypt_rounds() -> int:
    if has_app_context():
        return int(current_app.config.get("BCRYPT_ROUNDS", 12))
    return 12


def hash_password(password: str) -> str:
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash
        return False


def generate_token() -> str:
    return secrets.token_hex(32)  # 32 bytes = 64 hex characters


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_user(
    username: str,
    password: str,
    *,
    role: str = ROLE_STAFF,
    theater_id: int | None = None,
) -> User:
    """
    Create a user.

    Every role except super_admin must belong to a theater. Usernames are
    unique within a theater.
    """
    if role not in ROLES:
        raise ValidationFailedError(f"role must be one of {', '.join(ROLES)}")
    if not username or not username.strip():
        raise ValidationFailedError("username is required")

    if role == ROLE_SUPER_ADMIN:
        theater_id = None
    else:
        if theater_id is None:
            raise ValidationFailedError(f"{role} users must belong to a theater")
        if db.session.get(Theater, theater_id) is None:
            raise ValidationFailedError("Theater not found")

    existing = db.session.query(User).filter(
        User.theater_id.is_(None) if theater_id is None else User.theater_id == theater_id,
        User.username == username.strip(),
    ).first()
    if existing:
        raise ValidationFailedError("Username already exists in this theater")

    user = User(
        theater_id=theater_id,
        username=username.strip(),
        password_hash=hash_password(password),
        role=role,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str, theater_id: int | None = None) -> User | None:
    """
    Check credentials. Returns the User or None.

    Updates last_login_at on success.
    """
    query = db.session.query(User).filter(
        User.username == username,
        User.is_active.is_(True),
    )
    if theater_id is not None:
        query = query.filter(User.theater_id == theater_id)

    for user in query.all():
        if verify_password(password, user.password_hash):
            user.last_login_at = utcnow()
            db.session.commit()
            return user
    return None


def _session_ttl() -> timedelta:
    hours = 24
    if has_app_context():
        hours = int(current_app.config.get("SESSION_TTL_HOURS", 24))
    return timedelta(hours=hours)


def create_session(user: User) -> tuple[SessionToken, str]:
    """Returns (session_record, plaintext_token). Only the hash is stored."""
    plaintext_token = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        theater_id=user.theater_id,
        role=user.role,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _session_ttl(),
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, plaintext_token


def login(username: str, password: str, theater_id: int | None = None) -> tuple[User, SessionToken, str]:
    user = authenticate(username, password, theater_id)
    if user is None:
        raise AccessDeniedError("Invalid credentials")
    session, token = create_session(user)
    return user, session, token


def resolve_principal(token: str) -> Principal | None:
    """
    Principal for a bearer token, or None when the token is unknown,
    revoked, expired or belongs to a deactivated user.
    """
    if not token:
        return None
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()
    if session is None:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None

    user = session.user
    if user is None or not user.is_active:
        session.is_revoked = True
        session.revoked_at = now
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()
    return Principal(user_id=user.id, role=session.role, tenant_id=session.theater_id)


def logout(token: str) -> bool:
    """Revoke a session. Returns False if it was unknown or already revoked."""
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()
    if session is None:
        return False
    session.is_revoked = True
    session.revoked_at = utcnow()
    db.session.commit()
    return True
