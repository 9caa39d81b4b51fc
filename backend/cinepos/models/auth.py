from __future__ import annotations

from ..extensions import db
from cinepos.time_utils import to_utc_z


class User(db.Model):
    """
    User accounts for authentication and attribution.

    MULTI-TENANT: Users belong to at most one theater (theater_id).
    super_admin users have no theater and may act on any tenant.
    Usernames are unique within a theater, not globally.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "username", name="uq_users_theater_username"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=True, index=True)

    username = db.Column(db.String(64), nullable=False, index=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    # super_admin, theater_admin, staff, kiosk, customer
    role = db.Column(db.String(32), nullable=False, default="staff")

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    theater = db.relationship("Theater", backref=db.backref("users", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "username": self.username,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class SessionToken(db.Model):
    """
    Bearer session tokens.

    Only the SHA-256 hash of the token is stored. The tenant and role are
    captured at login and stay fixed for the lifetime of the session.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=True, index=True)
    role = db.Column(db.String(32), nullable=False)

    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
