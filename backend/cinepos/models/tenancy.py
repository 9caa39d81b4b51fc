from __future__ import annotations

from ..extensions import db
from cinepos.time_utils import to_utc_z


class Theater(db.Model):
    """
    Multi-tenant root: every tenant is a Theater.

    All products, combos, stock sheets, reservations and orders belong to
    exactly one theater. No data may cross theater boundaries.

    A theater can sell only while it is active and the current date falls
    inside its agreement window (open-ended when a bound is null).
    """
    __tablename__ = "theaters"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    agreement_start = db.Column(db.Date, nullable=True)
    agreement_end = db.Column(db.Date, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Theater id={self.id} name={self.name!r}>"

    def agreement_covers(self, day) -> bool:
        if self.agreement_start and day < self.agreement_start:
            return False
        if self.agreement_end and day > self.agreement_end:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "agreement_start": self.agreement_start.isoformat() if self.agreement_start else None,
            "agreement_end": self.agreement_end.isoformat() if self.agreement_end else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
