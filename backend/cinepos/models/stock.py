from __future__ import annotations

from ..extensions import db
from ..services.units import format_milli
from cinepos.time_utils import to_utc_z


class StockSheet(db.Model):
    """
    Monthly stock sheet for one product in one theater.

    closing_milli = opening_milli + SUM(entries.delta_milli), kept in step
    with every appended entry while the sheet row is locked. version_id turns
    concurrent writers into StaleDataError so the loser retries and re-checks
    the non-negative balance.

    Quantities are stored in thousandths of stock_unit.
    """
    __tablename__ = "stock_sheets"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "product_id", "year", "month", name="uq_stock_sheets_period"),
        db.Index("ix_stock_sheets_theater_product_period", "theater_id", "product_id", "year", "month"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)

    stock_unit = db.Column(db.String(8), nullable=False, default="Nos")
    opening_milli = db.Column(db.Integer, nullable=False, default=0)
    closing_milli = db.Column(db.Integer, nullable=False, default=0)
    last_seq = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    entries = db.relationship(
        "StockEntry",
        backref="sheet",
        order_by="StockEntry.seq",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def to_dict(self, include_entries: bool = False) -> dict:
        data = {
            "id": self.id,
            "theater_id": self.theater_id,
            "product_id": self.product_id,
            "month": self.period,
            "stock_unit": self.stock_unit,
            "opening_balance": format_milli(self.opening_milli),
            "closing_balance": format_milli(self.closing_milli),
            "last_seq": self.last_seq,
            "version_id": self.version_id,
        }
        if include_entries:
            running = self.opening_milli
            rows = []
            for entry in self.entries:
                running += entry.delta_milli
                rows.append(entry.to_dict(balance_after_milli=running))
            data["entries"] = rows
        return data


class StockEntry(db.Model):
    """
    Append-only stock movement.

    kind: purchase, adjustment, sale, return, waste.
    seq is a per-sheet total order assigned under the sheet lock.
    idempotency_key is unique: "sale:{order_ref}:{product_id}" for sales and
    "cancel:{order_id}:{item_id}:{product_id}" for compensating returns.
    Corrections are new entries, never updates.
    """
    __tablename__ = "stock_entries"
    __table_args__ = (
        db.UniqueConstraint("sheet_id", "seq", name="uq_stock_entries_sheet_seq"),
        db.UniqueConstraint("idempotency_key", name="uq_stock_entries_idempotency_key"),
        db.Index("ix_stock_entries_order_product", "order_ref", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sheet_id = db.Column(db.Integer, db.ForeignKey("stock_sheets.id"), nullable=False, index=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    seq = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(16), nullable=False, index=True)
    delta_milli = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    order_ref = db.Column(db.String(64), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    def to_dict(self, balance_after_milli: int | None = None) -> dict:
        return {
            "id": self.id,
            "sheet_id": self.sheet_id,
            "product_id": self.product_id,
            "seq": self.seq,
            "kind": self.kind,
            "delta": format_milli(self.delta_milli),
            "balance_after": format_milli(balance_after_milli),
            "reason": self.reason,
            "order_ref": self.order_ref,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_by_user_id": self.created_by_user_id,
        }


class CartReservation(db.Model):
    """
    Transient hold of stock by one cart (kiosk session, POS terminal, QR cart).

    status: ACTIVE or EXPIRED (swept after TTL). Released, committed and
    purged rows are deleted. reserved_milli is the cart's target total for
    the product, not a delta.
    """
    __tablename__ = "cart_reservations"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "product_id", name="uq_cart_reservations_cart_product"),
        db.Index("ix_cart_reservations_cart_touch", "cart_id", "last_touch"),
        db.Index("ix_cart_reservations_theater_product_status", "theater_id", "product_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    cart_id = db.Column(db.String(64), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    reserved_milli = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")
    ttl_seconds = db.Column(db.Integer, nullable=False)
    last_touch = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "cart_id": self.cart_id,
            "product_id": self.product_id,
            "reserved": format_milli(self.reserved_milli),
            "status": self.status,
            "ttl_seconds": self.ttl_seconds,
            "last_touch": to_utc_z(self.last_touch),
        }
