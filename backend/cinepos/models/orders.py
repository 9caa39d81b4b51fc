from __future__ import annotations

from ..extensions import db
from ..services.units import format_milli
from cinepos.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order (document-first).

    The line skeleton is fixed once placed; only line status, the stored
    pricing breakdown (recomputed from active lines) and the order status
    change afterwards.

    STATUS: pending -> confirmed -> preparing -> ready -> served | completed.
    Any non-terminal status may move to cancelled. failed marks an order whose
    stock commit lost a race; it never held stock.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "order_number", name="uq_orders_theater_number"),
        db.Index("ix_orders_theater_created", "theater_id", "created_at"),
        db.Index("ix_orders_theater_status", "theater_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    order_number = db.Column(db.String(32), nullable=False)

    channel = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending")

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    cart_id = db.Column(db.String(64), nullable=True)

    # Pricing breakdown (minor units), reproducible from active lines
    subtotal_ex_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    cgst_cents = db.Column(db.Integer, nullable=False, default=0)
    sgst_cents = db.Column(db.Integer, nullable=False, default=0)
    total_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    failure_reason = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    theater = db.relationship("Theater", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        backref="order",
        order_by="OrderLine.line_number",
        cascade="all, delete-orphan",
        lazy=True,
    )
    audit_entries = db.relationship(
        "OrderAuditEntry",
        backref="order",
        order_by="OrderAuditEntry.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def active_lines(self) -> list:
        return [line for line in self.lines if line.status == "active"]

    def pricing_dict(self) -> dict:
        return {
            "subtotal_ex_tax_cents": self.subtotal_ex_tax_cents,
            "total_tax_cents": self.total_tax_cents,
            "cgst_cents": self.cgst_cents,
            "sgst_cents": self.sgst_cents,
            "total_discount_cents": self.total_discount_cents,
            "grand_total_cents": self.grand_total_cents,
        }

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "theater_id": self.theater_id,
            "order_number": self.order_number,
            "channel": self.channel,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "pricing": self.pricing_dict(),
            "failure_reason": self.failure_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["audit"] = [entry.to_dict() for entry in self.audit_entries]
        return data


class OrderLine(db.Model):
    """
    Order line with a pricing snapshot.

    Exactly one of product_id / combo_id is set. The stock each line consumed
    is materialized in OrderLineComponent rows (one for a product line, one
    per component for a combo line) so cancellation returns exactly what was
    taken.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    combo_id = db.Column(db.Integer, db.ForeignKey("combo_offers.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    gst_type = db.Column(db.String(16), nullable=False)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)

    gross_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    variants = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="active")
    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    components = db.relationship(
        "OrderLineComponent",
        backref="line",
        order_by="OrderLineComponent.id",
        cascade="all, delete-orphan",
        lazy=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "combo_id": self.combo_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "gst_type": self.gst_type,
            "discount_bps": self.discount_bps,
            "gross_cents": self.gross_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "variants": self.variants or [],
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "components": [c.to_dict() for c in self.components],
        }


class OrderLineComponent(db.Model):
    __tablename__ = "order_line_components"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity_per_line_unit = db.Column(db.Integer, nullable=False, default=1)
    consumed_milli = db.Column(db.Integer, nullable=False)
    stock_unit = db.Column(db.String(8), nullable=False)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity_per_line_unit": self.quantity_per_line_unit,
            "consumed": format_milli(self.consumed_milli),
            "stock_unit": self.stock_unit,
        }


class OrderAuditEntry(db.Model):
    """Append-only audit trail of order actions."""
    __tablename__ = "order_audit_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)
    note = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
        }
