from __future__ import annotations

from ..extensions import db
from cinepos.time_utils import to_utc_z


class Product(db.Model):
    """
    Sellable canteen product.

    MULTI-TENANT: Products are scoped to theaters via theater_id.

    UNIT DESCRIPTOR:
    quantity / quantity_unit / size_label describe one sellable item
    (e.g. quantity="150 ML"); no_qty is the number of such units per item.
    stock_unit is the dimension stock is kept in: "Nos", "kg" or "L".
    The descriptor must be compatible with stock_unit or the product cannot
    be sold.

    PRICING: selling_price_cents, tax_rate_bps, gst_type and discount_bps are
    copied onto order lines at placement; editing them never rewrites
    historical orders.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_theater_name", "theater_id", "name"),
        db.Index("ix_products_theater_active", "theater_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.String(32), nullable=True)
    quantity_unit = db.Column(db.String(16), nullable=True)
    size_label = db.Column(db.String(32), nullable=True)
    no_qty = db.Column(db.Integer, nullable=False, default=1)
    stock_unit = db.Column(db.String(8), nullable=False, default="Nos")

    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    gst_type = db.Column(db.String(16), nullable=False, default="Exclusive")
    discount_bps = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    # Bumped by every reservation write; the UPDATE serializes reservers of one product
    stock_lock_seq = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    theater = db.relationship("Theater", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_sellable(self) -> bool:
        return bool(self.is_active and self.is_available)

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} theater_id={self.theater_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "quantity_unit": self.quantity_unit,
            "size_label": self.size_label,
            "no_qty": self.no_qty,
            "stock_unit": self.stock_unit,
            "selling_price_cents": self.selling_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "gst_type": self.gst_type,
            "discount_bps": self.discount_bps,
            "is_active": self.is_active,
            "is_available": self.is_available,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ComboOffer(db.Model):
    """
    Combo offer: a priced bundle of component products.

    Components are ordered; feasibility checks walk them in declared order
    so the first failing product is stable.
    """
    __tablename__ = "combo_offers"
    __table_args__ = (
        db.Index("ix_combo_offers_theater_active", "theater_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(500), nullable=True)

    offer_price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    gst_type = db.Column(db.String(16), nullable=False, default="Inclusive")
    discount_bps = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    components = db.relationship(
        "ComboComponent",
        backref="combo",
        order_by="ComboComponent.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "description": self.description,
            "offer_price_cents": self.offer_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "gst_type": self.gst_type,
            "discount_bps": self.discount_bps,
            "is_active": self.is_active,
            "components": [c.to_dict() for c in self.components],
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ComboComponent(db.Model):
    __tablename__ = "combo_components"
    __table_args__ = (
        db.UniqueConstraint("combo_id", "position", name="uq_combo_components_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    combo_id = db.Column(db.Integer, db.ForeignKey("combo_offers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    quantity_per_combo = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "position": self.position,
            "quantity_per_combo": self.quantity_per_combo,
        }
