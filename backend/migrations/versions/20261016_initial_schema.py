"""Initial schema: theaters, identity, catalog, stock ledger, orders

Revision ID: 20261016_initial
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261016_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated=True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return cols


def upgrade():
    op.create_table(
        "theaters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("agreement_start", sa.Date(), nullable=True),
        sa.Column("agreement_end", sa.Date(), nullable=True),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_theaters_code", "theaters", ["code"], unique=True)
    op.create_index("ix_theaters_is_active", "theaters", ["is_active"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("theater_id", "username", name="uq_users_theater_username"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_users_theater_id", "users", ["theater_id"])
    op.create_index("ix_users_username", "users", ["username"])

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_session_tokens_user_id", "session_tokens", ["user_id"])
    op.create_index("ix_session_tokens_theater_id", "session_tokens", ["theater_id"])
    op.create_index("ix_session_tokens_token_hash", "session_tokens", ["token_hash"], unique=True)
    op.create_index("ix_session_tokens_is_revoked", "session_tokens", ["is_revoked"])

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.String(length=32), nullable=True),
        sa.Column("quantity_unit", sa.String(length=16), nullable=True),
        sa.Column("size_label", sa.String(length=32), nullable=True),
        sa.Column("no_qty", sa.Integer(), nullable=False),
        sa.Column("stock_unit", sa.String(length=8), nullable=False),
        sa.Column("selling_price_cents", sa.Integer(), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False),
        sa.Column("gst_type", sa.String(length=16), nullable=False),
        sa.Column("discount_bps", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("stock_lock_seq", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_products_theater_id", "products", ["theater_id"])
    op.create_index("ix_products_theater_name", "products", ["theater_id", "name"])
    op.create_index("ix_products_theater_active", "products", ["theater_id", "is_active"])

    op.create_table(
        "combo_offers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("offer_price_cents", sa.Integer(), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False),
        sa.Column("gst_type", sa.String(length=16), nullable=False),
        sa.Column("discount_bps", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_combo_offers_theater_id", "combo_offers", ["theater_id"])
    op.create_index("ix_combo_offers_theater_active", "combo_offers", ["theater_id", "is_active"])

    op.create_table(
        "combo_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("combo_id", sa.Integer(), sa.ForeignKey("combo_offers.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("quantity_per_combo", sa.Integer(), nullable=False),
        sa.UniqueConstraint("combo_id", "position", name="uq_combo_components_position"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_combo_components_combo_id", "combo_components", ["combo_id"])
    op.create_index("ix_combo_components_product_id", "combo_components", ["product_id"])

    op.create_table(
        "stock_sheets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("stock_unit", sa.String(length=8), nullable=False),
        sa.Column("opening_milli", sa.Integer(), nullable=False),
        sa.Column("closing_milli", sa.Integer(), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("theater_id", "product_id", "year", "month", name="uq_stock_sheets_period"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_sheets_theater_id", "stock_sheets", ["theater_id"])
    op.create_index("ix_stock_sheets_product_id", "stock_sheets", ["product_id"])
    op.create_index(
        "ix_stock_sheets_theater_product_period", "stock_sheets",
        ["theater_id", "product_id", "year", "month"],
    )

    op.create_table(
        "stock_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sheet_id", sa.Integer(), sa.ForeignKey("stock_sheets.id"), nullable=False),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("delta_milli", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("order_ref", sa.String(length=64), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.UniqueConstraint("sheet_id", "seq", name="uq_stock_entries_sheet_seq"),
        sa.UniqueConstraint("idempotency_key", name="uq_stock_entries_idempotency_key"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_entries_sheet_id", "stock_entries", ["sheet_id"])
    op.create_index("ix_stock_entries_theater_id", "stock_entries", ["theater_id"])
    op.create_index("ix_stock_entries_product_id", "stock_entries", ["product_id"])
    op.create_index("ix_stock_entries_kind", "stock_entries", ["kind"])
    op.create_index("ix_stock_entries_occurred_at", "stock_entries", ["occurred_at"])
    op.create_index("ix_stock_entries_order_product", "stock_entries", ["order_ref", "product_id"])

    op.create_table(
        "cart_reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("cart_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("reserved_milli", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("ttl_seconds", sa.Integer(), nullable=False),
        sa.Column("last_touch", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("cart_id", "product_id", name="uq_cart_reservations_cart_product"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_cart_reservations_theater_id", "cart_reservations", ["theater_id"])
    op.create_index("ix_cart_reservations_cart_touch", "cart_reservations", ["cart_id", "last_touch"])
    op.create_index(
        "ix_cart_reservations_theater_product_status", "cart_reservations",
        ["theater_id", "product_id", "status"],
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("customer_phone", sa.String(length=32), nullable=True),
        sa.Column("cart_id", sa.String(length=64), nullable=True),
        sa.Column("subtotal_ex_tax_cents", sa.Integer(), nullable=False),
        sa.Column("total_tax_cents", sa.Integer(), nullable=False),
        sa.Column("cgst_cents", sa.Integer(), nullable=False),
        sa.Column("sgst_cents", sa.Integer(), nullable=False),
        sa.Column("total_discount_cents", sa.Integer(), nullable=False),
        sa.Column("grand_total_cents", sa.Integer(), nullable=False),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("theater_id", "order_number", name="uq_orders_theater_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_orders_theater_id", "orders", ["theater_id"])
    op.create_index("ix_orders_channel", "orders", ["channel"])
    op.create_index("ix_orders_theater_created", "orders", ["theater_id", "created_at"])
    op.create_index("ix_orders_theater_status", "orders", ["theater_id", "status"])

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("combo_id", sa.Integer(), sa.ForeignKey("combo_offers.id"), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False),
        sa.Column("gst_type", sa.String(length=16), nullable=False),
        sa.Column("discount_bps", sa.Integer(), nullable=False),
        sa.Column("gross_cents", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("variants", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("cancel_reason", sa.String(length=255), nullable=True),
        sa.Column("cancelled_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_order_lines_order_id", "order_lines", ["order_id"])

    op.create_table(
        "order_line_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("line_id", sa.Integer(), sa.ForeignKey("order_lines.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity_per_line_unit", sa.Integer(), nullable=False),
        sa.Column("consumed_milli", sa.Integer(), nullable=False),
        sa.Column("stock_unit", sa.String(length=8), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_order_line_components_line_id", "order_line_components", ["line_id"])
    op.create_index("ix_order_line_components_product_id", "order_line_components", ["product_id"])

    op.create_table(
        "order_audit_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=True),
        sa.Column("to_status", sa.String(length=16), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.String(length=255), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_order_audit_entries_order_id", "order_audit_entries", ["order_id"])

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("document_type", sa.String(length=32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("theater_id", "document_type", name="uq_doc_sequences_theater_type"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_document_sequences_theater_id", "document_sequences", ["theater_id"])
    op.create_index("ix_document_sequences_document_type", "document_sequences", ["document_type"])

    op.create_table(
        "ledger_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("theater_id", sa.Integer(), sa.ForeignKey("theaters.id"), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_ledger_events_theater_id", "ledger_events", ["theater_id"])
    op.create_index("ix_ledger_events_event_type", "ledger_events", ["event_type"])
    op.create_index("ix_ledger_events_entity_id", "ledger_events", ["entity_id"])
    op.create_index("ix_ledger_events_actor_user_id", "ledger_events", ["actor_user_id"])
    op.create_index("ix_ledger_events_order_id", "ledger_events", ["order_id"])
    op.create_index("ix_ledger_events_occurred_at", "ledger_events", ["occurred_at"])
    op.create_index("ix_ledger_events_theater_occurred", "ledger_events", ["theater_id", "occurred_at"])


def downgrade():
    for table in (
        "ledger_events",
        "document_sequences",
        "order_audit_entries",
        "order_line_components",
        "order_lines",
        "orders",
        "cart_reservations",
        "stock_entries",
        "stock_sheets",
        "combo_components",
        "combo_offers",
        "products",
        "session_tokens",
        "users",
        "theaters",
    ):
        op.drop_table(table)
