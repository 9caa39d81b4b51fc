# Overview: Order coordinator; placement, status machine, line cancellation and customer self-cancel.

"""
Orders Service - document-first order processing

Placement flow:
  1. resolve every product / combo inside the theater (INVALID_PRODUCT)
  2. price each line and the order
  3. reserve the aggregated consumption per product under one cart id;
     any shortfall releases everything and raises INSUFFICIENT_STOCK
  4. persist the order as pending with a "created" audit entry
  5. commit the cart's reservations as sale entries keyed by the order id;
     STOCK_CONFLICT / RESERVATION_EXPIRED leave the order failed
  6. record "order.placed"

There is no half-placed order: after step 3 every failure releases the
cart and leaves the order absent or failed.

STATUS MACHINE:
  pending -> confirmed -> preparing -> ready -> served | completed
  any non-terminal status -> cancelled
  served, completed, cancelled and failed are terminal.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from ..errors import (
    AccessDeniedError,
    CoreError,
    IllegalStateTransitionError,
    InsufficientStockError,
    NotFoundError,
    OutOfStockError,
    UnknownProductError,
    ValidationFailedError,
)
from ..extensions import db
from ..models import Order, OrderAuditEntry, OrderLine, OrderLineComponent
from ..validation import parse_positive_int
from cinepos.time_utils import utcnow
from . import stock_service
from .catalog_service import resolve_sellable_combo, resolve_sellable_product
from .combo_service import combo_consumption_milli
from .concurrency import check_deadline, lock_for_update, run_with_retry
from .document_service import next_order_number
from .identity_service import STAFF_ROLES
from .ledger_service import append_ledger_event
from .pricing_service import LineInput, price_order, recompute_order_totals
from .tenant_service import require_active_theater
from .units import canonical_stock_unit, product_consumption_milli


logger = logging.getLogger(__name__)

CHANNELS = ("pos", "kiosk", "qr", "staff", "online")

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PREPARING = "preparing"
STATUS_READY = "ready"
STATUS_SERVED = "served"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"

STATUSES = (
    STATUS_PENDING, STATUS_CONFIRMED, STATUS_PREPARING, STATUS_READY,
    STATUS_SERVED, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_FAILED,
)
TERMINAL_STATUSES = frozenset({STATUS_SERVED, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_FAILED})
FORWARD_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED},
    STATUS_CONFIRMED: {STATUS_PREPARING},
    STATUS_PREPARING: {STATUS_READY},
    STATUS_READY: {STATUS_SERVED, STATUS_COMPLETED},
}
CUSTOMER_CANCELLABLE = frozenset({STATUS_PENDING, STATUS_CONFIRMED})

LINE_ACTIVE = "active"
LINE_CANCELLED = "cancelled"


@dataclass(frozen=True)
class OrderItemRequest:
    quantity: int
    product_id: int | None = None
    combo_id: int | None = None
    variants: list = field(default_factory=list)


@dataclass(frozen=True)
class CustomerRef:
    name: str | None = None
    phone: str | None = None


@dataclass
class _PlannedLine:
    name: str
    pricing: LineInput
    product_id: int | None
    combo_id: int | None
    variants: list
    # (product, quantity per line unit, consumed milli), one per product
    components: list


def parse_order_items(raw_items) -> list[OrderItemRequest]:
    """OrderItemRequests from snake_case dicts ({product_id|combo_id, quantity, variants?})."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationFailedError("items must be a non-empty list")
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationFailedError(f"items[{index}] must be an object")
        product_id = raw.get("product_id")
        combo_id = raw.get("combo_id")
        if (product_id is None) == (combo_id is None):
            raise ValidationFailedError(f"items[{index}] needs exactly one of product_id or combo_id")
        variants = raw.get("variants") or []
        if not isinstance(variants, list):
            raise ValidationFailedError(f"items[{index}].variants must be a list")
        items.append(OrderItemRequest(
            quantity=parse_positive_int(raw.get("quantity"), f"items[{index}].quantity"),
            product_id=product_id,
            combo_id=combo_id,
            variants=variants,
        ))
    return items


def parse_customer(raw) -> CustomerRef | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return CustomerRef(phone=raw.strip() or None)
    if not isinstance(raw, dict):
        raise ValidationFailedError("customer must be an object")
    name = raw.get("name")
    phone = raw.get("phone")
    return CustomerRef(
        name=str(name).strip() if name else None,
        phone=str(phone).strip() if phone else None,
    )


def phone_digits(phone) -> str:
    return re.sub(r"\D", "", str(phone or ""))


def _phones_match(given, on_order) -> bool:
    a, b = phone_digits(given), phone_digits(on_order)
    if not a or not b:
        return False
    if a == b:
        return True
    # Tolerate a country prefix on either side
    return len(a) >= 10 and len(b) >= 10 and a[-10:] == b[-10:]


# =============================================================================
# Placement
# =============================================================================

def _merge_components(pairs) -> list:
    merged: dict[int, list] = {}
    for product, per_unit, consumed in pairs:
        if product.id in merged:
            merged[product.id][1] += per_unit
            merged[product.id][2] += consumed
        else:
            merged[product.id] = [product, per_unit, consumed]
    return [tuple(values) for values in merged.values()]


def _plan_line(theater_id: int, item: OrderItemRequest) -> _PlannedLine:
    if item.combo_id is not None:
        combo = resolve_sellable_combo(theater_id, item.combo_id)
        pairs = combo_consumption_milli(combo, item.quantity)
        return _PlannedLine(
            name=combo.name,
            pricing=LineInput(
                unit_price_cents=combo.offer_price_cents,
                quantity=item.quantity,
                tax_rate_bps=combo.tax_rate_bps,
                gst_type=combo.gst_type,
                discount_bps=combo.discount_bps,
            ),
            product_id=None,
            combo_id=combo.id,
            variants=list(item.variants),
            components=_merge_components(pairs),
        )

    product = resolve_sellable_product(theater_id, item.product_id)
    return _PlannedLine(
        name=product.name,
        pricing=LineInput(
            unit_price_cents=product.selling_price_cents,
            quantity=item.quantity,
            tax_rate_bps=product.tax_rate_bps,
            gst_type=product.gst_type,
            discount_bps=product.discount_bps,
        ),
        product_id=product.id,
        combo_id=None,
        variants=list(item.variants),
        components=[(product, 1, product_consumption_milli(product, item.quantity))],
    )


def _aggregate_consumption(plans: list[_PlannedLine]) -> dict[int, int]:
    """Total consumption per product, in order of first appearance."""
    totals: dict[int, int] = {}
    for plan in plans:
        for product, _, consumed in plan.components:
            totals[product.id] = totals.get(product.id, 0) + consumed
    return totals


def _reserve_all(theater_id: int, cart_id: str, totals: dict[int, int], now: datetime) -> None:
    try:
        for product_id, units_milli in totals.items():
            stock_service.reserve(theater_id, product_id, units_milli, cart_id, now=now)
        # Anything else the cart still holds is not part of this order
        for row in stock_service.cart_reservations(cart_id, theater_id=theater_id):
            if row.product_id not in totals:
                stock_service.release(cart_id, row.product_id, theater_id=theater_id)
    except (OutOfStockError, UnknownProductError) as exc:
        stock_service.release(cart_id, theater_id=theater_id)
        raise InsufficientStockError(
            f"Insufficient stock for product {exc.product_id}",
            product_id=exc.product_id,
            available=exc.available,
            needed=exc.needed,
        ) from exc
    except Exception:
        stock_service.release(cart_id, theater_id=theater_id)
        raise


def _audit(order: Order, action: str, *, actor_user_id=None, from_status=None, to_status=None,
           note=None, now: datetime | None = None) -> OrderAuditEntry:
    entry = OrderAuditEntry(
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor_user_id=actor_user_id,
        occurred_at=now or utcnow(),
        note=note,
    )
    order.audit_entries.append(entry)
    return entry


def _log_transition(order: Order, from_status, to_status, actor_user_id=None) -> None:
    logger.info(
        "order.transition",
        extra={
            "theater_id": order.theater_id,
            "order_id": order.id,
            "order_number": order.order_number,
            "from_status": from_status,
            "to_status": to_status,
            "actor_user_id": actor_user_id,
        },
    )


def _apply_totals(order: Order, totals) -> None:
    order.subtotal_ex_tax_cents = totals.subtotal_ex_tax_cents
    order.total_tax_cents = totals.total_tax_cents
    order.cgst_cents = totals.cgst_cents
    order.sgst_cents = totals.sgst_cents
    order.total_discount_cents = totals.total_discount_cents
    order.grand_total_cents = totals.grand_total_cents


def _persist_order(
    *,
    theater_id: int,
    channel: str,
    customer: CustomerRef | None,
    cart_id: str,
    plans: list[_PlannedLine],
    line_totals,
    order_totals,
    actor_user_id: int | None,
    now: datetime,
) -> Order:
    order = Order(
        theater_id=theater_id,
        order_number=next_order_number(theater_id),
        channel=channel,
        status=STATUS_PENDING,
        customer_name=customer.name if customer else None,
        customer_phone=customer.phone if customer else None,
        cart_id=cart_id,
        created_by_user_id=actor_user_id,
        created_at=now,
    )
    _apply_totals(order, order_totals)

    for number, (plan, totals) in enumerate(zip(plans, line_totals), start=1):
        line = OrderLine(
            line_number=number,
            product_id=plan.product_id,
            combo_id=plan.combo_id,
            name=plan.name,
            quantity=plan.pricing.quantity,
            unit_price_cents=plan.pricing.unit_price_cents,
            tax_rate_bps=plan.pricing.tax_rate_bps,
            gst_type=plan.pricing.gst_type,
            discount_bps=plan.pricing.discount_bps,
            gross_cents=totals.gross_cents,
            discount_cents=totals.discount_cents,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            variants=plan.variants or None,
            status=LINE_ACTIVE,
        )
        for product, per_unit, consumed in plan.components:
            line.components.append(OrderLineComponent(
                product_id=product.id,
                quantity_per_line_unit=per_unit,
                consumed_milli=consumed,
                stock_unit=canonical_stock_unit(product.stock_unit),
            ))
        order.lines.append(line)

    _audit(order, "created", actor_user_id=actor_user_id, to_status=STATUS_PENDING, now=now)
    db.session.add(order)
    db.session.commit()
    _log_transition(order, None, STATUS_PENDING, actor_user_id)
    return order


def _fail_order(order_id: int, cart_id: str, theater_id: int, reason: str, actor_user_id, now) -> None:
    db.session.rollback()
    order = db.session.get(Order, order_id)
    if order is not None and order.status == STATUS_PENDING:
        order.status = STATUS_FAILED
        order.failure_reason = reason
        _audit(order, "failed", actor_user_id=actor_user_id, from_status=STATUS_PENDING,
               to_status=STATUS_FAILED, note=reason, now=now)
        append_ledger_event(
            theater_id=order.theater_id,
            event_type="order.failed",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            occurred_at=now,
            note=reason,
        )
        db.session.commit()
        _log_transition(order, STATUS_PENDING, STATUS_FAILED, actor_user_id)
    stock_service.release(cart_id, theater_id=theater_id)


def place_order(
    principal,
    theater_id: int,
    channel: str,
    items: list[OrderItemRequest],
    customer: CustomerRef | None = None,
    *,
    cart_id: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Place an order; see the module docstring for the flow.

    Returns the order in status pending. Raises InvalidProductError,
    InsufficientStockError, StockConflictError, ReservationExpiredError or
    DeadlineExceededError.
    """
    if channel not in CHANNELS:
        raise ValidationFailedError(
            f"channel must be one of {', '.join(CHANNELS)}",
            details={"channel": channel},
        )
    if not items:
        raise ValidationFailedError("items must be a non-empty list")

    now = now or utcnow()
    actor_user_id = principal.user_id if principal is not None else None

    plans = [_plan_line(theater_id, item) for item in items]
    line_totals, order_totals = price_order(plan.pricing for plan in plans)

    cart_id = cart_id or f"order-{uuid.uuid4().hex}"
    _reserve_all(theater_id, cart_id, _aggregate_consumption(plans), now)

    try:
        check_deadline()
        order = _persist_order(
            theater_id=theater_id,
            channel=channel,
            customer=customer,
            cart_id=cart_id,
            plans=plans,
            line_totals=line_totals,
            order_totals=order_totals,
            actor_user_id=actor_user_id,
            now=now,
        )
    except Exception:
        db.session.rollback()
        stock_service.release(cart_id, theater_id=theater_id)
        raise

    order_id = order.id
    try:
        check_deadline()
        stock_service.commit(
            cart_id,
            str(order_id),
            occurred_at=now,
            actor_user_id=actor_user_id,
            now=now,
        )
    except CoreError as exc:
        _fail_order(order_id, cart_id, theater_id, exc.code, actor_user_id, now)
        raise
    except Exception:
        _fail_order(order_id, cart_id, theater_id, "INTERNAL_ERROR", actor_user_id, now)
        raise

    order = db.session.get(Order, order_id)
    append_ledger_event(
        theater_id=theater_id,
        event_type="order.placed",
        entity_type="order",
        entity_id=order.id,
        actor_user_id=actor_user_id,
        order_id=order.id,
        occurred_at=now,
        note=f"Order {order.order_number} placed via {channel}",
        payload={"grand_total_cents": order.grand_total_cents},
    )
    db.session.commit()
    return order


# =============================================================================
# Lifecycle
# =============================================================================

def get_order(theater_id: int, order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None or order.theater_id != theater_id:
        raise NotFoundError("Order not found")
    return order


def list_orders(
    theater_id: int,
    *,
    status: str | None = None,
    channel: str | None = None,
    limit: int = 100,
) -> list[Order]:
    query = db.session.query(Order).filter(Order.theater_id == theater_id)
    if status:
        query = query.filter(Order.status == status)
    if channel:
        query = query.filter(Order.channel == channel)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def _lock_order(theater_id: int | None, order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None or (theater_id is not None and order.theater_id != theater_id):
        raise NotFoundError("Order not found")
    return order


def _require_staff(principal) -> None:
    if principal is None or principal.role not in STAFF_ROLES:
        raise AccessDeniedError(
            "Only staff may change orders",
            details={"role": principal.role if principal is not None else None},
        )


def _return_line_stock(order: Order, line: OrderLine, actor_user_id, now: datetime) -> None:
    for component in line.components:
        if component.consumed_milli <= 0:
            continue
        stock_service.append_entry(
            order.theater_id,
            component.product_id,
            stock_service.KIND_RETURN,
            component.consumed_milli,
            f"Cancel {order.order_number} line {line.line_number}",
            occurred_at=now,
            actor_user_id=actor_user_id,
            order_ref=str(order.id),
            idempotency_key=stock_service.cancel_idempotency_key(order.id, line.id, component.product_id),
            commit=False,
        )


def _set_status(order: Order, to_status: str, *, actor_user_id, now: datetime,
                action: str = "status_changed", note: str | None = None) -> None:
    from_status = order.status
    order.status = to_status
    _audit(order, action, actor_user_id=actor_user_id, from_status=from_status,
           to_status=to_status, note=note, now=now)
    append_ledger_event(
        theater_id=order.theater_id,
        event_type="order.status_changed",
        entity_type="order",
        entity_id=order.id,
        actor_user_id=actor_user_id,
        order_id=order.id,
        occurred_at=now,
        note=f"{from_status} -> {to_status}",
    )


def _cancel_locked(order: Order, *, actor_user_id, now: datetime, note: str | None) -> str:
    if order.status in TERMINAL_STATUSES:
        raise IllegalStateTransitionError(
            f"Cannot cancel an order in status {order.status}",
            details={"from": order.status, "to": STATUS_CANCELLED},
        )
    for line in order.active_lines:
        _return_line_stock(order, line, actor_user_id, now)
    from_status = order.status
    _set_status(order, STATUS_CANCELLED, actor_user_id=actor_user_id, now=now,
                action="cancelled", note=note)
    return from_status


def _run_order_write(func):
    def _op():
        try:
            return func()
        except CoreError:
            db.session.rollback()
            raise
    return run_with_retry(_op)


def transition_status(
    principal,
    theater_id: int,
    order_id: int,
    new_status: str,
    *,
    note: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Move an order along the status machine (staff roles only).

    cancelled returns the stock of every active line.
    """
    _require_staff(principal)
    if new_status not in STATUSES:
        raise ValidationFailedError(
            f"status must be one of {', '.join(STATUSES)}",
            details={"status": new_status},
        )
    actor_user_id = principal.user_id

    def _op():
        moment = now or utcnow()
        order = _lock_order(theater_id, order_id)
        from_status = order.status

        if new_status == STATUS_CANCELLED:
            _cancel_locked(order, actor_user_id=actor_user_id, now=moment, note=note)
        else:
            allowed = FORWARD_TRANSITIONS.get(order.status, set())
            if new_status not in allowed:
                raise IllegalStateTransitionError(
                    f"Illegal transition {order.status} -> {new_status}",
                    details={"from": order.status, "to": new_status},
                )
            _set_status(order, new_status, actor_user_id=actor_user_id, now=moment, note=note)

        db.session.commit()
        _log_transition(order, from_status, new_status, actor_user_id)
        return order

    return _run_order_write(_op)


def cancel_line(
    principal,
    theater_id: int,
    order_id: int,
    line_id: int,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> Order:
    """
    Cancel one active line of a non-terminal order (staff roles only).

    Returns the line's stock, recomputes the order totals from the remaining
    active lines and cancels the order once no active line is left.
    """
    _require_staff(principal)
    actor_user_id = principal.user_id

    def _op():
        moment = now or utcnow()
        order = _lock_order(theater_id, order_id)
        line = next((ln for ln in order.lines if ln.id == line_id), None)
        if line is None:
            raise NotFoundError("Order line not found")
        if order.status in TERMINAL_STATUSES:
            raise IllegalStateTransitionError(
                f"Cannot cancel lines of an order in status {order.status}",
                details={"status": order.status},
            )
        if line.status != LINE_ACTIVE:
            raise IllegalStateTransitionError(
                "Line is already cancelled",
                details={"line_id": line.id},
            )

        line.status = LINE_CANCELLED
        line.cancel_reason = reason
        line.cancelled_by_user_id = actor_user_id
        line.cancelled_at = moment
        _return_line_stock(order, line, actor_user_id, moment)

        _apply_totals(order, recompute_order_totals(order.lines))
        _audit(order, "line_cancelled", actor_user_id=actor_user_id,
               note=f"line {line.line_number}: {reason}" if reason else f"line {line.line_number}",
               now=moment)
        append_ledger_event(
            theater_id=order.theater_id,
            event_type="order.line_cancelled",
            entity_type="order_line",
            entity_id=line.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            occurred_at=moment,
            note=reason,
            payload={"grand_total_cents": order.grand_total_cents},
        )

        from_status = order.status
        auto_cancelled = not order.active_lines
        if auto_cancelled:
            _set_status(order, STATUS_CANCELLED, actor_user_id=actor_user_id, now=moment,
                        action="cancelled", note="all lines cancelled")

        db.session.commit()
        if auto_cancelled:
            _log_transition(order, from_status, STATUS_CANCELLED, actor_user_id)
        return order

    return _run_order_write(_op)


def customer_cancel(order_id: int, phone: str, *, now: datetime | None = None) -> Order:
    """
    Self-cancel by the customer who placed the order.

    Allowed in pending or confirmed only; the phone must match the order and
    the theater must be active within its agreement window.
    """
    if not phone_digits(phone):
        raise ValidationFailedError("phone is required")

    def _op():
        moment = now or utcnow()
        order = _lock_order(None, order_id)
        if not _phones_match(phone, order.customer_phone):
            raise AccessDeniedError("Phone number does not match this order")
        require_active_theater(order.theater_id, moment.date())
        if order.status not in CUSTOMER_CANCELLABLE:
            raise IllegalStateTransitionError(
                f"Order can no longer be cancelled (status {order.status})",
                details={"from": order.status, "to": STATUS_CANCELLED},
            )
        from_status = _cancel_locked(order, actor_user_id=None, now=moment, note="customer self-cancel")
        db.session.commit()
        _log_transition(order, from_status, STATUS_CANCELLED, None)
        return order

    return _run_order_write(_op)


# =============================================================================
# Consistency checks
# =============================================================================

def expected_consumption_milli(order: Order) -> dict[int, int]:
    """Per-product consumption of every line as placed (cancelled lines included)."""
    totals: dict[int, int] = {}
    for line in order.lines:
        for component in line.components:
            totals[component.product_id] = totals.get(component.product_id, 0) + component.consumed_milli
    return totals

