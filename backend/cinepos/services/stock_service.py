# Overview: Stock ledger service; monthly sheets, cart reservations, idempotent sale commits and balances.

"""
Stock ledger.

Ledger invariants
- Entries are append-only; corrections are compensating entries.
- For every (theater, product, month) sheet, opening + SUM(delta) >= 0 after
  every committed write. The check runs while the sheet row is locked; the
  sheet's version_id turns a concurrent writer into StaleDataError, which
  run_with_retry replays against fresh state.
- seq is a per-sheet total order assigned under that lock.
- A write into a month that already has later sheets shifts those sheets'
  opening/closing by the same delta (carry-forward) and must keep every
  running balance in them non-negative as well.
- Sale entries are keyed "sale:{order_ref}:{product_id}", so commit replays
  never deduct twice.

Reservations
- reserved_milli is the cart's target total for a product, not a delta.
- available = current balance - other carts' ACTIVE, unexpired reservations.
- Reservation writers on one product are serialized by an UPDATE of the
  product row (stock_lock_seq) taken before availability is read.
- A reservation is stale once last_touch + ttl_seconds < now. The sweeper
  marks stale rows EXPIRED and purges EXPIRED rows after
  RESERVATION_PURGE_SECONDS; commit refuses a cart holding EXPIRED or stale
  rows, or no rows at all, with RESERVATION_EXPIRED.
- Commit deletes the rows it turns into sale entries.

Quantities are integer thousandths of the product's stock unit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app, has_app_context
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    CoreError,
    NegativeBalanceError,
    OutOfStockError,
    ReservationExpiredError,
    StockConflictError,
    UnknownProductError,
    ValidationFailedError,
)
from ..extensions import db
from ..models import CartReservation, Product, StockEntry, StockSheet
from cinepos.time_utils import month_of, utcnow
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event
from .units import canonical_stock_unit, format_milli, from_milli, product_consumption_milli


logger = logging.getLogger(__name__)

KIND_PURCHASE = "purchase"
KIND_ADJUSTMENT = "adjustment"
KIND_SALE = "sale"
KIND_RETURN = "return"
KIND_WASTE = "waste"
ENTRY_KINDS = (KIND_PURCHASE, KIND_ADJUSTMENT, KIND_SALE, KIND_RETURN, KIND_WASTE)

RESERVATION_ACTIVE = "ACTIVE"
RESERVATION_EXPIRED = "EXPIRED"

DEFAULT_TTL_SECONDS = 900
DEFAULT_PURGE_SECONDS = 3600


def sale_idempotency_key(order_ref: str, product_id: int) -> str:
    return f"sale:{order_ref}:{product_id}"


def cancel_idempotency_key(order_id: int, item_id: int, product_id: int) -> str:
    return f"cancel:{order_id}:{item_id}:{product_id}"


def _default_ttl() -> int:
    if has_app_context():
        return int(current_app.config.get("RESERVATION_TTL_SECONDS", DEFAULT_TTL_SECONDS))
    return DEFAULT_TTL_SECONDS


def _purge_seconds() -> int:
    if has_app_context():
        return int(current_app.config.get("RESERVATION_PURGE_SECONDS", DEFAULT_PURGE_SECONDS))
    return DEFAULT_PURGE_SECONDS


def _rollback_and_raise(func):
    """Run func; on a domain error discard the partial unit of work first."""
    try:
        return func()
    except CoreError:
        db.session.rollback()
        raise


def get_product(theater_id: int, product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.theater_id != theater_id:
        raise UnknownProductError(f"Product {product_id} not found", product_id=product_id)
    return product


# =============================================================================
# Sheets
# =============================================================================

def _later_than(year: int, month: int):
    return or_(
        StockSheet.year > year,
        and_(StockSheet.year == year, StockSheet.month > month),
    )


def _not_later_than(year: int, month: int):
    return or_(
        StockSheet.year < year,
        and_(StockSheet.year == year, StockSheet.month <= month),
    )


def get_sheet(theater_id: int, product_id: int, year: int, month: int) -> StockSheet | None:
    return (
        db.session.query(StockSheet)
        .filter_by(theater_id=theater_id, product_id=product_id, year=year, month=month)
        .first()
    )


def _latest_sheet_up_to(theater_id: int, product_id: int, year: int, month: int) -> StockSheet | None:
    return (
        db.session.query(StockSheet)
        .filter(
            StockSheet.theater_id == theater_id,
            StockSheet.product_id == product_id,
            _not_later_than(year, month),
        )
        .order_by(StockSheet.year.desc(), StockSheet.month.desc())
        .first()
    )


def _lock_sheet(theater_id: int, product_id: int, year: int, month: int) -> StockSheet | None:
    query = db.session.query(StockSheet).filter_by(
        theater_id=theater_id, product_id=product_id, year=year, month=month
    )
    return lock_for_update(query).first()


def _get_or_create_sheet(product: Product, year: int, month: int) -> StockSheet:
    """
    Locked sheet for (product, year, month).

    A missing sheet opens with the closing balance of the latest earlier
    sheet (0 when the product has no history).
    """
    sheet = _lock_sheet(product.theater_id, product.id, year, month)
    if sheet is not None:
        return sheet

    previous = _latest_sheet_up_to(product.theater_id, product.id, year, month)
    opening = previous.closing_milli if previous is not None else 0
    try:
        with db.session.begin_nested():
            sheet = StockSheet(
                theater_id=product.theater_id,
                product_id=product.id,
                year=year,
                month=month,
                stock_unit=canonical_stock_unit(product.stock_unit),
                opening_milli=opening,
                closing_milli=opening,
                last_seq=0,
            )
            db.session.add(sheet)
    except IntegrityError:
        # Another writer created it first
        sheet = _lock_sheet(product.theater_id, product.id, year, month)
        if sheet is None:
            raise
    return sheet


def _lowest_running_balance(sheet: StockSheet) -> int:
    running = sheet.opening_milli
    lowest = running
    deltas = (
        db.session.query(StockEntry.delta_milli)
        .filter(StockEntry.sheet_id == sheet.id)
        .order_by(StockEntry.seq.asc())
        .all()
    )
    for (delta,) in deltas:
        running += delta
        lowest = min(lowest, running)
    return lowest


def _carry_forward(sheet: StockSheet, delta_milli: int, error_cls, product_id: int) -> None:
    later = lock_for_update(
        db.session.query(StockSheet)
        .filter(
            StockSheet.theater_id == sheet.theater_id,
            StockSheet.product_id == sheet.product_id,
            _later_than(sheet.year, sheet.month),
        )
        .order_by(StockSheet.year.asc(), StockSheet.month.asc())
    ).all()

    for later_sheet in later:
        if delta_milli < 0:
            lowest = _lowest_running_balance(later_sheet)
            if lowest + delta_milli < 0:
                raise error_cls(
                    f"Write would drive {later_sheet.period} below zero",
                    product_id=product_id,
                    available=from_milli(lowest),
                    needed=from_milli(-delta_milli),
                    details={"month": later_sheet.period},
                )
        later_sheet.opening_milli += delta_milli
        later_sheet.closing_milli += delta_milli


def _write_entry(
    product: Product,
    *,
    kind: str,
    delta_milli: int,
    occurred_at: datetime,
    error_cls,
    reason: str | None = None,
    order_ref: str | None = None,
    idempotency_key: str | None = None,
    actor_user_id: int | None = None,
) -> StockEntry:
    year, month = month_of(occurred_at)
    sheet = _get_or_create_sheet(product, year, month)

    new_closing = sheet.closing_milli + delta_milli
    if new_closing < 0:
        raise error_cls(
            f"Insufficient stock for product {product.id}",
            product_id=product.id,
            available=from_milli(sheet.closing_milli),
            needed=from_milli(-delta_milli),
        )

    _carry_forward(sheet, delta_milli, error_cls, product.id)

    sheet.last_seq += 1
    sheet.closing_milli = new_closing
    entry = StockEntry(
        sheet_id=sheet.id,
        theater_id=product.theater_id,
        product_id=product.id,
        seq=sheet.last_seq,
        kind=kind,
        delta_milli=delta_milli,
        reason=reason,
        order_ref=order_ref,
        idempotency_key=idempotency_key,
        occurred_at=occurred_at,
        created_by_user_id=actor_user_id,
    )
    db.session.add(entry)
    db.session.flush()

    append_ledger_event(
        theater_id=product.theater_id,
        event_type="stock.entry",
        entity_type="stock_entry",
        entity_id=entry.id,
        actor_user_id=actor_user_id,
        occurred_at=occurred_at,
        note=f"{kind} {format_milli(delta_milli)} {sheet.stock_unit} ({sheet.period})",
        payload={"product_id": product.id, "seq": entry.seq, "order_ref": order_ref},
    )
    logger.info(
        "stock.entry",
        extra={
            "theater_id": product.theater_id,
            "product_id": product.id,
            "kind": kind,
            "delta_milli": delta_milli,
            "seq": entry.seq,
            "period": sheet.period,
            "order_ref": order_ref,
        },
    )
    return entry


def _existing_entry(idempotency_key: str | None) -> StockEntry | None:
    if not idempotency_key:
        return None
    return db.session.query(StockEntry).filter_by(idempotency_key=idempotency_key).first()


def _validate_kind_delta(kind: str, delta_milli: int) -> None:
    if kind not in ENTRY_KINDS:
        raise ValidationFailedError(
            f"kind must be one of {', '.join(ENTRY_KINDS)}",
            details={"kind": kind},
        )
    if kind == KIND_SALE:
        raise ValidationFailedError("sale entries are written by order commits only")
    if not isinstance(delta_milli, int) or isinstance(delta_milli, bool):
        raise ValidationFailedError("delta must be a number")
    if kind in (KIND_PURCHASE, KIND_RETURN) and delta_milli <= 0:
        raise ValidationFailedError(f"delta must be > 0 for {kind}")
    if kind == KIND_WASTE and delta_milli >= 0:
        raise ValidationFailedError("delta must be < 0 for waste")
    if kind == KIND_ADJUSTMENT and delta_milli == 0:
        raise ValidationFailedError("delta must be non-zero for adjustment")


def append_entry(
    theater_id: int,
    product_id: int,
    kind: str,
    delta_milli: int,
    reason: str | None = None,
    *,
    occurred_at: datetime | None = None,
    actor_user_id: int | None = None,
    order_ref: str | None = None,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> StockEntry:
    """
    Append a non-sale entry (purchase, adjustment, return, waste).

    With an idempotency_key, a replay returns the entry written the first
    time. Raises NegativeBalanceError if any running balance would drop
    below zero.

    commit=False stages the entry in the caller's transaction (order
    cancellations); the caller is then responsible for retry and rollback.
    """
    _validate_kind_delta(kind, delta_milli)

    def _op():
        existing = _existing_entry(idempotency_key)
        if existing is not None:
            return existing
        product = get_product(theater_id, product_id)
        entry = _write_entry(
            product,
            kind=kind,
            delta_milli=delta_milli,
            occurred_at=occurred_at or utcnow(),
            error_cls=NegativeBalanceError,
            reason=reason,
            order_ref=order_ref,
            idempotency_key=idempotency_key,
            actor_user_id=actor_user_id,
        )
        if commit:
            db.session.commit()
        return entry

    if not commit:
        return _op()
    return run_with_retry(lambda: _rollback_and_raise(_op))


# =============================================================================
# Balances
# =============================================================================

def current_balance_milli(theater_id: int, product_id: int, *, now: datetime | None = None) -> int:
    """Closing balance of the latest sheet not after the current month."""
    year, month = month_of(now or utcnow())
    sheet = _latest_sheet_up_to(theater_id, product_id, year, month)
    return sheet.closing_milli if sheet is not None else 0


def balance_milli(theater_id: int, product_id: int, as_of: datetime | None = None) -> int:
    """
    Closing balance at `as_of` (inclusive); current balance when omitted.

    Within the month of as_of this is opening + SUM(delta) over entries that
    occurred at or before as_of. Months without a sheet inherit the closing
    balance of the latest earlier sheet.
    """
    if as_of is None:
        return current_balance_milli(theater_id, product_id)

    year, month = month_of(as_of)
    sheet = get_sheet(theater_id, product_id, year, month)
    if sheet is None:
        previous = _latest_sheet_up_to(theater_id, product_id, year, month)
        return previous.closing_milli if previous is not None else 0

    total = (
        db.session.query(db.func.coalesce(db.func.sum(StockEntry.delta_milli), 0))
        .filter(StockEntry.sheet_id == sheet.id, StockEntry.occurred_at <= as_of)
        .scalar()
    )
    return sheet.opening_milli + int(total or 0)


def _is_stale(row: CartReservation, now: datetime) -> bool:
    return row.last_touch + timedelta(seconds=row.ttl_seconds) < now


def reserved_milli(
    theater_id: int,
    product_id: int,
    *,
    exclude_cart_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Sum of ACTIVE, unexpired reservations on a product."""
    now = now or utcnow()
    query = db.session.query(CartReservation).filter(
        CartReservation.theater_id == theater_id,
        CartReservation.product_id == product_id,
        CartReservation.status == RESERVATION_ACTIVE,
    )
    if exclude_cart_id:
        query = query.filter(CartReservation.cart_id != exclude_cart_id)
    return sum(row.reserved_milli for row in query.all() if not _is_stale(row, now))


def available_balance(
    theater_id: int,
    product_id: int,
    *,
    exclude_cart_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """current balance - reservations held by other carts."""
    now = now or utcnow()
    current = current_balance_milli(theater_id, product_id, now=now)
    held = reserved_milli(theater_id, product_id, exclude_cart_id=exclude_cart_id, now=now)
    return current - held


def availability(
    theater_id: int,
    product_id: int,
    *,
    cart_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Balance summary plus the number of items still orderable."""
    now = now or utcnow()
    product = get_product(theater_id, product_id)
    current = current_balance_milli(theater_id, product_id, now=now)
    held = reserved_milli(theater_id, product_id, exclude_cart_id=cart_id, now=now)
    available = current - held

    per_item = product_consumption_milli(product, 1)
    if per_item <= 0:
        max_orderable = 0
    else:
        max_orderable = max(available, 0) // per_item

    return {
        "product_id": product.id,
        "stock_unit": canonical_stock_unit(product.stock_unit),
        "current_balance": format_milli(current),
        "reserved": format_milli(held),
        "available": format_milli(available),
        "per_item": format_milli(per_item),
        "max_orderable": max_orderable,
    }


# =============================================================================
# Reservations
# =============================================================================

def _lock_product_stock(product_id: int) -> None:
    """
    Hold the product's reservation lock until the transaction ends.

    The UPDATE takes the row lock (the database write lock on SQLite), so
    reservations read after it include every committed competitor.
    """
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_lock_seq=Product.stock_lock_seq + 1, updated_at=Product.updated_at)
        .execution_options(synchronize_session=False)
    )


def _touch_cart(cart_id: str, now: datetime) -> None:
    rows = (
        db.session.query(CartReservation)
        .filter_by(cart_id=cart_id, status=RESERVATION_ACTIVE)
        .all()
    )
    for row in rows:
        row.last_touch = now


def reserve(
    theater_id: int,
    product_id: int,
    units_milli: int,
    cart_id: str,
    ttl_seconds: int | None = None,
    *,
    now: datetime | None = None,
) -> CartReservation | None:
    """
    Set the cart's reservation on a product to `units_milli` (a target total).

    Repeating the same call does not accumulate. Zero releases the product.
    Raises UnknownProductError or OutOfStockError (available excludes this
    cart's own hold).
    """
    if not cart_id:
        raise ValidationFailedError("cart_id is required")
    if not isinstance(units_milli, int) or isinstance(units_milli, bool) or units_milli < 0:
        raise ValidationFailedError("reserved quantity must be >= 0")
    ttl = ttl_seconds if ttl_seconds is not None else _default_ttl()

    def _op():
        moment = now or utcnow()
        get_product(theater_id, product_id)
        _lock_product_stock(product_id)

        row = (
            db.session.query(CartReservation)
            .filter_by(cart_id=cart_id, product_id=product_id)
            .first()
        )
        if row is not None and row.theater_id != theater_id:
            raise ValidationFailedError("cart_id belongs to another theater")

        if units_milli == 0:
            if row is not None:
                db.session.delete(row)
            _touch_cart(cart_id, moment)
            db.session.commit()
            return None

        available = available_balance(theater_id, product_id, exclude_cart_id=cart_id, now=moment)
        if available < units_milli:
            raise OutOfStockError(
                f"Not enough stock for product {product_id}",
                product_id=product_id,
                available=from_milli(available),
                needed=from_milli(units_milli),
            )

        # Touch before adding: the query autoflushes pending rows
        _touch_cart(cart_id, moment)
        if row is None:
            row = CartReservation(
                theater_id=theater_id,
                cart_id=cart_id,
                product_id=product_id,
                reserved_milli=units_milli,
                status=RESERVATION_ACTIVE,
                ttl_seconds=ttl,
                last_touch=moment,
            )
            db.session.add(row)
        else:
            row.reserved_milli = units_milli
            row.status = RESERVATION_ACTIVE
            row.ttl_seconds = ttl
            row.last_touch = moment
        db.session.commit()
        return row

    return run_with_retry(lambda: _rollback_and_raise(_op))


def release(cart_id: str, product_id: int | None = None, *, theater_id: int | None = None) -> int:
    """Drop the cart's reservation rows (one product or all). Returns rows removed."""
    def _op():
        query = db.session.query(CartReservation).filter(CartReservation.cart_id == cart_id)
        if product_id is not None:
            query = query.filter(CartReservation.product_id == product_id)
        if theater_id is not None:
            query = query.filter(CartReservation.theater_id == theater_id)
        rows = query.all()
        for row in rows:
            db.session.delete(row)
        db.session.commit()
        return len(rows)

    return run_with_retry(_op, deadline_bound=False)


def cart_reservations(cart_id: str, *, theater_id: int | None = None) -> list[CartReservation]:
    query = db.session.query(CartReservation).filter(CartReservation.cart_id == cart_id)
    if theater_id is not None:
        query = query.filter(CartReservation.theater_id == theater_id)
    return query.order_by(CartReservation.product_id.asc()).all()


def sweep_expired_reservations(now: datetime | None = None, *, theater_id: int | None = None) -> int:
    """
    Mark stale ACTIVE reservations EXPIRED and delete EXPIRED rows that went
    stale more than RESERVATION_PURGE_SECONDS ago. Returns the number swept.
    """
    def _op():
        moment = now or utcnow()
        grace = timedelta(seconds=_purge_seconds())
        query = db.session.query(CartReservation).filter(
            CartReservation.status.in_([RESERVATION_ACTIVE, RESERVATION_EXPIRED])
        )
        if theater_id is not None:
            query = query.filter(CartReservation.theater_id == theater_id)
        swept = purged = 0
        for row in query.all():
            if row.status == RESERVATION_ACTIVE and _is_stale(row, moment):
                row.status = RESERVATION_EXPIRED
                swept += 1
            stale_since = row.last_touch + timedelta(seconds=row.ttl_seconds)
            if row.status == RESERVATION_EXPIRED and stale_since + grace < moment:
                db.session.delete(row)
                purged += 1
        db.session.commit()
        if swept or purged:
            logger.info("stock.reservations_swept", extra={"count": swept, "purged": purged})
        return swept

    return run_with_retry(_op)


# =============================================================================
# Commit
# =============================================================================

def sale_entries_for(order_ref: str) -> list[StockEntry]:
    return (
        db.session.query(StockEntry)
        .filter(StockEntry.order_ref == order_ref, StockEntry.kind == KIND_SALE)
        .order_by(StockEntry.product_id.asc())
        .all()
    )


def commit(
    cart_id: str,
    order_ref: str,
    *,
    occurred_at: datetime | None = None,
    actor_user_id: int | None = None,
    now: datetime | None = None,
) -> list[StockEntry]:
    """
    Turn the cart's reservations into sale entries for `order_ref`.

    Entries land in the sheet of `occurred_at` (the order's placement time),
    which is created with the previous closing when missing. All products
    are written in one transaction: either every sale entry exists
    afterwards or none does.

    Idempotent per (order_ref, product_id): a replay writes nothing and
    returns the existing sale entries. Committed reservation rows are
    deleted.

    Raises ReservationExpiredError if any pending reservation of the cart
    was swept or is past its TTL (or the cart holds nothing), and
    StockConflictError if a concurrent write left too little stock for a
    reservation or kept defeating the retries.
    """
    writing_product_id = None

    def _op():
        nonlocal writing_product_id
        moment = now or utcnow()
        when = occurred_at or moment
        rows = (
            db.session.query(CartReservation)
            .filter(CartReservation.cart_id == cart_id)
            .order_by(CartReservation.product_id.asc())
            .all()
        )

        if not rows:
            existing = sale_entries_for(order_ref)
            if existing:
                return existing
            raise ReservationExpiredError(
                f"Cart {cart_id} holds no reservations",
                details={"cart_id": cart_id},
            )

        for row in rows:
            if row.status == RESERVATION_EXPIRED or _is_stale(row, moment):
                raise ReservationExpiredError(
                    f"Reservation for product {row.product_id} expired",
                    product_id=row.product_id,
                    details={"cart_id": cart_id},
                )

        for row in rows:
            writing_product_id = row.product_id
            key = sale_idempotency_key(order_ref, row.product_id)
            if _existing_entry(key) is None:
                product = get_product(row.theater_id, row.product_id)
                _write_entry(
                    product,
                    kind=KIND_SALE,
                    delta_milli=-row.reserved_milli,
                    occurred_at=when,
                    error_cls=StockConflictError,
                    reason=f"Order {order_ref}",
                    order_ref=order_ref,
                    idempotency_key=key,
                    actor_user_id=actor_user_id,
                )
            db.session.delete(row)

        db.session.commit()
        return sale_entries_for(order_ref)

    try:
        return run_with_retry(lambda: _rollback_and_raise(_op))
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        raise StockConflictError(
            f"Concurrent stock writes kept conflicting with order {order_ref}",
            product_id=writing_product_id,
            details={"cart_id": cart_id},
        ) from exc


def get_sheet_view(theater_id: int, product_id: int, year: int, month: int) -> dict:
    """Sheet with entries; a month without a sheet shows the carried balance."""
    product = get_product(theater_id, product_id)
    sheet = get_sheet(theater_id, product_id, year, month)
    if sheet is not None:
        return sheet.to_dict(include_entries=True)

    previous = _latest_sheet_up_to(theater_id, product_id, year, month)
    carried = previous.closing_milli if previous is not None else 0
    return {
        "id": None,
        "theater_id": theater_id,
        "product_id": product.id,
        "month": f"{year:04d}-{month:02d}",
        "stock_unit": canonical_stock_unit(product.stock_unit),
        "opening_balance": format_milli(carried),
        "closing_balance": format_milli(carried),
        "last_seq": 0,
        "version_id": None,
        "entries": [],
    }
