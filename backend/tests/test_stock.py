# Overview: Pytest coverage for the stock ledger; entries, sheets, reservations and sale commits.

"""
Stock Ledger Tests

Covers:
- Entry kinds and the non-negative running balance on every sheet
- Month rollover and carry-forward into later sheets
- Reservations: target totals, other carts, TTL and the sweeper
- Commit: sale entries, idempotent replay, conflicts and expiry
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from cinepos.errors import (
    NegativeBalanceError,
    OutOfStockError,
    ReservationExpiredError,
    StockConflictError,
    UnknownProductError,
    ValidationFailedError,
)
from cinepos.extensions import db
from cinepos.models import CartReservation, LedgerEvent, StockEntry, StockSheet, Theater
from cinepos.services import stock_service
from cinepos.time_utils import utcnow
from conftest import balance, make_product, run_in_parallel, stock_in


def running_balances_ok(sheet: StockSheet) -> bool:
    running = sheet.opening_milli
    for entry in sheet.entries:
        running += entry.delta_milli
        if running < 0:
            return False
    return running == sheet.closing_milli


class TestEntries:
    def test_purchase_creates_sheet_and_balance(self, theater_a):
        popcorn = make_product(theater_a)
        entry = stock_in(popcorn, 10)

        assert entry.kind == "purchase"
        assert entry.seq == 1
        assert balance(popcorn) == 10_000

    def test_seq_is_per_sheet_total_order(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        stock_in(popcorn, 3)
        stock_service.append_entry(theater_a.id, popcorn.id, "waste", -2_000, "spilled")

        now = utcnow()
        sheet = stock_service.get_sheet(theater_a.id, popcorn.id, now.year, now.month)
        assert [e.seq for e in sheet.entries] == [1, 2, 3]
        assert sheet.closing_milli == 6_000
        assert running_balances_ok(sheet)

    def test_negative_balance_is_rejected(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 2)

        with pytest.raises(NegativeBalanceError) as exc:
            stock_service.append_entry(theater_a.id, popcorn.id, "adjustment", -3_000, "count correction")

        assert exc.value.details["product_id"] == popcorn.id
        assert exc.value.details["available"] == "2.000"
        assert exc.value.details["needed"] == "3.000"
        assert balance(popcorn) == 2_000
        assert db.session.query(StockEntry).count() == 1

    @pytest.mark.parametrize("kind, delta", [
        ("purchase", -1_000),
        ("return", 0),
        ("waste", 1_000),
        ("adjustment", 0),
        ("sale", -1_000),
        ("theft", -1_000),
    ])
    def test_kind_and_sign_rules(self, theater_a, kind, delta):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        with pytest.raises(ValidationFailedError):
            stock_service.append_entry(theater_a.id, popcorn.id, kind, delta)

    def test_unknown_and_foreign_products(self, theater_a, theater_b):
        foreign = make_product(theater_b)
        with pytest.raises(UnknownProductError):
            stock_service.append_entry(theater_a.id, 99999, "purchase", 1_000)
        with pytest.raises(UnknownProductError):
            stock_service.append_entry(theater_a.id, foreign.id, "purchase", 1_000)

    def test_idempotency_key_replay_returns_first_entry(self, theater_a):
        popcorn = make_product(theater_a)
        first = stock_service.append_entry(theater_a.id, popcorn.id, "purchase", 4_000, idempotency_key="grn-7")
        again = stock_service.append_entry(theater_a.id, popcorn.id, "purchase", 4_000, idempotency_key="grn-7")

        assert again.id == first.id
        assert balance(popcorn) == 4_000

    def test_every_write_records_a_ledger_event(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 1)
        events = db.session.query(LedgerEvent).filter_by(event_type="stock.entry").all()
        assert len(events) == 1
        assert events[0].payload["product_id"] == popcorn.id

    def test_mass_stock_in_fractions(self, theater_a):
        caramel = make_product(theater_a, name="Caramel", quantity="50 g", stock_unit="kg")
        stock_in(caramel, "1.25")
        assert balance(caramel) == 1_250


class TestMonths:
    def test_new_month_opens_with_previous_closing(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 8, occurred_at=datetime(2026, 1, 20, 12, 0))
        stock_service.append_entry(
            theater_a.id, popcorn.id, "waste", -1_000, occurred_at=datetime(2026, 2, 3, 9, 0),
        )

        feb = stock_service.get_sheet(theater_a.id, popcorn.id, 2026, 2)
        assert feb.opening_milli == 8_000
        assert feb.closing_milli == 7_000
        assert stock_service.balance_milli(theater_a.id, popcorn.id, datetime(2026, 1, 31)) == 8_000

    def test_backdated_write_carries_forward(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5, occurred_at=datetime(2026, 1, 10))
        stock_in(popcorn, 2, occurred_at=datetime(2026, 3, 10))

        stock_in(popcorn, 4, occurred_at=datetime(2026, 1, 25))

        jan = stock_service.get_sheet(theater_a.id, popcorn.id, 2026, 1)
        mar = stock_service.get_sheet(theater_a.id, popcorn.id, 2026, 3)
        assert jan.closing_milli == 9_000
        assert (mar.opening_milli, mar.closing_milli) == (9_000, 11_000)
        assert running_balances_ok(jan) and running_balances_ok(mar)

    def test_backdated_reduction_cannot_break_a_later_month(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5, occurred_at=datetime(2026, 1, 10))
        stock_service.append_entry(
            theater_a.id, popcorn.id, "waste", -4_000, occurred_at=datetime(2026, 2, 10),
        )

        # January alone could absorb -3, but February would end at -2
        with pytest.raises(NegativeBalanceError):
            stock_service.append_entry(
                theater_a.id, popcorn.id, "adjustment", -3_000, occurred_at=datetime(2026, 1, 20),
            )

        feb = stock_service.get_sheet(theater_a.id, popcorn.id, 2026, 2)
        assert (feb.opening_milli, feb.closing_milli) == (5_000, 1_000)

    def test_sheet_view_for_month_without_sheet(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 6, occurred_at=datetime(2026, 1, 10))

        view = stock_service.get_sheet_view(theater_a.id, popcorn.id, 2026, 4)
        assert view["id"] is None
        assert view["opening_balance"] == view["closing_balance"] == "6.000"
        assert view["entries"] == []

    def test_sheet_view_running_balance(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 6, occurred_at=datetime(2026, 1, 10))
        stock_service.append_entry(theater_a.id, popcorn.id, "waste", -2_000, occurred_at=datetime(2026, 1, 11))

        view = stock_service.get_sheet_view(theater_a.id, popcorn.id, 2026, 1)
        assert [e["balance_after"] for e in view["entries"]] == ["6.000", "4.000"]


class TestReservations:
    def test_reserve_sets_target_total(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)

        stock_service.reserve(theater_a.id, popcorn.id, 2_000, "cart-1")
        stock_service.reserve(theater_a.id, popcorn.id, 2_000, "cart-1")
        assert stock_service.reserved_milli(theater_a.id, popcorn.id) == 2_000

        stock_service.reserve(theater_a.id, popcorn.id, 3_000, "cart-1")
        assert stock_service.reserved_milli(theater_a.id, popcorn.id) == 3_000

    def test_reserve_zero_releases(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        stock_service.reserve(theater_a.id, popcorn.id, 2_000, "cart-1")
        assert stock_service.reserve(theater_a.id, popcorn.id, 0, "cart-1") is None
        assert db.session.query(CartReservation).count() == 0

    def test_other_carts_reduce_availability(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        stock_service.reserve(theater_a.id, popcorn.id, 4_000, "cart-1")

        with pytest.raises(OutOfStockError) as exc:
            stock_service.reserve(theater_a.id, popcorn.id, 2_000, "cart-2")
        assert exc.value.details["available"] == "1.000"

        # The holder itself may grow up to the full balance
        stock_service.reserve(theater_a.id, popcorn.id, 5_000, "cart-1")

    def test_unknown_product(self, theater_a):
        with pytest.raises(UnknownProductError):
            stock_service.reserve(theater_a.id, 4242, 1_000, "cart-1")

    def test_stale_reservation_frees_stock(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 3)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 3_000, "cart-1", ttl_seconds=60, now=start)

        later = start + timedelta(seconds=61)
        assert stock_service.available_balance(theater_a.id, popcorn.id, now=later) == 3_000
        stock_service.reserve(theater_a.id, popcorn.id, 3_000, "cart-2", now=later)

    def test_touch_extends_every_row_of_the_cart(self, theater_a):
        popcorn = make_product(theater_a)
        cola = make_product(theater_a, name="Cola")
        stock_in(popcorn, 3)
        stock_in(cola, 3)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1", ttl_seconds=60, now=start)
        stock_service.reserve(theater_a.id, cola.id, 1_000, "cart-1", ttl_seconds=60, now=start + timedelta(seconds=50))

        at = start + timedelta(seconds=100)
        assert stock_service.reserved_milli(theater_a.id, popcorn.id, now=at) == 1_000

    def test_sweeper_marks_stale_rows_expired(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 3)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-old", ttl_seconds=60, now=start)
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-new", ttl_seconds=600, now=start)

        swept = stock_service.sweep_expired_reservations(start + timedelta(seconds=120))
        assert swept == 1
        statuses = {r.cart_id: r.status for r in db.session.query(CartReservation).all()}
        assert statuses == {"cart-old": "EXPIRED", "cart-new": "ACTIVE"}

    def test_sweeper_keeps_expired_rows_until_purge(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 3)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-old", ttl_seconds=60, now=start)

        stock_service.sweep_expired_reservations(start + timedelta(seconds=120))
        assert stock_service.sweep_expired_reservations(start + timedelta(seconds=3600)) == 0
        assert [r.status for r in stock_service.cart_reservations("cart-old")] == ["EXPIRED"]

        stock_service.sweep_expired_reservations(start + timedelta(seconds=3662))
        assert stock_service.cart_reservations("cart-old") == []

    def test_new_row_joins_a_cart_that_already_holds_stock(self, theater_a):
        popcorn = make_product(theater_a)
        cola = make_product(theater_a, name="Cola")
        stock_in(popcorn, 3)
        stock_in(cola, 3)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1", ttl_seconds=60, now=start)

        later = start + timedelta(seconds=30)
        row = stock_service.reserve(theater_a.id, cola.id, 2_000, "cart-1", ttl_seconds=60, now=later)

        assert (row.reserved_milli, row.status, row.ttl_seconds) == (2_000, "ACTIVE", 60)
        assert [(r.product_id, r.last_touch) for r in stock_service.cart_reservations("cart-1")] == \
            sorted([(popcorn.id, later), (cola.id, later)])

    def test_release_one_product_or_whole_cart(self, theater_a):
        popcorn = make_product(theater_a)
        cola = make_product(theater_a, name="Cola")
        stock_in(popcorn, 3)
        stock_in(cola, 3)
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1")
        stock_service.reserve(theater_a.id, cola.id, 1_000, "cart-1")

        assert stock_service.release("cart-1", popcorn.id) == 1
        assert [r.product_id for r in stock_service.cart_reservations("cart-1")] == [cola.id]
        assert stock_service.release("cart-1") == 1
        assert stock_service.cart_reservations("cart-1") == []

    def test_availability_summary(self, theater_a):
        drink = make_product(theater_a, name="Cola 150", quantity="150 ML", stock_unit="L")
        stock_in(drink, 1)
        stock_service.reserve(theater_a.id, drink.id, 300, "cart-1")

        summary = stock_service.availability(theater_a.id, drink.id)
        assert summary["current_balance"] == "1.000"
        assert summary["reserved"] == "0.300"
        assert summary["available"] == "0.700"
        assert summary["per_item"] == "0.150"
        assert summary["max_orderable"] == 4

        own = stock_service.availability(theater_a.id, drink.id, cart_id="cart-1")
        assert own["max_orderable"] == 6


class TestCommit:
    def test_commit_writes_sale_entries(self, theater_a):
        popcorn = make_product(theater_a)
        cola = make_product(theater_a, name="Cola")
        stock_in(popcorn, 5)
        stock_in(cola, 5)
        stock_service.reserve(theater_a.id, popcorn.id, 2_000, "cart-1")
        stock_service.reserve(theater_a.id, cola.id, 1_000, "cart-1")

        entries = stock_service.commit("cart-1", "101")

        assert sorted((e.product_id, e.delta_milli) for e in entries) == \
            sorted([(popcorn.id, -2_000), (cola.id, -1_000)])
        assert all(e.kind == "sale" and e.order_ref == "101" for e in entries)
        assert balance(popcorn) == 3_000
        assert balance(cola) == 4_000
        assert stock_service.cart_reservations("cart-1") == []
        assert stock_service.reserved_milli(theater_a.id, popcorn.id) == 0

    def test_commit_replay_is_a_no_op(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        stock_service.reserve(theater_a.id, popcorn.id, 2_000, "cart-1")

        first = stock_service.commit("cart-1", "101")
        second = stock_service.commit("cart-1", "101")

        assert [e.id for e in second] == [e.id for e in first]
        assert balance(popcorn) == 3_000
        keys = [e.idempotency_key for e in db.session.query(StockEntry).filter_by(kind="sale").all()]
        assert keys == [f"sale:101:{popcorn.id}"]

    def test_commit_conflict_writes_nothing(self, theater_a):
        popcorn = make_product(theater_a)
        cola = make_product(theater_a, name="Cola")
        stock_in(popcorn, 1)
        stock_in(cola, 5)
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1")
        stock_service.reserve(theater_a.id, cola.id, 1_000, "cart-1")

        # Waste does not look at reservations; it lands between reserve and commit
        stock_service.append_entry(theater_a.id, popcorn.id, "waste", -1_000, "dropped tray")

        with pytest.raises(StockConflictError) as exc:
            stock_service.commit("cart-1", "101")

        assert exc.value.product_id in (popcorn.id, cola.id)
        assert stock_service.sale_entries_for("101") == []
        assert balance(popcorn) == 0
        assert balance(cola) == 5_000
        assert len(stock_service.cart_reservations("cart-1")) == 2

    def test_exhausted_retries_become_stock_conflict(self, theater_a, monkeypatch):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1")

        calls = []

        def always_stale(*args, **kwargs):
            calls.append(1)
            raise StaleDataError("sheet version changed")

        monkeypatch.setattr(stock_service, "_write_entry", always_stale)

        with pytest.raises(StockConflictError) as exc:
            stock_service.commit("cart-1", "101")

        assert exc.value.status_code == 409
        assert exc.value.product_id == popcorn.id
        assert len(calls) == 3
        assert balance(popcorn) == 5_000
        assert [r.reserved_milli for r in stock_service.cart_reservations("cart-1")] == [1_000]

    def test_cart_without_reservations_is_expired(self, theater_a):
        with pytest.raises(ReservationExpiredError):
            stock_service.commit("cart-never", "101")

    def test_purged_cart_is_expired(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1", ttl_seconds=60, now=start)

        stock_service.sweep_expired_reservations(start + timedelta(seconds=60 + 3600 + 1))
        assert db.session.query(CartReservation).count() == 0

        with pytest.raises(ReservationExpiredError):
            stock_service.commit("cart-1", "101", now=start)
        assert balance(popcorn) == 5_000

    def test_commit_refuses_expired_reservation(self, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 5)
        start = utcnow()
        stock_service.reserve(theater_a.id, popcorn.id, 1_000, "cart-1", ttl_seconds=60, now=start)

        with pytest.raises(ReservationExpiredError):
            stock_service.commit("cart-1", "101", now=start + timedelta(seconds=61))

        stock_service.sweep_expired_reservations(start + timedelta(seconds=61))
        with pytest.raises(ReservationExpiredError):
            stock_service.commit("cart-1", "101", now=start)
        assert balance(popcorn) == 5_000


class TestConcurrentReservations:
    """Real parallel connections against a file-backed database."""

    def test_two_carts_cannot_both_hold_the_last_unit(self, file_app):
        with file_app.app_context():
            theater = Theater(name="Grand Cinema", code="GRAND", is_active=True)
            db.session.add(theater)
            db.session.commit()
            popcorn = make_product(theater)
            stock_in(popcorn, 1)
            theater_id, product_id = theater.id, popcorn.id

        outcomes = run_in_parallel(
            file_app,
            lambda: stock_service.reserve(theater_id, product_id, 1_000, "cart-1"),
            lambda: stock_service.reserve(theater_id, product_id, 1_000, "cart-2"),
        )

        assert sorted(outcomes) == ["OUT_OF_STOCK", "ok"]
        with file_app.app_context():
            assert stock_service.reserved_milli(theater_id, product_id) == 1_000
            assert db.session.query(CartReservation).count() == 1
