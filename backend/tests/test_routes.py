# Overview: Pytest coverage for the HTTP surface; request shapes, status codes and error envelopes.

import pytest

from cinepos.extensions import db
from cinepos.models import CartReservation, Order
from conftest import balance, make_combo, make_product, stock_in


@pytest.fixture
def stocked(theater_a):
    popcorn = make_product(theater_a, name="Popcorn")
    cola = make_product(theater_a, name="Cola", price_cents=11800, tax_rate_bps=1800, gst_type="Inclusive")
    stock_in(popcorn, 5)
    stock_in(cola, 10)
    combo = make_combo(theater_a, [(popcorn, 2), (cola, 1)])
    return {"popcorn": popcorn, "cola": cola, "combo": combo}


def post_order(client, headers, items, **extra):
    body = {"channel": "pos", "items": items}
    body.update(extra)
    return client.post("/api/orders", json=body, headers=headers)


class TestHealth:
    def test_health_reports_database(self, client, db_session):
        resp = client.get("/api/system/health")
        assert resp.status_code == 200
        assert resp.json["status"] == "ok"
        assert resp.json["checks"]["database"]["status"] == "healthy"
        assert resp.json["timestamp"].endswith("Z")


class TestOrderRoutes:
    def test_place_order(self, client, staff_headers, stocked):
        resp = post_order(client, staff_headers, [
            {"productId": stocked["popcorn"].id, "quantity": 2},
            {"comboId": stocked["combo"].id, "quantity": 1},
        ], customer={"name": "Asha", "phone": "9876543210"})

        assert resp.status_code == 201
        order = resp.json["order"]
        assert order["order_number"] == "Gr0001"
        assert order["status"] == "pending"
        assert order["pricing"]["grand_total_cents"] == 21000 + 25000
        assert [line["line_number"] for line in order["lines"]] == [1, 2]
        assert order["lines"][1]["components"][0]["consumed"] == "2.000"
        assert order["audit"][0]["action"] == "created"

        db.session.expire_all()
        assert balance(stocked["popcorn"]) == 1_000
        assert balance(stocked["cola"]) == 9_000

    def test_insufficient_stock_envelope(self, client, staff_headers, stocked):
        resp = post_order(client, staff_headers, [{"productId": stocked["popcorn"].id, "quantity": 6}])

        assert resp.status_code == 409
        assert resp.json == {
            "code": "INSUFFICIENT_STOCK",
            "message": f"Insufficient stock for product {stocked['popcorn'].id}",
            "details": {"product_id": stocked["popcorn"].id, "available": "5.000", "needed": "6.000"},
        }
        db.session.expire_all()
        assert db.session.query(Order).count() == 0

    @pytest.mark.parametrize("body", [
        {"items": [{"productId": 1, "quantity": 1}]},
        {"channel": "pos", "items": []},
        {"channel": "pos", "items": [{"productId": 1, "quantity": 0}]},
        {"channel": "pos", "items": [{"productId": 1, "comboId": 2, "quantity": 1}]},
        {"channel": "telegram", "items": [{"productId": 1, "quantity": 1}]},
    ])
    def test_validation_failures(self, client, staff_headers, stocked, body):
        resp = client.post("/api/orders", json=body, headers=staff_headers)
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_FAILED"

    def test_kiosk_places_orders(self, client, kiosk_headers, stocked):
        resp = post_order(client, kiosk_headers, [{"productId": stocked["cola"].id, "quantity": 1}],
                          channel="kiosk", cartId="kiosk-3")
        assert resp.status_code == 201
        assert resp.json["order"]["channel"] == "kiosk"

    def test_status_and_line_cancel(self, client, staff_headers, stocked):
        order = post_order(client, staff_headers, [
            {"productId": stocked["popcorn"].id, "quantity": 1},
            {"productId": stocked["cola"].id, "quantity": 1},
        ]).json["order"]

        resp = client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=staff_headers)
        assert resp.status_code == 200
        assert resp.json["order"]["status"] == "confirmed"

        resp = client.put(f"/api/orders/{order['id']}/status", json={"status": "served"}, headers=staff_headers)
        assert resp.status_code == 409
        assert resp.json["code"] == "ILLEGAL_STATE_TRANSITION"
        assert resp.json["details"] == {"from": "confirmed", "to": "served"}

        line_id = order["lines"][0]["id"]
        resp = client.delete(f"/api/orders/{order['id']}/items/{line_id}",
                             json={"reason": "dropped"}, headers=staff_headers)
        assert resp.status_code == 200
        assert resp.json["totals"]["grand_total_cents"] == 11800
        assert resp.json["order"]["lines"][0]["status"] == "cancelled"
        assert resp.json["order"]["status"] == "confirmed"

    def test_kiosk_cannot_change_status(self, client, kiosk_headers, stocked):
        order = post_order(client, kiosk_headers, [{"productId": stocked["cola"].id, "quantity": 1}]).json["order"]
        resp = client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=kiosk_headers)
        assert resp.status_code == 403

    def test_customer_cancel(self, client, kiosk_headers, stocked):
        order = post_order(client, kiosk_headers, [{"productId": stocked["popcorn"].id, "quantity": 2}],
                           customer={"phone": "98765 43210"}).json["order"]

        resp = client.put(f"/api/orders/{order['id']}/customer-cancel", json={"phone": "9999999999"})
        assert resp.status_code == 403

        resp = client.put(f"/api/orders/{order['id']}/customer-cancel", json={"phone": "+919876543210"})
        assert resp.status_code == 200
        assert resp.json["order"]["status"] == "cancelled"
        db.session.expire_all()
        assert balance(stocked["popcorn"]) == 5_000

    def test_get_and_list(self, client, staff_headers, stocked):
        order = post_order(client, staff_headers, [{"productId": stocked["cola"].id, "quantity": 1}]).json["order"]

        resp = client.get(f"/api/orders/{order['id']}", headers=staff_headers)
        assert resp.json["order"]["order_number"] == order["order_number"]

        listed = client.get("/api/orders?status=pending", headers=staff_headers).json["orders"]
        assert [o["id"] for o in listed] == [order["id"]]
        assert "lines" not in listed[0]

        assert client.get("/api/orders/987654", headers=staff_headers).status_code == 404

    def test_stats_and_summary(self, client, staff_headers, stocked):
        post_order(client, staff_headers, [{"productId": stocked["cola"].id, "quantity": 1}])
        post_order(client, staff_headers, [{"productId": stocked["cola"].id, "quantity": 2}], channel="qr")

        resp = client.get("/api/orders/stats", headers=staff_headers)
        assert resp.status_code == 200
        assert resp.json["stats"] == [
            {"channel": "pos", "count": 1, "sum_grand_total_cents": 11800},
            {"channel": "qr", "count": 1, "sum_grand_total_cents": 23600},
        ]

        resp = client.get("/api/orders/stats?from=not-a-date", headers=staff_headers)
        assert resp.status_code == 400

        summary = client.get("/api/orders/summary", headers=staff_headers).json
        assert summary["orders"]["total"] == 2
        assert summary["revenue_cents"]["total"] == 35400

    def test_expired_request_deadline(self, client, staff_headers, stocked):
        resp = client.post(
            "/api/orders",
            json={"channel": "pos", "items": [{"productId": stocked["cola"].id, "quantity": 1}]},
            headers={**staff_headers, "X-Request-Timeout": "0.000001"},
        )
        assert resp.status_code == 504
        assert resp.json["code"] == "DEADLINE_EXCEEDED"
        db.session.expire_all()
        assert db.session.query(Order).count() == 0
        assert db.session.query(CartReservation).count() == 0


class TestStockRoutes:
    def test_append_and_read_sheet(self, client, staff_headers, theater_a):
        nachos = make_product(theater_a, name="Nachos", quantity="120 g", stock_unit="kg")

        resp = client.post(
            f"/api/stock/{nachos.id}/entries",
            json={"kind": "purchase", "delta": "2.5", "reason": "GRN 118", "idempotencyKey": "grn-118"},
            headers=staff_headers,
        )
        assert resp.status_code == 201
        assert resp.json["entry"]["delta"] == "2.500"
        assert resp.json["entry"]["seq"] == 1

        resp = client.post(
            f"/api/stock/{nachos.id}/entries",
            json={"kind": "waste", "delta": "-0.25", "reason": "stale"},
            headers=staff_headers,
        )
        assert resp.status_code == 201

        sheet = client.get(f"/api/stock/{nachos.id}", headers=staff_headers).json["sheet"]
        assert sheet["stock_unit"] == "kg"
        assert sheet["closing_balance"] == "2.250"
        assert [e["balance_after"] for e in sheet["entries"]] == ["2.500", "2.250"]

        resp = client.get(f"/api/stock/{nachos.id}/balance", headers=staff_headers)
        assert resp.json["balance"] == "2.250"

    def test_negative_balance(self, client, staff_headers, theater_a):
        popcorn = make_product(theater_a)
        stock_in(popcorn, 1)
        resp = client.post(
            f"/api/stock/{popcorn.id}/entries",
            json={"kind": "adjustment", "delta": "-2"},
            headers=staff_headers,
        )
        assert resp.status_code == 409
        assert resp.json["code"] == "NEGATIVE_BALANCE"
        assert resp.json["details"]["available"] == "1.000"

    @pytest.mark.parametrize("body", [
        {"kind": "sale", "delta": "-1"},
        {"kind": "purchase", "delta": "abc"},
        {"kind": "purchase"},
        {"kind": "purchase", "delta": "1", "occurredAt": "someday"},
    ])
    def test_invalid_entries(self, client, staff_headers, theater_a, body):
        popcorn = make_product(theater_a)
        resp = client.post(f"/api/stock/{popcorn.id}/entries", json=body, headers=staff_headers)
        assert resp.status_code == 400
        assert resp.json["code"] == "VALIDATION_FAILED"

    def test_bad_month(self, client, staff_headers, theater_a):
        popcorn = make_product(theater_a)
        assert client.get(f"/api/stock/{popcorn.id}?month=2026-13", headers=staff_headers).status_code == 400


class TestCartRoutes:
    def test_sync_list_and_release(self, client, kiosk_headers, stocked):
        combo = stocked["combo"]
        resp = client.put(
            "/api/carts/kiosk-1/reservations",
            json={"items": [{"comboId": combo.id, "quantity": 2}]},
            headers=kiosk_headers,
        )
        assert resp.status_code == 200
        assert [r["reserved"] for r in resp.json["reservations"]] == ["4.000", "2.000"]

        availability = client.get(
            f"/api/stock/{stocked['popcorn'].id}/availability", headers=kiosk_headers,
        ).json
        assert availability["available"] == "1.000"

        resp = client.put(
            "/api/carts/kiosk-2/reservations",
            json={"items": [{"productId": stocked["popcorn"].id, "quantity": 2}]},
            headers=kiosk_headers,
        )
        assert resp.status_code == 409
        assert resp.json["code"] == "OUT_OF_STOCK"

        listed = client.get("/api/carts/kiosk-1/reservations", headers=kiosk_headers).json
        assert len(listed["reservations"]) == 2

        resp = client.delete(
            f"/api/carts/kiosk-1/reservations/{stocked['cola'].id}", headers=kiosk_headers,
        )
        assert resp.json == {"cart_id": "kiosk-1", "released": 1}
        resp = client.delete("/api/carts/kiosk-1/reservations", headers=kiosk_headers)
        assert resp.json == {"cart_id": "kiosk-1", "released": 1}

        db.session.expire_all()
        assert db.session.query(CartReservation).count() == 0

    def test_cart_id_length(self, client, kiosk_headers, db_session):
        resp = client.get(f"/api/carts/{'x' * 65}/reservations", headers=kiosk_headers)
        assert resp.status_code == 400


class TestComboRoutes:
    def test_availability(self, client, kiosk_headers, stocked):
        combo = stocked["combo"]
        cart = [{"productId": stocked["popcorn"].id, "quantity": 1}]

        resp = client.post(f"/api/combos/{combo.id}/availability",
                           json={"quantity": 2, "cartItems": cart}, headers=kiosk_headers)
        assert resp.status_code == 200
        assert resp.json["feasible"] is True

        resp = client.post(f"/api/combos/{combo.id}/availability",
                           json={"quantity": 3, "cartItems": cart}, headers=kiosk_headers)
        assert resp.status_code == 409
        assert resp.json["code"] == "INSUFFICIENT_STOCK"
        assert resp.json["details"]["available"] == "4.000"
        assert resp.json["details"]["needed"] == "6.000"

    def test_admin_creates_combo(self, client, admin_headers, stocked):
        resp = client.post("/api/combos", json={
            "name": "Date Night",
            "offerPriceCents": 45000,
            "taxRateBps": 500,
            "components": [
                {"productId": stocked["popcorn"].id, "quantity": 2},
                {"productId": stocked["cola"].id, "quantity": 2},
            ],
        }, headers=admin_headers)

        assert resp.status_code == 201
        combo = resp.json["combo"]
        assert combo["gst_type"] == "Inclusive"
        assert [(c["product_id"], c["quantity_per_combo"]) for c in combo["components"]] == [
            (stocked["popcorn"].id, 2),
            (stocked["cola"].id, 2),
        ]

    def test_combo_needs_components(self, client, admin_headers, stocked):
        resp = client.post("/api/combos", json={"name": "Empty", "offerPriceCents": 100}, headers=admin_headers)
        assert resp.status_code == 400
