# Overview: Flask API routes for the stock ledger; manual entries, monthly sheets and balances.

# backend/cinepos/routes/stock.py
"""
Stock ledger routes.

Quantities travel as decimal strings in the product's stock unit ("1.5"
for 1.5 kg, "12" for 12 Nos); they are stored as thousandths.

SECURITY: entries and sheet views require a staff role. Availability is
open to every authenticated role of the theater (kiosks need it).
"""
from flask import Blueprint, current_app, g

from ..decorators import require_auth, require_role, scoped_theater_id
from ..errors import INTERNAL_ERROR_BODY, CoreError, ValidationFailedError, error_response
from ..services import stock_service
from ..services.identity_service import STAFF_ROLES
from ..services.units import from_milli, to_milli
from ..time_utils import parse_iso_datetime, parse_month, utcnow
from ..validation import json_body, query_arg

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _parse_delta(raw) -> int:
    if raw is None or isinstance(raw, bool):
        raise ValidationFailedError("delta is required")
    try:
        return to_milli(str(raw).strip())
    except (ValueError, ArithmeticError):
        raise ValidationFailedError("delta must be a decimal number", details={"delta": raw})


def _parse_datetime(raw, field: str):
    try:
        return parse_iso_datetime(raw) if raw else None
    except ValueError:
        raise ValidationFailedError(f"{field} must be an ISO-8601 datetime")


@stock_bp.post("/<int:product_id>/entries")
@require_auth
@require_role(*STAFF_ROLES)
def append_entry_route(product_id: int):
    """
    Append a purchase, adjustment, return or waste entry.

    Body: {kind, delta, reason?, occurredAt?, idempotencyKey?, tenantId?}
    Sales are written by order placement only.

    201 with the entry; 409 NEGATIVE_BALANCE.
    """
    try:
        payload = json_body()
        theater_id = scoped_theater_id(payload.get("tenant_id"))
        kind = payload.get("kind")
        if kind not in stock_service.ENTRY_KINDS or kind == stock_service.KIND_SALE:
            raise ValidationFailedError(
                "kind must be one of purchase, adjustment, return, waste",
                details={"kind": kind},
            )
        entry = stock_service.append_entry(
            theater_id,
            product_id,
            kind,
            _parse_delta(payload.get("delta")),
            payload.get("reason"),
            occurred_at=_parse_datetime(payload.get("occurred_at"), "occurredAt"),
            actor_user_id=g.principal.user_id,
            idempotency_key=payload.get("idempotency_key"),
        )
        return {"entry": entry.to_dict()}, 201
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to append stock entry")
        return INTERNAL_ERROR_BODY, 500


@stock_bp.get("/<int:product_id>")
@require_auth
@require_role(*STAFF_ROLES)
def get_sheet_route(product_id: int):
    """Monthly sheet with entries and running balances. Query: month=YYYY-MM (default current)."""
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        try:
            period = parse_month(query_arg("month"))
        except ValueError as e:
            raise ValidationFailedError(str(e))
        if period is None:
            now = utcnow()
            period = (now.year, now.month)
        return {"sheet": stock_service.get_sheet_view(theater_id, product_id, *period)}
    except CoreError as e:
        return error_response(e)


@stock_bp.get("/<int:product_id>/availability")
@require_auth
def availability_route(product_id: int):
    """Current balance, reservations and max orderable items. Query: cartId (own hold ignored)."""
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        return stock_service.availability(theater_id, product_id, cart_id=query_arg("cartId"))
    except CoreError as e:
        return error_response(e)


@stock_bp.get("/<int:product_id>/balance")
@require_auth
@require_role(*STAFF_ROLES)
def balance_route(product_id: int):
    """Balance at asOf (inclusive), or the current balance."""
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        as_of = _parse_datetime(query_arg("asOf"), "asOf")
        stock_service.get_product(theater_id, product_id)
        balance = stock_service.balance_milli(theater_id, product_id, as_of)
        return {
            "product_id": product_id,
            "as_of": query_arg("asOf"),
            "balance": str(from_milli(balance)),
        }
    except CoreError as e:
        return error_response(e)
