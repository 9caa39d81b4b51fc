# Overview: Flask API routes for orders; placement, status changes, line cancel and read projections.

# backend/cinepos/routes/orders.py
"""
Order routes.

MULTI-TENANT: every route except customer-cancel resolves the theater from
tenantId (or the caller's own theater) and rejects cross-tenant access.

SECURITY:
- Placement: any authenticated role of the theater
- Status changes and line cancels: staff roles (checked in the service)
- Customer self-cancel: unauthenticated, proven by the phone on the order
"""
from flask import Blueprint, current_app, g

from ..decorators import require_auth, require_role, scoped_theater_id
from ..errors import INTERNAL_ERROR_BODY, CoreError, ValidationFailedError, error_response
from ..services import order_service, reporting_service
from ..services.identity_service import STAFF_ROLES
from ..validation import json_body, parse_int, query_arg

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _flag(value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


@orders_bp.post("")
@require_auth
def place_order_route():
    """
    Place an order.

    Body: {tenantId?, channel, customer?: {name?, phone?}, cartId?,
           items: [{productId|comboId, quantity, variants?}]}

    201 with the full order; 400 VALIDATION_FAILED / INVALID_PRODUCT;
    409 INSUFFICIENT_STOCK / STOCK_CONFLICT / RESERVATION_EXPIRED.
    """
    try:
        payload = json_body()
        theater_id = scoped_theater_id(payload.get("tenant_id"))
        channel = payload.get("channel")
        if not channel:
            raise ValidationFailedError("channel is required")

        order = order_service.place_order(
            g.principal,
            theater_id,
            str(channel).strip().lower(),
            order_service.parse_order_items(payload.get("items")),
            order_service.parse_customer(payload.get("customer")),
            cart_id=payload.get("cart_id"),
        )
        return {"order": order.to_dict()}, 201
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to place order")
        return INTERNAL_ERROR_BODY, 500


@orders_bp.get("")
@require_auth
@require_role(*STAFF_ROLES)
def list_orders_route():
    """
    List orders of a theater, newest first.

    Query params: tenantId, status, channel, limit (default 100, max 500)
    """
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        limit = parse_int(query_arg("limit", "100"), "limit")
        limit = max(1, min(limit, 500))
        orders = order_service.list_orders(
            theater_id,
            status=query_arg("status"),
            channel=query_arg("channel"),
            limit=limit,
        )
        return {"orders": [o.to_dict(include_lines=False) for o in orders]}
    except CoreError as e:
        return error_response(e)


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        order = order_service.get_order(theater_id, order_id)
        return {"order": order.to_dict()}
    except CoreError as e:
        return error_response(e)


@orders_bp.put("/<int:order_id>/status")
@require_auth
def update_status_route(order_id: int):
    """
    Move an order through the status machine. Body: {status, note?, tenantId?}

    200 on a legal transition; 409 ILLEGAL_STATE_TRANSITION; 403 on role mismatch.
    """
    try:
        payload = json_body()
        theater_id = scoped_theater_id(payload.get("tenant_id"))
        new_status = payload.get("status")
        if not new_status:
            raise ValidationFailedError("status is required")
        order = order_service.transition_status(
            g.principal,
            theater_id,
            order_id,
            str(new_status).strip().lower(),
            note=payload.get("note"),
        )
        return {"order": order.to_dict()}
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return INTERNAL_ERROR_BODY, 500


@orders_bp.delete("/<int:order_id>/items/<int:item_id>")
@require_auth
def cancel_line_route(order_id: int, item_id: int):
    """
    Cancel one active line. Body (optional): {reason?, tenantId?}

    Returns the order and its recomputed totals.
    """
    try:
        payload = json_body()
        theater_id = scoped_theater_id(payload.get("tenant_id") or query_arg("tenantId"))
        order = order_service.cancel_line(
            g.principal,
            theater_id,
            order_id,
            item_id,
            payload.get("reason"),
        )
        return {"order": order.to_dict(), "totals": order.pricing_dict()}
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order line")
        return INTERNAL_ERROR_BODY, 500


@orders_bp.put("/<int:order_id>/customer-cancel")
def customer_cancel_route(order_id: int):
    """Customer self-cancel. Body: {phone}. 200, 403 on phone mismatch, 409 when too late."""
    try:
        payload = json_body()
        order = order_service.customer_cancel(order_id, payload.get("phone"))
        return {"order": order.to_dict()}
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return INTERNAL_ERROR_BODY, 500


@orders_bp.get("/stats")
@require_auth
@require_role(*STAFF_ROLES)
def order_stats_route():
    """
    Per-channel aggregates.

    Query params: tenantId, from, to (ISO-8601, half-open [from, to)),
    channel, includeCancelled
    """
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        start, end = reporting_service.parse_stats_range(query_arg("from"), query_arg("to"))
        stats = reporting_service.channel_stats(
            theater_id,
            start,
            end,
            channel=query_arg("channel"),
            include_cancelled=_flag(query_arg("includeCancelled")),
        )
        return {"theater_id": theater_id, "stats": stats}
    except CoreError as e:
        return error_response(e)


@orders_bp.get("/summary")
@require_auth
@require_role(*STAFF_ROLES)
def order_summary_route():
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        return reporting_service.theater_summary(theater_id)
    except CoreError as e:
        return error_response(e)
