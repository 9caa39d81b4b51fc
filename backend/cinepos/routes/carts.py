# Overview: Flask API routes for cart reservations; keeps a cart's stock holds in line with its contents.

from flask import Blueprint, current_app

from ..decorators import require_auth, scoped_theater_id
from ..errors import INTERNAL_ERROR_BODY, CoreError, ValidationFailedError, error_response
from ..services import combo_service, stock_service
from ..validation import json_body, query_arg

carts_bp = Blueprint("carts", __name__, url_prefix="/api/carts")


def _validate_cart_id(cart_id: str) -> str:
    cart_id = (cart_id or "").strip()
    if not cart_id or len(cart_id) > 64:
        raise ValidationFailedError("cartId must be 1-64 characters")
    return cart_id


def _reservations_body(cart_id: str, rows) -> dict:
    return {"cart_id": cart_id, "reservations": [r.to_dict() for r in rows]}


@carts_bp.put("/<cart_id>/reservations")
@require_auth
def sync_reservations_route(cart_id: str):
    """
    Replace the cart's reservations with its current contents.

    Body: {tenantId?, items: [{productId|comboId, quantity}]}
    An empty item list releases everything. 409 OUT_OF_STOCK when a product
    cannot be held.
    """
    try:
        cart_id = _validate_cart_id(cart_id)
        payload = json_body()
        theater_id = scoped_theater_id(payload.get("tenant_id"))
        items = combo_service.parse_cart_items(payload.get("items") or [])
        rows = combo_service.sync_cart_reservations(theater_id, cart_id, items)
        return _reservations_body(cart_id, rows)
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sync cart reservations")
        return INTERNAL_ERROR_BODY, 500


@carts_bp.get("/<cart_id>/reservations")
@require_auth
def list_reservations_route(cart_id: str):
    try:
        cart_id = _validate_cart_id(cart_id)
        theater_id = scoped_theater_id(query_arg("tenantId"))
        return _reservations_body(cart_id, stock_service.cart_reservations(cart_id, theater_id=theater_id))
    except CoreError as e:
        return error_response(e)


@carts_bp.delete("/<cart_id>/reservations")
@carts_bp.delete("/<cart_id>/reservations/<int:product_id>")
@require_auth
def release_reservations_route(cart_id: str, product_id: int | None = None):
    try:
        cart_id = _validate_cart_id(cart_id)
        theater_id = scoped_theater_id(query_arg("tenantId"))
        released = stock_service.release(cart_id, product_id, theater_id=theater_id)
        return {"cart_id": cart_id, "released": released}
    except CoreError as e:
        return error_response(e)
