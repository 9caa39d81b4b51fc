# Overview: Flask API routes for products and combo offers; catalog maintenance and combo availability.

# backend/cinepos/routes/catalog.py
"""
Catalog routes with multi-tenant support.

MULTI-TENANT: products and combos belong to one theater; tenantId (or the
caller's own theater) selects it.

SECURITY: all routes require authentication.
- Read operations: any role of the theater
- Write operations: super_admin or theater_admin
- DELETE is a soft disable (is_active=false)
"""
from flask import Blueprint, current_app, g

from ..decorators import require_auth, require_role, scoped_theater_id
from ..errors import INTERNAL_ERROR_BODY, CoreError, error_response
from ..services import catalog_service, combo_service
from ..services.identity_service import CATALOG_ROLES
from ..validation import json_body, query_arg

products_bp = Blueprint("products", __name__, url_prefix="/api/products")
combos_bp = Blueprint("combos", __name__, url_prefix="/api/combos")


def _include_inactive() -> bool:
    return str(query_arg("includeInactive", "")).lower() in ("1", "true", "yes")


def _split_tenant(payload: dict):
    payload = dict(payload)
    return payload.pop("tenant_id", None), payload


# =============================================================================
# Products
# =============================================================================

@products_bp.get("")
@require_auth
def list_products_route():
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        products = catalog_service.list_products(theater_id, include_inactive=_include_inactive())
        return {"products": [p.to_dict() for p in products]}
    except CoreError as e:
        return error_response(e)


@products_bp.get("/<int:product_id>")
@require_auth
def get_product_route(product_id: int):
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        return {"product": catalog_service.get_product(theater_id, product_id).to_dict()}
    except CoreError as e:
        return error_response(e)


@products_bp.post("")
@require_auth
@require_role(*CATALOG_ROLES)
def create_product_route():
    """
    Create a product.

    Body: {name, sellingPriceCents, quantity?, quantityUnit?, sizeLabel?,
           noQty?, stockUnit?, taxRateBps?, gstType?, discountBps?, sku?}
    """
    try:
        requested, payload = _split_tenant(json_body())
        theater_id = scoped_theater_id(requested)
        product = catalog_service.create_product(theater_id, payload, g.principal.user_id)
        return {"product": product.to_dict()}, 201
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return INTERNAL_ERROR_BODY, 500


@products_bp.put("/<int:product_id>")
@require_auth
@require_role(*CATALOG_ROLES)
def update_product_route(product_id: int):
    try:
        requested, payload = _split_tenant(json_body())
        theater_id = scoped_theater_id(requested)
        product = catalog_service.update_product(theater_id, product_id, payload, g.principal.user_id)
        return {"product": product.to_dict()}
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return INTERNAL_ERROR_BODY, 500


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role(*CATALOG_ROLES)
def deactivate_product_route(product_id: int):
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        product = catalog_service.deactivate_product(theater_id, product_id, g.principal.user_id)
        return {"product": product.to_dict()}
    except CoreError as e:
        return error_response(e)


# =============================================================================
# Combo offers
# =============================================================================

@combos_bp.get("")
@require_auth
def list_combos_route():
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        combos = catalog_service.list_combos(theater_id, include_inactive=_include_inactive())
        return {"combos": [c.to_dict() for c in combos]}
    except CoreError as e:
        return error_response(e)


@combos_bp.get("/<int:combo_id>")
@require_auth
def get_combo_route(combo_id: int):
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        return {"combo": catalog_service.get_combo(theater_id, combo_id).to_dict()}
    except CoreError as e:
        return error_response(e)


@combos_bp.post("")
@require_auth
@require_role(*CATALOG_ROLES)
def create_combo_route():
    """Body: {name, offerPriceCents, components: [{productId, quantity}], ...}"""
    try:
        requested, payload = _split_tenant(json_body())
        theater_id = scoped_theater_id(requested)
        combo = catalog_service.create_combo(theater_id, payload, g.principal.user_id)
        return {"combo": combo.to_dict()}, 201
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create combo offer")
        return INTERNAL_ERROR_BODY, 500


@combos_bp.put("/<int:combo_id>")
@require_auth
@require_role(*CATALOG_ROLES)
def update_combo_route(combo_id: int):
    try:
        requested, payload = _split_tenant(json_body())
        theater_id = scoped_theater_id(requested)
        combo = catalog_service.update_combo(theater_id, combo_id, payload, g.principal.user_id)
        return {"combo": combo.to_dict()}
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update combo offer")
        return INTERNAL_ERROR_BODY, 500


@combos_bp.delete("/<int:combo_id>")
@require_auth
@require_role(*CATALOG_ROLES)
def deactivate_combo_route(combo_id: int):
    try:
        theater_id = scoped_theater_id(query_arg("tenantId"))
        combo = catalog_service.deactivate_combo(theater_id, combo_id, g.principal.user_id)
        return {"combo": combo.to_dict()}
    except CoreError as e:
        return error_response(e)


@combos_bp.post("/<int:combo_id>/availability")
@require_auth
def combo_availability_route(combo_id: int):
    """
    Can `quantity` units of this combo be added to the cart?

    Body: {quantity, cartItems?: [{productId|comboId, quantity, id?}],
           excludeId?, cartId?, tenantId?}

    200 with the per-component evaluation; 409 INSUFFICIENT_STOCK naming the
    first component that does not fit.
    """
    try:
        payload = json_body()
        theater_id = scoped_theater_id(payload.get("tenant_id"))
        evaluation = combo_service.require_combo_feasible(
            theater_id,
            combo_id,
            payload.get("quantity", 1),
            combo_service.parse_cart_items(payload.get("cart_items")),
            payload.get("exclude_id"),
            cart_id=payload.get("cart_id"),
        )
        return evaluation.to_dict()
    except CoreError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to evaluate combo availability")
        return INTERNAL_ERROR_BODY, 500
