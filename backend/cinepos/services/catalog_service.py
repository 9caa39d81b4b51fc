# backend/cinepos/services/catalog_service.py
"""
Catalog Service: products and combo offers

MULTI-TENANT: every operation is scoped to one theater.
- Products and combos are never deleted; deactivation is a soft disable so
  open and historical orders keep resolving their references.
- Order lines copy pricing at placement, so edits here never change
  historical orders.
"""
from __future__ import annotations

from ..errors import InvalidProductError, ValidationFailedError
from ..extensions import db
from ..models import ComboComponent, ComboOffer, Product
from ..validation import (
    ModelValidationPolicy,
    enforce_rules_pricing,
    parse_positive_int,
    validate_payload,
)
from .concurrency import run_with_retry
from .ledger_service import append_ledger_event
from .pricing_service import normalize_gst_type
from .tenant_service import get_scoped
from .units import canonical_stock_unit, check_sellable_units


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "sku", "quantity", "quantity_unit", "size_label", "no_qty",
        "stock_unit", "selling_price_cents", "tax_rate_bps", "gst_type",
        "discount_bps", "is_active", "is_available",
    },
    required_on_create={"name", "selling_price_cents"},
)

COMBO_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "offer_price_cents", "tax_rate_bps", "gst_type",
        "discount_bps", "is_active",
    },
    required_on_create={"name", "offer_price_cents"},
)


def _normalize_product_patch(patch: dict) -> dict:
    enforce_rules_pricing(patch, "selling_price_cents")
    if patch.get("gst_type") is not None:
        patch["gst_type"] = normalize_gst_type(patch["gst_type"])
    if patch.get("stock_unit") is not None:
        try:
            patch["stock_unit"] = canonical_stock_unit(patch["stock_unit"])
        except InvalidProductError as exc:
            raise ValidationFailedError(exc.message)
    return patch


def list_products(theater_id: int, include_inactive: bool = False) -> list[Product]:
    query = db.session.query(Product).filter(Product.theater_id == theater_id)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


def get_product(theater_id: int, product_id: int) -> Product:
    return get_scoped(Product, product_id, theater_id, "Product")


def create_product(theater_id: int, payload: dict, actor_user_id: int | None = None) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    patch = _normalize_product_patch(patch)

    product = Product(theater_id=theater_id, **patch)
    db.session.add(product)
    db.session.flush()
    append_ledger_event(
        theater_id=theater_id,
        event_type="product.created",
        entity_type="product",
        entity_id=product.id,
        actor_user_id=actor_user_id,
        note=product.name,
    )
    db.session.commit()
    return product


def update_product(theater_id: int, product_id: int, payload: dict, actor_user_id: int | None = None) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    patch = _normalize_product_patch(patch)

    def _op():
        product = get_product(theater_id, product_id)
        for key, value in patch.items():
            setattr(product, key, value)
        append_ledger_event(
            theater_id=theater_id,
            event_type="product.updated",
            entity_type="product",
            entity_id=product.id,
            actor_user_id=actor_user_id,
            payload={"fields": sorted(patch)},
        )
        db.session.commit()
        return product

    return run_with_retry(_op)


def deactivate_product(theater_id: int, product_id: int, actor_user_id: int | None = None) -> Product:
    """Soft disable. Stock history and order lines keep their reference."""
    return update_product(theater_id, product_id, {"is_active": False}, actor_user_id)


def resolve_sellable_product(theater_id: int, product_id) -> Product:
    """
    Product that can be put on an order right now.

    Raises InvalidProductError when missing, foreign, inactive, unavailable
    or when its unit descriptor does not fit its stock unit.
    """
    product = db.session.get(Product, product_id) if product_id is not None else None
    if product is None or product.theater_id != theater_id:
        raise InvalidProductError(f"Product {product_id} not found", details={"product_id": product_id})
    if not product.is_sellable:
        raise InvalidProductError(f"Product {product.name} is not available", details={"product_id": product.id})
    try:
        check_sellable_units(product)
    except InvalidProductError as exc:
        raise InvalidProductError(
            f"Product {product.name} cannot be sold: {exc.message}",
            details={"product_id": product.id, **exc.details},
        )
    return product


# =============================================================================
# Combo offers
# =============================================================================

def _parse_components(theater_id: int, raw_components) -> list[tuple[Product, int]]:
    if not isinstance(raw_components, list) or not raw_components:
        raise ValidationFailedError("components must be a non-empty list")

    parsed = []
    for index, raw in enumerate(raw_components):
        if not isinstance(raw, dict):
            raise ValidationFailedError(f"components[{index}] must be an object")
        product_id = raw.get("product_id")
        if product_id is None:
            raise ValidationFailedError(f"components[{index}].product_id is required")
        quantity = parse_positive_int(
            raw.get("quantity_per_combo", raw.get("quantity", 1)),
            f"components[{index}].quantity",
        )
        product = db.session.get(Product, product_id)
        if product is None or product.theater_id != theater_id or not product.is_active:
            raise InvalidProductError(
                f"Combo component product {product_id} not found or inactive",
                details={"product_id": product_id},
            )
        parsed.append((product, quantity))
    return parsed


def _set_components(combo: ComboOffer, components: list[tuple[Product, int]]) -> None:
    combo.components.clear()
    db.session.flush()
    for position, (product, quantity) in enumerate(components):
        combo.components.append(
            ComboComponent(product_id=product.id, position=position, quantity_per_combo=quantity)
        )


def _normalize_combo_patch(patch: dict) -> dict:
    enforce_rules_pricing(patch, "offer_price_cents")
    if patch.get("gst_type") is not None:
        patch["gst_type"] = normalize_gst_type(patch["gst_type"])
    return patch


def list_combos(theater_id: int, include_inactive: bool = False) -> list[ComboOffer]:
    query = db.session.query(ComboOffer).filter(ComboOffer.theater_id == theater_id)
    if not include_inactive:
        query = query.filter(ComboOffer.is_active.is_(True))
    return query.order_by(ComboOffer.name.asc(), ComboOffer.id.asc()).all()


def get_combo(theater_id: int, combo_id: int) -> ComboOffer:
    return get_scoped(ComboOffer, combo_id, theater_id, "Combo offer")


def create_combo(theater_id: int, payload: dict, actor_user_id: int | None = None) -> ComboOffer:
    payload = dict(payload or {})
    raw_components = payload.pop("components", None)
    patch = validate_payload(model=ComboOffer, payload=payload, policy=COMBO_POLICY, partial=False)
    patch = _normalize_combo_patch(patch)
    components = _parse_components(theater_id, raw_components)

    combo = ComboOffer(theater_id=theater_id, **patch)
    db.session.add(combo)
    db.session.flush()
    _set_components(combo, components)
    append_ledger_event(
        theater_id=theater_id,
        event_type="combo.created",
        entity_type="combo_offer",
        entity_id=combo.id,
        actor_user_id=actor_user_id,
        note=combo.name,
    )
    db.session.commit()
    return combo


def update_combo(theater_id: int, combo_id: int, payload: dict, actor_user_id: int | None = None) -> ComboOffer:
    payload = dict(payload or {})
    raw_components = payload.pop("components", None)
    patch = validate_payload(model=ComboOffer, payload=payload, policy=COMBO_POLICY, partial=True)
    patch = _normalize_combo_patch(patch)

    def _op():
        combo = get_combo(theater_id, combo_id)
        for key, value in patch.items():
            setattr(combo, key, value)
        if raw_components is not None:
            _set_components(combo, _parse_components(theater_id, raw_components))
        append_ledger_event(
            theater_id=theater_id,
            event_type="combo.updated",
            entity_type="combo_offer",
            entity_id=combo.id,
            actor_user_id=actor_user_id,
            payload={"fields": sorted(patch) + (["components"] if raw_components is not None else [])},
        )
        db.session.commit()
        return combo

    return run_with_retry(_op)


def deactivate_combo(theater_id: int, combo_id: int, actor_user_id: int | None = None) -> ComboOffer:
    return update_combo(theater_id, combo_id, {"is_active": False}, actor_user_id)


def resolve_sellable_combo(theater_id: int, combo_id) -> ComboOffer:
    """
    Active combo whose components all resolve to sellable products of the
    same theater. Raises InvalidProductError otherwise.
    """
    combo = db.session.get(ComboOffer, combo_id) if combo_id is not None else None
    if combo is None or combo.theater_id != theater_id:
        raise InvalidProductError(f"Combo offer {combo_id} not found", details={"combo_id": combo_id})
    if not combo.is_active:
        raise InvalidProductError(f"Combo offer {combo.name} is not active", details={"combo_id": combo.id})
    if not combo.components:
        raise InvalidProductError(f"Combo offer {combo.name} has no components", details={"combo_id": combo.id})
    for component in combo.components:
        resolve_sellable_product(theater_id, component.product_id)
    return combo
