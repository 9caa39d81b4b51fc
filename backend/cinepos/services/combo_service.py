# Overview: Combo evaluator; checks a combo multiplicity against stock minus what the cart already holds.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..errors import InsufficientStockError, InvalidProductError, ValidationFailedError
from ..extensions import db
from ..models import ComboOffer, Product
from ..validation import parse_positive_int
from cinepos.time_utils import utcnow
from . import stock_service
from .catalog_service import resolve_sellable_combo
from .units import format_milli, from_milli, product_consumption_milli


@dataclass(frozen=True)
class CartItem:
    """
    One line of a cart as sent by a client.

    item_id identifies the line for exclusion; when the client sends none,
    a combo line is identified by its combo id.
    """
    quantity: int
    product_id: int | None = None
    combo_id: int | None = None
    item_id: str | None = None

    @property
    def exclusion_key(self) -> str | None:
        if self.item_id is not None:
            return str(self.item_id)
        if self.combo_id is not None:
            return str(self.combo_id)
        return None


@dataclass(frozen=True)
class ComponentCheck:
    product_id: int
    needed_milli: int
    available_milli: int

    @property
    def ok(self) -> bool:
        return self.needed_milli <= self.available_milli

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "needed": format_milli(self.needed_milli),
            "available": format_milli(self.available_milli),
        }


@dataclass(frozen=True)
class ComboEvaluation:
    combo_id: int
    quantity: int
    feasible: bool
    components: list[ComponentCheck] = field(default_factory=list)
    failure: ComponentCheck | None = None

    def to_dict(self) -> dict:
        data = {
            "combo_id": self.combo_id,
            "quantity": self.quantity,
            "feasible": self.feasible,
            "components": [c.to_dict() for c in self.components],
        }
        if self.failure is not None:
            data["failure"] = self.failure.to_dict()
        return data


def parse_cart_items(raw_items) -> list[CartItem]:
    """Build CartItems from snake_case dicts ({product_id|combo_id, quantity, id?})."""
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationFailedError("cart_items must be a list")
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationFailedError(f"cart_items[{index}] must be an object")
        product_id = raw.get("product_id")
        combo_id = raw.get("combo_id")
        if (product_id is None) == (combo_id is None):
            raise ValidationFailedError(f"cart_items[{index}] needs exactly one of product_id or combo_id")
        item_id = raw.get("id", raw.get("item_id"))
        items.append(CartItem(
            quantity=parse_positive_int(raw.get("quantity", 1), f"cart_items[{index}].quantity"),
            product_id=product_id,
            combo_id=combo_id,
            item_id=str(item_id) if item_id is not None else None,
        ))
    return items


def combo_consumption_milli(combo: ComboOffer, multiplicity: int) -> list[tuple[Product, int, int]]:
    """(product, quantity_per_combo, consumed_milli) per component, in declared order."""
    exploded = []
    for component in combo.components:
        product = component.product
        consumed = product_consumption_milli(product, multiplicity * component.quantity_per_combo)
        exploded.append((product, component.quantity_per_combo, consumed))
    return exploded


def cart_consumption_milli(theater_id: int, items, exclude_id=None) -> dict[int, int]:
    """
    Effective consumption per product of the cart, combos exploded into
    their components. Items whose exclusion key equals exclude_id are skipped.
    """
    excluded = str(exclude_id) if exclude_id is not None else None
    totals: dict[int, int] = {}
    for item in items:
        if excluded is not None and item.exclusion_key == excluded:
            continue
        if item.combo_id is not None:
            combo = db.session.get(ComboOffer, item.combo_id)
            if combo is None or combo.theater_id != theater_id:
                raise InvalidProductError(
                    f"Combo offer {item.combo_id} not found",
                    details={"combo_id": item.combo_id},
                )
            for product, _, consumed in combo_consumption_milli(combo, item.quantity):
                totals[product.id] = totals.get(product.id, 0) + consumed
        else:
            product = db.session.get(Product, item.product_id)
            if product is None or product.theater_id != theater_id:
                raise InvalidProductError(
                    f"Product {item.product_id} not found",
                    details={"product_id": item.product_id},
                )
            totals[product.id] = totals.get(product.id, 0) + product_consumption_milli(product, item.quantity)
    return totals


def evaluate_combo(
    theater_id: int,
    combo_id: int,
    multiplicity: int,
    cart_items=None,
    exclude_id=None,
    *,
    cart_id: str | None = None,
    now: datetime | None = None,
) -> ComboEvaluation:
    """
    Feasibility of `multiplicity` units of a combo.

    For each component, in declared order:
        needed    = consumption(product, multiplicity * quantity_per_combo)
        available = current balance - other cart consumption
    where other cart consumption comes from `cart_items` (minus the excluded
    line) and, when cart_id is given, from reservations held by other carts.
    Evaluation stops at the first component that does not fit.
    """
    multiplicity = parse_positive_int(multiplicity, "quantity")
    combo = resolve_sellable_combo(theater_id, combo_id)
    now = now or utcnow()
    in_cart = cart_consumption_milli(theater_id, cart_items or [], exclude_id)

    checks = []
    for product, _, needed in combo_consumption_milli(combo, multiplicity):
        current = stock_service.current_balance_milli(theater_id, product.id, now=now)
        if cart_id:
            current -= stock_service.reserved_milli(
                theater_id, product.id, exclude_cart_id=cart_id, now=now
            )
        available = max(current - in_cart.get(product.id, 0), 0)
        check = ComponentCheck(product_id=product.id, needed_milli=needed, available_milli=available)
        checks.append(check)
        if not check.ok:
            return ComboEvaluation(
                combo_id=combo.id,
                quantity=multiplicity,
                feasible=False,
                components=checks,
                failure=check,
            )

    return ComboEvaluation(combo_id=combo.id, quantity=multiplicity, feasible=True, components=checks)


def require_combo_feasible(*args, **kwargs) -> ComboEvaluation:
    """evaluate_combo that raises InsufficientStockError on the first failing component."""
    evaluation = evaluate_combo(*args, **kwargs)
    if not evaluation.feasible:
        failure = evaluation.failure
        raise InsufficientStockError(
            f"Insufficient stock for product {failure.product_id} in combo {evaluation.combo_id}",
            product_id=failure.product_id,
            available=from_milli(failure.available_milli),
            needed=from_milli(failure.needed_milli),
            details={"combo_id": evaluation.combo_id},
        )
    return evaluation


def sync_cart_reservations(
    theater_id: int,
    cart_id: str,
    items,
    *,
    now: datetime | None = None,
):
    """
    Make the cart's reservations match its current contents.

    Combos are exploded into components; every product gets its total as a
    target reservation and products no longer in the cart are released.
    An OutOfStockError on one product leaves earlier products reserved.
    """
    if not cart_id:
        raise ValidationFailedError("cart_id is required")
    now = now or utcnow()
    totals = cart_consumption_milli(theater_id, items)

    for row in stock_service.cart_reservations(cart_id, theater_id=theater_id):
        if row.product_id not in totals and row.status == stock_service.RESERVATION_ACTIVE:
            stock_service.release(cart_id, row.product_id, theater_id=theater_id)

    for product_id in sorted(totals):
        stock_service.reserve(theater_id, product_id, totals[product_id], cart_id, now=now)

    return stock_service.cart_reservations(cart_id, theater_id=theater_id)
