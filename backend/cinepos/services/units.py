# Overview: Unit model for canteen products; parses quantity descriptors and converts them into stock units.

"""
Quantity parsing and cross-unit conversion.

Pure functions only: nothing here touches the database or imports models.
Callers pass any object exposing the product attributes
(quantity, quantity_unit, size_label, no_qty, stock_unit).

Stock is kept in the base unit of one of three dimensions:
- Count  -> "Nos"
- Mass   -> "kg"
- Volume -> "L"

Mass and Volume convert into each other with 1 L == 1 kg (liquid canteen
items). Count never converts to Mass or Volume.

Stored quantities are integer thousandths of the stock unit ("milli").
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional

from ..errors import InvalidProductError


COUNT = "Count"
MASS = "Mass"
VOLUME = "Volume"

QUANTITY_PATTERN = re.compile(r"^([0-9]*\.?[0-9]+)\s*([A-Za-z]+)$")

# canonical token -> (dimension, factor to the dimension's base unit)
_UNITS = {
    "nos": (COUNT, Decimal("1")),
    "kg": (MASS, Decimal("1")),
    "g": (MASS, Decimal("0.001")),
    "l": (VOLUME, Decimal("1")),
    "ml": (VOLUME, Decimal("0.001")),
}

_SYNONYMS = {
    "nos": "nos", "no": "nos", "pc": "nos", "pcs": "nos", "piece": "nos",
    "pieces": "nos", "num": "nos", "number": "nos",
    "kg": "kg", "kilo": "kg", "kilogram": "kg", "kilograms": "kg",
    "g": "g", "gm": "g", "gram": "g", "grams": "g",
    "l": "l", "ltr": "l", "liter": "l", "liters": "l",
    "ml": "ml", "milli": "ml", "milliliter": "ml", "milliliters": "ml",
}

# stock unit label -> dimension
STOCK_UNITS = {"Nos": COUNT, "kg": MASS, "L": VOLUME}
BASE_UNIT_LABELS = {COUNT: "Nos", MASS: "kg", VOLUME: "L"}

# Descriptor sources, in parse order
SOURCE_QUANTITY = "quantity"
SOURCE_QUANTITY_UNIT = "quantity_unit"
SOURCE_SIZE_LABEL = "size_label"
SOURCE_FALLBACK = "fallback"

MILLI = Decimal("1000")
THREE_PLACES = Decimal("0.001")

# Bare numbers from this value up read as mL/g on Mass/Volume stock
SMALL_UNIT_MIN = Decimal("50")


@dataclass(frozen=True)
class ParsedQuantity:
    """
    Normalized quantity descriptor for one unit of a product.

    unit is a canonical token (nos, kg, g, l, ml) or None when no known unit
    was found next to the number.
    """
    value: Decimal
    unit: Optional[str]
    source: str

    @property
    def dimension(self) -> Optional[str]:
        if self.unit is None:
            return None
        return _UNITS[self.unit][0]

    @property
    def has_unit(self) -> bool:
        return self.unit is not None


def normalize_unit(token) -> Optional[str]:
    """Collapse a unit token to its canonical spelling; None if unknown."""
    if token is None:
        return None
    cleaned = str(token).strip().lower().replace(".", "")
    if not cleaned:
        return None
    return _SYNONYMS.get(cleaned)


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return number


def _match(text) -> Optional[tuple[Decimal, str]]:
    if text is None:
        return None
    found = QUANTITY_PATTERN.match(str(text).strip())
    if not found:
        return None
    return Decimal(found.group(1)), found.group(2)


def parse_quantity(quantity=None, quantity_unit=None, size_label=None) -> ParsedQuantity:
    """
    Parse a product's unit descriptor.

    Sources are checked in order:
      1. quantity string such as "150 ML" or "1kg"
      2. numeric quantity plus the explicit quantity_unit
         (a bare number with no quantity_unit borrows the unit of size_label)
      3. size_label string with the same pattern
      4. fallback: 1 Count
    """
    matched = _match(quantity)
    if matched:
        value, token = matched
        return ParsedQuantity(value, normalize_unit(token), SOURCE_QUANTITY)

    number = _to_decimal(quantity)
    if number is not None:
        if quantity_unit is not None and str(quantity_unit).strip():
            return ParsedQuantity(number, normalize_unit(quantity_unit), SOURCE_QUANTITY_UNIT)
        label = _match(size_label)
        if label:
            return ParsedQuantity(number, normalize_unit(label[1]), SOURCE_QUANTITY_UNIT)
        return ParsedQuantity(number, None, SOURCE_QUANTITY_UNIT)

    label = _match(size_label)
    if label:
        value, token = label
        return ParsedQuantity(value, normalize_unit(token), SOURCE_SIZE_LABEL)

    return ParsedQuantity(Decimal("1"), "nos", SOURCE_FALLBACK)


def parse_product_quantity(product) -> ParsedQuantity:
    return parse_quantity(
        getattr(product, "quantity", None),
        getattr(product, "quantity_unit", None),
        getattr(product, "size_label", None),
    )


def stock_dimension(stock_unit: str) -> str:
    """Dimension of a stock unit label. Accepts synonyms ("ltr", "pcs")."""
    if stock_unit in STOCK_UNITS:
        return STOCK_UNITS[stock_unit]
    token = normalize_unit(stock_unit)
    if token is None:
        raise InvalidProductError(f"Unknown stock unit {stock_unit!r}")
    dimension, factor = _UNITS[token]
    if factor != 1:
        raise InvalidProductError(f"Stock unit {stock_unit!r} is not a base unit")
    return dimension


def canonical_stock_unit(stock_unit: str) -> str:
    return BASE_UNIT_LABELS[stock_dimension(stock_unit)]


def conversion_factor(unit: str, stock_unit: str) -> Decimal:
    """
    Factor converting one `unit` into `stock_unit`.

    Raises InvalidProductError when the dimensions cannot be converted.
    """
    dimension, factor = _UNITS[unit]
    target = stock_dimension(stock_unit)
    if dimension == target:
        return factor
    if {dimension, target} == {MASS, VOLUME}:
        return factor
    raise InvalidProductError(
        f"Unit {unit!r} cannot be converted to stock unit {stock_unit!r}",
        details={"unit": unit, "stock_unit": stock_unit},
    )


def _unitless_factor(value: Decimal) -> Decimal:
    if value >= SMALL_UNIT_MIN:
        # 50..2000 reads as mL/g; larger bare numbers are grams as well
        return Decimal("0.001")
    return Decimal("1")


def round_for_dimension(amount: Decimal, dimension: str) -> Decimal:
    if dimension == COUNT:
        return amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return amount.quantize(THREE_PLACES, rounding=ROUND_HALF_UP)


def effective_consumption(
    parsed: ParsedQuantity,
    no_qty,
    order_quantity,
    stock_unit: str,
) -> Decimal:
    """
    Stock consumed by selling `order_quantity` items, expressed in `stock_unit`.

    consumption = value * no_qty * order_quantity * factor(unit -> stock_unit)

    A zero value (or no descriptor at all) falls back to
    order_quantity * no_qty on Count stock and makes the product unsellable
    on Mass/Volume stock.
    """
    target = stock_dimension(stock_unit)
    q = Decimal(order_quantity)
    n = Decimal(no_qty or 1)

    if parsed.value == 0 or parsed.source == SOURCE_FALLBACK:
        if target == COUNT:
            return q * n
        raise InvalidProductError(
            f"Product has no usable quantity for stock unit {stock_unit!r}",
            details={"stock_unit": stock_unit},
        )

    if parsed.unit is None:
        factor = Decimal("1") if target == COUNT else _unitless_factor(parsed.value)
    else:
        factor = conversion_factor(parsed.unit, stock_unit)

    return round_for_dimension(parsed.value * factor * n * q, target)


def product_consumption(product, order_quantity, stock_unit: Optional[str] = None) -> Decimal:
    """effective_consumption for a product-like object (defaults to its own stock_unit)."""
    return effective_consumption(
        parse_product_quantity(product),
        getattr(product, "no_qty", 1),
        order_quantity,
        stock_unit or product.stock_unit,
    )


def product_consumption_milli(product, order_quantity, stock_unit: Optional[str] = None) -> int:
    return to_milli(product_consumption(product, order_quantity, stock_unit))


def check_sellable_units(product) -> None:
    """Raise InvalidProductError when the descriptor and stock unit disagree."""
    product_consumption(product, 1)


def to_base(parsed: ParsedQuantity) -> tuple[Decimal, str]:
    """Express a parsed quantity in its dimension's base unit (value, label)."""
    if parsed.unit is None:
        return parsed.value, BASE_UNIT_LABELS[COUNT]
    dimension, factor = _UNITS[parsed.unit]
    return parsed.value * factor, BASE_UNIT_LABELS[dimension]


def format_quantity(parsed: ParsedQuantity) -> str:
    """Canonical text for a parsed quantity, e.g. "0.15 L" for "150 ML"."""
    value, label = to_base(parsed)
    text = format(value.normalize(), "f")
    return f"{text} {label}"


def to_milli(amount) -> int:
    number = amount if isinstance(amount, Decimal) else _to_decimal(amount)
    if number is None:
        raise ValueError(f"Not a number: {amount!r}")
    return int((number * MILLI).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_milli(milli: int) -> Decimal:
    return (Decimal(int(milli)) / MILLI).quantize(THREE_PLACES)


def format_milli(milli: Optional[int]) -> Optional[str]:
    if milli is None:
        return None
    return str(from_milli(milli))
