# Overview: Pricing engine for order lines and order totals with dual GST (CGST + SGST).

"""
Line and order pricing.

All amounts are integer minor units (paise). Rates are basis points
(1800 = 18%). Arithmetic is Decimal with ROUND_HALF_UP so results never
depend on float behaviour or locale.

Per line:
    gross     = unit_price * quantity
    discount  = gross * discount% / 100
    after     = gross - discount
    Inclusive: tax = after * rate / (100 + rate); contribution = after
    Exclusive: tax = after * rate / 100;         contribution = after + tax

gross, discount and tax are rounded to the minor unit per line before they
are summed. Orders may mix Inclusive and Exclusive lines.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP

from ..errors import ValidationFailedError


GST_INCLUSIVE = "Inclusive"
GST_EXCLUSIVE = "Exclusive"
GST_TYPES = (GST_INCLUSIVE, GST_EXCLUSIVE)

BPS_SCALE = Decimal("10000")


@dataclass(frozen=True)
class LineInput:
    unit_price_cents: int
    quantity: int
    tax_rate_bps: int = 0
    gst_type: str = GST_EXCLUSIVE
    discount_bps: int = 0


@dataclass(frozen=True)
class LineTotals:
    gross_cents: int
    discount_cents: int
    tax_cents: int
    total_cents: int


@dataclass(frozen=True)
class OrderTotals:
    subtotal_ex_tax_cents: int
    total_tax_cents: int
    cgst_cents: int
    sgst_cents: int
    total_discount_cents: int
    grand_total_cents: int

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_gst_type(value) -> str:
    text = str(value or "").strip().lower()
    for gst_type in GST_TYPES:
        if text == gst_type.lower():
            return gst_type
    raise ValidationFailedError(
        "gst_type must be Inclusive or Exclusive",
        details={"gst_type": value},
    )


def _round_cents(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validate(line: LineInput) -> None:
    if line.quantity is None or line.quantity < 1:
        raise ValidationFailedError("quantity must be >= 1")
    if line.unit_price_cents is None or line.unit_price_cents < 0:
        raise ValidationFailedError("unit price must be >= 0")
    if line.tax_rate_bps is None or line.tax_rate_bps < 0:
        raise ValidationFailedError("tax rate must be >= 0")
    if line.discount_bps is None or not 0 <= line.discount_bps <= 10000:
        raise ValidationFailedError("discount must be between 0 and 100 percent")


def price_line(line: LineInput) -> LineTotals:
    _validate(line)
    gst_type = normalize_gst_type(line.gst_type)

    gross = Decimal(line.unit_price_cents) * Decimal(line.quantity)
    gross_cents = _round_cents(gross)
    discount_cents = _round_cents(gross * Decimal(line.discount_bps) / BPS_SCALE)
    after = Decimal(gross_cents - discount_cents)
    rate = Decimal(line.tax_rate_bps)

    if gst_type == GST_INCLUSIVE:
        tax_cents = _round_cents(after * rate / (BPS_SCALE + rate))
        total_cents = gross_cents - discount_cents
    else:
        tax_cents = _round_cents(after * rate / BPS_SCALE)
        total_cents = gross_cents - discount_cents + tax_cents

    return LineTotals(
        gross_cents=gross_cents,
        discount_cents=discount_cents,
        tax_cents=tax_cents,
        total_cents=total_cents,
    )


def summarize(line_totals) -> OrderTotals:
    """Aggregate already-priced lines into the order breakdown."""
    grand = 0
    tax = 0
    discount = 0
    for totals in line_totals:
        grand += totals.total_cents
        tax += totals.tax_cents
        discount += totals.discount_cents

    half = _round_cents(Decimal(tax) / 2)
    return OrderTotals(
        subtotal_ex_tax_cents=grand - tax,
        total_tax_cents=tax,
        cgst_cents=half,
        sgst_cents=half,
        total_discount_cents=discount,
        grand_total_cents=grand,
    )


def price_order(lines) -> tuple[list[LineTotals], OrderTotals]:
    priced = [price_line(line) for line in lines]
    return priced, summarize(priced)


def line_input_from_snapshot(line) -> LineInput:
    """Rebuild a LineInput from a persisted order line's pricing snapshot."""
    return LineInput(
        unit_price_cents=line.unit_price_cents,
        quantity=line.quantity,
        tax_rate_bps=line.tax_rate_bps,
        gst_type=line.gst_type,
        discount_bps=line.discount_bps,
    )


def recompute_order_totals(lines) -> OrderTotals:
    """Breakdown from persisted lines; only active lines contribute."""
    active = [line for line in lines if line.status == "active"]
    _, totals = price_order(line_input_from_snapshot(line) for line in active)
    return totals
