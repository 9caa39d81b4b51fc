# Overview: Pytest coverage for line and order pricing with dual GST.

import pytest

from cinepos.errors import ValidationFailedError
from cinepos.services.pricing_service import (
    LineInput,
    normalize_gst_type,
    price_line,
    price_order,
    summarize,
)


class TestLinePricing:
    def test_inclusive_gst(self):
        """Rs 118 incl. 18% GST carries Rs 18 of tax and contributes Rs 118."""
        totals = price_line(LineInput(unit_price_cents=11800, quantity=1, tax_rate_bps=1800, gst_type="Inclusive"))
        assert totals.discount_cents == 0
        assert totals.tax_cents == 1800
        assert totals.total_cents == 11800

    def test_exclusive_gst_with_discount(self):
        totals = price_line(LineInput(
            unit_price_cents=10000, quantity=2, tax_rate_bps=500, gst_type="Exclusive", discount_bps=1000,
        ))
        assert totals.gross_cents == 20000
        assert totals.discount_cents == 2000
        assert totals.tax_cents == 900
        assert totals.total_cents == 18900

    def test_rounding_is_half_up_per_line(self):
        # 105 paise at 5% exclusive -> 5.25 paise of tax -> 5
        assert price_line(LineInput(unit_price_cents=105, quantity=1, tax_rate_bps=500)).tax_cents == 5
        # 110 paise at 5% exclusive -> 5.5 paise of tax -> 6
        assert price_line(LineInput(unit_price_cents=110, quantity=1, tax_rate_bps=500)).tax_cents == 6

    def test_zero_tax(self):
        totals = price_line(LineInput(unit_price_cents=5000, quantity=3))
        assert (totals.tax_cents, totals.total_cents) == (0, 15000)

    def test_full_discount(self):
        totals = price_line(LineInput(unit_price_cents=5000, quantity=1, tax_rate_bps=1800, discount_bps=10000))
        assert (totals.discount_cents, totals.tax_cents, totals.total_cents) == (5000, 0, 0)

    @pytest.mark.parametrize("line", [
        LineInput(unit_price_cents=100, quantity=0),
        LineInput(unit_price_cents=-1, quantity=1),
        LineInput(unit_price_cents=100, quantity=1, discount_bps=10001),
        LineInput(unit_price_cents=100, quantity=1, tax_rate_bps=-5),
        LineInput(unit_price_cents=100, quantity=1, gst_type="Mixed"),
    ])
    def test_invalid_lines(self, line):
        with pytest.raises(ValidationFailedError):
            price_line(line)

    def test_gst_type_is_case_insensitive(self):
        assert normalize_gst_type("inclusive") == "Inclusive"
        assert normalize_gst_type(" EXCLUSIVE ") == "Exclusive"


class TestOrderTotals:
    def test_two_inclusive_lines(self):
        line = LineInput(unit_price_cents=11800, quantity=1, tax_rate_bps=1800, gst_type="Inclusive")
        _, totals = price_order([line, line])
        assert totals.grand_total_cents == 23600
        assert totals.total_tax_cents == 3600
        assert totals.subtotal_ex_tax_cents == 20000
        assert totals.cgst_cents == 1800
        assert totals.sgst_cents == 1800

    def test_mixed_inclusive_and_exclusive(self):
        lines = [
            LineInput(unit_price_cents=11800, quantity=1, tax_rate_bps=1800, gst_type="Inclusive"),
            LineInput(unit_price_cents=10000, quantity=2, tax_rate_bps=500, gst_type="Exclusive", discount_bps=1000),
        ]
        priced, totals = price_order(lines)
        assert [p.total_cents for p in priced] == [11800, 18900]
        assert totals.grand_total_cents == 30700
        assert totals.total_tax_cents == 2700
        assert totals.subtotal_ex_tax_cents == 28000
        assert totals.total_discount_cents == 2000

    def test_cgst_and_sgst_split_odd_tax(self):
        totals = summarize([price_line(LineInput(unit_price_cents=110, quantity=1, tax_rate_bps=500))])
        assert totals.total_tax_cents == 6
        assert totals.cgst_cents == totals.sgst_cents == 3

        totals = summarize([price_line(LineInput(unit_price_cents=105, quantity=1, tax_rate_bps=500))])
        assert totals.total_tax_cents == 5
        # 2.5 rounds half up on each side
        assert totals.cgst_cents == totals.sgst_cents == 3

    def test_empty_order(self):
        _, totals = price_order([])
        assert totals.to_dict() == {
            "subtotal_ex_tax_cents": 0,
            "total_tax_cents": 0,
            "cgst_cents": 0,
            "sgst_cents": 0,
            "total_discount_cents": 0,
            "grand_total_cents": 0,
        }
