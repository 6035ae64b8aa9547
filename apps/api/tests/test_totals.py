from __future__ import annotations

from decimal import Decimal

import pytest

from app.business.revenue.totals import LineInput, PricingRules, compute_line, compute_totals, q
from app.platform.errors import ValidationError


def test_reference_scenario() -> None:
    totals = compute_totals(
        [
            LineInput(unit_price=Decimal("100"), quantity=2),
            LineInput(unit_price=Decimal("50"), recurrence="recurring", billing_interval="month"),
        ],
        PricingRules(tax_rate=Decimal("20")),
    )

    assert totals.subtotal == Decimal("250.00")
    assert totals.discount_amount == Decimal("0")
    assert totals.tax_amount == Decimal("50.00")
    assert totals.total == Decimal("300.00")
    assert totals.monthly_recurring == Decimal("50.00")
    assert totals.annual_recurring == Decimal("600.00")


def test_yearly_lines_are_normalised_to_a_month() -> None:
    totals = compute_totals(
        [LineInput(unit_price=Decimal("100"), recurrence="recurring", billing_interval="year")],
    )

    assert totals.monthly_recurring == Decimal("8.33")
    # annual comes from the unrounded monthly sum
    assert totals.annual_recurring == Decimal("100.00")


def test_line_percentage_discount_rounds_half_up() -> None:
    amounts = compute_line(
        LineInput(unit_price=Decimal("99.99"), discount_type="percentage", discount_value=Decimal("10")),
    )

    assert amounts.gross == Decimal("99.99")
    assert amounts.discount_amount == Decimal("10.00")
    assert amounts.line_total == Decimal("89.99")


def test_fixed_discounts_are_capped() -> None:
    line = compute_line(
        LineInput(unit_price=Decimal("30"), discount_type="fixed_amount", discount_value=Decimal("50")),
    )
    assert line.line_total == Decimal("0.00")

    totals = compute_totals(
        [LineInput(unit_price=Decimal("40"))],
        PricingRules(discount_type="fixed_amount", discount_value=Decimal("75"), tax_rate=Decimal("10")),
    )
    assert totals.discount_amount == Decimal("40.00")
    assert totals.tax_amount == Decimal("0.00")
    assert totals.total == Decimal("0.00")


def test_quote_discount_applies_before_tax() -> None:
    totals = compute_totals(
        [LineInput(unit_price=Decimal("200"))],
        PricingRules(discount_type="percentage", discount_value=Decimal("25"), tax_rate=Decimal("8.25")),
    )

    assert totals.discount_amount == Decimal("50.00")
    assert totals.tax_amount == Decimal("12.38")
    assert totals.total == Decimal("162.38")


def test_recomputing_is_deterministic() -> None:
    lines = [
        LineInput(unit_price=Decimal("19.99"), quantity=3, discount_type="percentage", discount_value=Decimal("15")),
        LineInput(unit_price=Decimal("120"), recurrence="recurring", billing_interval="year"),
    ]
    rules = PricingRules(discount_type="fixed_amount", discount_value=Decimal("5"), tax_rate=Decimal("7.5"))

    assert compute_totals(lines, rules) == compute_totals(lines, rules)


def test_empty_quote_totals_are_zero() -> None:
    totals = compute_totals([], PricingRules(tax_rate=Decimal("20")))
    assert totals.total == Decimal("0.00")
    assert totals.lines == ()


@pytest.mark.parametrize(
    ("line", "rules", "code"),
    [
        (LineInput(unit_price=Decimal("10"), quantity=0), None, "invalid_quantity"),
        (LineInput(unit_price=Decimal("-1")), None, "invalid_unit_price"),
        (
            LineInput(unit_price=Decimal("10"), discount_type="percentage", discount_value=Decimal("101")),
            None,
            "invalid_discount",
        ),
        (
            LineInput(unit_price=Decimal("10")),
            PricingRules(discount_type="coupon", discount_value=Decimal("1")),
            "invalid_discount",
        ),
        (LineInput(unit_price=Decimal("10")), PricingRules(tax_rate=Decimal("120")), "invalid_tax_rate"),
    ],
)
def test_invalid_rules_raise_validation_error(line: LineInput, rules: PricingRules | None, code: str) -> None:
    with pytest.raises(ValidationError) as exc_info:
        compute_totals([line], rules)
    assert exc_info.value.code == code


def test_q_rounds_half_up_to_cents() -> None:
    assert q("0.125") == Decimal("0.13")
    assert q(Decimal("2.675")) == Decimal("2.68")
    assert q(3) == Decimal("3.00")
