"""Pure monetary aggregation for quote line items.

Every amount is a ``Decimal`` rounded half-up to cents. Percentages are on a
0-100 scale. Recurring lines are normalised to a monthly value so that yearly
and monthly items can be summed; the annual figure is derived from the
unrounded monthly sum.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from app.platform.errors import ValidationError

DiscountType = Literal["percentage", "fixed_amount"]
Recurrence = Literal["one_time", "recurring"]
BillingInterval = Literal["month", "year"]

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = Decimal("12")


def q(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class LineInput:
    unit_price: Decimal
    quantity: int = 1
    recurrence: str = "one_time"
    billing_interval: str | None = None
    discount_type: str | None = None
    discount_value: Decimal | None = None


@dataclass(frozen=True, slots=True)
class LineAmounts:
    gross: Decimal
    discount_amount: Decimal
    line_total: Decimal
    monthly_value: Decimal


@dataclass(frozen=True, slots=True)
class PricingRules:
    discount_type: str | None = None
    discount_value: Decimal | None = None
    tax_rate: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    monthly_recurring: Decimal
    annual_recurring: Decimal
    lines: tuple[LineAmounts, ...] = ()


def _discount(base: Decimal, discount_type: str | None, value: Decimal | None, *, scope: str) -> Decimal:
    if discount_type is None or value is None:
        return ZERO
    value = Decimal(value)
    if value < ZERO:
        raise ValidationError(f"{scope} discount cannot be negative", code="invalid_discount")
    if discount_type == "percentage":
        if value > HUNDRED:
            raise ValidationError(f"{scope} percentage discount cannot exceed 100", code="invalid_discount")
        return q(base * value / HUNDRED)
    if discount_type == "fixed_amount":
        return q(min(value, base))
    raise ValidationError(f"unknown {scope} discount type {discount_type!r}", code="invalid_discount")


def compute_line(line: LineInput) -> LineAmounts:
    if line.quantity < 1:
        raise ValidationError("quantity must be at least 1", code="invalid_quantity")
    unit_price = Decimal(line.unit_price)
    if unit_price < ZERO:
        raise ValidationError("unit_price cannot be negative", code="invalid_unit_price")

    gross = q(unit_price * line.quantity)
    discount = _discount(gross, line.discount_type, line.discount_value, scope="line")
    line_total = q(gross - discount)

    monthly = ZERO
    if line.recurrence == "recurring":
        monthly = line_total / MONTHS_PER_YEAR if line.billing_interval == "year" else line_total
    return LineAmounts(gross=gross, discount_amount=discount, line_total=line_total, monthly_value=monthly)


def compute_totals(lines: Iterable[LineInput], rules: PricingRules | None = None) -> Totals:
    rules = rules or PricingRules()
    tax_rate = Decimal(rules.tax_rate or ZERO)
    if tax_rate < ZERO or tax_rate > HUNDRED:
        raise ValidationError("tax_rate must be between 0 and 100", code="invalid_tax_rate")

    amounts = tuple(compute_line(line) for line in lines)
    subtotal = q(sum((item.line_total for item in amounts), start=ZERO))
    discount = _discount(subtotal, rules.discount_type, rules.discount_value, scope="quote")
    taxable = subtotal - discount
    tax = q(taxable * tax_rate / HUNDRED)
    monthly = sum((item.monthly_value for item in amounts), start=ZERO)

    return Totals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        total=q(taxable + tax),
        monthly_recurring=q(monthly),
        annual_recurring=q(monthly * MONTHS_PER_YEAR),
        lines=amounts,
    )
