"""Tax and pricing arithmetic.

All amounts are ``Decimal`` and every figure leaving this module is rounded
half-up to whole paise/cents, so invoice, order and ledger amounts built from
the same inputs always agree to the last digit.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Union

from mealdesk.errors import ValidationError

CENT = Decimal("0.01")
Number = Union[int, float, str, Decimal]


def to_decimal(value: Number, field: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        # go through repr so 299.99 stays 299.99 instead of its binary expansion
        value = repr(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "taxAmount": self.tax_amount,
            "discountAmount": self.discount_amount,
            "total": self.total,
        }


def _line_value(item: Any, key: str, attr: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key, item.get(attr))
    return getattr(item, attr)


def compute_totals(
    line_items: Iterable[Any],
    tax_rate: Number = Decimal("0.18"),
    discount: Number = 0,
) -> Totals:
    """Sum ``quantity * unitPrice`` over the lines, add tax, subtract the discount.

    Lines may be mappings (``quantity``/``unitPrice`` or ``unit_price`` keys)
    or objects exposing ``quantity`` and ``unit_price``.
    """
    rate = to_decimal(tax_rate, "taxRate")
    if rate < 0:
        raise ValidationError("taxRate cannot be negative")
    discount_amount = money(to_decimal(discount, "discountAmount"))
    if discount_amount < 0:
        raise ValidationError("discountAmount cannot be negative")

    subtotal = Decimal("0")
    for index, item in enumerate(line_items):
        quantity = to_decimal(_line_value(item, "quantity", "quantity"), f"items[{index}].quantity")
        unit_price = to_decimal(_line_value(item, "unitPrice", "unit_price"), f"items[{index}].unitPrice")
        if quantity <= 0 or unit_price < 0:
            raise ValidationError("Quantity and unit price must be positive numbers")
        subtotal += quantity * unit_price

    subtotal = money(subtotal)
    tax_amount = money(subtotal * rate)
    total = subtotal + tax_amount - discount_amount
    if total < 0:
        raise ValidationError("Discount cannot exceed the invoice amount")
    return Totals(subtotal=subtotal, tax_amount=tax_amount, discount_amount=discount_amount, total=total)


def compute_price_totals(price: Number, tax_rate: Number = Decimal("0.18"), discount: Number = 0) -> Totals:
    return compute_totals([{"quantity": 1, "unitPrice": price}], tax_rate, discount)
