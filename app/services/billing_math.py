# app/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List

Q2 = Decimal("0.01")
HUNDRED = Decimal("100")


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x or 0))
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {x!r}")


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def compute_line_amounts(qty, unit_price, unit_discount,
                         tax_percent) -> Dict[str, Decimal]:
    """
    Pharmacy line: discount is per unit, tax applies after discount.
    """
    qty = D(qty)
    unit_price = D(unit_price)
    unit_discount = D(unit_discount)
    tax_percent = D(tax_percent)

    gross = qty * unit_price
    discount = unit_discount * qty
    taxable = max(Decimal("0"), gross - discount)
    tax = taxable * tax_percent / HUNDRED

    return {
        "gross": money2(gross),
        "discount": money2(discount),
        "tax": money2(tax),
        "total": money2(gross) - money2(discount) + money2(tax),
    }


def split_amount(amount, parts: List[Decimal], whole) -> List[Decimal]:
    """
    Spread a line amount over quantity splits in proportion to each part.
    The last part absorbs rounding so the pieces always add back to amount.
    """
    amount = money2(amount)
    whole = D(whole)
    out: List[Decimal] = []
    running = Decimal("0.00")
    for i, part in enumerate(parts):
        if i == len(parts) - 1:
            piece = amount - running
        else:
            piece = money2(amount * D(part) / whole) if whole else Decimal("0.00")
        out.append(piece)
        running += piece
    return out


def percent_of(part, whole) -> Decimal:
    whole = D(whole)
    if whole <= 0:
        return Decimal("0")
    return D(part) / whole * HUNDRED
