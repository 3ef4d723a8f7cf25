"""Cent rounding for persisted invoice amounts.

Aggregation runs on exact Decimals; amounts are rounded only when written.
Line amounts are allocated with the largest-remainder method so that the
persisted lines of a category add up exactly to its rounded subtotal.
"""

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Dict, Iterable

from models.canonical import CENT


ZERO = Decimal("0")


def round_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def exact_sum(amounts: Iterable[Decimal]) -> Decimal:
    return sum(amounts, ZERO)


def allocate_cents(amounts: Dict[str, Decimal]) -> Dict[str, Decimal]:
    """Round each amount to the cent so the results sum to round(sum(amounts)).

    Leftover cents go to the largest fractional remainders; ties go to the
    smallest key.
    """
    if not amounts:
        return {}

    target = round_cents(exact_sum(amounts.values()))
    floors = {key: value.quantize(CENT, rounding=ROUND_FLOOR) for key, value in amounts.items()}
    remainders = {key: amounts[key] - floors[key] for key in amounts}

    leftover = int(((target - exact_sum(floors.values())) / CENT).to_integral_value())
    for key in sorted(amounts, key=lambda k: (-remainders[k], k))[:leftover]:
        floors[key] += CENT
    return floors
