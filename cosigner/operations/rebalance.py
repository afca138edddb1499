from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from cosigner.errors import ValidationError

from .fees import to_decimal

ZERO = Decimal(0)


@dataclass(slots=True, frozen=True)
class RebalanceResult:
    balanced_a: Decimal
    balanced_b: Decimal
    leftover_a: Decimal
    leftover_b: Decimal
    price: Decimal

    @property
    def has_leftover(self) -> bool:
        return self.leftover_a > 0 or self.leftover_b > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": str(self.price),
            "balanced": {"tokenA": str(self.balanced_a), "tokenB": str(self.balanced_b)},
            "leftover": {"tokenA": str(self.leftover_a), "tokenB": str(self.leftover_b)},
        }


def rebalance(
    amount_a: Any,
    amount_b: Any,
    price: Any,
    *,
    dust_a: Any = ZERO,
    dust_b: Any = ZERO,
) -> RebalanceResult:
    """Split two legs into a pair matching ``price`` (B per A) plus a one-sided leftover.

    Leftover legs strictly below their dust threshold are reported as zero.
    """
    a = to_decimal(amount_a, field="amount_a")
    b = to_decimal(amount_b, field="amount_b")
    p = to_decimal(price, field="price")
    threshold_a = to_decimal(dust_a, field="dust_a")
    threshold_b = to_decimal(dust_b, field="dust_b")

    if p <= 0:
        raise ValidationError("Price must be positive.", price=str(p))
    if a < 0 or b < 0:
        raise ValidationError("Amounts must not be negative.", amount_a=str(a), amount_b=str(b))

    needed_b_for_all_a = a * p
    if needed_b_for_all_a <= b:
        balanced_a, balanced_b = a, needed_b_for_all_a
        leftover_a, leftover_b = ZERO, b - needed_b_for_all_a
    else:
        needed_a_for_all_b = b / p
        # division rounding must not push the pair above what was withdrawn
        balanced_a, balanced_b = min(a, needed_a_for_all_b), b
        leftover_a, leftover_b = a - balanced_a, ZERO

    if leftover_a < threshold_a:
        leftover_a = ZERO
    if leftover_b < threshold_b:
        leftover_b = ZERO

    return RebalanceResult(
        balanced_a=balanced_a,
        balanced_b=balanced_b,
        leftover_a=leftover_a,
        leftover_b=leftover_b,
        price=p,
    )
