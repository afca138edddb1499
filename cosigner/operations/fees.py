from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from solders.pubkey import Pubkey

from cosigner.errors import ConfigurationError, ValidationError

BASIS_POINTS_PER_PERCENT = Decimal(1000)
BASIS_POINTS_DENOMINATOR = 100_000
PERCENT_SUM_TOLERANCE = Decimal("0.01")
HUNDRED = Decimal(100)


def to_decimal(value: Any, *, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number.", field=field)
    try:
        # str() keeps floats like 34.375 exact instead of their binary expansion
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as error:
        raise ValidationError(f"{field} must be a number.", field=field) from error
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be finite.", field=field)
    return parsed


@dataclass(slots=True, frozen=True)
class FeeRecipient:
    address: str
    percent: Decimal

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FeeRecipient":
        return cls(
            address=str(payload.get("address") or "").strip(),
            percent=to_decimal(payload.get("percent"), field="percent"),
        )

    @property
    def basis_points(self) -> int:
        return int((self.percent * BASIS_POINTS_PER_PERCENT).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "percent": str(self.percent)}


@dataclass(slots=True, frozen=True)
class FeeShare:
    recipient: FeeRecipient
    amount: int


@dataclass(slots=True, frozen=True)
class FeeDistribution:
    total_amount: int
    shares: tuple[FeeShare, ...]

    @property
    def distributed(self) -> int:
        return sum(share.amount for share in self.shares)

    @property
    def dust(self) -> int:
        return self.total_amount - self.distributed

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": str(self.total_amount),
            "dust": str(self.dust),
            "shares": [
                {
                    "address": share.recipient.address,
                    "percent": str(share.recipient.percent),
                    "amount": str(share.amount),
                }
                for share in self.shares
            ],
        }


def validate_recipients(recipients: Iterable[FeeRecipient]) -> tuple[FeeRecipient, ...]:
    resolved = tuple(recipients)
    if not resolved:
        raise ConfigurationError("No fee recipients are configured for this resource.")

    for index, recipient in enumerate(resolved):
        try:
            Pubkey.from_string(recipient.address)
        except ValueError as error:
            raise ValidationError(
                f"Fee recipient {index} has an invalid address.",
                recipient_index=index,
                address=recipient.address,
            ) from error
        if recipient.percent <= 0 or recipient.percent > HUNDRED:
            raise ValidationError(
                f"Fee recipient {index} percent must be in (0, 100].",
                recipient_index=index,
                percent=str(recipient.percent),
            )

    total_percent = sum((recipient.percent for recipient in resolved), Decimal(0))
    if abs(total_percent - HUNDRED) > PERCENT_SUM_TOLERANCE:
        raise ConfigurationError(
            f"Fee recipient percentages sum to {total_percent}, expected 100.",
            total_percent=str(total_percent),
        )
    return resolved


def distribute_fees(total_amount: int, recipients: Iterable[FeeRecipient]) -> FeeDistribution:
    """Split ``total_amount`` by recipient percentage at 0.001% resolution.

    Each share is floored; the remainder stays with the source account.
    """
    if isinstance(total_amount, bool) or not isinstance(total_amount, int):
        raise ValidationError("Fee total must be an integer amount in base units.")
    if total_amount < 0:
        raise ValidationError("Fee total must not be negative.", total=total_amount)

    resolved = validate_recipients(recipients)
    basis_points = [recipient.basis_points for recipient in resolved]
    # rounded points may overshoot 100% inside the tolerance; scale down so shares never exceed the total
    denominator = max(BASIS_POINTS_DENOMINATOR, sum(basis_points))

    shares = tuple(
        FeeShare(recipient=recipient, amount=(total_amount * points) // denominator)
        for recipient, points in zip(resolved, basis_points)
    )
    return FeeDistribution(total_amount=total_amount, shares=shares)
