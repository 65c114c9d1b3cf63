"""
Money Math

Deterministic, currency-safe arithmetic for commission splits and
percentage distribution. All values are Decimal, rounded half-up to the
smallest currency unit (0.01).

Rounding policy for distribute(): each share is rounded independently.
The rounded shares are NOT forced to add up to the rounded total; the
residual is bounded by len(groups) * 0.01 and is reported by
distribution_residual() rather than silently corrected.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, NamedTuple, Sequence, Tuple, Union

from services.errors import ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")

# Numeric(12, 2): at most 10 digits before the decimal point
MAX_INTEGER_DIGITS = 10

Number = Union[Decimal, int, float, str]


class CommissionSplit(NamedTuple):
    commission_amount: Decimal
    net_amount: Decimal


class Share(NamedTuple):
    name: str
    amount: Decimal


def money2(v: Decimal) -> Decimal:
    return v.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value: Number, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    try:
        # str() first so floats like 0.1 keep their printed value
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number", details={"field": field})

    if not dec.is_finite():
        raise ValidationError(f"{field} must be finite", details={"field": field})
    if dec.adjusted() >= MAX_INTEGER_DIGITS:
        raise ValidationError(
            f"{field} is too large",
            details={"field": field, "max_integer_digits": MAX_INTEGER_DIGITS},
        )
    if dec.as_tuple().exponent < -2 and dec != dec.quantize(CENT):
        raise ValidationError(
            f"{field} can have at most 2 decimal places",
            details={"field": field, "value": str(dec)},
        )
    return dec


def to_amount(value: Number, field: str = "amount") -> Decimal:
    """Parse a non-negative money amount with at most 2 decimals."""
    dec = _to_decimal(value, field)
    if dec < 0:
        raise ValidationError(f"{field} cannot be negative", details={"field": field, "value": str(dec)})
    return money2(dec)


def to_percentage(value: Number, field: str = "percentage") -> Decimal:
    """Parse a percentage in [0, 100] with at most 2 decimals."""
    dec = _to_decimal(value, field)
    if dec < 0 or dec > HUNDRED:
        raise ValidationError(
            f"{field} must be between 0 and 100",
            details={"field": field, "value": str(dec)},
        )
    return money2(dec)


def split_commission(amount: Number, rate_percent: Number) -> CommissionSplit:
    """
    Split a tip into platform commission and net amount.

    commission = round(amount * rate / 100, 2)
    net        = round(amount - commission, 2)

    commission + net == amount to the cent for any valid input.
    """
    amt = to_amount(amount)
    rate = to_percentage(rate_percent, field="commission_rate")

    commission = money2(amt * rate / HUNDRED)
    net = money2(amt - commission)
    return CommissionSplit(commission_amount=commission, net_amount=net)


def distribute(total: Number, groups: Sequence[Tuple[str, Number]]) -> List[Share]:
    """
    Split `total` across named groups by percentage.

    Args:
        total: Amount to distribute
        groups: (name, percentage) pairs

    Returns:
        One Share per group, in input order
    """
    amt = to_amount(total, field="total")
    shares = []
    for name, percentage in groups:
        pct = to_percentage(percentage)
        shares.append(Share(name=name, amount=money2(amt * pct / HUNDRED)))
    return shares


def distribution_residual(total: Number, shares: Sequence[Share]) -> Decimal:
    """Rounded total minus the sum of rounded shares (can be negative)."""
    return to_amount(total, field="total") - sum((s.amount for s in shares), ZERO)


def sum_amounts(values) -> Decimal:
    return money2(sum((Decimal(v) for v in values), ZERO))
