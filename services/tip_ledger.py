"""
Tip Ledger

Write path (checkout and gateway confirmation) and the read path the
payout aggregator uses. A tip's commission is split once, at creation,
with the restaurant's rate at that moment; the rate is frozen on the row.

Tip status flow:
    pending -> processing -> completed | failed
    pending -> completed | failed
    completed, failed: final
"""

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from database.models import CommissionRateChange, PaymentMethod, PaymentStatus, Restaurant, Tip, TipType, Waiter
from services.errors import ConflictError, NotFoundError, ValidationError
from services.money import Number, split_commission, to_amount, to_percentage

logger = logging.getLogger(__name__)

MIN_TIP_AMOUNT = Decimal("10")
MAX_TIP_AMOUNT = Decimal("10000")
MAX_COMMISSION_RATE = Decimal("50")

MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")

TIP_TRANSITIONS = {
    PaymentStatus.PENDING.value: {
        PaymentStatus.PROCESSING.value, PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value
    },
    PaymentStatus.PROCESSING.value: {PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value},
    PaymentStatus.COMPLETED.value: set(),
    PaymentStatus.FAILED.value: set(),
}


# ============================================
# Lookups
# ============================================

def get_restaurant(db: Session, restaurant_id: int) -> Restaurant:
    restaurant = db.get(Restaurant, restaurant_id)
    if not restaurant:
        raise NotFoundError(f"Restaurant {restaurant_id} not found", details={"restaurant_id": restaurant_id})
    return restaurant


def get_waiter(db: Session, waiter_id: int) -> Waiter:
    waiter = db.get(Waiter, waiter_id)
    if not waiter:
        raise NotFoundError(f"Waiter {waiter_id} not found", details={"waiter_id": waiter_id})
    return waiter


def month_window(month: str) -> Tuple[datetime, datetime]:
    """
    Validate a YYYY-MM billing month and return [start, next-month-start).

    Only the shape and the month number are checked.
    """
    if not isinstance(month, str) or not MONTH_PATTERN.match(month):
        raise ValidationError("Invalid month format. Use YYYY-MM", details={"month": month})

    year, mon = int(month[:4]), int(month[5:])
    if not 1 <= mon <= 12:
        raise ValidationError("Invalid month format. Use YYYY-MM", details={"month": month})

    start = datetime(year, mon, 1)
    end = datetime(year + 1, 1, 1) if mon == 12 else datetime(year, mon + 1, 1)
    return start, end


# ============================================
# Read path
# ============================================

def list_completed_tips(db: Session, restaurant_id: int, month_start: datetime, month_end: datetime) -> List[Tip]:
    """Completed tips for one restaurant in [month_start, month_end)."""
    return (
        db.query(Tip)
        .filter(
            Tip.restaurant_id == restaurant_id,
            Tip.payment_status == PaymentStatus.COMPLETED.value,
            Tip.created_at >= month_start,
            Tip.created_at < month_end,
        )
        .order_by(Tip.created_at.asc(), Tip.id.asc())
        .all()
    )


# ============================================
# Write path
# ============================================

def record_tip(
    db: Session,
    restaurant_id: int,
    amount: Number,
    tip_type: str,
    payment_method: str,
    waiter_id: Optional[int] = None,
    table_id: Optional[str] = None,
) -> Tip:
    """
    Create a pending tip with its commission split.

    Waiter tips need an active waiter of the same restaurant; restaurant
    tips must not name a waiter.
    """
    restaurant = get_restaurant(db, restaurant_id)

    try:
        kind = TipType(tip_type)
        method = PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(
            "Invalid tip type or payment method",
            details={"tip_type": tip_type, "payment_method": payment_method},
        )

    value = to_amount(amount)
    if value < MIN_TIP_AMOUNT or value > MAX_TIP_AMOUNT:
        raise ValidationError(
            f"Tip amount must be between {MIN_TIP_AMOUNT} and {MAX_TIP_AMOUNT}",
            details={"amount": str(value)},
        )

    if kind == TipType.WAITER:
        if waiter_id is None:
            raise ValidationError("waiter_id is required for waiter tips")
        waiter = get_waiter(db, waiter_id)
        if waiter.restaurant_id != restaurant.id or not waiter.is_active:
            raise ValidationError(
                "Waiter is not active at this restaurant",
                details={"waiter_id": waiter_id, "restaurant_id": restaurant_id},
            )
    elif waiter_id is not None:
        raise ValidationError("Restaurant tips cannot name a waiter", details={"waiter_id": waiter_id})

    rate = Decimal(restaurant.commission_rate)
    split = split_commission(value, rate)

    tip = Tip(
        restaurant_id=restaurant.id,
        waiter_id=waiter_id,
        table_id=table_id,
        amount=value,
        commission_rate=rate,
        commission_amount=split.commission_amount,
        net_amount=split.net_amount,
        tip_type=kind.value,
        payment_method=method.value,
        payment_status=PaymentStatus.PENDING.value,
    )
    db.add(tip)
    db.flush()

    logger.info(
        f"Tip {tip.id} recorded: {value} ({kind.value}) for restaurant {restaurant.id}, "
        f"commission {split.commission_amount} at {rate}%"
    )
    return tip


def update_tip_status(db: Session, tip_id: int, status: str, transaction_id: Optional[str] = None) -> Tip:
    """Move a tip along its payment lifecycle (gateway confirmation)."""
    tip = db.get(Tip, tip_id)
    if not tip:
        raise NotFoundError(f"Tip {tip_id} not found", details={"tip_id": tip_id})

    if status not in TIP_TRANSITIONS:
        raise ValidationError(f"Unknown payment status: {status}", details={"status": status})

    if status not in TIP_TRANSITIONS[tip.payment_status]:
        raise ConflictError(
            f"Tip {tip_id} cannot move from {tip.payment_status} to {status}",
            details={
                "current_status": tip.payment_status,
                "requested_status": status,
                "allowed_statuses": sorted(TIP_TRANSITIONS[tip.payment_status]),
            },
        )

    tip.payment_status = status
    if transaction_id:
        tip.transaction_id = transaction_id
    db.flush()

    logger.info(f"Tip {tip_id} -> {status}")
    return tip


def update_commission_rate(
    db: Session,
    restaurant_id: int,
    rate: Number,
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> Restaurant:
    """
    Change a restaurant's commission rate (0-50%).

    Existing tips keep the rate they were created with. Every change is
    recorded as a CommissionRateChange row.
    """
    restaurant = get_restaurant(db, restaurant_id)
    value = to_percentage(rate, field="commission_rate")
    if value > MAX_COMMISSION_RATE:
        raise ValidationError(
            f"Commission rate must be between 0 and {MAX_COMMISSION_RATE}",
            details={"commission_rate": str(value)},
        )

    old_rate = restaurant.commission_rate
    restaurant.commission_rate = value
    db.add(CommissionRateChange(
        restaurant_id=restaurant.id,
        old_rate=old_rate,
        new_rate=value,
        changed_by=changed_by,
        reason=reason,
    ))
    db.flush()

    logger.info(f"Restaurant {restaurant_id} commission rate {old_rate}% -> {value}%")
    return restaurant


def commission_rate_history(db: Session, restaurant_id: int) -> List[CommissionRateChange]:
    """Rate changes for a restaurant, newest first."""
    get_restaurant(db, restaurant_id)
    return (
        db.query(CommissionRateChange)
        .filter(CommissionRateChange.restaurant_id == restaurant_id)
        .order_by(CommissionRateChange.changed_at.desc(), CommissionRateChange.id.desc())
        .all()
    )
