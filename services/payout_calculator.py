"""
Payout Aggregator

Turns one month of completed tips into payout line items and then into
pending Payout rows.

Calculation (read-only):
1. Waiter tips are summed per waiter (net amounts). A waiter whose net
   total is below the minimum payout gets no line this month; the balance
   is not carried forward.
2. Restaurant tips are summed into one pool and split across the active
   distribution groups with money.distribute(). Groups must sum to 100%
   or the whole calculation fails. Group lines below the minimum are
   dropped the same way.

Generation (writes):
- Refuses with AlreadyGenerated if any payout exists for the restaurant
  and month; otherwise inserts one pending payout per line.
"""

import json
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import (
    Payout, PayoutChannel, PayoutStatus, PayoutType, Restaurant, TipType
)
from database.payout_store import PayoutStore
from services.config import Settings
from services.distribution import get_bank_account, load_valid_groups
from services.errors import AlreadyGenerated, PayoutError, ValidationError
from services.money import ZERO, distribute, money2, sum_amounts
from services.tip_ledger import get_restaurant, get_waiter, list_completed_tips, month_window

logger = logging.getLogger(__name__)


# ============================================
# Calculation result
# ============================================

class WaiterPayoutLine(BaseModel):
    waiter_id: int
    waiter_name: str
    phone_number: Optional[str] = None
    total_tips: Decimal
    commission_amount: Decimal
    amount: Decimal  # Net, what gets paid
    tip_count: int


class GroupPayoutLine(BaseModel):
    group_name: str
    percentage: Decimal
    commission_amount: Decimal
    amount: Decimal


class BelowMinimum(BaseModel):
    recipient_key: str
    amount: Decimal


class PayoutCalculation(BaseModel):
    restaurant_id: int
    month: str
    minimum_payout: Decimal
    waiter_payouts: List[WaiterPayoutLine] = []
    group_payouts: List[GroupPayoutLine] = []
    below_minimum: List[BelowMinimum] = []
    restaurant_pool: Decimal = ZERO  # Net restaurant-wide tips before the group split
    total_amount: Decimal = ZERO  # Sum of emitted lines
    commission_deducted: Decimal = ZERO  # Commission behind the emitted lines


def waiter_key(waiter_id: int) -> str:
    return f"waiter:{waiter_id}"


def group_key(group_name: str) -> str:
    return f"group:{group_name}"


def calculate_monthly_payouts(db: Session, restaurant_id: int, month: str, settings: Settings) -> PayoutCalculation:
    """
    Compute waiter and group payout lines for one restaurant and month.

    Raises:
        ValidationError: bad month, or restaurant tips exist but the
            distribution groups are missing or don't sum to 100%
        NotFoundError: unknown restaurant
    """
    month_start, month_end = month_window(month)
    get_restaurant(db, restaurant_id)
    minimum = settings.minimum_payout

    tips = list_completed_tips(db, restaurant_id, month_start, month_end)
    result = PayoutCalculation(restaurant_id=restaurant_id, month=month, minimum_payout=minimum)

    # Waiter tips, first-seen order
    per_waiter: Dict[int, list] = OrderedDict()
    restaurant_tips = []
    for tip in tips:
        if tip.tip_type == TipType.WAITER.value and tip.waiter_id is not None:
            per_waiter.setdefault(tip.waiter_id, []).append(tip)
        elif tip.tip_type == TipType.RESTAURANT.value:
            restaurant_tips.append(tip)

    for waiter_id, waiter_tips in per_waiter.items():
        net = sum_amounts(t.net_amount for t in waiter_tips)
        if net < minimum:
            logger.warning(
                f"Restaurant {restaurant_id} {month}: waiter {waiter_id} net {net} below minimum {minimum}, no payout"
            )
            result.below_minimum.append(BelowMinimum(recipient_key=waiter_key(waiter_id), amount=net))
            continue

        waiter = get_waiter(db, waiter_id)
        result.waiter_payouts.append(WaiterPayoutLine(
            waiter_id=waiter_id,
            waiter_name=waiter.name,
            phone_number=waiter.phone_number,
            total_tips=sum_amounts(t.amount for t in waiter_tips),
            commission_amount=sum_amounts(t.commission_amount for t in waiter_tips),
            amount=net,
            tip_count=len(waiter_tips),
        ))

    # Restaurant-wide pool
    pool = sum_amounts(t.net_amount for t in restaurant_tips)
    pool_commission = sum_amounts(t.commission_amount for t in restaurant_tips)
    result.restaurant_pool = pool

    if pool > 0:
        groups = load_valid_groups(db, restaurant_id)
        shares = distribute(pool, [(g.group_name, g.percentage) for g in groups])
        for group, share in zip(groups, shares):
            if share.amount < minimum:
                logger.warning(
                    f"Restaurant {restaurant_id} {month}: group '{share.name}' share {share.amount} "
                    f"below minimum {minimum}, no payout"
                )
                result.below_minimum.append(BelowMinimum(recipient_key=group_key(share.name), amount=share.amount))
                continue

            pct = Decimal(group.percentage)
            result.group_payouts.append(GroupPayoutLine(
                group_name=share.name,
                percentage=pct,
                commission_amount=money2(pool_commission * pct / Decimal("100")),
                amount=share.amount,
            ))

    result.total_amount = sum_amounts(
        [line.amount for line in result.waiter_payouts] + [line.amount for line in result.group_payouts]
    )
    result.commission_deducted = sum_amounts(
        [line.commission_amount for line in result.waiter_payouts]
        + [line.commission_amount for line in result.group_payouts]
    )

    logger.info(
        f"Restaurant {restaurant_id} {month}: {len(result.waiter_payouts)} waiter and "
        f"{len(result.group_payouts)} group payouts, total {result.total_amount}"
    )
    return result


# ============================================
# Generation
# ============================================

def _group_destination(db: Session, restaurant: Restaurant, group_name: str):
    """(channel, phone, account_json) for a group payout."""
    channel = restaurant.group_payout_channel or PayoutChannel.BANK.value
    if channel == PayoutChannel.MPESA.value:
        phone = None
        for group in restaurant.distribution_groups:
            if group.group_name == group_name and group.is_active:
                phone = group.phone_number
        return channel, phone, None

    # Bank accounts are re-checked at dispatch time
    account = get_bank_account(db, restaurant.id, group_name)
    return channel, None, json.dumps(account.as_recipient()) if account else None


def generate_payout_records(
    db: Session, restaurant_id: int, month: str, calculation: PayoutCalculation
) -> List[Payout]:
    """
    Insert one pending payout per calculated line.

    The caller commits. A concurrent generation for the same month trips
    the (restaurant, month, recipient) unique constraint and is reported
    as AlreadyGenerated as well.
    """
    month_window(month)
    if calculation.restaurant_id != restaurant_id or calculation.month != month:
        raise ValidationError(
            "Calculation does not match restaurant and month",
            details={"restaurant_id": restaurant_id, "month": month},
        )

    restaurant = get_restaurant(db, restaurant_id)
    store = PayoutStore(db)

    existing = store.count(restaurant_id, month)
    if existing:
        raise AlreadyGenerated(restaurant_id, month, existing)

    payouts = []
    for line in calculation.waiter_payouts:
        payouts.append(Payout(
            restaurant_id=restaurant_id,
            payout_type=PayoutType.WAITER.value,
            waiter_id=line.waiter_id,
            recipient_key=waiter_key(line.waiter_id),
            channel=PayoutChannel.MPESA.value,
            amount=line.amount,
            payout_month=month,
            recipient_phone=line.phone_number,
            status=PayoutStatus.PENDING.value,
        ))

    for line in calculation.group_payouts:
        channel, phone, account = _group_destination(db, restaurant, line.group_name)
        payouts.append(Payout(
            restaurant_id=restaurant_id,
            payout_type=PayoutType.GROUP.value,
            group_name=line.group_name,
            recipient_key=group_key(line.group_name),
            channel=channel,
            amount=line.amount,
            payout_month=month,
            recipient_phone=phone,
            recipient_account=account,
            status=PayoutStatus.PENDING.value,
        ))

    if not payouts:
        logger.info(f"Restaurant {restaurant_id} {month}: nothing to generate")
        return []

    try:
        store.insert_many(payouts)
    except IntegrityError:
        db.rollback()
        raise AlreadyGenerated(restaurant_id, month, store.count(restaurant_id, month))

    logger.info(f"Restaurant {restaurant_id} {month}: generated {len(payouts)} pending payouts")
    return payouts


def generate_for_all_restaurants(db: Session, month: str, settings: Settings) -> Dict:
    """
    Calculate and generate payouts for every active restaurant.

    Commits per restaurant. Restaurants already generated are skipped and
    per-restaurant errors are collected without stopping the run.
    """
    month_window(month)
    restaurants = (
        db.query(Restaurant)
        .filter(Restaurant.is_active.is_(True))
        .order_by(Restaurant.id.asc())
        .all()
    )
    restaurant_ids = [r.id for r in restaurants]

    summary = {
        "month": month,
        "restaurants_processed": 0,
        "payouts_created": 0,
        "skipped": [],
        "errors": [],
    }

    for restaurant_id in restaurant_ids:
        try:
            calculation = calculate_monthly_payouts(db, restaurant_id, month, settings)
            created = generate_payout_records(db, restaurant_id, month, calculation)
            db.commit()
        except AlreadyGenerated:
            db.rollback()
            summary["skipped"].append(restaurant_id)
            continue
        except PayoutError as e:
            db.rollback()
            logger.error(f"Restaurant {restaurant_id} {month}: payout generation failed: {e.message}")
            summary["errors"].append({"restaurant_id": restaurant_id, "error": e.message})
            continue

        summary["restaurants_processed"] += 1
        summary["payouts_created"] += len(created)

    logger.info(
        f"Monthly generation {month}: {summary['restaurants_processed']} restaurants, "
        f"{summary['payouts_created']} payouts, {len(summary['skipped'])} skipped, "
        f"{len(summary['errors'])} errors"
    )
    return summary


def monthly_summary(db: Session, restaurant_id: int, month: str) -> Dict:
    """Processing status of one restaurant's payouts for a month."""
    month_window(month)
    get_restaurant(db, restaurant_id)
    payouts = PayoutStore(db).list(restaurant_id=restaurant_id, month=month)

    by_status = {s.value: {"count": 0, "amount": ZERO} for s in PayoutStatus}
    by_type = {t.value: {"count": 0, "amount": ZERO} for t in PayoutType}
    for payout in payouts:
        amount = Decimal(payout.amount)
        by_status[payout.status]["count"] += 1
        by_status[payout.status]["amount"] = money2(by_status[payout.status]["amount"] + amount)
        by_type[payout.payout_type]["count"] += 1
        by_type[payout.payout_type]["amount"] = money2(by_type[payout.payout_type]["amount"] + amount)

    return {
        "restaurant_id": restaurant_id,
        "month": month,
        "total_payouts": len(payouts),
        "total_amount": sum_amounts(p.amount for p in payouts),
        "by_status": by_status,
        "by_type": by_type,
        "all_completed": bool(payouts) and by_status[PayoutStatus.COMPLETED.value]["count"] == len(payouts),
    }
