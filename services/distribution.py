"""
Distribution Configuration

Per-restaurant named groups that share restaurant-wide tips, plus the
bank accounts group payouts are sent to.

Rules for a group set:
- at least one group
- names non-empty, at most 50 characters, unique (case-insensitive)
- each percentage in [0, 100] with at most 2 decimals
- percentages sum to 100 (tolerance 0.01)

A set is validated as a whole before anything is written.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.models import BankAccount, DistributionGroup
from services.errors import NotFoundError, ValidationError
from services.money import HUNDRED, ZERO, Number, to_percentage
from services.tip_ledger import get_restaurant

logger = logging.getLogger(__name__)

SUM_TOLERANCE = Decimal("0.01")
MAX_GROUP_NAME_LENGTH = 50

DEFAULT_GROUPS: List[Tuple[str, Decimal]] = [
    ("Waiters", Decimal("60")),
    ("Kitchen Staff", Decimal("20")),
    ("Cleaners", Decimal("10")),
    ("Management", Decimal("10")),
]


class GroupInput(BaseModel):
    group_name: str
    percentage: Decimal
    phone_number: Optional[str] = None  # M-Pesa destination when groups are paid by mobile money


class BankAccountInput(BaseModel):
    group_name: str = Field(min_length=1, max_length=MAX_GROUP_NAME_LENGTH)
    account_name: str = Field(min_length=1, max_length=255)
    account_number: str = Field(min_length=8, max_length=50)
    bank_name: str = Field(min_length=1, max_length=255)
    bank_code: str = Field(min_length=3, max_length=20)
    branch_code: Optional[str] = None


# ============================================
# Group validation
# ============================================

def percentages_sum_to_100(percentages: Sequence[Number]) -> bool:
    total = sum((Decimal(str(p)) for p in percentages), ZERO)
    return abs(total - HUNDRED) <= SUM_TOLERANCE


def validate_groups(groups: Sequence[GroupInput]) -> List[GroupInput]:
    """
    Validate a complete group set.

    Returns:
        The groups with names stripped and percentages quantized

    Raises:
        ValidationError listing every problem found
    """
    errors = []
    cleaned = []
    seen = set()

    if not groups:
        raise ValidationError("At least one distribution group is required", details={"errors": []})

    for index, group in enumerate(groups):
        name = (group.group_name or "").strip()
        if not name:
            errors.append(f"Group {index + 1}: name is required")
        elif len(name) > MAX_GROUP_NAME_LENGTH:
            errors.append(f"Group {index + 1}: name must be {MAX_GROUP_NAME_LENGTH} characters or less")
        elif name.lower() in seen:
            errors.append(f"Duplicate group name: {name}")
        seen.add(name.lower())

        try:
            pct = to_percentage(group.percentage)
        except ValidationError as e:
            errors.append(f"Group {index + 1}: {e.message}")
            continue

        cleaned.append(GroupInput(group_name=name, percentage=pct, phone_number=group.phone_number))

    if not errors and not percentages_sum_to_100([g.percentage for g in cleaned]):
        total = sum((g.percentage for g in cleaned), ZERO)
        errors.append(f"Percentages must sum to 100 (got {total})")

    if errors:
        raise ValidationError("Invalid distribution groups", details={"errors": errors})
    return cleaned


# ============================================
# Group persistence
# ============================================

def list_groups(db: Session, restaurant_id: int, active_only: bool = True) -> List[DistributionGroup]:
    query = db.query(DistributionGroup).filter(DistributionGroup.restaurant_id == restaurant_id)
    if active_only:
        query = query.filter(DistributionGroup.is_active.is_(True))
    return query.order_by(DistributionGroup.id.asc()).all()


def create_default_groups(db: Session, restaurant_id: int) -> List[DistributionGroup]:
    """Seed the onboarding defaults (no-op if the restaurant already has groups)."""
    get_restaurant(db, restaurant_id)
    existing = list_groups(db, restaurant_id, active_only=False)
    if existing:
        return [g for g in existing if g.is_active]

    groups = [
        DistributionGroup(restaurant_id=restaurant_id, group_name=name, percentage=pct)
        for name, pct in DEFAULT_GROUPS
    ]
    db.add_all(groups)
    db.flush()
    logger.info(f"Default distribution groups created for restaurant {restaurant_id}")
    return groups


def replace_groups(db: Session, restaurant_id: int, groups: Sequence[GroupInput]) -> List[DistributionGroup]:
    """Replace a restaurant's whole group set after validating it."""
    get_restaurant(db, restaurant_id)
    cleaned = validate_groups(groups)

    for group in list_groups(db, restaurant_id, active_only=False):
        db.delete(group)
    db.flush()

    rows = [
        DistributionGroup(
            restaurant_id=restaurant_id,
            group_name=g.group_name,
            percentage=g.percentage,
            phone_number=g.phone_number,
        )
        for g in cleaned
    ]
    db.add_all(rows)
    db.flush()

    logger.info(f"Restaurant {restaurant_id}: {len(rows)} distribution groups saved")
    return rows


def load_valid_groups(db: Session, restaurant_id: int) -> List[DistributionGroup]:
    """
    Active groups for aggregation.

    Raises ValidationError when the restaurant has no groups or they don't
    sum to 100, so restaurant-wide tips are never partially distributed.
    """
    groups = list_groups(db, restaurant_id)
    if not groups:
        raise ValidationError(
            "Restaurant has no distribution groups configured",
            details={"restaurant_id": restaurant_id},
        )
    if not percentages_sum_to_100([g.percentage for g in groups]):
        total = sum((Decimal(g.percentage) for g in groups), ZERO)
        raise ValidationError(
            f"Distribution groups must sum to 100% (currently {total}%)",
            details={"restaurant_id": restaurant_id, "total_percentage": str(total)},
        )
    return groups


# ============================================
# Bank accounts
# ============================================

def get_bank_account(db: Session, restaurant_id: int, group_name: str) -> Optional[BankAccount]:
    """Active bank account for a group, or None."""
    return (
        db.query(BankAccount)
        .filter(
            BankAccount.restaurant_id == restaurant_id,
            BankAccount.group_name == group_name,
            BankAccount.is_active.is_(True),
        )
        .first()
    )


def list_bank_accounts(db: Session, restaurant_id: int) -> List[BankAccount]:
    return (
        db.query(BankAccount)
        .filter(BankAccount.restaurant_id == restaurant_id)
        .order_by(BankAccount.group_name.asc())
        .all()
    )


def register_bank_account(db: Session, restaurant_id: int, data: BankAccountInput) -> BankAccount:
    """
    Register (or replace) the bank account of one distribution group.

    One account per (restaurant, group); registering again overwrites the
    details and reactivates it.
    """
    get_restaurant(db, restaurant_id)
    group_names = {g.group_name for g in list_groups(db, restaurant_id)}
    if data.group_name not in group_names:
        raise ValidationError(
            f"Unknown distribution group: {data.group_name}",
            details={"group_name": data.group_name, "groups": sorted(group_names)},
        )

    account = (
        db.query(BankAccount)
        .filter(BankAccount.restaurant_id == restaurant_id, BankAccount.group_name == data.group_name)
        .first()
    )
    if account is None:
        account = BankAccount(restaurant_id=restaurant_id, group_name=data.group_name)
        db.add(account)

    account.account_name = data.account_name.strip()
    account.account_number = data.account_number.strip()
    account.bank_name = data.bank_name.strip()
    account.bank_code = data.bank_code.strip()
    account.branch_code = data.branch_code
    account.is_active = True
    db.flush()

    # Never log the full account number
    logger.info(
        f"Bank account ****{account.account_number[-4:]} registered for "
        f"restaurant {restaurant_id} group '{data.group_name}'"
    )
    return account


def deactivate_bank_account(db: Session, restaurant_id: int, account_id: int) -> BankAccount:
    account = db.get(BankAccount, account_id)
    if not account or account.restaurant_id != restaurant_id:
        raise NotFoundError(f"Bank account {account_id} not found", details={"account_id": account_id})

    account.is_active = False
    db.flush()
    logger.info(f"Bank account {account_id} deactivated")
    return account
