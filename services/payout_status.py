"""
Payout Status State Machine

States: pending, processing, completed, failed.

    pending    -> processing, failed
    processing -> completed, failed
    completed  -> (terminal)
    failed     -> pending, processing   (operator retry only)

Manual edits arrive as a tagged update request: either a status change
(checked against ALLOWED_TRANSITIONS) or a reference update (provider
reference correction, status untouched).
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.models import Payout, PayoutStatus
from database.payout_store import PayoutStore
from services.errors import ConflictError, InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PayoutStatus.PENDING.value: frozenset({PayoutStatus.PROCESSING.value, PayoutStatus.FAILED.value}),
    PayoutStatus.PROCESSING.value: frozenset({PayoutStatus.COMPLETED.value, PayoutStatus.FAILED.value}),
    PayoutStatus.COMPLETED.value: frozenset(),
    PayoutStatus.FAILED.value: frozenset({PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value}),
}


def allowed_next(current: str) -> List[str]:
    """Sorted list of statuses reachable from `current`."""
    return sorted(ALLOWED_TRANSITIONS.get(current, frozenset()))


def check_transition(current: str, requested: str) -> None:
    """Raise InvalidTransition unless current -> requested is allowed."""
    if requested not in ALLOWED_TRANSITIONS:
        raise ValidationError(
            f"Unknown payout status: {requested}",
            details={"requested_status": requested, "valid_statuses": sorted(ALLOWED_TRANSITIONS)},
        )
    if requested not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, requested, allowed_next(current))


# ============================================
# Tagged update requests
# ============================================

class StatusChange(BaseModel):
    kind: Literal["status"] = "status"
    status: PayoutStatus
    transaction_reference: Optional[str] = Field(default=None, max_length=255)


class ReferenceUpdate(BaseModel):
    kind: Literal["reference"] = "reference"
    transaction_reference: str = Field(min_length=1, max_length=255)


class PayoutUpdateRequest(BaseModel):
    """Body of PATCH /payouts/{id}."""
    update: Union[StatusChange, ReferenceUpdate] = Field(discriminator="kind")


def apply_update(db: Session, payout_id: int, update: Union[StatusChange, ReferenceUpdate]) -> Payout:
    """
    Apply a manual update to one payout.

    Status changes are compare-and-set on the status read here, so a
    concurrent dispatcher move makes this call fail with ConflictError
    instead of overwriting it.
    """
    store = PayoutStore(db)
    payout = store.get(payout_id)
    current = payout.status

    if isinstance(update, ReferenceUpdate):
        if current == PayoutStatus.COMPLETED.value:
            raise InvalidTransition(current, current, allowed_next(current))
        store.conditional_update([payout_id], current, {"transaction_reference": update.transaction_reference})
        db.commit()
        db.refresh(payout)
        logger.info(f"Payout {payout_id}: reference updated")
        return payout

    requested = update.status.value
    check_transition(current, requested)

    patch = {"status": requested}
    if update.transaction_reference is not None:
        patch["transaction_reference"] = update.transaction_reference
    if requested == PayoutStatus.COMPLETED.value:
        patch["processed_at"] = datetime.utcnow()
    elif requested == PayoutStatus.PENDING.value:
        patch["processed_at"] = None

    updated = store.conditional_update([payout_id], current, patch)
    if not updated:
        db.rollback()
        raise ConflictError(
            f"Payout {payout_id} changed status while updating",
            details={"payout_id": payout_id},
        )
    db.commit()
    db.refresh(payout)

    logger.info(f"Payout {payout_id}: {current} -> {requested} (manual)")
    return payout
