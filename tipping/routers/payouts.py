"""
Payout Router - Monthly Tip Payouts

Calculates, generates, dispatches and tracks monthly payouts to waiters
(M-Pesa B2C) and distribution groups (bank transfer or M-Pesa).

Endpoints:
- POST /restaurants/{id}/payouts/calculate - Preview payout lines for a month
- POST /restaurants/{id}/payouts/generate - Create pending payouts for a month
- GET /restaurants/{id}/payouts - List payouts with filters
- GET /restaurants/{id}/payouts/summary - Processing status for a month
- GET /payouts/{id} - Get payout details
- PATCH /payouts/{id} - Manual status or reference update
- DELETE /payouts/{id} - Delete a pending payout
- POST /payouts/process - Dispatch pending payouts
- POST /payouts/retry - Retry failed payouts
- POST /payouts/reconcile - Query providers for payouts still processing
- POST /payouts/notifications - Send upcoming-payout notifications
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import date, datetime
from decimal import Decimal
import logging

from database.db import get_db
from database.payout_store import PayoutStore
from services.config import Settings
from services.dispatcher import DisbursementDispatcher, DispatchResult
from services.errors import PayoutError
from services.notifications import NotificationResult, Notifier, send_payout_notifications
from services.payout_calculator import (
    PayoutCalculation, calculate_monthly_payouts, generate_payout_records, monthly_summary
)
from services.payout_status import PayoutUpdateRequest, apply_update
from services.tip_ledger import get_restaurant, month_window
from tipping.dependencies import get_dispatcher, get_notifier, get_settings

router = APIRouter(tags=["Payouts"])
logger = logging.getLogger(__name__)


class MonthRequest(BaseModel):
    month: str = Field(..., pattern=r'^\d{4}-\d{2}$')


class PayoutIdsRequest(BaseModel):
    payout_ids: List[int] = Field(..., min_length=1)


class NotificationRequest(MonthRequest):
    on_date: Optional[date] = None  # Defaults to today


class PayoutResponse(BaseModel):
    """Payout response schema."""
    id: int
    restaurant_id: int
    payout_type: str
    waiter_id: Optional[int]
    group_name: Optional[str]
    channel: str
    amount: Decimal
    payout_month: str
    status: str
    recipient_phone: Optional[str]
    transaction_reference: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class GenerateResponse(BaseModel):
    payout_ids: List[int]
    count: int
    total_amount: Decimal
    message: str


# ============================================
# Restaurant-scoped
# ============================================

@router.post("/restaurants/{restaurant_id}/payouts/calculate", response_model=PayoutCalculation)
def calculate_payouts(
    restaurant_id: int,
    body: MonthRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Preview waiter and group payout lines for a month.

    Nothing is written. Lines below the minimum payout are listed under
    `below_minimum`.
    """
    return calculate_monthly_payouts(db, restaurant_id, body.month, settings)


@router.post("/restaurants/{restaurant_id}/payouts/generate", response_model=GenerateResponse, status_code=201)
def generate_payouts(
    restaurant_id: int,
    body: MonthRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Create pending payouts for a month.

    Returns 409 with the existing count if the month was already generated.
    """
    calculation = calculate_monthly_payouts(db, restaurant_id, body.month, settings)
    payouts = generate_payout_records(db, restaurant_id, body.month, calculation)
    db.commit()

    return GenerateResponse(
        payout_ids=[p.id for p in payouts],
        count=len(payouts),
        total_amount=calculation.total_amount,
        message=f"Generated {len(payouts)} payouts for {body.month}",
    )


@router.get("/restaurants/{restaurant_id}/payouts", response_model=List[PayoutResponse])
def list_restaurant_payouts(
    restaurant_id: int,
    month: Optional[str] = Query(None, pattern=r'^\d{4}-\d{2}$'),
    status: Optional[str] = None,
    payout_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """List a restaurant's payouts, newest first."""
    get_restaurant(db, restaurant_id)
    return PayoutStore(db).list(
        restaurant_id=restaurant_id,
        month=month,
        status=status,
        payout_type=payout_type,
        descending=True,
    )


@router.get("/restaurants/{restaurant_id}/payouts/summary")
def get_payout_summary(
    restaurant_id: int,
    month: str = Query(..., pattern=r'^\d{4}-\d{2}$'),
    db: Session = Depends(get_db),
):
    """Counts and amounts per status and payout type for a month."""
    return monthly_summary(db, restaurant_id, month)


# ============================================
# Payout-scoped
# ============================================

@router.post("/payouts/process", response_model=DispatchResult)
def process_payouts(body: PayoutIdsRequest, dispatcher: DisbursementDispatcher = Depends(get_dispatcher)):
    """
    Send pending payouts through their providers.

    Per-payout failures are reported in `results`; payouts that are not
    pending are skipped with a reason.
    """
    try:
        return dispatcher.dispatch(body.payout_ids)
    except (HTTPException, PayoutError):
        raise
    except Exception as e:
        logger.error(f"Payout processing error: {str(e)}")
        raise HTTPException(status_code=500, detail="Payout processing failed")


@router.post("/payouts/retry", response_model=DispatchResult)
def retry_payouts(body: PayoutIdsRequest, dispatcher: DisbursementDispatcher = Depends(get_dispatcher)):
    """Reset failed payouts to pending and send them again."""
    try:
        return dispatcher.retry_failed_payouts(body.payout_ids)
    except (HTTPException, PayoutError):
        raise
    except Exception as e:
        logger.error(f"Payout retry error: {str(e)}")
        raise HTTPException(status_code=500, detail="Payout retry failed")


@router.post("/payouts/reconcile")
def reconcile_payouts(
    restaurant_id: Optional[int] = None,
    dispatcher: DisbursementDispatcher = Depends(get_dispatcher),
):
    """Ask providers for the outcome of payouts still processing."""
    return dispatcher.reconcile_processing(restaurant_id)


@router.post("/payouts/notifications", response_model=NotificationResult)
def notify_payouts(
    body: NotificationRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    """Send upcoming-payout notifications if today is the notification day."""
    month_window(body.month)
    return send_payout_notifications(db, body.month, settings, notifier=notifier, today=body.on_date)


@router.get("/payouts/{payout_id}", response_model=PayoutResponse)
def get_payout(payout_id: int, db: Session = Depends(get_db)):
    """Get payout details."""
    return PayoutStore(db).get(payout_id)


@router.patch("/payouts/{payout_id}", response_model=PayoutResponse)
def update_payout(payout_id: int, body: PayoutUpdateRequest, db: Session = Depends(get_db)):
    """
    Manual payout update.

    Body is either a status change or a reference update:
    ```json
    {"update": {"kind": "status", "status": "failed", "transaction_reference": "ERROR: bounced"}}
    {"update": {"kind": "reference", "transaction_reference": "QH1234567890"}}
    ```
    Disallowed transitions return 409 with `allowed_statuses`.
    """
    return apply_update(db, payout_id, body.update)


@router.delete("/payouts/{payout_id}", status_code=204)
def delete_payout(payout_id: int, db: Session = Depends(get_db)):
    """Delete a payout that is still pending."""
    PayoutStore(db).delete_pending(payout_id)
    db.commit()
