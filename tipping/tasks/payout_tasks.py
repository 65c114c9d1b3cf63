"""
Celery tasks for monthly payouts

Each task opens its own DB session, builds the services it needs from
Settings and calls into the core; no payout logic lives here.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from database.db import SessionLocal, session_scope
from services.dispatcher import DisbursementDispatcher
from services.notifications import send_payout_notifications as run_notification_gate
from services.payout_calculator import generate_for_all_restaurants
from tipping.dependencies import get_bank_provider, get_mobile_provider, get_notifier, get_settings
from tipping.tasks.celery_app import app

logger = logging.getLogger(__name__)


def current_month(today: date) -> str:
    return today.strftime("%Y-%m")


def previous_month(today: date) -> str:
    if today.month == 1:
        return f"{today.year - 1}-12"
    return f"{today.year}-{today.month - 1:02d}"


def _dispatcher(db) -> DisbursementDispatcher:
    return DisbursementDispatcher(
        db, get_settings(), get_mobile_provider(), get_bank_provider(), notifier=get_notifier()
    )


@app.task(name="tipping.tasks.generate_monthly_payouts")
def generate_monthly_payouts(month: Optional[str] = None) -> Dict[str, Any]:
    """
    Generate pending payouts for every active restaurant.

    Args:
        month: YYYY-MM, defaults to the previous calendar month
    """
    month = month or previous_month(date.today())
    logger.info(f"Generating payouts for {month}")

    with session_scope(SessionLocal) as db:
        return generate_for_all_restaurants(db, month, get_settings())


@app.task(name="tipping.tasks.send_payout_notifications")
def send_payout_notifications(month: Optional[str] = None, on_date: Optional[str] = None) -> Dict[str, Any]:
    """
    Daily check: notify recipients of pending payouts when the gate opens.

    Args:
        month: YYYY-MM, defaults to the current month
        on_date: ISO date to evaluate instead of today
    """
    today = date.fromisoformat(on_date) if on_date else date.today()
    month = month or current_month(today)

    with session_scope(SessionLocal) as db:
        result = run_notification_gate(db, month, get_settings(), notifier=get_notifier(), today=today)

    logger.info(f"Notification check {month}: {result.message}")
    return result.model_dump(mode="json")


@app.task(name="tipping.tasks.process_payouts")
def process_payouts(payout_ids: List[int]) -> Dict[str, Any]:
    """Dispatch the given pending payouts (not retried automatically)."""
    with session_scope(SessionLocal) as db:
        result = _dispatcher(db).dispatch(payout_ids)

    logger.info(f"Payout task: {result.message}")
    return result.model_dump(mode="json")


@app.task(name="tipping.tasks.reconcile_processing_payouts")
def reconcile_processing_payouts() -> Dict[str, Any]:
    """Ask providers for the outcome of payouts still processing."""
    with session_scope(SessionLocal) as db:
        return _dispatcher(db).reconcile_processing()
