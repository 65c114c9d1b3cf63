"""
Payout Notifications

Two kinds of messages go to payout recipients:

- "upcoming": the date-gated reminder. It fires only on the day that is
  N days before the last day of the billing month (default N=3, so
  2024-01-28 for 2024-01), once per recipient (not per payout line).
  On any other day nothing is sent.
- "completed" / "failed": sent by the dispatcher when a payout reaches
  that status.

Notifications are fire-and-forget: failures are logged, never retried and
never change a payout.
"""

import calendar
import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Dict, Optional, Protocol, Tuple

from pydantic import BaseModel
from sqlalchemy.orm import Session

from database.models import Payout, PayoutStatus, PayoutType
from database.payout_store import PayoutStore
from services.config import Settings
from services.money import sum_amounts
from services.tip_ledger import month_window

logger = logging.getLogger(__name__)

NOT_YET = "Not the notification date yet"

UPCOMING = "upcoming"
COMPLETED = PayoutStatus.COMPLETED.value
FAILED = PayoutStatus.FAILED.value


class Notifier(Protocol):
    def notify(self, recipient_type: str, recipient_id: str, amount: Decimal, month: str, kind: str = UPCOMING) -> None:
        ...


class LoggingNotifier:
    """Default channel: writes the notification to the log."""

    def notify(self, recipient_type: str, recipient_id: str, amount: Decimal, month: str, kind: str = UPCOMING) -> None:
        if kind == UPCOMING:
            logger.info(f"Payout notification: {recipient_type} {recipient_id} will receive {amount} for {month}")
        elif kind == COMPLETED:
            logger.info(f"Payout notification: {recipient_type} {recipient_id} was paid {amount} for {month}")
        else:
            logger.info(f"Payout notification: {amount} for {month} to {recipient_type} {recipient_id} failed")


class NotificationResult(BaseModel):
    notifications_sent: int
    notification_date: date
    message: str


def recipient_of(payout: Payout) -> Tuple[str, str]:
    """(recipient_type, recipient_id) the notification goes to."""
    if payout.payout_type == PayoutType.WAITER.value:
        return PayoutType.WAITER.value, str(payout.waiter_id)
    return PayoutType.GROUP.value, f"{payout.restaurant_id}:{payout.group_name}"


def notify_payout_outcome(notifier: Notifier, payout: Payout, kind: str) -> bool:
    """Tell the recipient a payout completed or failed. False if the send failed."""
    recipient_type, recipient_id = recipient_of(payout)
    try:
        notifier.notify(recipient_type, recipient_id, payout.amount, payout.payout_month, kind=kind)
    except Exception as e:
        logger.warning(f"{kind.capitalize()} notification for payout {payout.id} failed: {str(e)}")
        return False
    return True


def notification_date(month: str, days_before_end: int) -> date:
    start, _ = month_window(month)
    last_day = calendar.monthrange(start.year, start.month)[1]
    return date(start.year, start.month, last_day - days_before_end)


def send_payout_notifications(
    db: Session,
    month: str,
    settings: Settings,
    notifier: Optional[Notifier] = None,
    today: Optional[date] = None,
) -> NotificationResult:
    """
    Notify recipients of pending payouts for `month` if today is the day.

    Notification failures are logged and not counted; they are not retried.
    """
    target = notification_date(month, settings.notification_days_before_month_end)
    today = today or date.today()

    if today != target:
        return NotificationResult(notifications_sent=0, notification_date=target, message=NOT_YET)

    notifier = notifier or LoggingNotifier()
    payouts = PayoutStore(db).list(month=month, status=PayoutStatus.PENDING.value)

    # (recipient_type, recipient_id) -> amounts, first-seen order
    recipients: Dict[tuple, list] = OrderedDict()
    for payout in payouts:
        if payout.amount < settings.minimum_payout:
            continue
        recipients.setdefault(recipient_of(payout), []).append(payout.amount)

    sent = 0
    for (recipient_type, recipient_id), amounts in recipients.items():
        try:
            notifier.notify(recipient_type, recipient_id, sum_amounts(amounts), month)
            sent += 1
        except Exception as e:
            logger.warning(f"Notification to {recipient_type} {recipient_id} failed: {str(e)}")

    logger.info(f"Payout notifications for {month}: {sent} of {len(recipients)} sent")
    return NotificationResult(
        notifications_sent=sent,
        notification_date=target,
        message=f"Sent {sent} payout notifications",
    )
