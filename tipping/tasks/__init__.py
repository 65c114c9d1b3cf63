"""Payout background tasks package"""
from tipping.tasks.celery_app import app
from tipping.tasks.payout_tasks import (
    generate_monthly_payouts,
    send_payout_notifications,
    process_payouts,
    reconcile_processing_payouts
)

__all__ = [
    'app',
    'generate_monthly_payouts',
    'send_payout_notifications',
    'process_payouts',
    'reconcile_processing_payouts'
]
