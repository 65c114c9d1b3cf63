"""
Tipping Platform Celery Application
Runs the periodic payout jobs: monthly generation, the notification check,
reconciliation of payouts still processing, and on-demand dispatch.
"""

import os
from celery import Celery
from celery.schedules import crontab
from dotenv import load_dotenv

load_dotenv()

# Initialize Celery with Redis as broker and backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

app = Celery(
    "tipping_tasks",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=['tipping.tasks.payout_tasks']
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Nairobi",
    enable_utc=True,

    # Result backend settings
    result_expires=86400,  # Keep payout run summaries for a day
    result_extended=True,  # Store task args, kwargs, result

    # Task execution settings
    task_track_started=True,
    task_time_limit=1800,  # Bulk payouts pause between provider calls
    task_soft_time_limit=1500,

    # Worker settings
    worker_prefetch_multiplier=1,

    # A payout task must not run twice because a worker died mid-dispatch
    task_acks_late=False,
)

app.conf.task_routes = {
    "tipping.tasks.process_payouts": {"queue": "payouts"},
    "tipping.tasks.generate_monthly_payouts": {"queue": "payouts"},
    "tipping.tasks.reconcile_processing_payouts": {"queue": "payouts"},
    "tipping.tasks.send_payout_notifications": {"queue": "notifications"},
}

# Periodic task schedule (Celery Beat)
app.conf.beat_schedule = {
    'generate-monthly-payouts': {
        'task': 'tipping.tasks.generate_monthly_payouts',
        'schedule': crontab(day_of_month=1, hour=1, minute=0),  # Previous month, 1:00 AM on the 1st
        'options': {'queue': 'payouts'}
    },
    'payout-notifications-daily': {
        'task': 'tipping.tasks.send_payout_notifications',
        'schedule': crontab(hour=9, minute=0),  # Gate decides whether today is the day
        'options': {'queue': 'notifications'}
    },
    'reconcile-processing-payouts-hourly': {
        'task': 'tipping.tasks.reconcile_processing_payouts',
        'schedule': crontab(minute=15),
        'options': {'queue': 'payouts'}
    },
}

if __name__ == "__main__":
    app.start()
