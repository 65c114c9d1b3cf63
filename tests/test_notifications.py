"""
Tests for the payout notification gate.
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import RecordingNotifier, make_payout
from services.config import Settings
from services.errors import ValidationError
from services.notifications import NOT_YET, notification_date, send_payout_notifications


@pytest.fixture
def eligible(db, restaurant, waiters):
    """Two pending payouts for January plus noise that must not notify."""
    make_payout(db, restaurant, "900.00", waiter_id=waiters[0].id)
    make_payout(db, restaurant, "720.00", payout_type="group", group_name="admin")
    make_payout(db, restaurant, "500.00", waiter_id=waiters[1].id, status="completed")
    make_payout(db, restaurant, "400.00", month="2024-02", waiter_id=waiters[1].id)
    return restaurant


class TestNotificationDate:

    @pytest.mark.parametrize("month, days, expected", [
        ("2024-01", 3, date(2024, 1, 28)),
        ("2024-02", 3, date(2024, 2, 26)),  # leap year
        ("2023-02", 3, date(2023, 2, 25)),
        ("2024-04", 0, date(2024, 4, 30)),
    ])
    def test_days_before_month_end(self, month, days, expected):
        assert notification_date(month, days) == expected

    def test_bad_month(self):
        with pytest.raises(ValidationError):
            notification_date("2024-1", 3)


class TestSendPayoutNotifications:

    def test_wrong_day_sends_nothing(self, db, eligible, settings):
        notifier = RecordingNotifier()

        result = send_payout_notifications(db, "2024-01", settings, notifier, today=date(2024, 1, 15))

        assert result.notifications_sent == 0
        assert result.message == NOT_YET
        assert result.notification_date == date(2024, 1, 28)
        assert notifier.sent == []

    def test_notification_day_sends_one_per_recipient(self, db, eligible, waiters, settings):
        notifier = RecordingNotifier()

        result = send_payout_notifications(db, "2024-01", settings, notifier, today=date(2024, 1, 28))

        assert result.notifications_sent == 2
        assert result.message == "Sent 2 payout notifications"
        assert notifier.sent == [
            ("waiter", str(waiters[0].id), Decimal("900.00"), "2024-01"),
            ("group", f"{eligible.id}:admin", Decimal("720.00"), "2024-01"),
        ]

    def test_amounts_below_minimum_are_not_announced(self, db, restaurant, waiters):
        make_payout(db, restaurant, "150.00", waiter_id=waiters[0].id)
        notifier = RecordingNotifier()
        settings = Settings(minimum_payout=Decimal("200"))

        result = send_payout_notifications(db, "2024-01", settings, notifier, today=date(2024, 1, 28))

        assert result.notifications_sent == 0
        assert notifier.sent == []

    def test_failed_notification_not_counted(self, db, eligible, waiters, settings):
        notifier = RecordingNotifier(fail_for={str(waiters[0].id)})

        result = send_payout_notifications(db, "2024-01", settings, notifier, today=date(2024, 1, 28))

        assert result.notifications_sent == 1
        assert [s[0] for s in notifier.sent] == ["group"]

    def test_custom_offset(self, db, eligible):
        settings = Settings(notification_days_before_month_end=5)
        result = send_payout_notifications(db, "2024-01", settings, RecordingNotifier(), today=date(2024, 1, 26))
        assert result.notifications_sent == 2
