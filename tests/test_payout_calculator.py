"""
Tests for monthly payout calculation and generation.
"""

import json
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import add_completed_tip, make_payout
from database.models import BankAccount, Payout, Restaurant, Waiter
from services.errors import AlreadyGenerated, NotFoundError, ValidationError
from services.payout_calculator import (
    calculate_monthly_payouts, generate_for_all_restaurants, generate_payout_records, monthly_summary
)


@pytest.fixture
def standard_month(db, restaurant, waiters, groups):
    """One 1000 waiter tip and one 2000 restaurant tip at 10% commission."""
    add_completed_tip(db, restaurant, "1000", waiter=waiters[0])
    add_completed_tip(db, restaurant, "2000")
    return restaurant


class TestCalculateMonthlyPayouts:
    """Waiter net totals plus the restaurant pool split by group."""

    def test_standard_month(self, db, standard_month, waiters, settings):
        calc = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)

        assert len(calc.waiter_payouts) == 1
        line = calc.waiter_payouts[0]
        assert line.waiter_id == waiters[0].id
        assert line.total_tips == Decimal("1000.00")
        assert line.commission_amount == Decimal("100.00")
        assert line.amount == Decimal("900.00")
        assert line.tip_count == 1

        assert {g.group_name: g.amount for g in calc.group_payouts} == {
            "cleaners": Decimal("180.00"),
            "waiters": Decimal("540.00"),
            "admin": Decimal("720.00"),
            "owners": Decimal("360.00"),
        }
        assert calc.restaurant_pool == Decimal("1800.00")
        assert sum(g.amount for g in calc.group_payouts) == Decimal("1800.00")
        assert calc.total_amount == Decimal("2700.00")
        assert calc.commission_deducted == Decimal("300.00")
        assert calc.below_minimum == []

    def test_waiter_below_minimum_gets_no_line(self, db, restaurant, waiters, settings):
        """Two tips netting 50 stay under the 100 minimum."""
        add_completed_tip(db, restaurant, "25", waiter=waiters[1])
        add_completed_tip(db, restaurant, "30", waiter=waiters[1])
        add_completed_tip(db, restaurant, "500", waiter=waiters[0])

        calc = calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)

        assert [line.waiter_id for line in calc.waiter_payouts] == [waiters[0].id]
        assert calc.below_minimum[0].recipient_key == f"waiter:{waiters[1].id}"
        assert calc.below_minimum[0].amount == Decimal("49.50")
        assert calc.total_amount == Decimal("450.00")

    def test_small_group_share_is_dropped(self, db, restaurant, groups, settings):
        """A 10% share of a 900 pool is 90, under the minimum."""
        add_completed_tip(db, restaurant, "1000")
        calc = calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)

        names = [g.group_name for g in calc.group_payouts]
        assert "cleaners" not in names
        assert [b.recipient_key for b in calc.below_minimum] == ["group:cleaners"]

    def test_only_completed_tips_in_month_count(self, db, restaurant, waiters, settings):
        add_completed_tip(db, restaurant, "1000", waiter=waiters[0], created_at=datetime(2023, 12, 31, 23, 0))
        add_completed_tip(db, restaurant, "1000", waiter=waiters[0], created_at=datetime(2024, 2, 1, 0, 0))

        calc = calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)

        assert calc.waiter_payouts == []
        assert calc.total_amount == Decimal("0.00")

    def test_restaurant_tips_without_groups_fail(self, db, restaurant, settings):
        add_completed_tip(db, restaurant, "2000")
        with pytest.raises(ValidationError):
            calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)

    def test_groups_not_summing_to_100_fail(self, db, restaurant, groups, settings):
        groups[0].percentage = Decimal("5")
        db.commit()
        add_completed_tip(db, restaurant, "2000")

        with pytest.raises(ValidationError) as exc:
            calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)
        assert exc.value.details["total_percentage"] == "95.00"

    def test_no_restaurant_tips_need_no_groups(self, db, restaurant, waiters, settings):
        add_completed_tip(db, restaurant, "1000", waiter=waiters[0])
        calc = calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)
        assert calc.group_payouts == []

    def test_unknown_restaurant(self, db, settings):
        with pytest.raises(NotFoundError):
            calculate_monthly_payouts(db, 404, "2024-01", settings)

    def test_bad_month(self, db, restaurant, settings):
        with pytest.raises(ValidationError):
            calculate_monthly_payouts(db, restaurant.id, "2024-13", settings)


class TestGeneratePayoutRecords:
    """One pending payout per line, exactly once per restaurant and month."""

    def test_creates_pending_payouts(self, db, standard_month, waiters, settings):
        calc = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)
        payouts = generate_payout_records(db, standard_month.id, "2024-01", calc)
        db.commit()

        assert len(payouts) == 5
        assert all(p.status == "pending" for p in payouts)
        assert all(p.payout_month == "2024-01" for p in payouts)

        waiter_payout = payouts[0]
        assert waiter_payout.payout_type == "waiter"
        assert waiter_payout.channel == "mpesa"
        assert waiter_payout.recipient_phone == "0712345678"
        assert waiter_payout.recipient_key == f"waiter:{waiters[0].id}"

        group_payouts = payouts[1:]
        assert {p.recipient_key for p in group_payouts} == {
            "group:cleaners", "group:waiters", "group:admin", "group:owners"
        }
        assert all(p.channel == "bank" for p in group_payouts)

    def test_second_generation_is_refused(self, db, standard_month, settings):
        calc = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)
        generate_payout_records(db, standard_month.id, "2024-01", calc)
        db.commit()

        again = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)
        with pytest.raises(AlreadyGenerated) as exc:
            generate_payout_records(db, standard_month.id, "2024-01", again)

        assert exc.value.details["existing_count"] == 5
        assert db.query(Payout).count() == 5

    def test_registered_bank_account_is_snapshotted(self, db, standard_month, settings):
        db.add(BankAccount(
            restaurant_id=standard_month.id, group_name="admin", account_name="Admin Pool",
            account_number="0123456789", bank_name="Equity Bank", bank_code="068",
        ))
        db.commit()

        calc = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)
        payouts = generate_payout_records(db, standard_month.id, "2024-01", calc)

        admin = next(p for p in payouts if p.group_name == "admin")
        assert json.loads(admin.recipient_account)["account_number"] == "0123456789"
        owners = next(p for p in payouts if p.group_name == "owners")
        assert owners.recipient_account is None

    def test_mpesa_group_channel_uses_group_phone(self, db, standard_month, groups, settings):
        standard_month.group_payout_channel = "mpesa"
        groups[2].phone_number = "254700111222"
        db.commit()

        calc = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)
        payouts = generate_payout_records(db, standard_month.id, "2024-01", calc)

        admin = next(p for p in payouts if p.group_name == "admin")
        assert admin.channel == "mpesa"
        assert admin.recipient_phone == "254700111222"
        assert admin.recipient_account is None

    def test_mismatched_calculation_rejected(self, db, standard_month, settings):
        calc = calculate_monthly_payouts(db, standard_month.id, "2024-01", settings)
        with pytest.raises(ValidationError):
            generate_payout_records(db, standard_month.id, "2024-02", calc)

    def test_empty_month_creates_nothing(self, db, restaurant, settings):
        calc = calculate_monthly_payouts(db, restaurant.id, "2024-01", settings)
        assert generate_payout_records(db, restaurant.id, "2024-01", calc) == []


class TestGenerateForAllRestaurants:

    def test_runs_every_active_restaurant(self, db, standard_month, settings):
        other = Restaurant(name="Java House", commission_rate=Decimal("5"))
        closed = Restaurant(name="Closed Cafe", is_active=False)
        db.add_all([other, closed])
        db.commit()
        waiter = Waiter(restaurant_id=other.id, name="Otieno", phone_number="254733444555")
        db.add(waiter)
        db.commit()
        add_completed_tip(db, other, "200", waiter=waiter)

        summary = generate_for_all_restaurants(db, "2024-01", settings)

        assert summary["restaurants_processed"] == 2
        assert summary["payouts_created"] == 6
        assert summary["skipped"] == []
        assert summary["errors"] == []
        assert db.query(Payout).filter(Payout.restaurant_id == closed.id).count() == 0

    def test_already_generated_restaurant_is_skipped(self, db, standard_month, settings):
        make_payout(db, standard_month)
        summary = generate_for_all_restaurants(db, "2024-01", settings)
        assert summary["skipped"] == [standard_month.id]
        assert summary["payouts_created"] == 0

    def test_errors_do_not_stop_the_run(self, db, standard_month, settings):
        broken = Restaurant(name="No Groups Bistro")
        db.add(broken)
        db.commit()
        add_completed_tip(db, broken, "2000")

        summary = generate_for_all_restaurants(db, "2024-01", settings)

        assert summary["restaurants_processed"] == 1
        assert summary["errors"][0]["restaurant_id"] == broken.id


class TestMonthlySummary:

    def test_counts_by_status_and_type(self, db, restaurant, waiters):
        make_payout(db, restaurant, "900.00", waiter_id=waiters[0].id, status="completed")
        make_payout(db, restaurant, "300.00", waiter_id=waiters[1].id, status="failed")
        make_payout(db, restaurant, "720.00", payout_type="group", group_name="admin")
        make_payout(db, restaurant, "100.00", month="2024-02", waiter_id=waiters[0].id)

        summary = monthly_summary(db, restaurant.id, "2024-01")

        assert summary["total_payouts"] == 3
        assert summary["total_amount"] == Decimal("1920.00")
        assert summary["by_status"]["completed"] == {"count": 1, "amount": Decimal("900.00")}
        assert summary["by_status"]["pending"]["count"] == 1
        assert summary["by_type"]["group"]["amount"] == Decimal("720.00")
        assert summary["all_completed"] is False

    def test_empty_month_is_not_all_completed(self, db, restaurant):
        assert monthly_summary(db, restaurant.id, "2024-01")["all_completed"] is False

