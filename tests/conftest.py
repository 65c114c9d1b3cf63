"""
Shared pytest fixtures for the tipping payout tests.

Every test gets its own SQLite file under tmp_path, so separate sessions
use separate connections (needed to exercise conditional claims).
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import itertools
from datetime import datetime
from decimal import Decimal

import pytest

from database.db import build_engine, build_session_factory, create_tables
from database.models import (
    DistributionGroup, Payout, PayoutChannel, PayoutStatus, PayoutType, Restaurant, Waiter
)
from services.config import Settings
from services.errors import TransferError
from services.tip_ledger import record_tip, update_tip_status
from services.transfers.base import (
    DestinationCheck, TransferRequest, TransferResult, TransferState, TransferStatus
)


# ============================================
# Database
# ============================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'payouts.db'}")
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(mobile_money_delay_seconds=0, bank_transfer_delay_seconds=0)


# ============================================
# Seed data
# ============================================

@pytest.fixture
def restaurant(db):
    restaurant = Restaurant(name="Nyama Choma Grill", commission_rate=Decimal("10.00"))
    db.add(restaurant)
    db.commit()
    return restaurant


@pytest.fixture
def waiters(db, restaurant):
    rows = [
        Waiter(restaurant_id=restaurant.id, name="Achieng", phone_number="0712345678"),
        Waiter(restaurant_id=restaurant.id, name="Kamau", phone_number="254722000111"),
    ]
    db.add_all(rows)
    db.commit()
    return rows


@pytest.fixture
def groups(db, restaurant):
    rows = [
        DistributionGroup(restaurant_id=restaurant.id, group_name="cleaners", percentage=Decimal("10")),
        DistributionGroup(restaurant_id=restaurant.id, group_name="waiters", percentage=Decimal("30")),
        DistributionGroup(restaurant_id=restaurant.id, group_name="admin", percentage=Decimal("40")),
        DistributionGroup(restaurant_id=restaurant.id, group_name="owners", percentage=Decimal("20")),
    ]
    db.add_all(rows)
    db.commit()
    return rows


def add_completed_tip(db, restaurant, amount, waiter=None, created_at=datetime(2024, 1, 15, 12, 0)):
    """Record a tip, backdate it and confirm it."""
    tip = record_tip(
        db,
        restaurant_id=restaurant.id,
        amount=amount,
        tip_type="waiter" if waiter else "restaurant",
        payment_method="mpesa",
        waiter_id=waiter.id if waiter else None,
    )
    tip.created_at = created_at
    update_tip_status(db, tip.id, "completed", transaction_id=f"RCPT{tip.id}")
    db.commit()
    return tip


_anonymous = itertools.count(1)


def make_payout(db, restaurant, amount="500.00", status=PayoutStatus.PENDING.value, month="2024-01", **kwargs):
    """Insert one payout row directly. Without a waiter_id the recipient key is made unique."""
    payout_type = kwargs.pop("payout_type", PayoutType.WAITER.value)
    if payout_type == PayoutType.WAITER.value:
        waiter_id = kwargs.pop("waiter_id", None)
        key = waiter_id if waiter_id is not None else f"anon-{next(_anonymous)}"
        defaults = {
            "waiter_id": waiter_id,
            "recipient_key": f"waiter:{key}",
            "channel": PayoutChannel.MPESA.value,
            "recipient_phone": "254712345678",
        }
    else:
        group_name = kwargs.pop("group_name", "admin")
        defaults = {
            "group_name": group_name,
            "recipient_key": f"group:{group_name}",
            "channel": PayoutChannel.BANK.value,
        }
    defaults.update(kwargs)

    payout = Payout(
        restaurant_id=restaurant.id,
        payout_type=payout_type,
        amount=Decimal(amount),
        payout_month=month,
        status=status,
        **defaults
    )
    db.add(payout)
    db.commit()
    return payout


# ============================================
# Fake collaborators
# ============================================

class FakeTransferProvider:
    """
    Records every request. Outcomes per reference can be a TransferResult
    or an exception to raise; everything else succeeds with TX-<reference>.
    """

    name = "fake"

    def __init__(self, outcomes=None, pending=False, statuses=None, callback_only=False):
        self.outcomes = outcomes or {}
        self.pending = pending
        self.statuses = statuses or {}
        self.callback_only = callback_only
        self.requests = []
        self.on_initiate = None

    def initiate(self, request: TransferRequest) -> TransferResult:
        self.requests.append(request)
        if self.on_initiate:
            self.on_initiate(request)
        outcome = self.outcomes.get(request.reference)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return TransferResult(
            reference=request.reference,
            success=True,
            provider_transaction_id=f"TX-{request.reference}",
            pending=self.pending,
        )

    def query_status(self, provider_transaction_id: str) -> TransferStatus:
        if self.callback_only:
            raise NotImplementedError("callback only")
        status = self.statuses.get(provider_transaction_id, TransferState.PENDING)
        if isinstance(status, Exception):
            raise status
        return TransferStatus(status=status, detail=f"{status.value} by provider")

    def validate_destination(self, destination) -> DestinationCheck:
        return DestinationCheck(valid=True, resolved_name="TEST ACCOUNT")

    def list_banks(self):
        return [{"code": "68", "name": "Equity Bank"}]

    @property
    def references(self):
        return [r.reference for r in self.requests]


class FakeBulkProvider(FakeTransferProvider):
    """Bulk-capable variant; a whole-call exception can be injected."""

    def __init__(self, bulk_error=None, **kwargs):
        super().__init__(**kwargs)
        self.bulk_error = bulk_error
        self.bulk_calls = []

    def initiate_bulk(self, requests):
        self.bulk_calls.append([r.reference for r in requests])
        if self.bulk_error:
            raise self.bulk_error
        return [self.initiate(r) for r in requests]


class RecordingNotifier:
    """Reminders go to `sent`; completed/failed messages to `outcomes`."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.outcomes = []
        self.fail_for = set(fail_for)

    def notify(self, recipient_type, recipient_id, amount, month, kind="upcoming"):
        if recipient_id in self.fail_for:
            raise RuntimeError("SMS gateway down")
        if kind == "upcoming":
            self.sent.append((recipient_type, recipient_id, amount, month))
        else:
            self.outcomes.append((kind, recipient_type, recipient_id, amount, month))


@pytest.fixture
def mobile_provider():
    return FakeTransferProvider()


@pytest.fixture
def bank_provider():
    return FakeTransferProvider()


@pytest.fixture
def network_down():
    return TransferError("M-Pesa is unreachable")
