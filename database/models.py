"""
Tipping Platform Database Models

This module defines all SQLAlchemy models for the tipping platform.

Architecture:
- Restaurants: Tenants, each with its own commission rate
- Commission Rate Changes: Audit trail of rate updates
- Waiters: Staff who receive direct tips
- Tips: Customer payments (append-only ledger once completed)
- Distribution Groups: Named shares of restaurant-wide tips (sum to 100%)
- Bank Accounts: Payout destinations for distribution groups
- Payouts: Monthly disbursement obligations with a status state machine

Money is stored as Numeric(12, 2) and read back as Decimal.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime,
    Text, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
from decimal import Decimal
import enum

Base = declarative_base()


class TipType(str, enum.Enum):
    WAITER = "waiter"          # Goes to one waiter
    RESTAURANT = "restaurant"  # Split across distribution groups


class PaymentMethod(str, enum.Enum):
    MPESA = "mpesa"
    CARD = "card"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutType(str, enum.Enum):
    WAITER = "waiter"
    GROUP = "group"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutChannel(str, enum.Enum):
    """Rail a payout is sent through."""
    MPESA = "mpesa"  # Mobile-money B2C
    BANK = "bank"    # Bank transfer API


class Restaurant(Base):
    """
    A tenant of the platform.

    Key Fields:
    - commission_rate: Platform cut in percent, applied when a tip is created
      (never recalculated for existing tips)
    - group_payout_channel: How distribution-group payouts are disbursed
      ("bank" needs an active BankAccount per group, "mpesa" needs a
      phone number on the group)
    """
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone_number = Column(String(20))

    commission_rate = Column(Numeric(5, 2), nullable=False, default=Decimal("10.00"))
    group_payout_channel = Column(String(20), nullable=False, default=PayoutChannel.BANK.value)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    waiters = relationship("Waiter", back_populates="restaurant")
    distribution_groups = relationship("DistributionGroup", back_populates="restaurant")


class Waiter(Base):
    """Restaurant staff member who can receive direct tips via M-Pesa."""
    __tablename__ = "waiters"

    id = Column(Integer, primary_key=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    phone_number = Column(String(20), nullable=False)  # M-Pesa payout destination
    email = Column(String(255))

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    restaurant = relationship("Restaurant", back_populates="waiters")


class CommissionRateChange(Base):
    """Audit row written every time a restaurant's commission rate changes."""
    __tablename__ = "commission_rate_changes"

    id = Column(Integer, primary_key=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)

    old_rate = Column(Numeric(5, 2), nullable=False)
    new_rate = Column(Numeric(5, 2), nullable=False)
    changed_by = Column(String(100))
    reason = Column(String(255))

    changed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Tip(Base):
    """
    One customer payment.

    Invariant: commission_amount + net_amount == amount (to the cent).
    The commission rate is copied onto the row at creation time.

    Status flow:
    - pending: Checkout initiated
    - processing: Gateway accepted the request
    - completed: Gateway confirmed payment (row is immutable from here)
    - failed: Payment did not go through
    """
    __tablename__ = "tips"
    __table_args__ = (
        Index("ix_tips_restaurant_status_created", "restaurant_id", "payment_status", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False)
    waiter_id = Column(Integer, ForeignKey("waiters.id"), nullable=True)  # NULL = restaurant-wide tip
    table_id = Column(String(50))

    amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)

    tip_type = Column(String(20), nullable=False)  # waiter, restaurant
    payment_method = Column(String(20), nullable=False)  # mpesa, card
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    transaction_id = Column(String(100))  # Gateway receipt

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    waiter = relationship("Waiter")

    def __repr__(self):
        return f"<Tip(id={self.id}, amount={self.amount}, status={self.payment_status})>"


class DistributionGroup(Base):
    """
    Named share of restaurant-wide tips (e.g. cleaners, admin, owners).

    Active groups of a restaurant must sum to 100% (tolerance 0.01).
    """
    __tablename__ = "distribution_groups"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "group_name", name="uq_distribution_group_name"),
    )

    id = Column(Integer, primary_key=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)

    group_name = Column(String(50), nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)
    phone_number = Column(String(20))  # Only used when group_payout_channel = mpesa

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    restaurant = relationship("Restaurant", back_populates="distribution_groups")


class BankAccount(Base):
    """Registered bank destination for a distribution group's payouts."""
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "group_name", name="uq_bank_account_group"),
    )

    id = Column(Integer, primary_key=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    group_name = Column(String(50), nullable=False)

    account_name = Column(String(255), nullable=False)
    account_number = Column(String(50), nullable=False)
    bank_name = Column(String(255), nullable=False)
    bank_code = Column(String(20), nullable=False)
    branch_code = Column(String(20))

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def as_recipient(self) -> dict:
        """Structured recipient account stored on bank payouts."""
        return {
            "account_number": self.account_number,
            "account_name": self.account_name,
            "bank_code": self.bank_code,
            "bank_name": self.bank_name,
            "branch_code": self.branch_code,
        }


class Payout(Base):
    """
    One disbursement owed to a waiter or a distribution group for one
    billing month.

    Status flow:
    - pending: Generated, waiting for dispatch
    - processing: Claimed by a dispatch call, sent (or about to be sent)
    - completed: Provider confirmed the transfer (terminal)
    - failed: Provider refused or pre-flight check failed (retryable)

    recipient_key is "waiter:<id>" or "group:<name>"; together with
    restaurant and month it is unique, so a month can't be paid twice.
    """
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "payout_month", "recipient_key", name="uq_payout_recipient_month"),
        Index("ix_payouts_status", "status"),
    )

    id = Column(Integer, primary_key=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)

    # Recipient (waiter_id XOR group_name)
    payout_type = Column(String(20), nullable=False)  # waiter, group
    waiter_id = Column(Integer, ForeignKey("waiters.id"), nullable=True)
    group_name = Column(String(50), nullable=True)
    recipient_key = Column(String(100), nullable=False)
    channel = Column(String(20), nullable=False)  # mpesa, bank

    amount = Column(Numeric(12, 2), nullable=False)
    payout_month = Column(String(7), nullable=False, index=True)  # YYYY-MM

    # Destination
    recipient_phone = Column(String(20))
    recipient_account = Column(Text)  # JSON: account_number, account_name, bank_code, bank_name

    # Status tracking
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    transaction_reference = Column(String(255))  # Provider id, or "ERROR: <message>"
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    waiter = relationship("Waiter")
    restaurant = relationship("Restaurant")

    def __repr__(self):
        return f"<Payout(id={self.id}, amount={self.amount}, status={self.status})>"
