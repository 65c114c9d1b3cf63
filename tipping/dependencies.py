"""
FastAPI dependency wiring.

Settings and providers are built once per process; routes get them (and
a dispatcher bound to the request's DB session) through Depends, so tests
can swap any of them with app.dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from database.db import get_db
from services.config import Settings
from services.dispatcher import DisbursementDispatcher
from services.notifications import LoggingNotifier, Notifier
from services.transfers import build_bank_provider, build_mobile_provider
from services.transfers.base import BankTransferProvider, TransferProvider


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache()
def _mobile_provider() -> TransferProvider:
    return build_mobile_provider(get_settings())


@lru_cache()
def _bank_provider() -> BankTransferProvider:
    return build_bank_provider(get_settings())


def get_mobile_provider() -> TransferProvider:
    return _mobile_provider()


def get_bank_provider() -> BankTransferProvider:
    return _bank_provider()


def get_notifier() -> Notifier:
    return LoggingNotifier()


def get_dispatcher(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mobile_provider: TransferProvider = Depends(get_mobile_provider),
    bank_provider: BankTransferProvider = Depends(get_bank_provider),
    notifier: Notifier = Depends(get_notifier),
) -> DisbursementDispatcher:
    return DisbursementDispatcher(db, settings, mobile_provider, bank_provider, notifier=notifier)
