"""Provider construction from Settings."""

import logging
import time
from typing import Callable

from services.config import BankProvider, Settings
from services.mpesa import MPesaService
from services.transfers.base import BankTransferProvider, BulkTransferProvider
from services.transfers.flutterwave import FlutterwaveProvider
from services.transfers.mock import MockBankProvider
from services.transfers.mpesa_b2c import MPesaB2CProvider
from services.transfers.pesawise import PesaWiseProvider

logger = logging.getLogger(__name__)


def build_bank_provider(settings: Settings) -> BankTransferProvider:
    if settings.bank_provider == BankProvider.FLUTTERWAVE:
        provider = FlutterwaveProvider(settings.flutterwave)
    elif settings.bank_provider == BankProvider.PESAWISE:
        provider = PesaWiseProvider(settings.pesawise)
    else:
        provider = MockBankProvider()
    logger.info(f"Bank transfer provider: {provider.name}")
    return provider


def build_mobile_provider(settings: Settings, sleep: Callable[[float], None] = time.sleep) -> BulkTransferProvider:
    client = MPesaService(settings.mpesa)
    if client.is_mock:
        logger.info("M-Pesa B2C running in mock mode")
    return MPesaB2CProvider(client, delay_seconds=settings.mobile_money_delay_seconds, sleep=sleep)
