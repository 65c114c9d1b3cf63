"""
M-Pesa B2C transfer provider (mobile money rail for waiter payouts).

Daraja has no per-request status query for B2C, so results come back
through the ResultURL / QueueTimeOutURL webhooks. In mock mode transfers
complete immediately.
"""

import logging
import time
from typing import Callable, List

from services.errors import TransferError
from services.mpesa import MPesaService, is_valid_phone, is_whole_shillings, normalize_phone
from services.transfers.base import (
    BankAccountDetails, Destination, DestinationCheck, TransferRequest, TransferResult, TransferStatus
)

logger = logging.getLogger(__name__)


class MPesaB2CProvider:
    name = "mpesa"

    def __init__(self, client: MPesaService, delay_seconds: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    def initiate(self, request: TransferRequest) -> TransferResult:
        if not request.phone_number or not is_valid_phone(request.phone_number):
            return TransferResult(
                reference=request.reference,
                success=False,
                error="Invalid phone number. Use format 254XXXXXXXXX",
            )
        if not is_whole_shillings(request.amount):
            return TransferResult(
                reference=request.reference,
                success=False,
                error=f"M-Pesa amounts must be whole shillings (got {request.amount})",
            )

        response = self.client.b2c_payment(
            phone_number=request.phone_number,
            amount=request.amount,
            remarks=request.narration,
            occasion="Tip payout",
            reference=request.reference,
        )

        if str(response.get('ResponseCode')) != '0':
            return TransferResult(
                reference=request.reference,
                success=False,
                error=response.get('ResponseDescription') or 'B2C payment failed',
            )

        return TransferResult(
            reference=request.reference,
            success=True,
            provider_transaction_id=response.get('ConversationID'),
            pending=not self.client.is_mock,
        )

    def initiate_bulk(self, requests: List[TransferRequest]) -> List[TransferResult]:
        """
        Send each request in order with a fixed pause between calls.

        A transport failure on the first request raises; after that the
        results obtained so far are returned and the rest are left unsent.
        """
        results = []
        for index, request in enumerate(requests):
            if index and self.delay_seconds:
                self.sleep(self.delay_seconds)
            try:
                results.append(self.initiate(request))
            except TransferError as e:
                if not results:
                    raise
                logger.error(
                    f"M-Pesa bulk payout stopped after {len(results)} of {len(requests)} transfers: {e.message}"
                )
                break
        return results

    def query_status(self, provider_transaction_id: str) -> TransferStatus:
        raise NotImplementedError("M-Pesa B2C results are delivered by callback")

    def validate_destination(self, destination: Destination) -> DestinationCheck:
        if isinstance(destination, BankAccountDetails):
            return DestinationCheck(valid=False, message="M-Pesa payouts need a phone number")
        if not is_valid_phone(destination):
            return DestinationCheck(valid=False, message="Invalid phone number. Use format 254XXXXXXXXX")
        return DestinationCheck(valid=True, message=f"{normalize_phone(destination)} accepted")
