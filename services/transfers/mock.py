"""
Mock bank transfer provider for development and tests.

Deterministic: an account number starting with "000" is refused, anything
else succeeds immediately with transaction id MOCK-<reference>.
"""

import logging
from typing import Dict, List

from services.transfers.base import (
    BankAccountDetails, Destination, DestinationCheck, TransferRequest, TransferResult,
    TransferState, TransferStatus
)

logger = logging.getLogger(__name__)

REFUSED_PREFIX = "000"

KENYAN_BANKS = [
    {"code": "01", "name": "Kenya Commercial Bank"},
    {"code": "02", "name": "Standard Chartered Bank"},
    {"code": "03", "name": "Absa Bank Kenya"},
    {"code": "11", "name": "Co-operative Bank of Kenya"},
    {"code": "12", "name": "National Bank of Kenya"},
    {"code": "31", "name": "Stanbic Bank"},
    {"code": "57", "name": "I&M Bank"},
    {"code": "63", "name": "Diamond Trust Bank"},
    {"code": "68", "name": "Equity Bank"},
    {"code": "70", "name": "Family Bank"},
]


class MockBankProvider:
    name = "mock"

    def initiate(self, request: TransferRequest) -> TransferResult:
        account = request.bank_account
        if account is None or account.account_number.startswith(REFUSED_PREFIX):
            return TransferResult(
                reference=request.reference,
                success=False,
                error="Transfer failed - insufficient funds or invalid account",
            )

        logger.info(f"Mock bank: {request.currency} {request.amount} to {account.account_name} ({request.reference})")
        return TransferResult(
            reference=request.reference,
            success=True,
            provider_transaction_id=f"MOCK-{request.reference}",
        )

    def query_status(self, provider_transaction_id: str) -> TransferStatus:
        return TransferStatus(status=TransferState.COMPLETED, detail="Transfer completed successfully")

    def validate_destination(self, destination: Destination) -> DestinationCheck:
        if not isinstance(destination, BankAccountDetails):
            return DestinationCheck(valid=False, message="Bank transfers need a bank account")
        if (
            not destination.account_number.isdigit()
            or len(destination.account_number) < 8
            or destination.account_number.startswith(REFUSED_PREFIX)
        ):
            return DestinationCheck(valid=False, message="Invalid account number or bank details")
        return DestinationCheck(
            valid=True,
            resolved_name=destination.account_name or "VERIFIED ACCOUNT HOLDER",
            message="Account validated successfully",
        )

    def list_banks(self) -> List[Dict[str, str]]:
        return list(KENYAN_BANKS)
