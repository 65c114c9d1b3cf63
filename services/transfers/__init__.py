"""Transfer providers: one adapter per payment rail behind a common contract."""

from services.transfers.base import (
    BankAccountDetails,
    BankTransferProvider,
    BulkTransferProvider,
    DestinationCheck,
    TransferProvider,
    TransferRequest,
    TransferResult,
    TransferState,
    TransferStatus,
)
from services.transfers.factory import build_bank_provider, build_mobile_provider

__all__ = [
    "BankAccountDetails",
    "BankTransferProvider",
    "BulkTransferProvider",
    "DestinationCheck",
    "TransferProvider",
    "TransferRequest",
    "TransferResult",
    "TransferState",
    "TransferStatus",
    "build_bank_provider",
    "build_mobile_provider",
]
