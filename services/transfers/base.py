"""
Transfer Provider Contract

Every payment rail (M-Pesa B2C, bank transfer APIs) is adapted to the same
small interface:

- initiate(request) -> TransferResult
- query_status(provider_transaction_id) -> TransferStatus
  (may raise NotImplementedError for callback-only rails)
- validate_destination(destination) -> DestinationCheck

Providers that can send many transfers in one call also implement
initiate_bulk(requests). Adapters raise TransferError only when the call
itself failed (network, authentication); a gateway refusing one transfer
is a failed TransferResult.
"""

import enum
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union, runtime_checkable

import requests
from pydantic import BaseModel

from services.errors import TransferError

logger = logging.getLogger(__name__)


class BankAccountDetails(BaseModel):
    account_number: str
    account_name: str = ""
    bank_code: str
    bank_name: str = ""
    branch_code: Optional[str] = None


class TransferRequest(BaseModel):
    reference: str  # Caller idempotency reference, e.g. PAYOUT-42
    amount: Decimal
    narration: str
    currency: str = "KES"
    phone_number: Optional[str] = None
    bank_account: Optional[BankAccountDetails] = None


class TransferResult(BaseModel):
    reference: str
    success: bool
    provider_transaction_id: Optional[str] = None
    error: Optional[str] = None
    pending: bool = False  # Accepted; final outcome arrives by callback or status query


class TransferState(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferStatus(BaseModel):
    status: TransferState
    detail: str = ""


class DestinationCheck(BaseModel):
    valid: bool
    resolved_name: Optional[str] = None
    message: str = ""


Destination = Union[str, BankAccountDetails]


@runtime_checkable
class TransferProvider(Protocol):
    name: str

    def initiate(self, request: TransferRequest) -> TransferResult:
        ...

    def query_status(self, provider_transaction_id: str) -> TransferStatus:
        ...

    def validate_destination(self, destination: Destination) -> DestinationCheck:
        ...


@runtime_checkable
class BulkTransferProvider(TransferProvider, Protocol):
    def initiate_bulk(self, requests: List[TransferRequest]) -> List[TransferResult]:
        ...


@runtime_checkable
class BankTransferProvider(TransferProvider, Protocol):
    def list_banks(self) -> List[Dict[str, str]]:
        ...


def send_json(
    session: requests.Session,
    method: str,
    url: str,
    provider_name: str,
    timeout: float,
    **kwargs: Any
) -> Tuple[int, Dict]:
    """
    Make one JSON API call.

    Returns:
        (status_code, body) - body is {} when the response isn't JSON

    Raises:
        TransferError: network failure, timeout or HTTP 401
    """
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        logger.error(f"{provider_name}: request to {url} failed: {str(e)}")
        raise TransferError(f"{provider_name} is unreachable")

    if response.status_code == 401:
        logger.error(f"{provider_name}: authentication rejected")
        raise TransferError(f"{provider_name} authentication failed")

    try:
        body = response.json()
    except ValueError:
        body = {}
    return response.status_code, body if isinstance(body, dict) else {"data": body}
