"""
PesaWise bank transfer provider.

Auth: POST /auth/token with api key/secret, bearer token cached for 50
minutes. Transfers: POST /transfers, GET /transfers/{id}. Account checks:
POST /accounts/validate. Bank list: GET /banks.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import requests

from services.config import PesaWiseSettings
from services.errors import TransferError
from services.transfers.base import (
    BankAccountDetails, Destination, DestinationCheck, TransferRequest, TransferResult,
    TransferState, TransferStatus, send_json
)

logger = logging.getLogger(__name__)

TOKEN_LIFETIME = timedelta(minutes=50)


def map_pesawise_status(status: Optional[str]) -> TransferState:
    value = (status or "").lower()
    if value in ("completed", "success", "successful"):
        return TransferState.COMPLETED
    if value in ("failed", "cancelled", "reversed"):
        return TransferState.FAILED
    return TransferState.PENDING


class PesaWiseProvider:
    name = "pesawise"

    def __init__(self, settings: PesaWiseSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.http = session or requests.Session()
        self.auth_token: Optional[str] = None
        self.token_expiry: Optional[datetime] = None

    def _token(self) -> str:
        if self.auth_token and self.token_expiry and datetime.utcnow() < self.token_expiry:
            return self.auth_token

        status_code, body = send_json(
            self.http, 'POST', f"{self.settings.base_url}/auth/token", "PesaWise",
            self.settings.request_timeout,
            json={'api_key': self.settings.api_key, 'api_secret': self.settings.api_secret},
        )
        if status_code >= 300 or not body.get('access_token'):
            logger.error(f"PesaWise: authentication failed ({status_code})")
            raise TransferError("PesaWise authentication failed")

        self.auth_token = body['access_token']
        self.token_expiry = datetime.utcnow() + TOKEN_LIFETIME
        return self.auth_token

    def _call(self, method: str, path: str, **kwargs):
        headers = {
            'Authorization': f'Bearer {self._token()}',
            'Content-Type': 'application/json',
        }
        return send_json(
            self.http, method, f"{self.settings.base_url}{path}", "PesaWise",
            self.settings.request_timeout, headers=headers, **kwargs
        )

    def initiate(self, request: TransferRequest) -> TransferResult:
        account = request.bank_account
        if account is None:
            return TransferResult(reference=request.reference, success=False, error="Missing bank account")

        status_code, body = self._call('POST', '/transfers', json={
            'account_number': account.account_number,
            'account_name': account.account_name,
            'bank_code': account.bank_code,
            'amount': float(request.amount),
            'reference': request.reference,
            'narration': request.narration,
            'currency': request.currency,
            'callback_url': self.settings.callback_url,
        })
        data = body.get('data') or {}

        if status_code < 300 and body.get('status') == 'success' and data.get('transaction_id'):
            state = map_pesawise_status(data.get('status'))
            if state == TransferState.FAILED:
                return TransferResult(
                    reference=request.reference,
                    success=False,
                    provider_transaction_id=data['transaction_id'],
                    error=body.get('message') or 'Transfer failed',
                )
            logger.info(f"PesaWise: transfer {data['transaction_id']} created for {request.reference}")
            return TransferResult(
                reference=request.reference,
                success=True,
                provider_transaction_id=data['transaction_id'],
                pending=state == TransferState.PENDING,
            )

        message = body.get('message') or 'Transfer initiation failed'
        logger.warning(f"PesaWise: transfer {request.reference} refused - {message}")
        return TransferResult(reference=request.reference, success=False, error=message)

    def query_status(self, provider_transaction_id: str) -> TransferStatus:
        status_code, body = self._call('GET', f'/transfers/{provider_transaction_id}')
        if status_code >= 300:
            return TransferStatus(status=TransferState.PENDING, detail=body.get('message') or 'Status unavailable')
        data = body.get('data') or {}
        return TransferStatus(status=map_pesawise_status(data.get('status')), detail=body.get('message') or '')

    def validate_destination(self, destination: Destination) -> DestinationCheck:
        if not isinstance(destination, BankAccountDetails):
            return DestinationCheck(valid=False, message="Bank transfers need a bank account")

        status_code, body = self._call('POST', '/accounts/validate', json={
            'account_number': destination.account_number,
            'bank_code': destination.bank_code,
        })
        data = body.get('data') or {}
        if status_code < 300 and body.get('status') == 'success':
            return DestinationCheck(
                valid=True,
                resolved_name=data.get('account_name'),
                message='Account validated successfully',
            )
        return DestinationCheck(valid=False, message=body.get('message') or 'Account validation failed')

    def list_banks(self) -> List[Dict[str, str]]:
        status_code, body = self._call('GET', '/banks')
        if status_code >= 300:
            return []
        banks = (body.get('data') or {}).get('banks') or []
        return [{"code": str(b.get('code')), "name": b.get('name')} for b in banks]
