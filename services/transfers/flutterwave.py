"""
Flutterwave bank transfer provider.

Transfers are created with status NEW/PENDING and finish asynchronously;
the final state arrives on the transfer webhook or from GET /transfers/{id}.
"""

import logging
from typing import Dict, List, Optional

import requests

from services.config import FlutterwaveSettings
from services.transfers.base import (
    BankAccountDetails, Destination, DestinationCheck, TransferRequest, TransferResult,
    TransferState, TransferStatus, send_json
)

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = {"SUCCESSFUL", "SUCCESS"}
FAILED_STATUSES = {"FAILED"}


def map_flutterwave_status(status: Optional[str]) -> TransferState:
    value = (status or "").upper()
    if value in COMPLETED_STATUSES:
        return TransferState.COMPLETED
    if value in FAILED_STATUSES:
        return TransferState.FAILED
    return TransferState.PENDING


class FlutterwaveProvider:
    name = "flutterwave"

    def __init__(self, settings: FlutterwaveSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.http = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.settings.secret_key}',
            'Content-Type': 'application/json'
        }

    def _call(self, method: str, path: str, **kwargs):
        return send_json(
            self.http, method, f"{self.settings.base_url}{path}", "Flutterwave",
            self.settings.request_timeout, headers=self._headers(), **kwargs
        )

    def initiate(self, request: TransferRequest) -> TransferResult:
        account = request.bank_account
        if account is None:
            return TransferResult(reference=request.reference, success=False, error="Missing bank account")

        payload = {
            'account_bank': account.bank_code,
            'account_number': account.account_number,
            'amount': float(request.amount),
            'narration': request.narration,
            'currency': request.currency,
            'reference': request.reference,
            'debit_currency': request.currency,
        }
        if self.settings.callback_url:
            payload['callback_url'] = self.settings.callback_url

        status_code, body = self._call('POST', '/transfers', json=payload)
        data = body.get('data') or {}

        if status_code < 300 and body.get('status') == 'success' and data.get('id') is not None:
            state = map_flutterwave_status(data.get('status'))
            logger.info(f"Flutterwave: transfer {data.get('id')} created for {request.reference} ({state.value})")
            if state == TransferState.FAILED:
                return TransferResult(
                    reference=request.reference,
                    success=False,
                    provider_transaction_id=str(data['id']),
                    error=data.get('complete_message') or 'Transfer failed',
                )
            return TransferResult(
                reference=request.reference,
                success=True,
                provider_transaction_id=str(data['id']),
                pending=state == TransferState.PENDING,
            )

        message = body.get('message') or 'Transfer initiation failed'
        logger.warning(f"Flutterwave: transfer {request.reference} refused - {message}")
        return TransferResult(reference=request.reference, success=False, error=message)

    def query_status(self, provider_transaction_id: str) -> TransferStatus:
        status_code, body = self._call('GET', f'/transfers/{provider_transaction_id}')
        data = body.get('data') or {}
        if status_code >= 300:
            return TransferStatus(status=TransferState.PENDING, detail=body.get('message') or 'Status unavailable')
        return TransferStatus(
            status=map_flutterwave_status(data.get('status')),
            detail=data.get('complete_message') or body.get('message') or '',
        )

    def validate_destination(self, destination: Destination) -> DestinationCheck:
        if not isinstance(destination, BankAccountDetails):
            return DestinationCheck(valid=False, message="Bank transfers need a bank account")

        status_code, body = self._call('POST', '/accounts/resolve', json={
            'account_number': destination.account_number,
            'account_bank': destination.bank_code,
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
        status_code, body = self._call('GET', '/banks/KE')
        if status_code >= 300:
            return []
        return [{"code": str(b.get('code')), "name": b.get('name')} for b in body.get('data') or []]
