"""
M-Pesa Daraja B2C Client

Sends money from the platform's shortcode to waiters' (and, optionally,
distribution groups') M-Pesa wallets.

M-Pesa B2C Flow:
1. Call B2C API with recipient details
2. M-Pesa returns ConversationID immediately
3. M-Pesa processes payment asynchronously
4. M-Pesa sends result to ResultURL webhook (or QueueTimeOutURL)
5. Payout status is updated from the webhook

Mock mode: when the consumer key is "mock_key" no HTTP call is made and
every request is accepted with a ConversationID derived from the caller's
reference.
"""

import base64
import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

import requests

from services.config import MPesaSettings
from services.errors import TransferError, ValidationError

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^254\d{9}$")


def normalize_phone(phone_number: str) -> str:
    """Normalize to 254XXXXXXXXX (strip +, spaces and a leading 0)."""
    phone = (phone_number or "").strip().replace(" ", "")
    if phone.startswith('+'):
        phone = phone[1:]
    if phone.startswith('0'):
        phone = '254' + phone[1:]
    return phone


def is_valid_phone(phone_number: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone_number)))


def is_whole_shillings(amount: Decimal) -> bool:
    """Daraja B2C only takes whole shillings."""
    return amount == amount.to_integral_value()


class MPesaService:
    """M-Pesa B2C payout client."""

    def __init__(self, settings: MPesaSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.http = session or requests.Session()

        self.access_token: Optional[str] = None
        self.token_expiry: Optional[datetime] = None

    @property
    def is_mock(self) -> bool:
        return self.settings.is_mock

    def get_access_token(self) -> str:
        """
        Get OAuth access token from M-Pesa API.

        Tokens are cached until one minute before they expire.
        In mock mode, returns a fake token.
        """
        if self.is_mock:
            return "mock_access_token_12345"

        if self.access_token and self.token_expiry and datetime.utcnow() < self.token_expiry:
            return self.access_token

        auth_url = f"{self.settings.base_url}/oauth/v1/generate?grant_type=client_credentials"

        # Create basic auth header
        credentials = f"{self.settings.consumer_key}:{self.settings.consumer_secret}"
        encoded = base64.b64encode(credentials.encode()).decode()
        headers = {'Authorization': f'Basic {encoded}'}

        try:
            response = self.http.get(auth_url, headers=headers, timeout=self.settings.request_timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"M-Pesa: Failed to get access token: {str(e)}")
            raise TransferError("Failed to authenticate with M-Pesa")

        self.access_token = data['access_token']
        expires_in = int(data.get('expires_in', 3599))
        self.token_expiry = datetime.utcnow() + timedelta(seconds=max(expires_in - 60, 0))

        logger.info("M-Pesa: Access token obtained successfully")
        return self.access_token

    def b2c_payment(
        self,
        phone_number: str,
        amount: Decimal,
        remarks: str,
        occasion: str = "Payout",
        reference: Optional[str] = None
    ) -> Dict:
        """
        Send money to customer (B2C - Business to Customer).

        Args:
            phone_number: Recipient phone (normalized to 254XXXXXXXXX)
            amount: Amount to send (M-Pesa only takes whole shillings)
            remarks: Transaction description (shown to recipient)
            occasion: Category (e.g., "Payout", "Salary")
            reference: Caller reference, echoed as OriginatorConversationID

        Returns:
            Daraja response dict (ResponseCode "0" means accepted)

        Raises:
            ValidationError: amount has cents
            TransferError: network or authentication failure
        """
        if not is_whole_shillings(amount):
            raise ValidationError(
                f"M-Pesa amounts must be whole shillings (got {amount})",
                details={"amount": str(amount)},
            )
        phone_number = normalize_phone(phone_number)

        if self.is_mock:
            logger.info(f"M-Pesa Mock: B2C payout to {phone_number} for KES {amount}")
            return {
                'ConversationID': f'mock_conv_{reference}',
                'OriginatorConversationID': reference,
                'ResponseCode': '0',
                'ResponseDescription': 'Accept the service request successfully.'
            }

        access_token = self.get_access_token()

        b2c_url = f"{self.settings.base_url}/mpesa/b2c/v1/paymentrequest"
        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }
        payload = {
            'InitiatorName': self.settings.initiator_name,
            'SecurityCredential': self.settings.initiator_password,
            'CommandID': 'BusinessPayment',
            'Amount': int(amount),
            'PartyA': self.settings.shortcode,
            'PartyB': phone_number,
            'Remarks': remarks[:100],
            'QueueTimeOutURL': self.settings.b2c_queue_timeout_url,
            'ResultURL': self.settings.b2c_result_url,
            'Occasion': occasion[:100]
        }
        if reference:
            payload['OriginatorConversationID'] = reference

        try:
            response = self.http.post(b2c_url, json=payload, headers=headers, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            logger.error(f"M-Pesa: B2C request failed: {str(e)}")
            raise TransferError("M-Pesa B2C request failed")

        if response.status_code == 401:
            self.access_token = None
            raise TransferError("M-Pesa rejected the access token")

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            # Daraja reports request errors as {"errorCode", "errorMessage"}
            message = data.get('errorMessage') or f"HTTP {response.status_code}"
            logger.warning(f"M-Pesa: B2C refused - {message}")
            return {'ResponseCode': str(data.get('errorCode', response.status_code)), 'ResponseDescription': message}

        logger.info(f"M-Pesa: B2C initiated - {data.get('ResponseDescription')}")
        return data


def parse_b2c_result(payload: Dict) -> Dict:
    """
    Flatten a B2C ResultURL callback.

    Returns:
        {
            "conversation_id": str,
            "success": bool,
            "receipt": str or None,
            "description": str
        }
    """
    result = payload.get('Result', {}) or {}
    parameters = (result.get('ResultParameters') or {}).get('ResultParameter', []) or []
    receipt = next(
        (item.get('Value') for item in parameters if item.get('Key') == 'TransactionReceipt'),
        None
    )
    return {
        "conversation_id": result.get('ConversationID'),
        "success": str(result.get('ResultCode')) == '0',
        "receipt": receipt or result.get('TransactionID'),
        "description": result.get('ResultDesc') or '',
    }
