"""
Tests for the transfer provider adapters (M-Pesa B2C, Flutterwave,
PesaWise, mock bank) and the provider factory.

HTTP is mocked at the requests.Session level.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from services.config import BankProvider, FlutterwaveSettings, MPesaSettings, PesaWiseSettings, Settings
from services.errors import TransferError, ValidationError
from services.mpesa import MPesaService, is_valid_phone, normalize_phone, parse_b2c_result
from services.transfers import (
    BankTransferProvider, BulkTransferProvider, TransferProvider, build_bank_provider, build_mobile_provider
)
from services.transfers.base import BankAccountDetails, TransferRequest, TransferResult, TransferState
from services.transfers.flutterwave import FlutterwaveProvider, map_flutterwave_status
from services.transfers.mock import MockBankProvider
from services.transfers.mpesa_b2c import MPesaB2CProvider
from services.transfers.pesawise import PesaWiseProvider, map_pesawise_status


def http_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    return response


def bank_request(account_number="0123456789", reference="PAYOUT-7"):
    return TransferRequest(
        reference=reference,
        amount=Decimal("720.00"),
        narration="admin tips 2024-01",
        bank_account=BankAccountDetails(account_number=account_number, account_name="Admin Pool", bank_code="068"),
    )


def mobile_request(phone="0712345678", reference="PAYOUT-1"):
    return TransferRequest(reference=reference, amount=Decimal("900.00"), narration="Tip payout", phone_number=phone)


LIVE_MPESA = MPesaSettings(consumer_key="live_key", consumer_secret="live_secret", initiator_password="cred")


# ============================================
# M-Pesa client
# ============================================

class TestPhoneNumbers:

    @pytest.mark.parametrize("raw, expected", [
        ("0712345678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254 712 345 678", "254712345678"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected
        assert is_valid_phone(raw)

    @pytest.mark.parametrize("raw", ["", "12345", "25471234567", "0712-345-678"])
    def test_invalid(self, raw):
        assert not is_valid_phone(raw)


class TestMPesaService:

    def test_mock_mode_makes_no_http_call(self):
        session = MagicMock()
        client = MPesaService(MPesaSettings(), session=session)

        response = client.b2c_payment("0712345678", Decimal("900"), "Tip payout", reference="PAYOUT-1")

        assert response["ResponseCode"] == "0"
        assert response["ConversationID"] == "mock_conv_PAYOUT-1"
        session.post.assert_not_called()

    def test_live_payment_and_token_cache(self):
        session = MagicMock()
        session.get.return_value = http_response(body={"access_token": "tok", "expires_in": "3599"})
        session.post.return_value = http_response(body={"ConversationID": "AG_1", "ResponseCode": "0"})
        client = MPesaService(LIVE_MPESA, session=session)

        client.b2c_payment("0712345678", Decimal("900.00"), "Tip payout", reference="PAYOUT-1")
        client.b2c_payment("254722000111", Decimal("540.00"), "Tip payout", reference="PAYOUT-2")

        assert session.get.call_count == 1
        payload = session.post.call_args_list[0].kwargs["json"]
        assert payload["PartyB"] == "254712345678"
        assert payload["Amount"] == 900
        assert session.post.call_args_list[1].kwargs["json"]["Amount"] == 540
        assert payload["CommandID"] == "BusinessPayment"
        assert payload["OriginatorConversationID"] == "PAYOUT-1"
        assert session.post.call_args_list[0].kwargs["headers"]["Authorization"] == "Bearer tok"

    def test_amount_with_cents_is_refused(self):
        session = MagicMock()
        client = MPesaService(LIVE_MPESA, session=session)

        with pytest.raises(ValidationError):
            client.b2c_payment("0712345678", Decimal("900.55"), "Tip payout")
        session.post.assert_not_called()

    def test_auth_failure(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("no route")
        client = MPesaService(LIVE_MPESA, session=session)

        with pytest.raises(TransferError) as exc:
            client.b2c_payment("0712345678", Decimal("900"), "Tip payout")
        assert exc.value.message == "Failed to authenticate with M-Pesa"

    def test_network_failure(self):
        session = MagicMock()
        session.get.return_value = http_response(body={"access_token": "tok", "expires_in": 3599})
        session.post.side_effect = requests.Timeout("slow")
        client = MPesaService(LIVE_MPESA, session=session)

        with pytest.raises(TransferError):
            client.b2c_payment("0712345678", Decimal("900"), "Tip payout")

    def test_request_error_is_a_response(self):
        session = MagicMock()
        session.get.return_value = http_response(body={"access_token": "tok", "expires_in": 3599})
        session.post.return_value = http_response(400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
        client = MPesaService(LIVE_MPESA, session=session)

        response = client.b2c_payment("0712345678", Decimal("900"), "Tip payout")

        assert response == {"ResponseCode": "400.002.02", "ResponseDescription": "Bad Request - Invalid Amount"}

    def test_parse_b2c_result(self):
        parsed = parse_b2c_result({
            "Result": {
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "ConversationID": "AG_1",
                "TransactionID": "NLJ41HAY6Q",
                "ResultParameters": {"ResultParameter": [
                    {"Key": "TransactionAmount", "Value": 900},
                    {"Key": "TransactionReceipt", "Value": "NLJ41HAY6Q"},
                ]},
            }
        })
        assert parsed == {
            "conversation_id": "AG_1",
            "success": True,
            "receipt": "NLJ41HAY6Q",
            "description": "The service request is processed successfully.",
        }

    def test_parse_failed_result(self):
        parsed = parse_b2c_result({"Result": {"ResultCode": 2001, "ResultDesc": "The initiator information is invalid.", "ConversationID": "AG_2"}})
        assert parsed["success"] is False
        assert parsed["receipt"] is None


# ============================================
# M-Pesa B2C provider
# ============================================

class TestMPesaB2CProvider:

    def test_mock_transfer_completes_immediately(self):
        provider = MPesaB2CProvider(MPesaService(MPesaSettings()))
        result = provider.initiate(mobile_request())
        assert result.success is True
        assert result.pending is False
        assert result.provider_transaction_id == "mock_conv_PAYOUT-1"

    def test_live_transfer_waits_for_callback(self):
        client = MagicMock(is_mock=False)
        client.b2c_payment.return_value = {"ConversationID": "AG_9", "ResponseCode": "0"}
        result = MPesaB2CProvider(client).initiate(mobile_request())
        assert result.pending is True
        assert result.provider_transaction_id == "AG_9"

    def test_refusal(self):
        client = MagicMock(is_mock=False)
        client.b2c_payment.return_value = {"ResponseCode": "1", "ResponseDescription": "Insufficient funds"}
        result = MPesaB2CProvider(client).initiate(mobile_request())
        assert result.success is False
        assert result.error == "Insufficient funds"

    def test_live_amount_with_cents_is_not_sent(self):
        session = MagicMock()
        session.get.return_value = http_response(body={"access_token": "tok", "expires_in": 3599})
        provider = MPesaB2CProvider(MPesaService(LIVE_MPESA, session=session))

        result = provider.initiate(TransferRequest(
            reference="PAYOUT-1", amount=Decimal("900.55"), narration="Tip payout", phone_number="0712345678"
        ))

        assert result.success is False
        assert result.error == "M-Pesa amounts must be whole shillings (got 900.55)"
        session.post.assert_not_called()

    def test_invalid_phone_is_not_sent(self):
        client = MagicMock(is_mock=False)
        result = MPesaB2CProvider(client).initiate(mobile_request(phone="12345"))
        assert result.success is False
        client.b2c_payment.assert_not_called()

    def test_bulk_pauses_between_sends(self):
        pauses = []
        provider = MPesaB2CProvider(MPesaService(MPesaSettings()), delay_seconds=1.0, sleep=pauses.append)
        results = provider.initiate_bulk([mobile_request(reference=f"PAYOUT-{i}") for i in range(3)])
        assert [r.reference for r in results] == ["PAYOUT-0", "PAYOUT-1", "PAYOUT-2"]
        assert pauses == [1.0, 1.0]

    def test_bulk_stops_on_transport_error(self):
        client = MagicMock(is_mock=False)
        client.b2c_payment.side_effect = [
            {"ConversationID": "AG_1", "ResponseCode": "0"},
            TransferError("M-Pesa B2C request failed"),
            {"ConversationID": "AG_3", "ResponseCode": "0"},
        ]
        provider = MPesaB2CProvider(client, delay_seconds=0)
        results = provider.initiate_bulk([mobile_request(reference=f"PAYOUT-{i}") for i in range(3)])
        assert [r.reference for r in results] == ["PAYOUT-0"]

    def test_bulk_first_error_raises(self):
        client = MagicMock(is_mock=False)
        client.b2c_payment.side_effect = TransferError("M-Pesa B2C request failed")
        with pytest.raises(TransferError):
            MPesaB2CProvider(client, delay_seconds=0).initiate_bulk([mobile_request()])

    def test_callback_only(self):
        with pytest.raises(NotImplementedError):
            MPesaB2CProvider(MPesaService(MPesaSettings())).query_status("AG_1")

    def test_validate_destination(self):
        provider = MPesaB2CProvider(MPesaService(MPesaSettings()))
        assert provider.validate_destination("0712345678").valid is True
        assert provider.validate_destination("0712").valid is False


# ============================================
# Flutterwave
# ============================================

class TestFlutterwaveProvider:

    def setup_method(self):
        self.session = MagicMock()
        self.provider = FlutterwaveProvider(
            FlutterwaveSettings(secret_key="FLWSECK-test", callback_url="https://x/webhooks/flutterwave/transfer"),
            session=self.session,
        )

    def test_transfer_queued(self):
        self.session.request.return_value = http_response(body={
            "status": "success", "message": "Transfer Queued Successfully",
            "data": {"id": 396456, "status": "NEW", "reference": "PAYOUT-7"},
        })

        result = self.provider.initiate(bank_request())

        assert result.success is True
        assert result.pending is True
        assert result.provider_transaction_id == "396456"
        method, url = self.session.request.call_args.args
        assert (method, url) == ("POST", "https://api.flutterwave.com/v3/transfers")
        payload = self.session.request.call_args.kwargs["json"]
        assert payload["account_bank"] == "068"
        assert payload["reference"] == "PAYOUT-7"
        assert payload["callback_url"] == "https://x/webhooks/flutterwave/transfer"

    def test_refused(self):
        self.session.request.return_value = http_response(400, {"status": "error", "message": "Insufficient balance"})
        result = self.provider.initiate(bank_request())
        assert result.success is False
        assert result.error == "Insufficient balance"

    def test_unauthorized_raises(self):
        self.session.request.return_value = http_response(401, {"status": "error"})
        with pytest.raises(TransferError):
            self.provider.initiate(bank_request())

    def test_network_failure_raises(self):
        self.session.request.side_effect = requests.ConnectionError("down")
        with pytest.raises(TransferError) as exc:
            self.provider.initiate(bank_request())
        assert exc.value.message == "Flutterwave is unreachable"

    def test_query_status(self):
        self.session.request.return_value = http_response(body={
            "status": "success", "data": {"id": 396456, "status": "SUCCESSFUL", "complete_message": "Successful"},
        })
        status = self.provider.query_status("396456")
        assert status.status == TransferState.COMPLETED
        assert status.detail == "Successful"

    def test_resolve_account(self):
        self.session.request.return_value = http_response(body={
            "status": "success", "data": {"account_number": "0123456789", "account_name": "ADMIN POOL"},
        })
        check = self.provider.validate_destination(bank_request().bank_account)
        assert check.valid is True
        assert check.resolved_name == "ADMIN POOL"

    def test_list_banks(self):
        self.session.request.return_value = http_response(body={
            "status": "success", "data": [{"id": 1, "code": "68", "name": "Equity Bank"}],
        })
        assert self.provider.list_banks() == [{"code": "68", "name": "Equity Bank"}]

    @pytest.mark.parametrize("raw, state", [
        ("SUCCESSFUL", TransferState.COMPLETED),
        ("FAILED", TransferState.FAILED),
        ("NEW", TransferState.PENDING),
        (None, TransferState.PENDING),
    ])
    def test_status_mapping(self, raw, state):
        assert map_flutterwave_status(raw) == state


# ============================================
# PesaWise
# ============================================

class TestPesaWiseProvider:

    def setup_method(self):
        self.session = MagicMock()
        self.provider = PesaWiseProvider(PesaWiseSettings(api_key="k", api_secret="s"), session=self.session)

    def test_token_reused(self):
        self.session.request.side_effect = [
            http_response(body={"access_token": "pw-token"}),
            http_response(body={"status": "success", "data": {"transaction_id": "PW-1", "status": "processing"}}),
            http_response(body={"status": "success", "data": {"transaction_id": "PW-2", "status": "completed"}}),
        ]

        first = self.provider.initiate(bank_request(reference="PAYOUT-1"))
        second = self.provider.initiate(bank_request(reference="PAYOUT-2"))

        assert (first.provider_transaction_id, first.pending) == ("PW-1", True)
        assert (second.provider_transaction_id, second.pending) == ("PW-2", False)
        urls = [c.args[1] for c in self.session.request.call_args_list]
        assert urls.count("https://api.pesawise.com/v1/auth/token") == 1

    def test_auth_failure(self):
        self.session.request.return_value = http_response(400, {"message": "bad credentials"})
        with pytest.raises(TransferError) as exc:
            self.provider.initiate(bank_request())
        assert exc.value.message == "PesaWise authentication failed"

    def test_list_banks(self):
        self.session.request.side_effect = [
            http_response(body={"access_token": "pw-token"}),
            http_response(body={"data": {"banks": [{"code": 1, "name": "KCB"}]}}),
        ]
        assert self.provider.list_banks() == [{"code": "1", "name": "KCB"}]

    def test_status_mapping(self):
        assert map_pesawise_status("reversed") == TransferState.FAILED
        assert map_pesawise_status("success") == TransferState.COMPLETED
        assert map_pesawise_status("queued") == TransferState.PENDING


# ============================================
# Mock bank and factory
# ============================================

class TestMockBankProvider:

    def test_success(self):
        result = MockBankProvider().initiate(bank_request())
        assert result == TransferResult(reference="PAYOUT-7", success=True, provider_transaction_id="MOCK-PAYOUT-7")

    def test_refused_account(self):
        result = MockBankProvider().initiate(bank_request(account_number="000123456"))
        assert result.success is False
        assert result.error == "Transfer failed - insufficient funds or invalid account"

    @pytest.mark.parametrize("number, valid", [("12345678", True), ("1234567", False), ("0001234567", False), ("12AB5678", False)])
    def test_validate(self, number, valid):
        account = BankAccountDetails(account_number=number, bank_code="068")
        assert MockBankProvider().validate_destination(account).valid is valid


class TestFactory:

    def test_default_is_mock(self):
        assert isinstance(build_bank_provider(Settings()), MockBankProvider)

    @pytest.mark.parametrize("kind, cls", [
        (BankProvider.FLUTTERWAVE, FlutterwaveProvider),
        (BankProvider.PESAWISE, PesaWiseProvider),
    ])
    def test_selects_by_enum(self, kind, cls):
        provider = build_bank_provider(Settings(bank_provider=kind))
        assert isinstance(provider, cls)
        assert isinstance(provider, BankTransferProvider)

    def test_mobile_provider_is_bulk(self):
        provider = build_mobile_provider(Settings(mobile_money_delay_seconds=0))
        assert isinstance(provider, TransferProvider)
        assert isinstance(provider, BulkTransferProvider)
        assert provider.delay_seconds == 0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BANK_TRANSFER_PROVIDER", "Flutterwave")
        monkeypatch.setenv("MINIMUM_PAYOUT_AMOUNT", "250")
        settings = Settings.from_env()
        assert settings.bank_provider == BankProvider.FLUTTERWAVE
        assert settings.minimum_payout == Decimal("250")
