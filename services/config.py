"""
Payout Engine Configuration

One explicit settings object, built once at process start and passed into
the dispatcher, notification gate and provider factory. Nothing in the
core reads provider credentials from the environment on its own.

Usage:
    from dotenv import load_dotenv
    load_dotenv()
    settings = Settings.from_env()
"""

import enum
import os
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class BankProvider(str, enum.Enum):
    """Bank transfer gateway used for distribution-group payouts."""
    MOCK = "mock"
    FLUTTERWAVE = "flutterwave"
    PESAWISE = "pesawise"


class MPesaSettings(BaseModel):
    consumer_key: str = "mock_key"
    consumer_secret: str = "mock_secret"
    shortcode: str = "174379"
    initiator_name: str = "testapi"
    initiator_password: str = ""
    environment: str = "sandbox"  # sandbox | production
    b2c_result_url: str = "http://localhost:8001/webhooks/mpesa/b2c/result"
    b2c_queue_timeout_url: str = "http://localhost:8001/webhooks/mpesa/b2c/timeout"
    request_timeout: float = 30.0

    @property
    def is_mock(self) -> bool:
        return self.consumer_key == "mock_key"

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


class FlutterwaveSettings(BaseModel):
    secret_key: str = ""
    base_url: str = "https://api.flutterwave.com/v3"
    callback_url: Optional[str] = None
    request_timeout: float = 30.0


class PesaWiseSettings(BaseModel):
    api_key: str = ""
    api_secret: str = ""
    base_url: str = "https://api.pesawise.com/v1"
    callback_url: Optional[str] = None
    request_timeout: float = 30.0


class Settings(BaseModel):
    """Runtime configuration for the payout engine."""

    currency: str = Field(default="KES", pattern=r"^[A-Z]{3}$")
    minimum_payout: Decimal = Decimal("100")
    notification_days_before_month_end: int = Field(default=3, ge=0, le=27)

    # Sequential sends with a fixed pause to respect gateway rate limits
    mobile_money_delay_seconds: float = Field(default=1.0, ge=0)
    bank_transfer_delay_seconds: float = Field(default=2.0, ge=0)

    bank_provider: BankProvider = BankProvider.MOCK

    mpesa: MPesaSettings = Field(default_factory=MPesaSettings)
    flutterwave: FlutterwaveSettings = Field(default_factory=FlutterwaveSettings)
    pesawise: PesaWiseSettings = Field(default_factory=PesaWiseSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (call after load_dotenv)."""
        site_url = os.getenv("SITE_URL", "http://localhost:8001").rstrip("/")

        return cls(
            currency=os.getenv("PAYOUT_CURRENCY", "KES"),
            minimum_payout=Decimal(os.getenv("MINIMUM_PAYOUT_AMOUNT", "100")),
            notification_days_before_month_end=int(os.getenv("PAYOUT_NOTIFICATION_DAYS_BEFORE_END", "3")),
            mobile_money_delay_seconds=float(os.getenv("TRANSFER_DELAY_SECONDS", "1.0")),
            bank_transfer_delay_seconds=float(os.getenv("BANK_TRANSFER_DELAY_SECONDS", "2.0")),
            bank_provider=BankProvider(os.getenv("BANK_TRANSFER_PROVIDER", "mock").lower()),
            mpesa=MPesaSettings(
                consumer_key=os.getenv("MPESA_CONSUMER_KEY", "mock_key"),
                consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", "mock_secret"),
                shortcode=os.getenv("MPESA_SHORTCODE", "174379"),
                initiator_name=os.getenv("MPESA_INITIATOR_NAME", "testapi"),
                initiator_password=os.getenv("MPESA_INITIATOR_PASSWORD", ""),
                environment=os.getenv("MPESA_ENVIRONMENT", "sandbox"),
                b2c_result_url=os.getenv("MPESA_B2C_RESULT_URL", f"{site_url}/webhooks/mpesa/b2c/result"),
                b2c_queue_timeout_url=os.getenv(
                    "MPESA_B2C_QUEUE_TIMEOUT_URL", f"{site_url}/webhooks/mpesa/b2c/timeout"
                ),
            ),
            flutterwave=FlutterwaveSettings(
                secret_key=os.getenv("FLUTTERWAVE_SECRET_KEY", ""),
                base_url=os.getenv("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3"),
                callback_url=f"{site_url}/webhooks/flutterwave/transfer",
            ),
            pesawise=PesaWiseSettings(
                api_key=os.getenv("PESAWISE_API_KEY", ""),
                api_secret=os.getenv("PESAWISE_API_SECRET", ""),
                base_url=os.getenv("PESAWISE_BASE_URL", "https://api.pesawise.com/v1"),
                callback_url=os.getenv("PESAWISE_CALLBACK_URL", f"{site_url}/webhooks/pesawise"),
            ),
        )
