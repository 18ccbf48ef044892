from enum import Enum
from typing import Literal, Optional

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: Literal["development", "staging", "production", "test"] = "development"
    db_url: str = "sqlite:///./ledger_hub.db"
    bearer_token: Optional[str] = None
    log_level: str = "INFO"
    notification_url: Optional[AnyHttpUrl] = None
    notification_timeout_seconds: float = 5.0
    budpay_secret_key: Optional[str] = None
    budpay_public_key: Optional[str] = None
    smeplug_secret_key: Optional[str] = None
    polaris_secret_key: Optional[str] = None
    default_currency: str = "NGN"
    supported_currencies: list[str] = ["NGN"]
    duplicate_window_seconds: int = 300
    similarity_check_enabled: bool = True
    ledger_max_retries: int = 3

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

settings = Settings()

class Provider(str, Enum):
    BUDPAY = "BUDPAY"
    SMEPLUG = "SMEPLUG"
    POLARIS = "POLARIS"
    NYRA = "NYRA"

class EventType(str, Enum):
    ACCOUNT_CREDITED = "account.credited"
    ACCOUNT_DEBITED = "account.debited"
    ACCOUNT_FUNDED = "account.funded"
    TRANSFER_SUCCESSFUL = "transfer.successful"
    TRANSFER_FAILED = "transfer.failed"
    TRANSFER_PENDING = "transfer.pending"
    WALLET_CREDITED = "wallet.credited"
    WALLET_DEBITED = "wallet.debited"
    TRANSACTION_COMPLETED = "transaction.completed"
    TRANSACTION_SUCCESS = "transaction.success"
    TRANSACTION_FAILED = "transaction.failed"
    BUDPAY_TRANSACTION_SUCCESSFUL = "budpay.transaction.successful"
    BUDPAY_TRANSACTION_FAILED = "budpay.transaction.failed"
    BUDPAY_VIRTUAL_ACCOUNT_CREDITED = "budpay.virtual_account.credited"
    BUDPAY_PAYOUT_SUCCESSFUL = "budpay.payout.successful"
    BUDPAY_PAYOUT_FAILED = "budpay.payout.failed"
    BUDPAY_BVN_SUCCESSFUL = "budpay.bvn.successful"
    BUDPAY_BVN_FAILED = "budpay.bvn.failed"
    OTHER = "other"

CREDIT_EVENTS = frozenset({
    EventType.ACCOUNT_CREDITED,
    EventType.ACCOUNT_FUNDED,
    EventType.WALLET_CREDITED,
    EventType.TRANSFER_SUCCESSFUL,
    EventType.BUDPAY_VIRTUAL_ACCOUNT_CREDITED,
    EventType.BUDPAY_TRANSACTION_SUCCESSFUL,
})

# Signature header per dedicated provider route.
provider_signature_headers = {
    Provider.BUDPAY: ("merchantsignature", "payloadsignature", "x-budpay-signature"),
    Provider.SMEPLUG: ("x-smeplug-signature",),
    Provider.POLARIS: ("x-polaris-signature",),
    Provider.NYRA: ("x-nyra-signature",),
}

GENERIC_SIGNATURE_HEADER = "x-webhook-signature"
