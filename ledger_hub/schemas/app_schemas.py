from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledger_hub.config import CREDIT_EVENTS, EventType, Provider


class WebhookEvent(BaseModel):
    """Canonical settlement event; lives only for one request."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    event_type: EventType
    transaction_reference: str
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    currency: str = "NGN"
    status: Optional[str] = None
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_credit(self) -> bool:
        return self.event_type in CREDIT_EVENTS


class BalanceCheckReport(BaseModel):
    isValid: bool
    currentBalance: Decimal
    calculatedBalance: Decimal
    discrepancy: Decimal
    message: str

class BalanceValidation(BaseModel):
    preUpdate: Optional[BalanceCheckReport] = None
    postUpdate: Optional[BalanceCheckReport] = None

class TransactionSummary(BaseModel):
    id: str
    grossAmount: Decimal
    fundingFee: Decimal
    netAmount: Decimal
    reference: str
    provider: str

class WalletChange(BaseModel):
    id: str
    oldBalance: Decimal
    newBalance: Decimal
    change: Decimal

class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: bool
    walletUpdated: bool
    transaction: Optional[TransactionSummary] = None
    wallet: Optional[WalletChange] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    balanceValidation: Optional[BalanceValidation] = None

class ReconcileResponse(BaseModel):
    success: bool
    walletId: str
    oldBalance: Decimal
    newBalance: Decimal
    discrepancy: Decimal
    message: str

class WalletLookupResponse(BaseModel):
    accountNumber: str
    walletFound: bool
    walletId: Optional[str] = None
    virtualAccountNumber: Optional[str] = None
    ownerId: Optional[str] = None
    balance: Optional[Decimal] = None
    isActive: Optional[bool] = None
