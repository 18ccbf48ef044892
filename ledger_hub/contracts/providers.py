from datetime import UTC, datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict

from ledger_hub.config import EventType, Provider, settings
from ledger_hub.helpers import parse_amount
from ledger_hub.schemas.app_schemas import WebhookEvent


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    raise ValueError(f"expected a scalar, got {type(value).__name__}")


Text = Annotated[Optional[str], BeforeValidator(_to_text)]


def parse_timestamp(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return fallback
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


class _Contract(BaseModel):
    model_config = ConfigDict(extra="allow")


# --- BudPay: amounts are decimal strings in naira ("50.00").

BUDPAY_EVENT_MAP = {
    ("transaction", "successful"): EventType.BUDPAY_TRANSACTION_SUCCESSFUL,
    ("transaction", "failed"): EventType.BUDPAY_TRANSACTION_FAILED,
    ("payout", "successful"): EventType.BUDPAY_PAYOUT_SUCCESSFUL,
    ("payout", "failed"): EventType.BUDPAY_PAYOUT_FAILED,
    ("bvn", "successful"): EventType.BUDPAY_BVN_SUCCESSFUL,
    ("bvn", "failed"): EventType.BUDPAY_BVN_FAILED,
}

class BudPayCustomer(_Contract):
    id: Text = None
    customer_code: Text = None
    email: Text = None
    first_name: Text = None
    last_name: Text = None

class BudPayData(_Contract):
    id: Text = None
    reference: Text = None
    amount: Any = None
    currency: Text = None
    status: Text = None
    type: Text = None
    channel: Text = None
    gateway: Text = None
    craccount: Text = None
    craccountname: Text = None
    bankname: Text = None
    bankcode: Text = None
    narration: Text = None
    sessionid: Text = None
    originatorname: Text = None
    originatoraccountnumber: Text = None
    created_at: Text = None
    customer: Optional[BudPayCustomer] = None

class BudPayTransferDetails(_Contract):
    amount: Any = None
    bankcode: Text = None
    bankname: Text = None
    craccount: Text = None
    craccountname: Text = None
    narration: Text = None
    sessionid: Text = None
    paymentReference: Text = None
    originatoraccountnumber: Text = None

class BudPayPayload(_Contract):
    notify: Text = None
    notifyType: Text = None
    data: BudPayData
    transferDetails: Optional[BudPayTransferDetails] = None

    def event_type(self) -> EventType:
        event_type = BUDPAY_EVENT_MAP.get((self.notify, self.notifyType), EventType.OTHER)
        if (
            event_type == EventType.BUDPAY_TRANSACTION_SUCCESSFUL
            and self.data.type == "dedicated_account"
            and self.data.channel == "dedicated_account"
        ):
            return EventType.BUDPAY_VIRTUAL_ACCOUNT_CREDITED
        return event_type

    def to_event(self, raw: dict, received_at: datetime) -> WebhookEvent:
        data = self.data
        transfer = self.transferDetails or BudPayTransferDetails()
        customer = data.customer
        amount_source = transfer.amount if transfer.amount not in (None, "") else data.amount
        account_number = _first(data.craccount, transfer.craccount)
        account_name = _first(data.craccountname, transfer.craccountname)
        if not account_name and customer:
            account_name = " ".join(p for p in (customer.first_name, customer.last_name) if p) or None
        reference = _first(data.reference, transfer.paymentReference, data.id) or ""
        return WebhookEvent(
            provider=Provider.BUDPAY,
            event_type=self.event_type(),
            transaction_reference=reference,
            account_number=account_number,
            account_name=account_name,
            amount=parse_amount(amount_source),
            currency=data.currency or settings.default_currency,
            status=data.status,
            customer_email=customer.email if customer else None,
            customer_id=customer.customer_code if customer else None,
            bank_name=_first(data.bankname, transfer.bankname, data.gateway),
            bank_code=_first(data.bankcode, transfer.bankcode),
            description=_first(data.narration, transfer.narration)
            or f"{self.notify}.{self.notifyType} - {reference}",
            metadata={
                "sessionId": _first(data.sessionid, transfer.sessionid),
                "sender_name": data.originatorname,
                "sender_account_number": _first(data.originatoraccountnumber, transfer.originatoraccountnumber),
                "sender_bank": _first(data.bankname, transfer.bankname),
                "bankCode": _first(data.bankcode, transfer.bankcode),
                "originalNotify": self.notify,
                "originalNotifyType": self.notifyType,
            },
            timestamp=parse_timestamp(data.created_at, received_at),
            raw_payload=raw,
        )


# --- SME Plug: JSON numbers (or numeric strings) in naira.

SMEPLUG_EVENT_MAP = {
    "wallet.credited": EventType.WALLET_CREDITED,
    "wallet.debited": EventType.WALLET_DEBITED,
    "transaction.completed": EventType.TRANSACTION_COMPLETED,
    "transfer.successful": EventType.TRANSFER_SUCCESSFUL,
    "transfer.failed": EventType.TRANSFER_FAILED,
}

class SmePlugData(_Contract):
    transaction_id: Text = None
    reference: Text = None
    amount: Any = None
    currency: Text = None
    status: Text = None
    account_number: Text = None
    account_name: Text = None
    bank_code: Text = None
    bank_name: Text = None
    narration: Text = None
    created_at: Text = None
    metadata: Optional[dict[str, Any]] = None

class SmePlugPayload(_Contract):
    event: Text = None
    data: SmePlugData

    def to_event(self, raw: dict, received_at: datetime) -> WebhookEvent:
        data = self.data
        reference = _first(data.reference, data.transaction_id) or ""
        return WebhookEvent(
            provider=Provider.SMEPLUG,
            event_type=SMEPLUG_EVENT_MAP.get(self.event, EventType.OTHER),
            transaction_reference=reference,
            account_number=data.account_number,
            account_name=data.account_name,
            amount=parse_amount(data.amount),
            currency=data.currency or settings.default_currency,
            status=data.status,
            bank_name=data.bank_name,
            bank_code=data.bank_code,
            description=data.narration or f"{self.event} - {reference}",
            metadata=dict(data.metadata or {}),
            timestamp=parse_timestamp(data.created_at, received_at),
            raw_payload=raw,
        )


# --- Polaris: JSON numbers in naira.

POLARIS_EVENT_MAP = {
    "account.funded": EventType.ACCOUNT_FUNDED,
    "transaction.success": EventType.TRANSACTION_SUCCESS,
    "transaction.failed": EventType.TRANSACTION_FAILED,
    "transfer.successful": EventType.TRANSFER_SUCCESSFUL,
    "transfer.failed": EventType.TRANSFER_FAILED,
}

class PolarisData(_Contract):
    transaction_reference: Text = None
    amount: Any = None
    currency: Text = None
    status: Text = None
    account_number: Text = None
    account_name: Text = None
    bank_code: Text = None
    description: Text = None
    timestamp: Text = None
    metadata: Optional[dict[str, Any]] = None

class PolarisPayload(_Contract):
    event: Text = None
    data: PolarisData

    def to_event(self, raw: dict, received_at: datetime) -> WebhookEvent:
        data = self.data
        reference = data.transaction_reference or ""
        return WebhookEvent(
            provider=Provider.POLARIS,
            event_type=POLARIS_EVENT_MAP.get(self.event, EventType.OTHER),
            transaction_reference=reference,
            account_number=data.account_number,
            account_name=data.account_name,
            amount=parse_amount(data.amount),
            currency=data.currency or settings.default_currency,
            status=data.status,
            bank_code=data.bank_code,
            description=data.description or f"{self.event} - {reference}",
            metadata=dict(data.metadata or {}),
            timestamp=parse_timestamp(data.timestamp, received_at),
            raw_payload=raw,
        )


# --- Nyra: amounts as numbers or numeric strings in naira, sometimes nested under data.data.

NYRA_EVENT_MAP = {
    "wallet.credited": EventType.WALLET_CREDITED,
    "managed_wallet.funded": EventType.WALLET_CREDITED,
    "wallet.debited": EventType.WALLET_DEBITED,
    "transfer.successful": EventType.TRANSFER_SUCCESSFUL,
    "transfer.failed": EventType.TRANSFER_FAILED,
    "transfer.pending": EventType.TRANSFER_PENDING,
    "account.credited": EventType.ACCOUNT_CREDITED,
    "account.debited": EventType.ACCOUNT_DEBITED,
}

class NyraData(_Contract):
    wallet_id: Text = None
    account_number: Text = None
    owners_fullname: Text = None
    credit_account_name: Text = None
    amount: Any = None
    currency: Text = None
    status: Text = None
    transaction_type: Text = None
    reference: Text = None
    narration: Text = None
    description: Text = None
    timestamp: Text = None
    sender_name: Text = None
    sender_account_number: Text = None
    sender_bank: Text = None
    business_id: Text = None
    transaction_date: Text = None
    metadata: Optional[dict[str, Any]] = None
    data: Optional["NyraData"] = None

NyraData.model_rebuild()

class NyraPayload(_Contract):
    event: Text = None
    data: NyraData

    def to_event(self, raw: dict, received_at: datetime) -> WebhookEvent:
        data = self.data.data or self.data
        reference = data.reference or ""
        return WebhookEvent(
            provider=Provider.NYRA,
            event_type=NYRA_EVENT_MAP.get(self.event, EventType.OTHER),
            transaction_reference=reference,
            account_number=data.account_number,
            account_name=_first(data.credit_account_name, data.owners_fullname),
            amount=parse_amount(data.amount),
            currency=data.currency or settings.default_currency,
            status=data.status,
            description=_first(data.narration, data.description) or f"{self.event} - {reference}",
            metadata={
                **(data.metadata or {}),
                "wallet_id": data.wallet_id,
                "transaction_type": data.transaction_type,
                "sender_name": data.sender_name,
                "sender_account_number": data.sender_account_number,
                "sender_bank": data.sender_bank,
                "business_id": data.business_id,
                "transaction_date": data.transaction_date,
            },
            timestamp=parse_timestamp(data.timestamp, received_at),
            raw_payload=raw,
        )
