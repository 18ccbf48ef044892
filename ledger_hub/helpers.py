import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from ledger_hub.models import WebhookLog

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest amount whose minor units fit a signed 64-bit integer column.
MAX_AMOUNT = Decimal(2**63 - 1) / 100


def canonical_json(body: Any) -> str:
    return json.dumps(body, sort_keys=True, default=str)


def hash_request(body: Any) -> str:
    return hashlib.sha256(canonical_json(body).encode()).hexdigest()


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal:
    """
    Parse a provider amount in major units. Floats go through str() so the
    decimal value is the one the provider wrote, not its binary approximation.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValueError(f"invalid amount: {value!r}")
    try:
        amount = Decimal(str(value).strip().replace(",", ""))
        if not amount.is_finite():
            raise ValueError(f"invalid amount: {value!r}")
        amount = quantize_money(amount)
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc
    if abs(amount) > MAX_AMOUNT:
        raise ValueError(f"amount out of range: {value!r}")
    return amount


def to_minor(amount: Decimal) -> int:
    return int(quantize_money(amount) * 100)


def from_minor(amount_minor: Optional[int]) -> Decimal:
    return quantize_money(Decimal(amount_minor or 0) / 100)


def format_money(amount: Decimal) -> str:
    return f"{quantize_money(amount):.2f}"


def serialize_webhook_log(record: WebhookLog) -> dict:
    return {
        "id": record.id,
        "provider": record.provider,
        "reference": record.reference,
        "eventType": record.event_type,
        "accountNumber": record.account_number,
        "amount": format_money(from_minor(record.amount_minor)) if record.amount_minor is not None else None,
        "currency": record.currency,
        "status": record.status,
        "outcome": record.outcome,
        "walletUpdated": record.wallet_updated,
        "transactionId": record.transaction_id,
        "deliveryCount": record.delivery_count,
        "error": record.error,
        "warning": record.warning,
        "contentHash": record.content_hash,
        "receivedAt": record.received_at.isoformat() if record.received_at else None,
        "processedAt": record.processed_at.isoformat() if record.processed_at else None,
    }
