import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ledger_hub.config import settings
from ledger_hub.helpers import canonical_json, format_money, hash_request, to_minor
from ledger_hub.logging_config import get_logger
from ledger_hub.models import WalletTransaction, WebhookLog, utcnow
from ledger_hub.normalizer import payload_identifiers
from ledger_hub.schemas.app_schemas import WebhookEvent

logger = get_logger(__name__)


class DuplicateStrategy(str, Enum):
    REFERENCE = "reference"
    CONTENT_HASH = "content_hash"
    SIMILARITY = "similarity"


@dataclass
class DuplicateMatch:
    strategy: DuplicateStrategy
    existing_reference: str
    existing_id: Optional[str] = None

    @property
    def message(self) -> str:
        if self.strategy == DuplicateStrategy.REFERENCE:
            return f"Duplicate transaction: reference {self.existing_reference} already processed"
        if self.strategy == DuplicateStrategy.CONTENT_HASH:
            return f"Duplicate transaction: same content already applied under reference {self.existing_reference}"
        return (
            "Duplicate transaction suspected: same amount and account applied "
            f"within {settings.duplicate_window_seconds}s (reference {self.existing_reference})"
        )


def content_hash(event: WebhookEvent) -> str:
    """Fingerprint that survives a provider regenerating the reference on resend."""
    payload_hash = hashlib.md5(canonical_json(payload_identifiers(event)).encode()).hexdigest()
    return hash_request({
        "provider": event.provider.value,
        "amount": format_money(event.amount),
        "accountNumber": event.account_number,
        "customerEmail": event.customer_email,
        "description": event.description,
        "payloadHash": payload_hash,
    })


def _by_reference(db: Session, event: WebhookEvent) -> Optional[DuplicateMatch]:
    reference = event.transaction_reference
    existing = (
        db.query(WalletTransaction)
        .filter(or_(WalletTransaction.reference == reference, WalletTransaction.provider_reference == reference))
        .first()
    )
    if existing is None:
        return None
    return DuplicateMatch(DuplicateStrategy.REFERENCE, existing.reference, existing.id)


def _by_content_hash(db: Session, event: WebhookEvent, fingerprint: str) -> Optional[DuplicateMatch]:
    existing = (
        db.query(WebhookLog)
        .filter(WebhookLog.content_hash == fingerprint, WebhookLog.wallet_updated.is_(True))
        .first()
    )
    if existing is None:
        return None
    return DuplicateMatch(DuplicateStrategy.CONTENT_HASH, existing.reference, existing.transaction_id)


def _by_similarity(db: Session, event: WebhookEvent, now: datetime) -> Optional[DuplicateMatch]:
    if not settings.similarity_check_enabled or not event.account_number:
        return None
    window_start = now - timedelta(seconds=settings.duplicate_window_seconds)
    existing = (
        db.query(WalletTransaction)
        .filter(
            WalletTransaction.type == "FUNDING",
            WalletTransaction.status == "COMPLETED",
            WalletTransaction.gross_amount_minor == to_minor(event.amount),
            WalletTransaction.account_number == event.account_number,
            WalletTransaction.created_at >= window_start,
        )
        .first()
    )
    if existing is None:
        return None
    return DuplicateMatch(DuplicateStrategy.SIMILARITY, existing.reference, existing.id)


def find_duplicate(
    db: Session,
    event: WebhookEvent,
    fingerprint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[DuplicateMatch]:
    """
    Check, in order, exact reference, applied content hash and the
    same-amount/same-account time window. First hit wins.
    """
    fingerprint = fingerprint or content_hash(event)
    match = (
        _by_reference(db, event)
        or _by_content_hash(db, event, fingerprint)
        or _by_similarity(db, event, now or utcnow())
    )
    if match:
        logger.warning(
            "Duplicate detected strategy=%s provider=%s reference=%s existing_reference=%s",
            match.strategy.value,
            event.provider.value,
            event.transaction_reference,
            match.existing_reference,
        )
    return match
