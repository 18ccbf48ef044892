"""WebhookLog persistence: the idempotency ledger keyed by (reference, provider).

A row is inserted once per key. On conflict only the status columns move;
payload, content hash and receipt time keep their first-recorded values.
"""

from typing import Optional

from sqlalchemy import and_, case, not_, or_
from sqlalchemy.orm import Session

from ledger_hub.helpers import to_minor
from ledger_hub.models import WebhookLog, utcnow
from ledger_hub.schemas.app_schemas import WebhookEvent


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert


def _fallback_upsert(db: Session, values: dict, new_delivery: bool) -> None:
    existing = (
        db.query(WebhookLog)
        .filter_by(reference=values["reference"], provider=values["provider"])
        .with_for_update()
        .first()
    )
    if existing is None:
        db.add(WebhookLog(**values))
        db.flush()
        return
    keep_applied = existing.wallet_updated and not values["wallet_updated"]
    existing.processed_at = values["processed_at"]
    existing.error = values["error"]
    if not keep_applied:
        existing.outcome = values["outcome"]
        existing.warning = values["warning"]
    existing.wallet_updated = existing.wallet_updated or values["wallet_updated"]
    existing.transaction_id = existing.transaction_id or values["transaction_id"]
    if new_delivery:
        existing.delivery_count = (existing.delivery_count or 0) + 1
    db.flush()


def upsert_webhook_log(
    db: Session,
    event: WebhookEvent,
    content_hash: str,
    *,
    outcome: str,
    new_delivery: bool = False,
    wallet_updated: bool = False,
    transaction_id: Optional[str] = None,
    error: Optional[str] = None,
    warning: Optional[str] = None,
) -> None:
    """Insert the log row, or on conflict update only its status columns. Caller commits."""
    now = utcnow()
    values = {
        "provider": event.provider.value,
        "reference": event.transaction_reference,
        "content_hash": content_hash,
        "event_type": event.event_type.value,
        "account_number": event.account_number,
        "amount_minor": to_minor(event.amount),
        "currency": event.currency,
        "status": event.status,
        "payload": event.raw_payload,
        "received_at": now,
        "processed_at": now,
        "wallet_updated": wallet_updated,
        "outcome": outcome,
        "transaction_id": transaction_id,
        "error": error,
        "warning": warning,
        "delivery_count": 1,
    }

    insert = _dialect_insert(db)
    if insert is None:
        _fallback_upsert(db, values, new_delivery)
        return

    stmt = insert(WebhookLog).values(**values)
    excluded = stmt.excluded
    # A replay of an applied event must not clear the applied state the content-hash check relies on.
    keep_applied = and_(WebhookLog.wallet_updated, not_(excluded.wallet_updated))
    stmt = stmt.on_conflict_do_update(
        index_elements=["reference", "provider"],
        set_={
            "processed_at": excluded.processed_at,
            "error": excluded.error,
            "outcome": case((keep_applied, WebhookLog.outcome), else_=excluded.outcome),
            "warning": case((keep_applied, WebhookLog.warning), else_=excluded.warning),
            "wallet_updated": or_(WebhookLog.wallet_updated, excluded.wallet_updated),
            "transaction_id": case(
                (WebhookLog.transaction_id.is_(None), excluded.transaction_id),
                else_=WebhookLog.transaction_id,
            ),
            "delivery_count": WebhookLog.delivery_count + (1 if new_delivery else 0),
        },
    )
    db.execute(stmt)


def mark_webhook_applied(db: Session, reference: str, provider: str, transaction_id: str) -> None:
    """Flag the log row as applied inside the ledger's atomic unit. Caller commits."""
    (
        db.query(WebhookLog)
        .filter(WebhookLog.reference == reference, WebhookLog.provider == provider)
        .update(
            {
                WebhookLog.wallet_updated: True,
                WebhookLog.outcome: "applied",
                WebhookLog.transaction_id: transaction_id,
                WebhookLog.processed_at: utcnow(),
            },
            synchronize_session=False,
        )
    )


def get_webhook_log(db: Session, reference: str, provider: str) -> Optional[WebhookLog]:
    return db.query(WebhookLog).filter_by(reference=reference, provider=provider).first()
