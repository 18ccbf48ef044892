"""Wallet balance mutation and balance integrity checks.

A credit is applied as one unit: the ledger row, the reporting row, the
webhook log flag and the balance increment commit together or not at all.
Same-wallet credits are serialized by an in-process mutex, a row lock where
the database supports it and the wallet's version column.
"""

import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ledger_hub.config import settings
from ledger_hub.db import mark_webhook_applied
from ledger_hub.duplicates import find_duplicate
from ledger_hub.errors import ErrorKind, Rejection
from ledger_hub.helpers import ZERO, format_money, from_minor, quantize_money, to_minor
from ledger_hub.logging_config import get_logger
from ledger_hub.models import Transaction, Wallet, WalletTransaction, generate_uuid, utcnow
from ledger_hub.schemas.app_schemas import BalanceCheckReport, WebhookEvent

logger = get_logger(__name__)

COMPLETED = "COMPLETED"
FUNDING = "FUNDING"

# Entries drop out once no thread holds or waits on the lock.
_wallet_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


class WalletNotFoundError(LookupError):
    pass


@contextmanager
def wallet_lock(wallet_id: str) -> Iterator[None]:
    with _registry_lock:
        lock = _wallet_locks.get(wallet_id)
        if lock is None:
            lock = threading.Lock()
            _wallet_locks[wallet_id] = lock
    with lock:
        yield


@dataclass
class BalanceCheck:
    is_valid: bool
    current_balance: Decimal
    calculated_balance: Decimal
    discrepancy: Decimal
    message: str

    def to_report(self) -> BalanceCheckReport:
        return BalanceCheckReport(
            isValid=self.is_valid,
            currentBalance=self.current_balance,
            calculatedBalance=self.calculated_balance,
            discrepancy=self.discrepancy,
            message=self.message,
        )


@dataclass
class LedgerOutcome:
    transaction_id: str
    reference: str
    wallet_id: str
    owner_id: str
    gross_amount: Decimal
    fee: Decimal
    net_amount: Decimal
    old_balance: Decimal
    new_balance: Decimal
    pre_check: BalanceCheck
    post_check: BalanceCheck

    @property
    def anomaly(self) -> bool:
        return not self.post_check.is_valid


@dataclass
class ReconcileOutcome:
    wallet_id: str
    old_balance: Decimal
    new_balance: Decimal
    discrepancy: Decimal

    @property
    def changed(self) -> bool:
        return self.discrepancy != ZERO


def calculate_balance_from_transactions(db: Session, wallet_id: str) -> Decimal:
    """Credits received add their net amount; debits sent subtract amount plus fee."""
    credits = (
        db.query(func.coalesce(func.sum(WalletTransaction.amount_minor), 0))
        .filter(WalletTransaction.receiver_wallet_id == wallet_id, WalletTransaction.status == COMPLETED)
        .scalar()
    )
    debits = (
        db.query(func.coalesce(func.sum(WalletTransaction.amount_minor + WalletTransaction.fee_minor), 0))
        .filter(WalletTransaction.sender_wallet_id == wallet_id, WalletTransaction.status == COMPLETED)
        .scalar()
    )
    return from_minor(int(credits) - int(debits))


def validate_wallet_balance(db: Session, wallet_id: str, wallet: Optional[Wallet] = None) -> BalanceCheck:
    if wallet is None:
        wallet = db.get(Wallet, wallet_id)
    if wallet is None:
        raise WalletNotFoundError(wallet_id)
    current = from_minor(wallet.balance_minor)
    calculated = calculate_balance_from_transactions(db, wallet_id)
    discrepancy = quantize_money(current - calculated)
    if discrepancy == ZERO:
        check = BalanceCheck(True, current, calculated, ZERO, "Balance matches transaction history")
        logger.info("Balance check passed wallet=%s balance=%s", wallet_id, format_money(current))
        return check
    message = (
        f"Balance mismatch: stored {format_money(current)}, calculated {format_money(calculated)}, "
        f"discrepancy {format_money(discrepancy)}"
    )
    logger.error("Balance check failed wallet=%s %s", wallet_id, message)
    return BalanceCheck(False, current, calculated, discrepancy, message)


def _locked_wallet(db: Session, wallet_id: str) -> Optional[Wallet]:
    return (
        db.query(Wallet)
        .filter(Wallet.id == wallet_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _metadata_snapshot(event: WebhookEvent, gross: Decimal, fee: Decimal, net: Decimal) -> dict:
    return {
        **event.metadata,
        "eventType": event.event_type.value,
        "grossAmount": format_money(gross),
        "fundingFee": format_money(fee),
        "netAmount": format_money(net),
        "currency": event.currency,
        "customerEmail": event.customer_email,
        "accountName": event.account_name,
        "bankName": event.bank_name,
        "providerTimestamp": event.timestamp.isoformat(),
    }


def _post_update_check(db: Session, wallet_id: str, new_balance: Decimal) -> BalanceCheck:
    # The credit is already committed; a check that cannot run is reported as an anomaly.
    try:
        return validate_wallet_balance(db, wallet_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Post-update balance check could not run wallet=%s", wallet_id)
        return BalanceCheck(
            False,
            new_balance,
            new_balance,
            ZERO,
            f"Post-update balance check could not run: {exc}",
        )


def _apply_once(
    db: Session,
    wallet_id: str,
    event: WebhookEvent,
    gross: Decimal,
    fee: Decimal,
    net: Decimal,
    content_hash: str,
) -> Union[LedgerOutcome, Rejection]:
    wallet = _locked_wallet(db, wallet_id)
    if wallet is None:
        return Rejection(ErrorKind.VALIDATION, "Wallet not found", f"wallet {wallet_id} does not exist")
    if not wallet.is_active:
        return Rejection(ErrorKind.VALIDATION, "Wallet is inactive", f"wallet {wallet_id} is inactive")

    duplicate = find_duplicate(db, event, content_hash)
    if duplicate:
        return Rejection(
            ErrorKind.DUPLICATE,
            "Duplicate transaction detected",
            duplicate.message,
            {"strategy": duplicate.strategy.value, "existingReference": duplicate.existing_reference},
        )

    pre_check = validate_wallet_balance(db, wallet_id, wallet)
    if not pre_check.is_valid:
        return Rejection(
            ErrorKind.VALIDATION,
            "Wallet balance integrity check failed",
            pre_check.message,
            {"preUpdate": pre_check},
        )

    balance_before = wallet.balance_minor
    net_minor = to_minor(net)
    transaction_id = generate_uuid()
    snapshot = _metadata_snapshot(event, gross, fee, net)
    description = (event.description or f"Wallet funding via {event.provider.value}")[:255]

    db.add(WalletTransaction(
        id=transaction_id,
        type=FUNDING,
        status=COMPLETED,
        reference=event.transaction_reference,
        provider=event.provider.value,
        provider_reference=event.transaction_reference,
        amount_minor=net_minor,
        gross_amount_minor=to_minor(gross),
        fee_minor=to_minor(fee),
        receiver_wallet_id=wallet.id,
        balance_before_minor=balance_before,
        balance_after_minor=balance_before + net_minor,
        account_number=event.account_number,
        description=description,
        provider_response=event.raw_payload,
        meta=snapshot,
    ))
    db.add(Transaction(
        reference=event.transaction_reference,
        user_id=wallet.owner_id,
        amount_minor=net_minor,
        currency=event.currency,
        type="DEPOSIT",
        status=COMPLETED,
        description=description,
        meta=snapshot,
    ))
    mark_webhook_applied(db, event.transaction_reference, event.provider.value, transaction_id)
    wallet.balance_minor = balance_before + net_minor
    wallet.last_transaction_at = utcnow()
    owner_id = wallet.owner_id
    db.commit()

    logger.info(
        "Credited wallet=%s reference=%s gross=%s fee=%s net=%s balance %s -> %s",
        wallet_id,
        event.transaction_reference,
        format_money(gross),
        format_money(fee),
        format_money(net),
        format_money(from_minor(balance_before)),
        format_money(from_minor(balance_before + net_minor)),
    )
    post_check = _post_update_check(db, wallet_id, from_minor(balance_before + net_minor))
    return LedgerOutcome(
        transaction_id=transaction_id,
        reference=event.transaction_reference,
        wallet_id=wallet_id,
        owner_id=owner_id,
        gross_amount=gross,
        fee=fee,
        net_amount=net,
        old_balance=from_minor(balance_before),
        new_balance=from_minor(balance_before + net_minor),
        pre_check=pre_check,
        post_check=post_check,
    )


def apply_credit(
    db: Session,
    wallet_id: str,
    event: WebhookEvent,
    fee: Decimal,
    content_hash: str,
) -> Union[LedgerOutcome, Rejection]:
    """
    Credit ``event.amount - fee`` to the wallet.

    Returns a Rejection without touching state when a precondition fails. On
    success the unit is committed; a failed post-update check is reported on
    the outcome, never rolled back.
    """
    gross = quantize_money(event.amount)
    fee = quantize_money(fee)
    if gross <= ZERO:
        return Rejection(ErrorKind.VALIDATION, "Invalid amount", f"amount must be positive, got {format_money(gross)}")
    if fee < ZERO:
        return Rejection(ErrorKind.VALIDATION, "Invalid funding fee", f"fee must not be negative, got {format_money(fee)}")
    net = gross - fee
    if net <= ZERO:
        return Rejection(
            ErrorKind.VALIDATION,
            "Funding fee exceeds amount",
            f"fee exceeds amount: fee {format_money(fee)} >= amount {format_money(gross)}",
            {"grossAmount": gross, "fundingFee": fee},
        )

    attempts = max(1, settings.ledger_max_retries)
    with wallet_lock(wallet_id):
        for attempt in range(1, attempts + 1):
            try:
                return _apply_once(db, wallet_id, event, gross, fee, net, content_hash)
            except StaleDataError:
                db.rollback()
                logger.warning(
                    "Concurrent update on wallet=%s reference=%s attempt=%s/%s",
                    wallet_id,
                    event.transaction_reference,
                    attempt,
                    attempts,
                )
            except IntegrityError as exc:
                db.rollback()
                logger.warning(
                    "Ledger insert conflict wallet=%s reference=%s: %s",
                    wallet_id,
                    event.transaction_reference,
                    exc.orig,
                )
                return Rejection(
                    ErrorKind.DUPLICATE,
                    "Duplicate transaction detected",
                    f"reference {event.transaction_reference} already recorded for {event.provider.value}",
                )
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("Ledger update failed wallet=%s reference=%s", wallet_id, event.transaction_reference)
                return Rejection(ErrorKind.INFRASTRUCTURE, "Failed to update wallet", str(exc))
    return Rejection(
        ErrorKind.INFRASTRUCTURE,
        "Failed to update wallet",
        f"wallet {wallet_id} kept changing; gave up after {attempts} attempts",
    )


def reconcile_wallet_balance(db: Session, wallet_id: str) -> ReconcileOutcome:
    """Reset a drifted stored balance to the sum of its completed transactions."""
    with wallet_lock(wallet_id):
        wallet = _locked_wallet(db, wallet_id)
        if wallet is None:
            raise WalletNotFoundError(wallet_id)
        old_balance = from_minor(wallet.balance_minor)
        calculated = calculate_balance_from_transactions(db, wallet_id)
        discrepancy = quantize_money(old_balance - calculated)
        if discrepancy != ZERO:
            wallet.balance_minor = to_minor(calculated)
            db.commit()
            logger.warning(
                "Reconciled wallet=%s balance %s -> %s (discrepancy %s)",
                wallet_id,
                format_money(old_balance),
                format_money(calculated),
                format_money(discrepancy),
            )
        else:
            db.rollback()
            logger.info("Wallet=%s already consistent at %s", wallet_id, format_money(old_balance))
    return ReconcileOutcome(wallet_id, old_balance, calculated, discrepancy)
