"""Webhook processing pipeline.

RECEIVED -> VERIFIED -> NORMALIZED -> DEDUPE_CHECKED -> FEE_CALCULATED ->
PRE_VALIDATED -> APPLIED -> POST_VALIDATED -> DONE, with REJECTED reachable
from every gate. Every outcome reached after normalization leaves exactly one
WebhookLog row for (reference, provider).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_hub.config import Provider, settings
from ledger_hub.db import upsert_webhook_log
from ledger_hub.duplicates import content_hash, find_duplicate
from ledger_hub.errors import TRANSPORT_LEVEL_KINDS, ErrorKind, Rejection
from ledger_hub.fees import FeeCalculator, fee_calculator
from ledger_hub.helpers import format_money, from_minor, quantize_money
from ledger_hub.ledger import BalanceCheck, LedgerOutcome, apply_credit, validate_wallet_balance
from ledger_hub.logging_config import get_logger
from ledger_hub.normalizer import normalize, resolve_provider
from ledger_hub.schemas.app_schemas import (
    BalanceValidation,
    TransactionSummary,
    WalletChange,
    WebhookEvent,
    WebhookResponse,
)
from ledger_hub.security import verify_webhook
from ledger_hub.wallets import find_wallet_by_account_number

logger = get_logger(__name__)

Notifier = Callable[[dict], Any]


class PipelineState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    NORMALIZED = "normalized"
    DEDUPE_CHECKED = "dedupe_checked"
    FEE_CALCULATED = "fee_calculated"
    PRE_VALIDATED = "pre_validated"
    APPLIED = "applied"
    POST_VALIDATED = "post_validated"
    DONE = "done"
    REJECTED = "rejected"


# WebhookLog.outcome per terminal result
OUTCOME_APPLIED = "applied"
OUTCOME_IGNORED = "ignored"
OUTCOME_RECEIVED = "received"
KIND_OUTCOMES = {
    ErrorKind.DUPLICATE: "duplicate",
    ErrorKind.VALIDATION: "rejected",
    ErrorKind.INTEGRITY_ANOMALY: "integrity_anomaly",
    ErrorKind.INFRASTRUCTURE: "failed",
}


@dataclass
class ProcessingResult:
    success: bool
    message: str
    state: PipelineState
    processed: bool = True
    wallet_updated: bool = False
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    reference: Optional[str] = None
    transaction: Optional[TransactionSummary] = None
    wallet: Optional[WalletChange] = None
    balance_validation: Optional[BalanceValidation] = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def is_transport_level(self) -> bool:
        return self.kind in TRANSPORT_LEVEL_KINDS

    def to_response(self) -> WebhookResponse:
        return WebhookResponse(
            success=self.success,
            message=self.message,
            processed=self.processed,
            walletUpdated=self.wallet_updated,
            transaction=self.transaction,
            wallet=self.wallet,
            error=self.error,
            warning=self.warning,
            balanceValidation=self.balance_validation,
        )


class _Run:
    """Tracks one webhook through the pipeline and logs each transition."""

    def __init__(self, provider: str):
        self.provider = provider
        self.reference: Optional[str] = None
        self.state = PipelineState.RECEIVED
        self.warnings: list[str] = []
        logger.info("Webhook provider=%s state=%s", provider, self.state.value)

    def advance(self, state: PipelineState) -> None:
        logger.info(
            "Webhook provider=%s reference=%s state=%s -> %s",
            self.provider,
            self.reference,
            self.state.value,
            state.value,
        )
        self.state = state

    def warn(self, warning: Optional[str]) -> None:
        if warning:
            self.warnings.append(warning)

    @property
    def warning(self) -> Optional[str]:
        return "; ".join(self.warnings) or None

    def reject(self, rejection: Rejection, **extra: Any) -> ProcessingResult:
        logger.warning(
            "Webhook provider=%s reference=%s rejected at %s kind=%s: %s (%s)",
            self.provider,
            self.reference,
            self.state.value,
            rejection.kind.value,
            rejection.message,
            rejection.error,
        )
        self.state = PipelineState.REJECTED
        return ProcessingResult(
            success=False,
            message=rejection.message,
            state=PipelineState.REJECTED,
            kind=rejection.kind,
            error=rejection.error or rejection.message,
            warning=self.warning,
            reference=self.reference,
            detail=rejection.detail,
            **extra,
        )


def _balance_validation(pre: Optional[BalanceCheck] = None, post: Optional[BalanceCheck] = None) -> BalanceValidation:
    return BalanceValidation(
        preUpdate=pre.to_report() if pre else None,
        postUpdate=post.to_report() if post else None,
    )


def _notification_payload(event: WebhookEvent, outcome: LedgerOutcome) -> dict:
    return {
        "userId": outcome.owner_id,
        "oldBalance": format_money(outcome.old_balance),
        "newBalance": format_money(outcome.new_balance),
        "change": format_money(outcome.net_amount),
        "reference": outcome.reference,
        "provider": event.provider.value,
    }


class ReconciliationEngine:
    def __init__(self, fees: Optional[FeeCalculator] = None, notifier: Optional[Notifier] = None):
        self.fees = fees or fee_calculator
        self.notifier = notifier

    def process(
        self,
        db: Session,
        provider: Union[Provider, str],
        payload: Any,
        signature: Optional[str] = None,
        notifier: Optional[Notifier] = None,
    ) -> ProcessingResult:
        run = _Run(provider.value if isinstance(provider, Provider) else str(provider))
        resolved = provider if isinstance(provider, Provider) else resolve_provider(provider)
        if resolved is None:
            return run.reject(Rejection(ErrorKind.TRANSPORT, f"Unsupported provider: {provider}"), processed=False)

        verification = verify_webhook(resolved, payload, signature)
        if not verification.is_valid:
            return run.reject(
                Rejection(ErrorKind.AUTHENTICITY, "Invalid webhook signature", verification.reason),
                processed=False,
            )
        run.warn(verification.warning)
        run.advance(PipelineState.VERIFIED)

        decoded = normalize(resolved, payload)
        if isinstance(decoded, Rejection):
            return run.reject(decoded, processed=False)
        event = decoded
        run.reference = event.transaction_reference
        run.advance(PipelineState.NORMALIZED)

        fingerprint = content_hash(event)
        upsert_webhook_log(db, event, fingerprint, outcome=OUTCOME_RECEIVED, new_delivery=True)
        db.commit()

        if not event.is_credit:
            result = ProcessingResult(
                success=True,
                message=f"Webhook logged: {event.event_type.value} does not change wallet balance",
                state=PipelineState.DONE,
                warning=run.warning,
                reference=event.transaction_reference,
            )
            run.advance(PipelineState.DONE)
            return self._finish(db, event, fingerprint, result, OUTCOME_IGNORED)

        result = self._credit(db, run, event, fingerprint, notifier or self.notifier)
        outcome = OUTCOME_APPLIED if result.success else KIND_OUTCOMES.get(result.kind, "rejected")
        return self._finish(db, event, fingerprint, result, outcome)

    def _credit(
        self,
        db: Session,
        run: _Run,
        event: WebhookEvent,
        fingerprint: str,
        notifier: Optional[Notifier],
    ) -> ProcessingResult:
        duplicate = find_duplicate(db, event, fingerprint)
        if duplicate:
            return run.reject(Rejection(ErrorKind.DUPLICATE, "Duplicate transaction detected", duplicate.message))
        run.advance(PipelineState.DEDUPE_CHECKED)

        if event.currency not in settings.supported_currencies:
            return run.reject(Rejection(
                ErrorKind.VALIDATION,
                "Unsupported currency",
                f"currency {event.currency} is not one of {', '.join(settings.supported_currencies)}",
            ))

        wallet = find_wallet_by_account_number(db, event.account_number)
        if wallet is None:
            return run.reject(Rejection(
                ErrorKind.VALIDATION,
                "Wallet not found for account number",
                f"no wallet for account number {event.account_number}",
            ))
        if not wallet.is_active:
            return run.reject(Rejection(ErrorKind.VALIDATION, "Wallet is inactive", f"wallet {wallet.id} is inactive"))

        quote = self.fees.calculate(db, event.provider, event.amount)
        run.advance(PipelineState.FEE_CALCULATED)

        applied = apply_credit(db, wallet.id, event, quote.fee, fingerprint)
        if isinstance(applied, Rejection):
            pre = applied.detail.get("preUpdate")
            validation = _balance_validation(pre=pre) if pre else None
            return run.reject(applied, balance_validation=validation)
        run.advance(PipelineState.PRE_VALIDATED)
        run.advance(PipelineState.APPLIED)
        run.advance(PipelineState.POST_VALIDATED)

        result = ProcessingResult(
            success=True,
            message="Wallet credited successfully",
            state=PipelineState.DONE,
            wallet_updated=True,
            warning=run.warning,
            reference=event.transaction_reference,
            transaction=TransactionSummary(
                id=applied.transaction_id,
                grossAmount=applied.gross_amount,
                fundingFee=applied.fee,
                netAmount=applied.net_amount,
                reference=applied.reference,
                provider=event.provider.value,
            ),
            wallet=WalletChange(
                id=applied.wallet_id,
                oldBalance=applied.old_balance,
                newBalance=applied.new_balance,
                change=applied.net_amount,
            ),
            balance_validation=_balance_validation(applied.pre_check, applied.post_check),
        )
        if applied.anomaly:
            run.warn(f"Post-update balance check failed; manual reconciliation required. {applied.post_check.message}")
            result.success = False
            result.kind = ErrorKind.INTEGRITY_ANOMALY
            result.state = PipelineState.REJECTED
            result.message = "Wallet credited but balance validation failed after update"
            result.error = applied.post_check.message
            result.warning = run.warning
            logger.error(
                "Integrity anomaly wallet=%s reference=%s: %s",
                applied.wallet_id,
                applied.reference,
                applied.post_check.message,
            )
        else:
            run.advance(PipelineState.DONE)

        self._notify(notifier, _notification_payload(event, applied))
        return result

    def _finish(
        self,
        db: Session,
        event: WebhookEvent,
        fingerprint: str,
        result: ProcessingResult,
        outcome: str,
    ) -> ProcessingResult:
        try:
            upsert_webhook_log(
                db,
                event,
                fingerprint,
                outcome=outcome,
                wallet_updated=result.wallet_updated,
                transaction_id=result.transaction.id if result.transaction else None,
                error=None if result.success else result.error,
                warning=result.warning,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            if not result.wallet_updated:
                raise
            # The credit and its applied flag are already committed together.
            logger.exception("Failed to record final webhook outcome reference=%s", event.transaction_reference)
        return result

    @staticmethod
    def _notify(notifier: Optional[Notifier], payload: dict) -> None:
        if notifier is None:
            return
        try:
            notifier(payload)
        except Exception:
            logger.exception("Balance notification failed for reference=%s", payload.get("reference"))

    def simulate(self, db: Session, provider: Union[Provider, str], payload: Any) -> ProcessingResult:
        """Dry run: report what processing would do without writing anything."""
        run = _Run(provider.value if isinstance(provider, Provider) else str(provider))
        resolved = provider if isinstance(provider, Provider) else resolve_provider(provider)
        if resolved is None:
            return run.reject(Rejection(ErrorKind.TRANSPORT, f"Unsupported provider: {provider}"), processed=False)
        decoded = normalize(resolved, payload)
        if isinstance(decoded, Rejection):
            return run.reject(decoded, processed=False)
        event = decoded
        run.reference = event.transaction_reference
        try:
            return self._simulate_credit(db, run, event)
        finally:
            db.rollback()

    def _simulate_credit(self, db: Session, run: _Run, event: WebhookEvent) -> ProcessingResult:
        if not event.is_credit:
            return ProcessingResult(
                success=True,
                message=f"Simulation: {event.event_type.value} would be logged without a wallet change",
                state=PipelineState.DONE,
                processed=False,
                reference=event.transaction_reference,
            )
        duplicate = find_duplicate(db, event)
        if duplicate:
            return run.reject(Rejection(ErrorKind.DUPLICATE, "Duplicate transaction detected", duplicate.message))
        wallet = find_wallet_by_account_number(db, event.account_number)
        if wallet is None:
            return run.reject(Rejection(
                ErrorKind.VALIDATION,
                "Wallet not found for account number",
                f"no wallet for account number {event.account_number}",
            ))
        quote = self.fees.calculate(db, event.provider, event.amount)
        gross = quantize_money(event.amount)
        net = gross - quote.fee
        pre = validate_wallet_balance(db, wallet.id, wallet)
        validation = _balance_validation(pre=pre)
        if net <= 0:
            return run.reject(
                Rejection(
                    ErrorKind.VALIDATION,
                    "Funding fee exceeds amount",
                    f"fee exceeds amount: fee {format_money(quote.fee)} >= amount {format_money(gross)}",
                ),
                balance_validation=validation,
            )
        if not pre.is_valid:
            return run.reject(
                Rejection(ErrorKind.VALIDATION, "Wallet balance integrity check failed", pre.message),
                balance_validation=validation,
            )
        old_balance = from_minor(wallet.balance_minor)
        return ProcessingResult(
            success=True,
            message=f"Simulation: wallet would be credited {format_money(net)} after a {format_money(quote.fee)} fee",
            state=PipelineState.DONE,
            processed=False,
            reference=event.transaction_reference,
            transaction=TransactionSummary(
                id="simulation",
                grossAmount=gross,
                fundingFee=quote.fee,
                netAmount=net,
                reference=event.transaction_reference,
                provider=event.provider.value,
            ),
            wallet=WalletChange(id=wallet.id, oldBalance=old_balance, newBalance=old_balance + net, change=net),
            balance_validation=validation,
        )
