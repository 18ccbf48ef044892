from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ledger_hub.config import Provider
from ledger_hub.helpers import ZERO, format_money, from_minor, quantize_money
from ledger_hub.logging_config import get_logger
from ledger_hub.models import FeeConfiguration

logger = get_logger(__name__)

GENERIC_FUNDING_FEE_TYPE = "FUNDING"
FEE_EXEMPT_PROVIDERS = frozenset({Provider.NYRA})
DEFAULT_FUNDING_FEES = {
    Provider.BUDPAY: Decimal("100.00"),
}
DEFAULT_FUNDING_FEE = Decimal("50.00")


@dataclass(frozen=True)
class FeeQuote:
    fee: Decimal
    fee_type: Optional[str]
    source: str  # exempt | provider | generic | default


def funding_fee_type(provider: Provider) -> str:
    return f"FUNDING_{provider.value}"


def fee_from_config(config: FeeConfiguration, amount: Decimal) -> Decimal:
    """percentage * amount + fixed, clamped to [min, max] when those are set."""
    fee = ZERO
    if config.percentage:
        fee = amount * Decimal(str(config.percentage))
    if config.fixed_amount_minor:
        fee += from_minor(config.fixed_amount_minor)
    if config.min_amount_minor is not None and fee < from_minor(config.min_amount_minor):
        fee = from_minor(config.min_amount_minor)
    if config.max_amount_minor is not None and fee > from_minor(config.max_amount_minor):
        fee = from_minor(config.max_amount_minor)
    return quantize_money(fee)


def _active_config(db: Session, fee_type: str) -> Optional[FeeConfiguration]:
    return (
        db.query(FeeConfiguration)
        .filter(FeeConfiguration.fee_type == fee_type, FeeConfiguration.is_active.is_(True))
        .first()
    )


def _exempt(db: Session, provider: Provider, amount: Decimal) -> Optional[FeeQuote]:
    if provider in FEE_EXEMPT_PROVIDERS:
        return FeeQuote(ZERO, None, "exempt")
    return None


def _provider_config(db: Session, provider: Provider, amount: Decimal) -> Optional[FeeQuote]:
    fee_type = funding_fee_type(provider)
    config = _active_config(db, fee_type)
    if config is None:
        return None
    return FeeQuote(fee_from_config(config, amount), fee_type, "provider")


def _generic_config(db: Session, provider: Provider, amount: Decimal) -> Optional[FeeQuote]:
    config = _active_config(db, GENERIC_FUNDING_FEE_TYPE)
    if config is None:
        return None
    return FeeQuote(fee_from_config(config, amount), GENERIC_FUNDING_FEE_TYPE, "generic")


def _default(db: Session, provider: Provider, amount: Decimal) -> Optional[FeeQuote]:
    return FeeQuote(DEFAULT_FUNDING_FEES.get(provider, DEFAULT_FUNDING_FEE), None, "default")


FeeResolver = Callable[[Session, Provider, Decimal], Optional[FeeQuote]]


class FeeCalculator:
    """
    Resolves the funding fee for a credit. Resolvers run in order and the first
    quote wins; the default resolver always answers. Database errors propagate.
    """

    def __init__(self, resolvers: Optional[list[FeeResolver]] = None):
        self.resolvers = resolvers or [_exempt, _provider_config, _generic_config, _default]

    def calculate(self, db: Session, provider: Provider, amount: Decimal) -> FeeQuote:
        for resolver in self.resolvers:
            quote = resolver(db, provider, amount)
            if quote is not None:
                break
        else:
            raise LookupError(f"no fee resolver answered for {provider.value}")
        log = logger.warning if quote.source == "default" else logger.info
        log(
            "Funding fee provider=%s amount=%s fee=%s source=%s fee_type=%s",
            provider.value,
            format_money(amount),
            format_money(quote.fee),
            quote.source,
            quote.fee_type,
        )
        return quote


fee_calculator = FeeCalculator()
