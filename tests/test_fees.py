from decimal import Decimal

import pytest

from ledger_hub.config import Provider
from ledger_hub.fees import FeeCalculator, FeeQuote, fee_from_config
from ledger_hub.models import FeeConfiguration


@pytest.mark.parametrize(
    "config, amount, expected",
    [
        (FeeConfiguration(percentage=0.10), "1000.00", "100.00"),
        (FeeConfiguration(percentage=0.01, fixed_amount_minor=500), "1000.00", "15.00"),
        (FeeConfiguration(percentage=0.015, min_amount_minor=2000), "1000.00", "20.00"),
        (FeeConfiguration(percentage=0.015, max_amount_minor=1000), "1000.00", "10.00"),
        (FeeConfiguration(fixed_amount_minor=5000), "10.00", "50.00"),
        (FeeConfiguration(percentage=0.015), "33.30", "0.50"),
        (FeeConfiguration(), "1000.00", "0.00"),
    ],
)
def test_fee_from_config(config, amount, expected):
    assert fee_from_config(config, Decimal(amount)) == Decimal(expected)


def test_exempt_provider_ignores_configuration(db, make_fee):
    make_fee("FUNDING_NYRA", percentage=0.5)
    make_fee("FUNDING", fixed="25.00")

    quote = FeeCalculator().calculate(db, Provider.NYRA, Decimal("1000.00"))

    assert quote == FeeQuote(Decimal("0.00"), None, "exempt")


def test_provider_row_wins_over_generic(db, make_fee):
    make_fee("FUNDING_BUDPAY", percentage=0.10)
    make_fee("FUNDING", fixed="25.00")

    quote = FeeCalculator().calculate(db, Provider.BUDPAY, Decimal("1000.00"))

    assert quote.fee == Decimal("100.00")
    assert quote.fee_type == "FUNDING_BUDPAY"
    assert quote.source == "provider"


def test_inactive_provider_row_falls_back_to_generic(db, make_fee):
    make_fee("FUNDING_SMEPLUG", percentage=0.10, is_active=False)
    make_fee("FUNDING", fixed="25.00")

    quote = FeeCalculator().calculate(db, Provider.SMEPLUG, Decimal("1000.00"))

    assert quote.fee == Decimal("25.00")
    assert quote.fee_type == "FUNDING"
    assert quote.source == "generic"


@pytest.mark.parametrize(
    "provider, expected",
    [(Provider.BUDPAY, "100.00"), (Provider.SMEPLUG, "50.00"), (Provider.POLARIS, "50.00")],
)
def test_hard_coded_defaults(db, provider, expected):
    quote = FeeCalculator().calculate(db, provider, Decimal("1000.00"))

    assert quote.fee == Decimal(expected)
    assert quote.source == "default"


def test_other_providers_rows_are_never_used(db, make_fee):
    make_fee("FUNDING_SMEPLUG", percentage=0.10)

    quote = FeeCalculator().calculate(db, Provider.BUDPAY, Decimal("2000.00"))

    assert quote.fee == Decimal("100.00")
    assert quote.source == "default"


def test_custom_resolver_order(db):
    flat = lambda db, provider, amount: FeeQuote(Decimal("1.00"), "FLAT", "custom")  # noqa: E731
    calculator = FeeCalculator([lambda db, provider, amount: None, flat])

    assert calculator.calculate(db, Provider.BUDPAY, Decimal("10.00")).fee == Decimal("1.00")

    with pytest.raises(LookupError):
        FeeCalculator([lambda db, provider, amount: None]).calculate(db, Provider.BUDPAY, Decimal("10.00"))
