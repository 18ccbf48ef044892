import sys
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledger_hub.config import EventType, Provider, settings  # noqa: E402
from ledger_hub.database import build_engine, init_db  # noqa: E402
from ledger_hub.helpers import to_minor  # noqa: E402
from ledger_hub.models import FeeConfiguration, Wallet, WalletTransaction, generate_uuid  # noqa: E402
from ledger_hub.schemas.app_schemas import WebhookEvent  # noqa: E402


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """
    Pin every setting the pipeline reads so a local .env cannot leak into tests.
    """
    monkeypatch.setattr(settings, "environment", "test")
    monkeypatch.setattr(settings, "bearer_token", None)
    monkeypatch.setattr(settings, "notification_url", None)
    monkeypatch.setattr(settings, "budpay_secret_key", None)
    monkeypatch.setattr(settings, "budpay_public_key", None)
    monkeypatch.setattr(settings, "smeplug_secret_key", None)
    monkeypatch.setattr(settings, "polaris_secret_key", None)
    monkeypatch.setattr(settings, "default_currency", "NGN")
    monkeypatch.setattr(settings, "supported_currencies", ["NGN"])
    monkeypatch.setattr(settings, "duplicate_window_seconds", 300)
    monkeypatch.setattr(settings, "similarity_check_enabled", True)
    monkeypatch.setattr(settings, "ledger_max_retries", 3)
    return settings


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def make_wallet(db):
    """
    Create a wallet. A non-zero opening balance is backed by a seeded funding
    transaction so the wallet starts consistent with its history.
    """
    def _make(account_number="1234567890", balance="0.00", is_active=True, owner_id=None):
        wallet = Wallet(
            owner_id=owner_id or generate_uuid(),
            owner_email="ada@example.com",
            virtual_account_number=account_number,
            balance_minor=to_minor(Decimal(balance)),
            currency="NGN",
            is_active=is_active,
        )
        db.add(wallet)
        db.flush()
        if wallet.balance_minor:
            db.add(WalletTransaction(
                type="FUNDING",
                status="COMPLETED",
                reference=f"OPENING-{wallet.id}",
                provider="SEED",
                amount_minor=wallet.balance_minor,
                gross_amount_minor=wallet.balance_minor,
                fee_minor=0,
                receiver_wallet_id=wallet.id,
                balance_before_minor=0,
                balance_after_minor=wallet.balance_minor,
                account_number="0000000000",
                description="Opening balance",
            ))
        db.commit()
        db.refresh(wallet)
        return wallet

    return _make


@pytest.fixture
def make_fee(db):
    def _make(fee_type, percentage=None, fixed=None, minimum=None, maximum=None, is_active=True):
        config = FeeConfiguration(
            fee_type=fee_type,
            percentage=percentage,
            fixed_amount_minor=to_minor(Decimal(fixed)) if fixed is not None else None,
            min_amount_minor=to_minor(Decimal(minimum)) if minimum is not None else None,
            max_amount_minor=to_minor(Decimal(maximum)) if maximum is not None else None,
            is_active=is_active,
        )
        db.add(config)
        db.commit()
        return config

    return _make


@pytest.fixture
def make_event():
    def _make(
        reference="R1",
        amount="1000.00",
        account_number="1234567890",
        provider=Provider.BUDPAY,
        event_type=EventType.BUDPAY_VIRTUAL_ACCOUNT_CREDITED,
        description="Transfer from ADA LOVELACE",
        currency="NGN",
    ):
        return WebhookEvent(
            provider=provider,
            event_type=event_type,
            transaction_reference=reference,
            account_number=account_number,
            amount=Decimal(amount),
            currency=currency,
            customer_email="ada@example.com",
            description=description,
            timestamp=datetime.now(UTC),
            raw_payload={"data": {"reference": reference, "amount": amount, "craccount": account_number}},
        )

    return _make


@pytest.fixture
def budpay_payload():
    def _make(
        reference="R1",
        amount="1000.00",
        account_number="1234567890",
        narration="Transfer from ADA LOVELACE",
        sessionid="100004260105100000123456789012",
        notify_type="successful",
        dedicated=True,
    ):
        data = {
            "id": 90871,
            "reference": reference,
            "amount": amount,
            "currency": "NGN",
            "status": "success",
            "type": "dedicated_account" if dedicated else "transfer",
            "channel": "dedicated_account" if dedicated else "bank_transfer",
            "craccount": account_number,
            "craccountname": "Ada Lovelace",
            "bankname": "Wema Bank",
            "narration": narration,
            "sessionid": sessionid,
            "originatorname": "ADA LOVELACE",
            "originatoraccountnumber": "0011223344",
            "created_at": "2026-01-05T10:00:00",
            "customer": {
                "customer_code": "CUS_ada01",
                "email": "ada@example.com",
                "first_name": "Ada",
                "last_name": "Lovelace",
            },
        }
        return {"notify": "transaction", "notifyType": notify_type, "data": data}

    return _make


@pytest.fixture
def smeplug_payload():
    def _make(reference="SME-1", amount=1500, account_number="1234567890", event="wallet.credited", narration=None):
        data = {
            "transaction_id": f"TX-{reference}",
            "reference": reference,
            "amount": amount,
            "currency": "NGN",
            "status": "success",
            "account_number": account_number,
            "account_name": "Ada Lovelace",
            "bank_name": "SME Plug MFB",
            "created_at": "2026-01-05T10:00:00+01:00",
        }
        if narration:
            data["narration"] = narration
        return {"event": event, "data": data}

    return _make


@pytest.fixture
def polaris_payload():
    def _make(reference="POL-1", amount=2500.75, account_number="1234567890", event="account.funded"):
        return {
            "event": event,
            "data": {
                "transaction_reference": reference,
                "amount": amount,
                "currency": "NGN",
                "status": "successful",
                "account_number": account_number,
                "account_name": "Ada Lovelace",
                "description": "Inflow from GTB",
                "timestamp": "2026-01-05T10:00:00Z",
            },
        }

    return _make


@pytest.fixture
def nyra_payload():
    def _make(reference="NY-1", amount="2000", account_number="1234567890", event="managed_wallet.funded", nested=True):
        inner = {
            "wallet_id": "nyra-wallet-1",
            "account_number": account_number,
            "owners_fullname": "Ada Lovelace",
            "amount": amount,
            "currency": "NGN",
            "status": "successful",
            "transaction_type": "credit",
            "reference": reference,
            "narration": "Wallet top up",
            "sender_name": "GRACE HOPPER",
            "sender_bank": "OPay",
        }
        return {"event": event, "data": {"data": inner} if nested else inner}

    return _make
