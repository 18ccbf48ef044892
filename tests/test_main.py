from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from ledger_hub import main
from ledger_hub.database import get_db
from ledger_hub.models import Wallet, WalletTransaction, WebhookLog
from ledger_hub.security import compute_budpay_signature, compute_payload_signature


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, payload):
        self.sent.append(payload)
        return True


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(session_factory, dispatcher):
    """
    App wired to the per-test SQLite database; startup hooks are not run.
    """
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_notification_dispatcher] = lambda: dispatcher
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def budpay_keys(test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "budpay_secret_key", "sk_test_budpay")
    monkeypatch.setattr(test_settings, "budpay_public_key", "pk_test_budpay")
    return {"merchantsignature": "sha512=" + compute_budpay_signature("sk_test_budpay", "pk_test_budpay")}


@pytest.fixture
def admin_token(test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "bearer_token", "testtoken")
    return {"Authorization": "Bearer testtoken"}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_signed_budpay_credit(client, db, dispatcher, budpay_keys, make_wallet, make_fee, budpay_payload):
    wallet = make_wallet()
    make_fee("FUNDING_BUDPAY", percentage=0.10)

    resp = client.post("/webhooks/budpay", json=budpay_payload(), headers=budpay_keys)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["processed"] is True
    assert body["walletUpdated"] is True
    assert Decimal(body["transaction"]["netAmount"]) == Decimal("900.00")
    assert Decimal(body["transaction"]["fundingFee"]) == Decimal("100.00")
    assert Decimal(body["wallet"]["newBalance"]) == Decimal("900.00")
    assert body["balanceValidation"]["postUpdate"]["isValid"] is True
    assert "error" not in body
    assert "warning" not in body
    assert dispatcher.sent == [{
        "userId": wallet.owner_id,
        "oldBalance": "0.00",
        "newBalance": "900.00",
        "change": "900.00",
        "reference": "R1",
        "provider": "BUDPAY",
    }]


def test_budpay_alternate_signature_header(client, budpay_keys, make_wallet, budpay_payload):
    make_wallet()
    headers = {"x-budpay-signature": budpay_keys["merchantsignature"]}

    resp = client.post("/webhooks/budpay", json=budpay_payload(), headers=headers)

    assert resp.status_code == 200
    assert resp.json()["walletUpdated"] is True


# 1. Replay returns the explicit duplicate message and moves nothing.
def test_duplicate_delivery(client, db, budpay_keys, make_wallet, budpay_payload):
    wallet = make_wallet()
    client.post("/webhooks/budpay", json=budpay_payload(), headers=budpay_keys)

    resp = client.post("/webhooks/budpay", json=budpay_payload(), headers=budpay_keys)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["walletUpdated"] is False
    assert body["message"] == "Duplicate transaction detected"
    db.expire_all()
    assert db.get(Wallet, wallet.id).balance_minor == 90000
    assert db.query(WalletTransaction).count() == 1


# 2. Forged signature -> 400, nothing recorded.
def test_forged_signature_rejected(client, db, dispatcher, budpay_keys, make_wallet, budpay_payload):
    make_wallet()
    headers = {"merchantsignature": "sha512=" + compute_budpay_signature("sk_wrong", "pk_test_budpay")}

    resp = client.post("/webhooks/budpay", json=budpay_payload(), headers=headers)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["processed"] is False
    assert body["message"] == "Invalid webhook signature"
    assert db.query(WebhookLog).count() == 0
    assert dispatcher.sent == []


# 3. Malformed body -> 400.
def test_malformed_payloads_rejected(client, db):
    not_json = client.post("/webhooks/smeplug", content=b"{not json", headers={"content-type": "application/json"})
    no_data = client.post("/webhooks/polaris", json={"event": "account.funded"})

    assert not_json.status_code == 400
    assert no_data.status_code == 400
    assert no_data.json()["message"] == "Invalid webhook payload structure"
    assert db.query(WebhookLog).count() == 0


def test_out_of_range_amounts_rejected(client, db, make_wallet, budpay_payload):
    make_wallet()

    for amount in ("1e30", "99999999999999999999.99"):
        resp = client.post("/webhooks/budpay", json=budpay_payload(amount=amount))
        assert resp.status_code == 400, amount
        assert resp.json()["message"] == "Invalid webhook payload structure"

    assert db.query(WebhookLog).count() == 0


# 4. Business rejections are still 200.
def test_fee_exceeding_amount_is_a_200(client, make_wallet, make_fee, smeplug_payload):
    make_wallet()
    make_fee("FUNDING_SMEPLUG", fixed="50.00")

    resp = client.post("/webhooks/smeplug", json=smeplug_payload(amount="10.00"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Funding fee exceeds amount"
    assert "accepted outside production" in body["warning"]


def test_generic_endpoint_uses_generic_signature_header(
    client, test_settings, monkeypatch, make_wallet, smeplug_payload
):
    monkeypatch.setattr(test_settings, "smeplug_secret_key", "smeplug-secret")
    make_wallet()
    payload = smeplug_payload()
    signature = compute_payload_signature(payload, "smeplug-secret")

    signed = client.post("/webhooks/generic/smeplug", json=payload, headers={"x-webhook-signature": signature})
    wrong_header = client.post(
        "/webhooks/generic/smeplug",
        json=smeplug_payload(reference="SME-2", amount=1600),
        headers={"x-smeplug-signature": "deadbeef"},
    )

    assert signed.status_code == 200
    assert signed.json()["walletUpdated"] is True
    # Outside production an unsigned request passes with a warning.
    assert wrong_header.status_code == 200
    assert "No signature provided" in wrong_header.json()["warning"]


def test_generic_endpoint_unknown_provider(client, budpay_payload):
    resp = client.post("/webhooks/generic/stripe", json=budpay_payload())

    assert resp.status_code == 400
    assert resp.json()["message"] == "Unsupported provider: stripe"


def test_simulate_only_outside_production(client, db, test_settings, monkeypatch, make_wallet, nyra_payload):
    make_wallet()

    resp = client.post("/webhooks/nyra/simulate", json=nyra_payload())
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] is False
    assert Decimal(body["transaction"]["netAmount"]) == Decimal("2000.00")
    assert db.query(WebhookLog).count() == 0

    monkeypatch.setattr(test_settings, "environment", "production")
    assert client.post("/webhooks/nyra/simulate", json=nyra_payload()).status_code == 404


def test_webhook_logs_require_token_and_filter(client, admin_token, make_wallet, budpay_payload):
    make_wallet()
    client.post("/webhooks/budpay", json=budpay_payload(reference="R1"))
    client.post("/webhooks/budpay", json=budpay_payload(reference="R2", account_number="9999999999", amount="7.00"))

    assert client.get("/webhooks/logs").status_code == 401

    resp = client.get("/webhooks/logs", headers=admin_token)
    assert resp.status_code == 200
    assert {r["reference"] for r in resp.json()} == {"R1", "R2"}

    rejected = client.get("/webhooks/logs", params={"outcome": "rejected"}, headers=admin_token).json()
    assert [r["reference"] for r in rejected] == ["R2"]
    assert rejected[0]["walletUpdated"] is False

    applied = client.get("/webhooks/logs", params={"provider": "budpay", "outcome": "applied"}, headers=admin_token)
    assert applied.json()[0]["amount"] == "1000.00"

    assert client.get("/webhooks/logs", params={"limit": 0}, headers=admin_token).status_code == 422


def test_admin_balance_validation_and_reconcile(client, db, admin_token, make_wallet):
    wallet = make_wallet(balance="500.00")
    wallet.balance_minor = 65000
    db.commit()

    check = client.get(f"/admin/wallets/{wallet.id}/balance-validation", headers=admin_token)
    assert check.status_code == 200
    assert check.json()["isValid"] is False
    assert Decimal(check.json()["discrepancy"]) == Decimal("150.00")

    fixed = client.post(f"/admin/wallets/{wallet.id}/reconcile", headers=admin_token)
    assert fixed.status_code == 200
    assert fixed.json()["message"] == "Wallet balance reconciled"
    assert Decimal(fixed.json()["newBalance"]) == Decimal("500.00")

    check = client.get(f"/admin/wallets/{wallet.id}/balance-validation", headers=admin_token)
    assert check.json()["isValid"] is True

    assert client.get("/admin/wallets/nope/balance-validation", headers=admin_token).status_code == 404
    assert client.post("/admin/wallets/nope/reconcile", headers=admin_token).status_code == 404


def test_admin_wallet_lookup(client, admin_token, make_wallet):
    wallet = make_wallet(account_number="0123456789")

    found = client.get("/admin/wallets/lookup/123456789", headers=admin_token).json()
    missing = client.get("/admin/wallets/lookup/5555555555", headers=admin_token).json()

    assert found["walletFound"] is True
    assert found["walletId"] == wallet.id
    assert found["virtualAccountNumber"] == "0123456789"
    assert missing == {
        "accountNumber": "5555555555",
        "walletFound": False,
        "walletId": None,
        "virtualAccountNumber": None,
        "ownerId": None,
        "balance": None,
        "isActive": None,
    }


def test_reconciliation_csv_download(client, db, admin_token, make_wallet):
    make_wallet()
    drifted = make_wallet(account_number="5555555555", balance="10.00")
    drifted.balance_minor = 1500
    db.commit()

    resp = client.get("/reconciliation_data", headers=admin_token)

    assert resp.status_code == 200
    assert resp.headers["X-Mismatch-Count"] == "1"
    assert resp.headers["content-type"].startswith("text/csv")
    assert f"{drifted.id},5555555555,15.00,10.00,5.00" in resp.text
