"""Tests for PayMongo checkout, webhook processing and citizen cancellation."""
import hashlib
import hmac
import json
from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User
from app.lgu.modules.payments.paymongo_client import PaymongoClient
from app.lgu.modules.transactions.models import Transaction

WEBHOOK_SECRET = "whsk_test_abc"


def _user(email):
    return User(
        email=email,
        first_name="Juan",
        last_name="Cruz",
        password_hash=generate_password_hash("pw"),
        role="user",
        permissions=[],
        allowed_services=[],
        is_email_verified=True,
    )


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("PAYMONGO_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.delenv("PAYMONGO_SECRET_KEY", raising=False)
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "MAILGUN_API_KEY", "MAILGUN_DOMAIN"):
        monkeypatch.delenv(k, raising=False)

    from app.lgu.auth import _login_attempts

    _login_attempts.clear()
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add_all([_user("juan@example.com"), _user("maria@example.com")])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def outbox(monkeypatch):
    sent = []

    def _fake_send(to, subject, html_body, *, system_name="Payment System"):
        sent.append({"to": to, "subject": subject})
        return True

    monkeypatch.setattr("app.lgu.mailer.send_email", _fake_send)
    return sent


def _login(client, email="juan@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


def _pending_tx(app, *, status="awaiting_payment", reference="MKF-20240101-0001"):
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == "juan@example.com").one()
        now = datetime(2024, 1, 1)
        tx = Transaction(
            date=now,
            service_id="market-fees",
            service_name="Market Fees",
            total_amount_minor=15000,
            reference=reference,
            breakdown=[{"code": "base", "label": "Stall fee", "amountMinor": 15000}],
            status=status,
            user_id=owner.id,
            user_email=owner.email,
            user_full_name="Juan Cruz",
            notifications={"email": {}},
            created_at=now,
            updated_at=now,
        )
        s.add(tx)
        s.flush()
        return tx.id


def _get_tx(app, tx_id):
    with session_scope(app) as s:
        tx = s.get(Transaction, tx_id)
        return tx.status, dict(tx.payment or {}), tx.channel


def _signed_post(client, event, secret=WEBHOOK_SECRET, timestamp="1700000000"):
    body = json.dumps(event).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + b"." + body, hashlib.sha256).hexdigest()
    return client.post(
        "/payments/webhook",
        data=body,
        content_type="application/json",
        headers={"paymongo-signature": f"t={timestamp},te={sig},li="},
    )


def _paid_event(tx_id):
    return {
        "data": {
            "id": "evt_1",
            "attributes": {
                "type": "checkout_session.payment.paid",
                "data": {
                    "id": "cs_123",
                    "attributes": {
                        "metadata": {"transactionId": str(tx_id)},
                        "payments": [{"id": "pay_abc", "attributes": {"source": {"type": "gcash"}}}],
                        "payment_intent": {"id": "pi_1"},
                    },
                },
            },
        }
    }


# ---------- Webhook ----------
def test_webhook_rejects_bad_signature(client):
    r = client.post(
        "/payments/webhook",
        data=b"{}",
        content_type="application/json",
        headers={"paymongo-signature": "t=1,te=deadbeef,li="},
    )
    assert r.status_code == 400

    r = client.post("/payments/webhook", data=b"{}", content_type="application/json")
    assert r.status_code == 400


def test_webhook_requires_secret(client, monkeypatch):
    monkeypatch.setitem(client.application.config, "PAYMONGO_WEBHOOK_SECRET", "")
    r = _signed_post(client, {"data": {}})
    assert r.status_code == 500


def test_paid_webhook_marks_transaction_paid_and_emails_once(app, client, outbox):
    tx_id = _pending_tx(app)

    r = _signed_post(client, _paid_event(tx_id))
    assert r.status_code == 200
    assert r.json == {"received": True}

    status, payment, channel = _get_tx(app, tx_id)
    assert status == "paid"
    assert payment["providerTransactionId"] == "pay_abc"
    assert payment["providerSessionId"] == "cs_123"
    assert payment["providerIntentId"] == "pi_1"
    assert payment["subchannel"] == "gcash"
    assert channel == "online_wallet"
    assert len(outbox) == 1
    assert outbox[0]["to"] == "juan@example.com"

    # PayMongo retries deliveries
    _signed_post(client, _paid_event(tx_id))
    assert len(outbox) == 1


def test_refund_webhook_matches_payment_id(app, client, outbox):
    tx_id = _pending_tx(app)
    _signed_post(client, _paid_event(tx_id))

    refund = {
        "data": {
            "id": "evt_2",
            "attributes": {
                "type": "payment.refunded",
                "data": {"id": "ref_1", "attributes": {"payment_id": "pay_abc", "status": "succeeded"}},
            },
        }
    }
    r = _signed_post(client, refund)
    assert r.status_code == 200
    status, payment, _ = _get_tx(app, tx_id)
    assert status == "refunded"
    assert payment["providerStatus"] == "succeeded"
    assert len(outbox) == 2


def test_failed_webhook_and_unknown_events(app, client, outbox):
    tx_id = _pending_tx(app)
    expired = {
        "data": {
            "id": "evt_3",
            "attributes": {
                "type": "checkout_session.expired",
                "data": {"id": "cs_9", "attributes": {"success_url": f"https://lgu.example/ok?transactionId={tx_id}"}},
            },
        }
    }
    assert _signed_post(client, expired).status_code == 200
    assert _get_tx(app, tx_id)[0] == "failed"

    other = {"data": {"id": "evt_4", "attributes": {"type": "source.chargeable", "data": {"id": "src_1", "attributes": {}}}}}
    assert _signed_post(client, other).status_code == 200
    assert len(outbox) == 1


# ---------- Cancel ----------
def test_cancel_own_pending_transaction(app, client, outbox):
    tx_id = _pending_tx(app)
    _login(client)
    r = client.patch(f"/payments/cancel/{tx_id}")
    assert r.status_code == 200
    assert r.json == {"transactionId": tx_id, "status": "ok"}
    assert _get_tx(app, tx_id)[0] == "failed"
    assert len(outbox) == 1


def test_cancel_requires_ownership(app, client):
    tx_id = _pending_tx(app)
    _login(client, "maria@example.com")
    assert client.patch(f"/payments/cancel/{tx_id}").status_code == 404
    assert client.patch("/payments/cancel/999").status_code == 404


def test_cancel_keeps_paid_transaction(app, client, outbox):
    tx_id = _pending_tx(app, status="paid")
    _login(client)
    r = client.patch(f"/payments/cancel/{tx_id}")
    assert r.status_code == 200
    assert _get_tx(app, tx_id)[0] == "paid"
    assert outbox == []


# ---------- Initiate ----------
INITIATE = {
    "serviceId": "market_fees",
    "serviceName": "Market Fees",
    "successUrl": "https://lgu.example/payments/success",
    "cancelUrl": "https://lgu.example/payments/cancel",
    "breakdown": [
        {"code": "base", "label": "Stall fee", "amountMinor": 15000},
        {"code": "convenience_fee", "label": "Convenience fee", "amountMinor": 500},
    ],
    "totalAmountMinor": 15500,
    "paymentMethod": "digital-wallets",
}


def test_initiate_requires_provider_key(client):
    _login(client)
    r = client.post("/payments/initiate", json=INITIATE)
    assert r.status_code == 500


def test_initiate_validation(client, monkeypatch):
    monkeypatch.setitem(client.application.config, "PAYMONGO_SECRET_KEY", "sk_test_123")
    _login(client)
    r = client.post("/payments/initiate", json={"serviceId": "market-fees", "paymentMethod": "cash"})
    assert r.status_code == 400
    fields = {e["field"] for e in r.json["errors"]}
    assert {"serviceName", "successUrl", "cancelUrl", "breakdown", "totalAmountMinor", "paymentMethod"} <= fields

    r = client.post("/payments/initiate", json={**INITIATE, "totalAmountMinor": 1})
    assert r.status_code == 400


def test_initiate_opens_checkout(app, client, monkeypatch):
    calls = []

    def _fake_checkout(self, attributes):
        calls.append(attributes)
        return {"data": {"id": "cs_abc", "attributes": {"checkout_url": "https://checkout.paymongo.com/cs_abc", "status": "active"}}}

    monkeypatch.setattr(PaymongoClient, "create_checkout_session", _fake_checkout)
    monkeypatch.setitem(client.application.config, "PAYMONGO_SECRET_KEY", "sk_test_123")
    _login(client)

    r = client.post("/payments/initiate", json=INITIATE)
    assert r.status_code == 201
    assert r.json["checkoutUrl"] == "https://checkout.paymongo.com/cs_abc"
    tx_id = r.json["transactionId"]

    sent = calls[0]
    assert sent["payment_method_types"] == ["gcash", "paymaya"]
    assert sent["metadata"]["transactionId"] == str(tx_id)
    assert sent["success_url"].endswith(f"transactionId={tx_id}")
    assert sent["line_items"][0]["amount"] == 15500

    status, payment, channel = _get_tx(app, tx_id)
    assert status == "awaiting_payment"
    assert payment["providerSessionId"] == "cs_abc"
    assert channel == "online_wallet"

    with session_scope(app) as s:
        tx = s.get(Transaction, tx_id)
        assert tx.service_id == "market-fees"
        assert tx.reference.startswith("MKF")
        assert tx.user_email == "juan@example.com"
