"""Tests for presigned citizen uploads on the local storage backend."""
from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User
from app.lgu.modules.transactions.models import Transaction


def _user(email, role):
    return User(
        email=email,
        first_name="Test",
        last_name="Person",
        password_hash=generate_password_hash("pw"),
        role=role,
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
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "MAILGUN_API_KEY", "MAILGUN_DOMAIN"):
        monkeypatch.delenv(k, raising=False)

    from app.lgu.auth import _login_attempts

    _login_attempts.clear()
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add_all([_user("ana@example.com", "user"), _user("ben@example.com", "user"), _user("admin@example.com", "admin")])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="ana@example.com"):
    path = "/auth/admin/login" if email.startswith("admin") else "/auth/login"
    r = client.post(path, json={"email": email, "password": "pw"})
    assert r.status_code == 200


def _attach(app, key, owner_email="ana@example.com"):
    """Record `key` as the permit field of a transaction owned by `owner_email`."""
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == owner_email).one()
        now = datetime(2024, 1, 1)
        tx = Transaction(
            date=now,
            service_id="building-permits",
            service_name="Building Permits",
            total_amount_minor=0,
            reference=f"BLD-{owner.id}-{len(key)}",
            breakdown=[],
            form_data={"permitScan": key},
            status="pending",
            user_id=owner.id,
            created_at=now,
            updated_at=now,
        )
        s.add(tx)
        s.flush()
        return tx.id


def test_presign_requires_citizen(client):
    assert client.post("/uploads/presign", json={"contentType": "application/pdf"}).status_code == 401
    _login(client, "admin@example.com")
    assert client.post("/uploads/presign", json={"contentType": "application/pdf"}).status_code == 403


def test_presign_rejects_unsupported_type(client):
    _login(client)
    r = client.post("/uploads/presign", json={"contentType": "application/x-msdownload"})
    assert r.status_code == 400
    assert r.json["error"] == "Unsupported file type"


def test_presign_upload_and_view(app, client):
    _login(client)
    r = client.post("/uploads/presign", json={"contentType": "application/pdf", "maxBytes": 10**9, "keyPrefix": "../permits"})
    assert r.status_code == 200
    key = r.json["key"]
    assert key.endswith(".pdf")
    assert ".." not in key
    assert r.json["headers"]["Content-Length"] == str(10 * 1024 * 1024)

    r = client.put(r.json["uploadUrl"], data=b"%PDF-1.4 test", content_type="application/pdf")
    assert r.status_code == 200

    tx_id = _attach(app, key)
    r = client.get("/uploads/view", query_string={"key": key, "transactionId": tx_id, "fieldId": "permitScan"})
    assert r.status_code == 200
    r = client.get(r.json["url"])
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 test"


def test_view_requires_transaction_context(app, client):
    tx_id = _attach(app, "user-uploads/1-abc.pdf")
    _login(client)

    r = client.get("/uploads/view", query_string={"key": "user-uploads/1-abc.pdf"})
    assert r.status_code == 403

    r = client.get("/uploads/view", query_string={"key": "user-uploads/other.pdf", "transactionId": tx_id, "fieldId": "permitScan"})
    assert r.status_code == 403

    r = client.get("/uploads/view", query_string={"key": "user-uploads/1-abc.pdf", "transactionId": 999, "fieldId": "permitScan"})
    assert r.status_code == 404

    r = client.get("/uploads/view", query_string={"key": "../etc/passwd", "transactionId": tx_id, "fieldId": "permitScan"})
    assert r.status_code == 400


def test_view_rejects_other_citizens_and_allows_admins(app, client):
    tx_id = _attach(app, "user-uploads/2-def.pdf")
    query = {"key": "user-uploads/2-def.pdf", "transactionId": tx_id, "fieldId": "permitScan"}

    _login(client, "ben@example.com")
    assert client.get("/uploads/view", query_string=query).status_code == 403

    admin = app.test_client()
    _login(admin, "admin@example.com")
    r = admin.get("/uploads/view", query_string={"key": "user-uploads/2-def.pdf"})
    assert r.status_code == 200
    assert r.json["url"].startswith("/uploads/files/user-uploads/2-def.pdf?")


def test_signed_urls_are_checked(client):
    r = client.put("/uploads/files/user-uploads/x.pdf?op=put&expires=9999999999&signature=bad", data=b"x")
    assert r.status_code == 403
    r = client.get("/uploads/files/user-uploads/x.pdf?op=get&expires=1&signature=bad")
    assert r.status_code == 403
