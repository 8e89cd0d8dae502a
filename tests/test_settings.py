"""Tests for portal settings: public view, section permissions, assets and built-in form configs."""
import io

import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User


def _admin(email, permissions):
    return User(
        email=email,
        first_name="Test",
        last_name="Admin",
        password_hash=generate_password_hash("pw"),
        role="admin",
        permissions=permissions,
        allowed_services=[],
        is_email_verified=True,
    )


@pytest.fixture()
def client(tmp_path, monkeypatch):
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
        s.add_all(
            [
                _admin("settings@example.com", ["manage_settings"]),
                _admin("payments@example.com", ["payment_management_setting"]),
                _admin("apps@example.com", ["application_management_setting"]),
            ]
        )
    return app.test_client()


def _login(client, email):
    r = client.post("/auth/admin/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


def test_public_settings_created_with_defaults(client):
    r = client.get("/settings/public")
    assert r.status_code == 200
    assert r.json["branding"]["systemName"] == "Payment System"
    assert r.json["assets"]["sealLogoUrl"] == "http://localhost/uploads/seal-logo.svg"
    assert r.json["convenienceFee"]["card"] == {"percent": 3.5, "fixed": 15, "min": 0}
    assert "formConfigs" not in r.json


def test_full_settings_need_manage_permission(client):
    assert client.get("/settings").status_code == 401
    _login(client, "payments@example.com")
    assert client.get("/settings").status_code == 403


def test_update_merges_groups_and_cleans_faq(client):
    _login(client, "settings@example.com")
    r = client.patch(
        "/settings",
        json={
            "city": {"name": "Makati", "unknown": "ignored"},
            "faq": [
                {"question": "How?", "answer": "Online.", "category": "payment"},
                {"question": "", "answer": "dropped"},
                {"question": "Odd category?", "answer": "Yes.", "category": "nope"},
            ],
            "convenienceFee": {"card": {"percent": -1, "fixed": 20}},
            "enabledServices": {"market-fees": False, "not-a-service": False},
        },
    )
    assert r.status_code == 200
    body = r.json
    assert body["city"] == {"name": "Makati", "fullName": "City of Default"}
    assert body["faq"] == [
        {"question": "How?", "answer": "Online.", "category": "payment"},
        {"question": "Odd category?", "answer": "Yes.", "category": "general"},
    ]
    assert body["convenienceFee"]["card"] == {"percent": 0.0, "fixed": 20.0, "min": 0}
    assert body["enabledServices"]["market-fees"] is False

    r = client.get("/settings/enabled-services")
    assert "market-fees" not in [svc["id"] for svc in r.json]


def test_update_permission_depends_on_section(client):
    _login(client, "apps@example.com")
    r = client.patch("/settings", json={"city": {"name": "Nope"}})
    assert r.status_code == 403

    r = client.patch("/settings", json={"addOnServices": []})
    assert r.status_code == 200

    r = client.patch("/settings", json={"customPaymentServices": []})
    assert r.status_code == 403


def test_update_needs_every_section_permission(client):
    _login(client, "apps@example.com")
    r = client.patch(
        "/settings",
        json={"addOnServices": [], "branding": {"systemName": "Hacked"}, "customPaymentServices": [{"title": "X"}]},
    )
    assert r.status_code == 403
    assert client.get("/settings/public").json["branding"]["systemName"] == "Payment System"

    _login(client, "settings@example.com")
    r = client.patch("/settings", json={"addOnServices": [], "branding": {"systemName": "Hacked"}})
    assert r.status_code == 403


def test_form_config_roundtrip(client):
    assert client.get("/settings/form-config/not-a-service").json == {}

    _login(client, "payments@example.com")
    r = client.patch(
        "/settings/form-config/market-fees",
        json={
            "baseAmount": 150,
            "formFields": [
                {"id": "stall", "label": "Stall number", "type": "text", "required": True},
                {"id": "size", "label": "Stall size", "type": "select", "options": [{"value": "s", "label": "Small"}]},
            ],
        },
    )
    assert r.status_code == 200

    r = client.get("/settings/form-config/market-fees")
    assert r.json["baseAmount"] == 150
    assert [f["id"] for f in r.json["formFields"]] == ["stall", "size"]

    r = client.patch("/settings/form-config/market-fees", json={"formFields": [{"id": "x", "label": "X", "type": "bogus"}]})
    assert r.status_code == 400
    assert client.patch("/settings/form-config/unknown", json={}).status_code == 400


def test_asset_upload_and_serving(client):
    _login(client, "settings@example.com")
    r = client.post(
        "/settings/assets",
        data={"file": (io.BytesIO(b"\x89PNG fake"), "seal.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    url = r.json["url"]
    assert "/settings/assets/settings/" in url

    path = url[url.index("/settings/assets/"):]
    r = client.get(path)
    assert r.status_code == 200
    assert r.data == b"\x89PNG fake"

    r = client.post(
        "/settings/assets",
        data={"file": (io.BytesIO(b"%PDF"), "doc.pdf", "application/pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400

    assert client.get("/settings/assets/user-uploads/secret.pdf").status_code == 404
