"""Tests for admin-defined application services and payment services."""
import re

import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User


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
        s.add(
            User(
                email="builder@example.com",
                first_name="Bea",
                last_name="Builder",
                password_hash=generate_password_hash("pw"),
                role="admin",
                permissions=["application_management_setting", "payment_management_setting"],
                allowed_services=[],
                is_email_verified=True,
            )
        )
        s.add(
            User(
                email="viewer@example.com",
                first_name="Vic",
                last_name="Viewer",
                password_hash=generate_password_hash("pw"),
                role="admin",
                permissions=[],
                allowed_services=[],
                is_email_verified=True,
            )
        )
    return app.test_client()


def _login(client, email="builder@example.com"):
    r = client.post("/auth/admin/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


# ---------- Application services ----------
APPLICATION = {
    "title": "Barangay Clearance",
    "description": "Request a clearance",
    "formFields": [
        {"type": "text", "label": "Full name", "required": True, "stepIndex": 0, "fieldOrder": 1},
        {
            "type": "radio",
            "label": "Purpose",
            "options": [
                {"value": "work", "label": "Employment", "conditionalField": {"type": "text", "label": "Employer"}},
                {"value": "", "label": ""},
            ],
        },
    ],
    "formSteps": [{"index": 0, "letter": "A", "label": "Applicant"}],
    "buttonTexts": {"submit": "Send", "next": "  "},
}


def test_application_service_requires_permission(client):
    _login(client, "viewer@example.com")
    assert client.post("/custom-application-services", json=APPLICATION).status_code == 403


def test_application_service_lifecycle(client):
    _login(client)
    r = client.post("/custom-application-services", json=APPLICATION)
    assert r.status_code == 201
    svc = r.json
    assert re.match(r"^barangay-clearance_\d{8}_\d{6}_1$", svc["id"])
    assert svc["visible"] is False
    assert svc["buttonTexts"] == {"submit": "Send"}
    purpose = svc["formFields"][1]
    assert purpose["options"] == [
        {"value": "work", "label": "Employment", "conditionalFields": [{"type": "text", "label": "Employer"}]}
    ]

    r = client.post("/custom-application-services", json=APPLICATION)
    assert r.json["id"].endswith("_2")

    # hidden services are not public
    assert client.get(f"/custom-application-services/public/{svc['id']}").status_code == 404
    assert client.get("/custom-application-services/public/visible").json == []

    r = client.patch(f"/custom-application-services/{svc['id']}/visible", json={"visible": "yes"})
    assert r.status_code == 400
    r = client.patch(f"/custom-application-services/{svc['id']}/visible", json={"visible": True})
    assert r.json["visible"] is True
    assert [x["id"] for x in client.get("/custom-application-services/public/visible").json] == [svc["id"]]

    r = client.patch(f"/custom-application-services/{svc['id']}", json={"title": "Clearance", "formFields": []})
    assert r.status_code == 200
    assert r.json["title"] == "Clearance"
    assert r.json["id"] == svc["id"]
    assert r.json["formFields"] == []

    assert client.get("/custom-application-services?visible=false").status_code == 200
    assert client.delete(f"/custom-application-services/{svc['id']}").status_code == 200
    assert client.get(f"/custom-application-services/{svc['id']}").status_code == 404


def test_application_service_rejects_bad_fields(client):
    _login(client)
    r = client.post("/custom-application-services", json={"title": "X", "formFields": [{"type": "text"}]})
    assert r.status_code == 400
    assert "label is required" in r.json["error"]

    r = client.post("/custom-application-services", json={"title": "X", "formFields": [{"type": "video", "label": "V"}]})
    assert r.status_code == 400

    r = client.post("/custom-application-services", json={"title": " "})
    assert r.status_code == 400


# ---------- Payment services ----------
def test_payment_service_cost_field_pins_base_amount(client):
    _login(client)
    r = client.post(
        "/custom-payment-services",
        json={
            "title": "Garbage Fee",
            "baseAmount": 250,
            "processingFee": 10,
            "formFields": [
                {"label": "Account No.", "type": "text", "required": True},
                {"label": "Amount", "type": "cost", "validation": {"min": 500, "max": 100}},
            ],
        },
    )
    assert r.status_code == 201
    svc = r.json
    assert svc["baseAmount"] == 0
    assert svc["processingFee"] == 10
    assert svc["enabled"] is True
    assert svc["formFields"][0]["id"] == "account-no"
    assert svc["formFields"][1]["validation"] == {"min": 100, "max": 500}

    # the existing cost field keeps baseAmount at 0
    r = client.patch(f"/custom-payment-services/{svc['id']}", json={"baseAmount": 300})
    assert r.json["baseAmount"] == 0

    r = client.patch(f"/custom-payment-services/{svc['id']}", json={"baseAmount": 300, "formFields": []})
    assert r.json["baseAmount"] == 300


def test_payment_service_validation(client):
    _login(client)
    r = client.post("/custom-payment-services", json={"title": "Fee", "baseAmount": -5})
    assert r.status_code == 400

    two_costs = [{"label": "A", "type": "cost"}, {"label": "B", "type": "cost"}]
    r = client.post("/custom-payment-services", json={"title": "Fee", "formFields": two_costs})
    assert r.status_code == 400
    assert r.json["error"] == "Only one cost field is allowed"


def test_payment_service_public_visibility(client):
    _login(client)
    svc = client.post("/custom-payment-services", json={"title": "Dog License", "baseAmount": 100}).json

    assert client.get(f"/custom-payment-services/public/{svc['id']}").status_code == 200
    r = client.patch(f"/custom-payment-services/{svc['id']}/enabled", json={"enabled": False})
    assert r.json["enabled"] is False
    assert client.get(f"/custom-payment-services/public/{svc['id']}").status_code == 404
    assert client.get("/custom-payment-services/public/enabled").json == []
    assert len(client.get("/custom-payment-services?enabled=false").json) == 1

    assert client.delete(f"/custom-payment-services/{svc['id']}").status_code == 200
    assert client.get(f"/custom-payment-services/{svc['id']}").status_code == 404
