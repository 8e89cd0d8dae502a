"""Tests for citizen application submissions and the admin review queue."""
from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User
from app.lgu.modules.application_services.models import CustomApplicationService


def _user(email, role, first_name="Test"):
    return User(
        email=email,
        first_name=first_name,
        last_name="Person",
        password_hash=generate_password_hash("pw"),
        role=role,
        permissions=[],
        allowed_services=[],
        is_email_verified=True,
    )


def _service(service_id, title):
    now = datetime(2024, 1, 1)
    return CustomApplicationService(
        id=service_id,
        title=title,
        description="",
        visible=True,
        form_fields=[],
        form_steps=[],
        created_at=now,
        updated_at=now,
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
                _user("admin@example.com", "admin"),
                _user("ana@example.com", "user", first_name="Ana"),
                _user("ben@example.com", "user", first_name="Ben"),
                _service("barangay-clearance_20240101_000000_1", "Barangay Clearance"),
                _service("cedula_20240101_000000_1", "Community Tax Certificate"),
            ]
        )
    return app.test_client()


@pytest.fixture()
def outbox(monkeypatch):
    sent = []

    def _fake_send(to, subject, html_body, *, system_name="Payment System"):
        sent.append({"to": to, "subject": subject, "html": html_body})
        return True

    monkeypatch.setattr("app.lgu.mailer.send_email", _fake_send)
    return sent


CLEARANCE = "barangay-clearance_20240101_000000_1"
CEDULA = "cedula_20240101_000000_1"


def _login_citizen(client, email="ana@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


def _login_admin(client):
    r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200


def test_draft_then_submit(client):
    _login_citizen(client)
    r = client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": CLEARANCE, "formData": {"name": "Ana"}})
    assert r.status_code == 201
    sub = r.json
    assert sub["status"] == "draft"
    assert sub["adminStatus"] is None

    r = client.patch(f"/user/custom-application-form-submissions/{sub['id']}", json={"status": "submitted"})
    assert r.status_code == 200
    assert r.json["status"] == "submitted"
    assert r.json["adminStatus"] == "pending"
    assert r.json["formData"] == {"name": "Ana"}

    r = client.patch(f"/user/custom-application-form-submissions/{sub['id']}", json={"status": "draft"})
    assert r.json["adminStatus"] is None


def test_submission_validation(client):
    _login_citizen(client)
    r = client.post("/user/custom-application-form-submissions", json={"formData": []})
    assert r.status_code == 400
    fields = {e["field"] for e in r.json["errors"]}
    assert fields == {"customApplicationServiceId", "formData"}

    r = client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": CLEARANCE, "status": "approved"})
    assert r.status_code == 400


def test_submissions_are_private_to_owner(client):
    _login_citizen(client)
    sub_id = client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": CLEARANCE}).json["id"]

    client.post("/auth/logout")
    _login_citizen(client, "ben@example.com")
    assert client.get(f"/user/custom-application-form-submissions/{sub_id}").status_code == 403
    assert client.patch(f"/user/custom-application-form-submissions/{sub_id}", json={"formData": {}}).status_code == 403
    assert client.delete(f"/user/custom-application-form-submissions/{sub_id}").status_code == 403
    assert client.get("/user/custom-application-form-submissions/999").status_code == 404

    r = client.get("/user/custom-application-form-submissions")
    assert r.json == {"items": [], "total": 0, "page": 1, "limit": 20, "totalPages": 0}


def test_citizen_listing_filters_and_delete(client):
    _login_citizen(client)
    for service_id, status in ((CLEARANCE, "draft"), (CLEARANCE, "submitted"), (CEDULA, "submitted")):
        client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": service_id, "status": status})

    r = client.get(f"/user/custom-application-form-submissions?customApplicationServiceId={CLEARANCE}&status=submitted")
    assert r.json["total"] == 1

    r = client.get("/user/custom-application-form-submissions?limit=2&page=2")
    assert r.json["totalPages"] == 2
    assert len(r.json["items"]) == 1

    sub_id = r.json["items"][0]["id"]
    assert client.delete(f"/user/custom-application-form-submissions/{sub_id}").status_code == 204
    assert client.get(f"/user/custom-application-form-submissions/{sub_id}").status_code == 404


def test_admin_review_sends_status_email(client, outbox):
    _login_citizen(client)
    draft_id = client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": CLEARANCE}).json["id"]
    sub_id = client.post(
        "/user/custom-application-form-submissions",
        json={"customApplicationServiceId": CLEARANCE, "status": "submitted"},
    ).json["id"]
    client.post("/auth/logout")

    _login_admin(client)
    r = client.patch(f"/admin/applications/{draft_id}/status", json={"adminStatus": "approved"})
    assert r.status_code == 403

    r = client.patch(f"/admin/applications/{sub_id}/status", json={"adminStatus": "done"})
    assert r.status_code == 400
    r = client.patch(f"/admin/applications/{sub_id}/status", json={"adminStatus": "approved", "adminNotes": 5})
    assert r.status_code == 400

    r = client.patch(f"/admin/applications/{sub_id}/status", json={"adminStatus": "approved", "adminNotes": "All good"})
    assert r.status_code == 200
    assert r.json["adminStatus"] == "approved"
    assert r.json["adminNotes"] == "All good"
    assert r.json["customApplicationServiceTitle"] == "Barangay Clearance"

    assert len(outbox) == 1
    assert outbox[0]["to"] == "ana@example.com"
    assert outbox[0]["subject"].startswith("Application Approved!")
    assert "All good" in outbox[0]["html"]

    # unchanged status: no second email
    client.patch(f"/admin/applications/{sub_id}/status", json={"adminStatus": "approved"})
    assert len(outbox) == 1


def test_status_update_survives_email_failure(client, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("smtp down")

    monkeypatch.setattr("app.lgu.mailer.send_email", _boom)

    _login_citizen(client)
    sub_id = client.post(
        "/user/custom-application-form-submissions",
        json={"customApplicationServiceId": CLEARANCE, "status": "submitted"},
    ).json["id"]
    client.post("/auth/logout")

    _login_admin(client)
    r = client.patch(f"/admin/applications/{sub_id}/status", json={"adminStatus": "rejected"})
    assert r.status_code == 200
    assert client.get(f"/admin/applications/{sub_id}").json["adminStatus"] == "rejected"


def test_admin_listing_search(client):
    _login_citizen(client)
    client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": CLEARANCE, "status": "submitted"})
    client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": CEDULA, "status": "submitted"})
    client.post("/user/custom-application-form-submissions", json={"customApplicationServiceId": "deleted-service"})
    client.post("/auth/logout")

    _login_admin(client)
    r = client.get("/admin/applications?search=clearance")
    assert [x["customApplicationServiceTitle"] for x in r.json["items"]] == ["Barangay Clearance"]

    r = client.get("/admin/applications?search=nothing-matches")
    assert r.json["total"] == 0

    r = client.get("/admin/applications?adminStatus=pending")
    assert r.json["total"] == 2

    r = client.get("/admin/applications?status=draft")
    assert r.json["items"][0]["customApplicationServiceTitle"] is None

    first_id = r.json["items"][0]["id"]
    r = client.get(f"/admin/applications?search={first_id}")
    assert first_id in [x["id"] for x in r.json["items"]]

    assert client.get("/admin/applications?userId=abc").status_code == 400
    assert client.get("/admin/applications/999").status_code == 404
