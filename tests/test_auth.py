import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User, VerificationCode


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
        s.add(
            User(
                email="admin@example.com",
                first_name="Ada",
                last_name="Admin",
                password_hash=generate_password_hash("pw"),
                role="admin",
                permissions=[],
                allowed_services=[],
                is_email_verified=True,
            )
        )
    return app


@pytest.fixture()
def outbox(monkeypatch):
    sent = []

    def _fake_send(to, subject, html_body, *, system_name="Payment System"):
        sent.append({"to": to, "subject": subject, "html": html_body})
        return True

    monkeypatch.setattr("app.lgu.mailer.send_email", _fake_send)
    return sent


@pytest.fixture()
def client(app):
    return app.test_client()


REGISTRATION = {
    "accountType": "individual",
    "email": "Juan@Example.com",
    "firstName": "Juan",
    "lastName": "Dela Cruz",
    "gender": "male",
    "contact": "09171234567",
    "password": "Secret1!x",
}


def _latest_code(app, email, code_type):
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == email).one()
        vc = (
            s.query(VerificationCode)
            .filter(VerificationCode.user_id == user.id, VerificationCode.type == code_type)
            .order_by(VerificationCode.id.desc())
            .first()
        )
        return vc.code


def test_register_verify_login_flow(app, client, outbox):
    r = client.post("/auth/register", json=REGISTRATION)
    assert r.status_code == 201
    assert r.json["user"]["email"] == "juan@example.com"
    assert r.json["user"]["isEmailVerified"] is False
    assert outbox and outbox[0]["to"] == "juan@example.com"

    # Unverified accounts cannot log in
    r = client.post("/auth/login", json={"email": "juan@example.com", "password": "Secret1!x"})
    assert r.status_code == 401
    assert "verify" in r.json["error"]

    r = client.post("/auth/verify-email", json={"email": "juan@example.com", "code": "000000"})
    assert r.status_code == 400

    code = _latest_code(app, "juan@example.com", "email_verification")
    r = client.post("/auth/verify-email", json={"email": "juan@example.com", "code": code})
    assert r.status_code == 200

    r = client.post("/auth/verify-email", json={"email": "juan@example.com", "code": code})
    assert r.status_code == 400

    r = client.post("/auth/login", json={"email": "juan@example.com", "password": "Secret1!x"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "user"

    r = client.get("/auth/profile")
    assert r.status_code == 200
    assert r.json["fullName"] == "Juan Dela Cruz"


def test_register_validation_and_duplicates(client, outbox):
    r = client.post("/auth/register", json={**REGISTRATION, "password": "weakpass"})
    assert r.status_code == 400
    assert r.json["errors"][0]["field"] == "password"

    assert client.post("/auth/register", json=REGISTRATION).status_code == 201
    r = client.post("/auth/register", json=REGISTRATION)
    assert r.status_code == 409

    r = client.post("/auth/check-email", json={"email": "juan@example.com"})
    assert r.json["available"] is False
    r = client.post("/auth/check-email", json={"email": "free@example.com"})
    assert r.json["available"] is True


def test_login_surfaces_are_role_separated(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid email or password"

    r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401

    r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200


def test_login_rate_limited_per_ip(client):
    for _ in range(5):
        r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "wrong"})
        assert r.status_code == 401
    r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 429


def test_refresh_and_logout(client):
    r = client.post("/auth/refresh")
    assert r.status_code == 401

    client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.get("/auth/verify-token")
    assert r.status_code == 200
    assert r.json["valid"] is True

    r = client.post("/auth/refresh")
    assert r.status_code == 200

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/auth/verify-token").status_code == 401
    assert client.post("/auth/refresh").status_code == 401


def test_password_reset_flow(app, client, outbox):
    r = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert outbox == []

    r = client.post("/auth/forgot-password", json={"email": "admin@example.com"})
    assert r.status_code == 200
    assert len(outbox) == 1

    code = _latest_code(app, "admin@example.com", "password_reset")
    r = client.post("/auth/reset-password", json={"email": "admin@example.com", "code": code, "newPassword": "N3wSecret!"})
    assert r.status_code == 200

    r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "N3wSecret!"})
    assert r.status_code == 200

    r = client.patch("/auth/password", json={"currentPassword": "wrong", "newPassword": "An0ther!pw"})
    assert r.status_code == 401
    r = client.patch("/auth/password", json={"currentPassword": "N3wSecret!", "newPassword": "An0ther!pw"})
    assert r.status_code == 200


def test_profile_update(app, client, outbox):
    client.post("/auth/register", json=REGISTRATION)
    code = _latest_code(app, "juan@example.com", "email_verification")
    client.post("/auth/verify-email", json={"email": "juan@example.com", "code": code})
    client.post("/auth/login", json={"email": "juan@example.com", "password": "Secret1!x"})

    r = client.patch("/auth/profile", json={"firstName": "J"})
    assert r.status_code == 400

    r = client.patch("/auth/profile", json={"firstName": "Juana", "lastName": "Dela Cruz", "contact": "09170000000"})
    assert r.status_code == 200
    assert r.json["user"]["firstName"] == "Juana"
