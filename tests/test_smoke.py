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

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add_all(
            [
                User(
                    email="admin@example.com",
                    first_name="Ada",
                    last_name="Admin",
                    password_hash=generate_password_hash("pw"),
                    role="admin",
                    permissions=[],
                    allowed_services=[],
                    is_email_verified=True,
                ),
                User(
                    email="citizen@example.com",
                    first_name="Cita",
                    last_name="Zen",
                    password_hash=generate_password_hash("pw"),
                    role="user",
                    permissions=[],
                    allowed_services=[],
                    is_email_verified=True,
                ),
            ]
        )

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_plain(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_admin_access_requires_login(client):
    # Anonymous should be rejected
    r = client.get("/admin/transactions")
    assert r.status_code == 401
    assert r.json["statusCode"] == 401

    r = client.post("/auth/admin/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "admin"

    r = client.get("/admin/transactions")
    assert r.status_code == 200
    assert r.json["data"] == []


def test_citizen_cannot_reach_admin_routes(client):
    r = client.post("/auth/login", json={"email": "citizen@example.com", "password": "pw"})
    assert r.status_code == 200

    r = client.get("/admin/transactions")
    assert r.status_code == 403


def test_unknown_route_is_json(client):
    r = client.get("/no-such-route")
    assert r.status_code == 404
    assert r.json["statusCode"] == 404
