"""Tests for the transactions module: create/update rules, scoping, stats, export and aggregation reports."""
import os
import time
from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.lgu import create_app
from app.lgu.db import session_scope
from app.lgu.models import Base, User
from app.lgu.modules.transactions.models import Transaction
from app.lgu.modules.transactions.service import (
    aggregate_transactions,
    get_stats,
    period_value,
    success_rate,
)


def _user(email, role, allowed_services=None):
    return User(
        email=email,
        first_name="Test",
        last_name=role.title(),
        password_hash=generate_password_hash("pw"),
        role=role,
        permissions=[],
        allowed_services=allowed_services or [],
        is_email_verified=True,
    )


def _tx(reference, *, date, status="paid", amount=100, service_id="business-permits", service_name="Business Permits", channel=None, created_at=None, user_email=None):
    created = created_at or date or datetime(2024, 1, 1)
    return Transaction(
        date=date,
        service_id=service_id,
        service_name=service_name,
        total_amount_minor=amount,
        reference=reference,
        breakdown=[{"code": "base", "label": "Base", "amountMinor": amount}],
        status=status,
        channel=channel,
        user_email=user_email,
        notifications={"email": {}},
        created_at=created,
        updated_at=created,
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
        s.add_all(
            [
                _user("admin@example.com", "admin"),
                _user("scoped@example.com", "admin", allowed_services=["business-permits"]),
                _user("legacy@example.com", "admin", allowed_services=["Business Permits"]),
                _user("citizen@example.com", "user"),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    r = client.post("/auth/admin/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


def _payload(reference="BSP-0001", total=15000, breakdown=None, **extra):
    body = {
        "date": "2024-03-01T08:00:00Z",
        "service": {"serviceId": "business-permits", "name": "Business Permits", "approvalRequired": True},
        "totalAmountMinor": total,
        "details": {
            "reference": reference,
            "breakdown": breakdown
            if breakdown is not None
            else [
                {"code": "base", "label": "Permit fee", "amountMinor": 12000},
                {"code": "convenience_fee", "label": "Convenience fee", "amountMinor": 3000},
            ],
        },
    }
    body.update(extra)
    return body


# ---------- Create / update ----------
def test_create_requires_admin(client):
    r = client.post("/admin/transactions", json=_payload())
    assert r.status_code == 401


def test_create_rejects_breakdown_mismatch(client):
    _login(client)
    r = client.post("/admin/transactions", json=_payload(total=16000))
    assert r.status_code == 400
    assert "breakdown" in r.json["error"]

    r = client.get("/admin/transactions")
    assert r.json["pagination"]["totalCount"] == 0


def test_create_and_duplicate_reference(client):
    _login(client)
    r = client.post("/admin/transactions", json=_payload())
    assert r.status_code == 201
    assert r.json["totalAmountMinor"] == 15000
    assert r.json["status"] == "pending"
    assert r.json["service"]["serviceId"] == "business-permits"

    r = client.post("/admin/transactions", json=_payload())
    assert r.status_code == 409


def test_create_rejects_invalid_initial_status(client):
    _login(client)
    r = client.post("/admin/transactions", json=_payload(status="awaiting_payment"))
    assert r.status_code == 400
    assert "approval-required" in r.json["error"]


def test_create_validation_errors_are_listed(client):
    _login(client)
    r = client.post("/admin/transactions", json={"service": {"serviceId": "", "name": ""}})
    assert r.status_code == 400
    fields = {e["field"] for e in r.json["errors"]}
    assert {"date", "service.serviceId", "service.name", "totalAmountMinor", "details"} <= fields


def test_update_rechecks_sum_against_stored_breakdown(client):
    _login(client)
    tx_id = client.post("/admin/transactions", json=_payload()).json["id"]

    r = client.patch(f"/admin/transactions/{tx_id}", json={"totalAmountMinor": 1})
    assert r.status_code == 400

    r = client.patch(
        f"/admin/transactions/{tx_id}",
        json={"totalAmountMinor": 500, "details": {"breakdown": [{"code": "base", "label": "Base", "amountMinor": 500}]}},
    )
    assert r.status_code == 200
    assert r.json["totalAmountMinor"] == 500

    r = client.delete(f"/admin/transactions/{tx_id}")
    assert r.status_code == 200
    assert client.get(f"/admin/transactions/{tx_id}").status_code == 404


def test_payment_channel_is_mirrored_and_session_id_moved(client):
    _login(client)
    body = _payload(payment={"channel": "card", "providerTransactionId": "cs_abc"})
    r = client.post("/admin/transactions", json=body)
    assert r.status_code == 201
    payment = r.json["payment"]
    assert payment["provider"] == "paymongo"
    assert payment["providerSessionId"] == "cs_abc"
    assert "providerTransactionId" not in payment

    r = client.get("/admin/transactions?channel=card")
    assert r.json["pagination"]["totalCount"] == 1


def test_user_id_must_reference_an_existing_user(app, client):
    _login(client)
    r = client.post("/admin/transactions", json=_payload(userId=999999))
    assert r.status_code == 400
    assert r.json["error"] == "User not found"

    r = client.post("/admin/transactions", json=_payload(userId="abc"))
    assert r.status_code == 400
    assert "userId" in {e["field"] for e in r.json["errors"]}

    with session_scope(app) as s:
        citizen_id = s.query(User.id).filter(User.email == "citizen@example.com").scalar()
    r = client.post("/admin/transactions", json=_payload(userId=citizen_id))
    assert r.status_code == 201
    assert r.json["userId"] == citizen_id
    tx_id = r.json["id"]

    r = client.patch(f"/admin/transactions/{tx_id}", json={"userId": 999999})
    assert r.status_code == 400
    r = client.patch(f"/admin/transactions/{tx_id}", json={"userId": True})
    assert r.status_code == 400
    assert client.get(f"/admin/transactions/{tx_id}").json["userId"] == citizen_id

    r = client.patch(f"/admin/transactions/{tx_id}", json={"userId": None})
    assert r.status_code == 200
    assert r.json["userId"] is None


# ---------- Listing / scope ----------
def test_scoped_admin_sees_only_allowed_services(app, client):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("BSP-1", date=datetime(2024, 1, 5)),
                _tx("LEG-1", date=datetime(2024, 1, 6), service_id=None),
                _tx("MKF-1", date=datetime(2024, 1, 7), service_id="market-fees", service_name="Market Fees"),
            ]
        )

    _login(client, "scoped@example.com")
    r = client.get("/admin/transactions")
    assert sorted(t["details"]["reference"] for t in r.json["data"]) == ["BSP-1", "LEG-1"]

    r = client.get("/admin/transactions?serviceId=market-fees")
    assert r.json["data"] == []


def test_search_escapes_like_wildcards(app, client):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("BSP-100%", date=datetime(2024, 1, 5)),
                _tx("BSP-1000", date=datetime(2024, 1, 6)),
            ]
        )
    _login(client)
    r = client.get("/admin/transactions", query_string={"q": "100%"})
    assert [t["details"]["reference"] for t in r.json["data"]] == ["BSP-100%"]


def test_list_rejects_non_numeric_user_id(client):
    _login(client)
    assert client.get("/admin/transactions?userId=abc").status_code == 400
    assert client.get("/admin/transactions?userId=12").status_code == 200


def test_citizen_only_sees_own_transactions(app, client):
    with session_scope(app) as s:
        citizen = s.query(User).filter(User.email == "citizen@example.com").one()
        mine = _tx("MINE-1", date=datetime(2024, 1, 5))
        mine.user_id = citizen.id
        s.add_all([mine, _tx("OTHER-1", date=datetime(2024, 1, 6))])
        s.flush()
        other_id = s.query(Transaction.id).filter(Transaction.reference == "OTHER-1").scalar()

    r = client.post("/auth/login", json={"email": "citizen@example.com", "password": "pw"})
    assert r.status_code == 200
    r = client.get("/user/transactions")
    assert [t["details"]["reference"] for t in r.json["data"]] == ["MINE-1"]
    assert client.get(f"/user/transactions/{other_id}").status_code == 404


# ---------- Aggregation ----------
def test_period_value_buckets():
    moment = datetime(2024, 2, 29, 23, 59)
    assert period_value(moment, "day") == "2024-02-29"
    assert period_value(moment, "week") == "2024-02-26"
    assert period_value(moment, "month") == "2024-02"
    assert period_value(moment, "year") == "2024"


def test_success_rate_zero_count():
    assert success_rate(0, 0) == 0.0
    assert success_rate(1, 4) == 25.0


def test_month_buckets_follow_utc_business_date(app):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("A", date=datetime(2024, 1, 31, 23, 30)),
                _tx("B", date=datetime(2024, 2, 1, 0, 30)),
                # no business date: falls back to created_at
                _tx("C", date=None, created_at=datetime(2024, 2, 15, 12, 0)),
            ]
        )
        s.flush()
        report = aggregate_transactions(s, period="month")

    assert [(b["periodValue"], b["count"]) for b in report["timeSeries"]] == [("2024-01", 1), ("2024-02", 2)]


@pytest.mark.skipif(not hasattr(time, "tzset"), reason="needs time.tzset")
def test_month_buckets_ignore_server_local_timezone(client):
    previous = os.environ.get("TZ")
    os.environ["TZ"] = "Asia/Manila"
    time.tzset()
    try:
        _login(client)
        r = client.post("/admin/transactions", json=_payload(date="2024-01-31T20:00:00-08:00"))
        assert r.status_code == 201

        r = client.get("/admin/transactions/reports/aggregate?period=month")
        assert [b["periodValue"] for b in r.json["timeSeries"]] == ["2024-02"]
    finally:
        if previous is None:
            os.environ.pop("TZ", None)
        else:
            os.environ["TZ"] = previous
        time.tzset()


def test_monthly_report_end_to_end(app, client):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("JAN-1", date=datetime(2024, 1, 5), status="paid", amount=100, channel="card"),
                _tx("FEB-1", date=datetime(2024, 2, 10), status="failed", amount=50, channel="qrph"),
                _tx("FEB-2", date=datetime(2024, 2, 20), status="completed", amount=200, channel="card"),
            ]
        )

    _login(client)
    r = client.get("/admin/transactions/reports/aggregate?period=month")
    assert r.status_code == 200
    jan, feb = r.json["timeSeries"]
    assert jan == {"periodValue": "2024-01", "count": 1, "totalAmountMinor": 100, "successCount": 1, "successRate": 100.0}
    assert feb == {"periodValue": "2024-02", "count": 2, "totalAmountMinor": 250, "successCount": 1, "successRate": 50.0}

    totals = r.json["totals"]
    assert totals["count"] == 3
    assert totals["totalAmountMinor"] == 350
    assert totals["successRate"] == pytest.approx(200 / 3)

    assert [c["key"] for c in r.json["byChannel"]] == ["card", "qrph"]
    assert r.json["byService"][0]["key"] == "business-permits"
    assert "timeSeriesByDimension" not in r.json


def test_report_series_by_status(app):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("S-1", date=datetime(2024, 1, 5), status="paid", amount=100),
                _tx("S-2", date=datetime(2024, 1, 6), status="failed", amount=300),
                _tx("S-3", date=datetime(2024, 2, 6), status="paid", amount=100),
            ]
        )
        s.flush()
        report = aggregate_transactions(s, period="month", series_by="status")

    assert report["seriesBy"] == "status"
    failed, paid = report["timeSeriesByDimension"]
    assert failed["key"] == "failed" and failed["totalAmountMinor"] == 300
    assert [p["periodValue"] for p in paid["points"]] == ["2024-01", "2024-02"]


def test_report_empty_and_invalid_period(app, client):
    with session_scope(app) as s:
        report = aggregate_transactions(s, period="day")
    assert report["timeSeries"] == []
    assert report["totals"]["successRate"] == 0.0

    _login(client)
    r = client.get("/admin/transactions/reports/aggregate?period=quarter")
    assert r.status_code == 400
    r = client.get("/admin/transactions/reports/aggregate?period=day&dateFrom=not-a-date")
    assert r.status_code == 400


def test_report_scope_matches_id_or_legacy_name(app, client):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("ID-1", date=datetime(2024, 1, 5), amount=100),
                _tx("NAME-1", date=datetime(2024, 1, 6), amount=200, service_id=None),
                _tx("OUT-1", date=datetime(2024, 1, 7), amount=400, service_id="market-fees", service_name="Market Fees"),
            ]
        )

    for email in ("scoped@example.com", "legacy@example.com"):
        c = app.test_client()
        _login(c, email)
        r = c.get("/admin/transactions/reports/aggregate?period=year")
        assert r.json["totals"]["count"] == 2, email
        assert r.json["totals"]["totalAmountMinor"] == 300, email

    _login(client, "scoped@example.com")
    r = client.get("/admin/transactions/reports/aggregate?period=year&serviceId=market-fees")
    assert r.json["timeSeries"] == []


# ---------- Stats / export ----------
def test_stats_months_are_utc_calendar_months(app):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("M-1", date=datetime(2024, 3, 10), status="paid", amount=500, created_at=datetime(2024, 3, 10)),
                _tx("M-2", date=datetime(2024, 2, 10), status="failed", amount=100, created_at=datetime(2024, 2, 10)),
            ]
        )
        s.flush()
        stats = get_stats(s, now=datetime(2024, 3, 15))

    assert stats["total"] == 2
    assert stats["newThisMonth"] == 1
    assert stats["growthPercentage"] == 0.0
    assert stats["successfulThisMonth"] == 1
    assert stats["successfulGrowthPercentage"] == 100.0
    assert stats["revenueThisMonthMinor"] == 500
    assert stats["revenueTotalMinor"] == 500


def test_export_csv(app, client):
    with session_scope(app) as s:
        s.add_all(
            [
                _tx("EXP-2", date=datetime(2024, 2, 1), service_name="Business Permits", user_email="b@example.com"),
                _tx("EXP-1", date=datetime(2024, 1, 1), user_email="a@example.com"),
                _tx("EXP-3", date=datetime(2024, 5, 1)),
            ]
        )

    _login(client)
    r = client.get("/admin/transactions/export?dateFrom=2024-01-01&dateTo=2024-03-01")
    assert r.status_code == 200
    assert r.json["filename"].startswith("transactions_") and r.json["filename"].endswith(".csv")
    lines = r.json["csv"].split("\n")
    assert lines[0] == "date,serviceName,reference,status,channel,totalAmountMinor,userEmail,userFullName"
    assert [line.split(",")[2] for line in lines[1:]] == ["EXP-1", "EXP-2"]

    r = client.get("/admin/transactions/export?q=EXP-3&dateFrom=2024-01-01&dateTo=2024-03-01")
    assert r.json["csv"].split("\n")[1:] == []
