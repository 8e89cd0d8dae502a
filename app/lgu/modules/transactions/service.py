from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_

from app.lgu.audit import record_event
from app.lgu.constants import (
    BREAKDOWN_CODES,
    PAYMENT_CHANNELS,
    PAYMENT_PROVIDER,
    SUCCESS_STATUSES,
    TRANSACTION_STATUSES,
    normalize_to_service_id,
    service_aliases,
    SERVICES_BY_ID,
)
from app.lgu.models import User
from app.lgu.modules.transactions.models import Transaction
from app.lgu.utils import (
    ValidationError,
    calculate_growth,
    isoformat_z,
    month_start,
    pagination_dict,
    parse_iso_datetime,
    previous_month_start,
    split_csv_param,
    to_utc_naive,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session


VALID_PERIODS = ("day", "week", "month", "year")
AGGREGATE_BATCH_SIZE = 1000
VALID_SERIES_BY = ("service", "channel", "status")
EXPORT_ROW_LIMIT = 10000
EXPORT_HEADER = ["date", "serviceName", "reference", "status", "channel", "totalAmountMinor", "userEmail", "userFullName"]

BREAKDOWN_MISMATCH = "Total amount must equal the sum of breakdown items"


class DuplicateReferenceError(ValueError):
    pass


# ---------- Serialization ----------
def serialize_transaction(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "date": isoformat_z(tx.date),
        "service": {
            "serviceId": tx.service_id,
            "name": tx.service_name,
            "otherInfo": tx.service_other_info,
            "approvalRequired": bool(tx.service_approval_required),
        },
        "totalAmountMinor": tx.total_amount_minor,
        "details": {
            "reference": tx.reference,
            "breakdown": tx.breakdown or [],
            "formData": tx.form_data,
            "notes": tx.notes,
        },
        "status": tx.status,
        "payment": tx.payment,
        "userId": tx.user_id,
        "userEmail": tx.user_email,
        "userFullName": tx.user_full_name,
        "createdByAdminId": tx.created_by_admin_id,
        "notifications": tx.notifications or {},
        "createdAt": isoformat_z(tx.created_at),
        "updatedAt": isoformat_z(tx.updated_at),
    }


# ---------- Validation ----------
def breakdown_sum(items: list[dict]) -> int:
    return sum(int(item.get("amountMinor") or 0) for item in items)


def _validate_breakdown(items: Any, errors: list[ValidationError]) -> None:
    if not isinstance(items, list):
        errors.append(ValidationError("details.breakdown", "Breakdown must be a list."))
        return
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append(ValidationError(f"details.breakdown[{i}]", "Breakdown item must be an object."))
            continue
        if item.get("code") not in BREAKDOWN_CODES:
            errors.append(ValidationError(f"details.breakdown[{i}].code", f"Code must be one of: {', '.join(BREAKDOWN_CODES)}"))
        if not str(item.get("label") or "").strip():
            errors.append(ValidationError(f"details.breakdown[{i}].label", "Label is required."))
        amount = item.get("amountMinor")
        if isinstance(amount, bool) or not isinstance(amount, int):
            errors.append(ValidationError(f"details.breakdown[{i}].amountMinor", "Amount must be an integer (minor units)."))


def _validate_payment(payment: Any, errors: list[ValidationError]) -> None:
    if payment is None:
        return
    if not isinstance(payment, dict):
        errors.append(ValidationError("payment", "Payment must be an object."))
        return
    channel = payment.get("channel")
    if channel is not None and channel not in PAYMENT_CHANNELS:
        errors.append(ValidationError("payment.channel", f"Channel must be one of: {', '.join(PAYMENT_CHANNELS)}"))
    fee = payment.get("feeMinor")
    if fee is not None and (isinstance(fee, bool) or not isinstance(fee, int)):
        errors.append(ValidationError("payment.feeMinor", "Fee must be an integer (minor units)."))


def validate_transaction_payload(payload: dict, *, partial: bool = False) -> list[ValidationError]:
    """Shape checks only; business rules (sum, initial status) run in create/update."""
    errors: list[ValidationError] = []

    if "date" in payload or not partial:
        try:
            if parse_iso_datetime(payload.get("date")) is None:
                errors.append(ValidationError("date", "Date is required."))
        except ValueError:
            errors.append(ValidationError("date", "Date must be an ISO date string."))

    service = payload.get("service")
    if service is not None or not partial:
        if not isinstance(service, dict):
            errors.append(ValidationError("service", "Service is required."))
        else:
            if not str(service.get("serviceId") or "").strip():
                errors.append(ValidationError("service.serviceId", "Service id is required."))
            if not str(service.get("name") or "").strip():
                errors.append(ValidationError("service.name", "Service name is required."))

    if "totalAmountMinor" in payload or not partial:
        total = payload.get("totalAmountMinor")
        if isinstance(total, bool) or not isinstance(total, int) or total < 0:
            errors.append(ValidationError("totalAmountMinor", "Total amount must be a non-negative integer."))

    details = payload.get("details")
    if details is not None or not partial:
        if not isinstance(details, dict):
            errors.append(ValidationError("details", "Details are required."))
        else:
            if not partial and not str(details.get("reference") or "").strip():
                errors.append(ValidationError("details.reference", "Reference is required."))
            if "breakdown" in details or not partial:
                _validate_breakdown(details.get("breakdown"), errors)

    if "userId" in payload:
        user_id = payload.get("userId")
        if user_id is not None and (isinstance(user_id, bool) or not isinstance(user_id, int)):
            errors.append(ValidationError("userId", "User id must be an integer or null."))

    status = payload.get("status")
    if status is not None and status not in TRANSACTION_STATUSES:
        errors.append(ValidationError("status", f"Status must be one of: {', '.join(TRANSACTION_STATUSES)}"))

    _validate_payment(payload.get("payment"), errors)
    return errors


def check_initial_status(approval_required: bool, status: str | None) -> str | None:
    """Error message when `status` is not a legal initial status, else None."""
    if not status:
        return None
    if approval_required:
        if status != "pending":
            return "Invalid initial status for approval-required service"
    elif status not in ("pending", "awaiting_payment"):
        return "Invalid initial status for payment-only service"
    return None


def _normalize_payment(payment: dict | None) -> dict | None:
    if not payment:
        return None
    data = dict(payment)
    data["provider"] = PAYMENT_PROVIDER
    # Checkout session ids (cs_*) are not payment ids
    ptid = data.get("providerTransactionId")
    if isinstance(ptid, str) and ptid.startswith("cs_"):
        data["providerSessionId"] = ptid
        data.pop("providerTransactionId", None)
    return data


def _apply_service(tx: Transaction, service: dict) -> None:
    raw_id = str(service.get("serviceId") or "").strip()
    tx.service_id = normalize_to_service_id(raw_id) or raw_id or None
    tx.service_name = str(service.get("name") or "").strip()
    other = service.get("otherInfo")
    tx.service_other_info = None if other is None else str(other)
    tx.service_approval_required = bool(service.get("approvalRequired"))


def _apply_payment(tx: Transaction, payment: dict | None) -> None:
    tx.payment = payment
    tx.channel = (payment or {}).get("channel") or None


# ---------- Create / update / delete ----------
def _check_owner(s: "Session", user_id: Any) -> None:
    if user_id is not None and s.get(User, user_id) is None:
        raise ValueError("User not found")


def create_transaction(s: "Session", payload: dict, *, actor: "User | None", created_by: str | None) -> Transaction:
    """
    Create a transaction from an already shape-validated payload.
    Raises ValueError for business rule violations and DuplicateReferenceError on reference collision.
    """
    details = payload.get("details") or {}
    breakdown = list(details.get("breakdown") or [])
    total = int(payload.get("totalAmountMinor") or 0)
    if breakdown_sum(breakdown) != total:
        raise ValueError(BREAKDOWN_MISMATCH)

    service = payload.get("service") or {}
    status = payload.get("status") or "pending"
    _check_owner(s, payload.get("userId"))
    msg = check_initial_status(bool(service.get("approvalRequired")), payload.get("status"))
    if msg:
        raise ValueError(msg)

    reference = str(details.get("reference") or "").strip()
    if s.query(Transaction.id).filter(Transaction.reference == reference).first() is not None:
        raise DuplicateReferenceError(f"Reference {reference} already exists")

    now = utcnow()
    tx = Transaction(
        date=parse_iso_datetime(payload.get("date")),
        total_amount_minor=total,
        reference=reference,
        breakdown=breakdown,
        form_data=details.get("formData"),
        notes=details.get("notes"),
        status=status,
        user_id=payload.get("userId"),
        user_email=(payload.get("userEmail") or "").strip().lower() or None,
        user_full_name=(payload.get("userFullName") or "").strip() or None,
        created_by_admin_id=created_by,
        notifications={"email": {}},
        created_at=now,
        updated_at=now,
    )
    _apply_service(tx, service)
    _apply_payment(tx, _normalize_payment(payload.get("payment")))
    s.add(tx)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="transaction.create",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"reference": tx.reference, "service_id": tx.service_id, "total_amount_minor": tx.total_amount_minor, "status": tx.status},
    )
    return tx


def update_transaction(s: "Session", tx: Transaction, payload: dict, user: "User | None") -> Transaction:
    """Partial update. The breakdown/total pair is re-checked whenever either changes."""
    changes: dict[str, dict[str, Any]] = {}
    if "userId" in payload:
        _check_owner(s, payload.get("userId"))
    details = payload.get("details") if isinstance(payload.get("details"), dict) else None

    new_breakdown = details.get("breakdown") if details and "breakdown" in details else None
    new_total = payload.get("totalAmountMinor") if "totalAmountMinor" in payload else None
    if new_breakdown is not None or new_total is not None:
        effective_breakdown = new_breakdown if new_breakdown is not None else (tx.breakdown or [])
        effective_total = int(new_total) if new_total is not None else tx.total_amount_minor
        if breakdown_sum(effective_breakdown) != effective_total:
            raise ValueError(BREAKDOWN_MISMATCH)

    if "date" in payload:
        new_date = parse_iso_datetime(payload.get("date"))
        if new_date != tx.date:
            changes["date"] = {"old": isoformat_z(tx.date), "new": isoformat_z(new_date)}
            tx.date = new_date

    if isinstance(payload.get("service"), dict):
        old_service = (tx.service_id, tx.service_name)
        _apply_service(tx, payload["service"])
        if (tx.service_id, tx.service_name) != old_service:
            changes["service"] = {"old": list(old_service), "new": [tx.service_id, tx.service_name]}

    if new_total is not None and int(new_total) != tx.total_amount_minor:
        changes["totalAmountMinor"] = {"old": tx.total_amount_minor, "new": int(new_total)}
        tx.total_amount_minor = int(new_total)

    if details:
        if "reference" in details:
            new_ref = str(details.get("reference") or "").strip()
            if new_ref and new_ref != tx.reference:
                clash = s.query(Transaction.id).filter(Transaction.reference == new_ref, Transaction.id != tx.id).first()
                if clash is not None:
                    raise DuplicateReferenceError(f"Reference {new_ref} already exists")
                changes["reference"] = {"old": tx.reference, "new": new_ref}
                tx.reference = new_ref
        if new_breakdown is not None:
            changes["breakdown"] = {"old": tx.breakdown, "new": new_breakdown}
            tx.breakdown = list(new_breakdown)
        if "formData" in details:
            tx.form_data = details.get("formData")
        if "notes" in details:
            tx.notes = details.get("notes")

    new_status = payload.get("status")
    if new_status and new_status != tx.status:
        changes["status"] = {"old": tx.status, "new": new_status}
        tx.status = new_status

    if isinstance(payload.get("payment"), dict):
        payment = _normalize_payment(payload["payment"])
        changes["payment"] = {"old": tx.payment, "new": payment}
        _apply_payment(tx, payment)

    for key, attr in (("userEmail", "user_email"), ("userFullName", "user_full_name")):
        if key in payload:
            setattr(tx, attr, (payload.get(key) or "").strip() or None)
    if "userId" in payload:
        tx.user_id = payload.get("userId")

    tx.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="transaction.edit",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"reference": tx.reference, "changes": changes},
    )
    return tx


def delete_transaction(s: "Session", tx: Transaction, user: "User | None") -> None:
    record_event(
        s,
        actor=user,
        action="transaction.delete",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"reference": tx.reference, "status": tx.status},
    )
    s.delete(tx)


def count_transactions(s: "Session") -> int:
    return int(s.query(func.count(Transaction.id)).scalar() or 0)


# ---------- Scope + filters ----------
def build_allowed_service_clause(allowed_service_ids: list[str] | None, specific_service_id: str | None = None):
    """
    SQL clause matching the scope by canonical id OR display name (legacy rows
    stored only a name). None means "no scope restriction".
    """
    if specific_service_id:
        keys = [specific_service_id]
    elif allowed_service_ids:
        keys = list(allowed_service_ids)
    else:
        return None
    ids, names = service_aliases(keys)
    clauses = []
    if ids:
        clauses.append(Transaction.service_id.in_(ids))
    if names:
        clauses.append(Transaction.service_name.in_(names))
    if not clauses:
        return None
    return or_(*clauses)


def service_within_scope(allowed_service_ids: list[str] | None, service_id: str | None) -> bool:
    """A specifically requested service must be inside the caller's scope (by id or by name)."""
    if not service_id or not allowed_service_ids:
        return True
    allowed_ids, allowed_names = service_aliases(allowed_service_ids)
    requested_id = normalize_to_service_id(service_id)
    requested_name = SERVICES_BY_ID[requested_id].name if requested_id else service_id.strip()
    return (requested_id in allowed_ids if requested_id else False) or (requested_name in allowed_names)


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _apply_filters(
    q: "Query",
    *,
    status: Any = None,
    service_id: str | None = None,
    reference: str | None = None,
    search: str | None = None,
    channel: str | None = None,
    user_id: int | None = None,
    allowed_service_ids: list[str] | None = None,
) -> "Query":
    statuses = split_csv_param(status)
    if len(statuses) == 1:
        q = q.filter(Transaction.status == statuses[0])
    elif statuses:
        q = q.filter(Transaction.status.in_(statuses))
    if user_id is not None:
        q = q.filter(Transaction.user_id == user_id)
    scope = build_allowed_service_clause(allowed_service_ids, service_id)
    if scope is not None:
        q = q.filter(scope)
    if reference:
        q = q.filter(Transaction.reference == reference)
    if channel:
        q = q.filter(Transaction.channel == channel)
    if search:
        like = _like(search)
        q = q.filter(
            or_(
                Transaction.reference.ilike(like, escape="\\"),
                Transaction.service_name.ilike(like, escape="\\"),
                Transaction.user_email.ilike(like, escape="\\"),
                Transaction.user_full_name.ilike(like, escape="\\"),
            )
        )
    return q


def _business_date_range(q: "Query", date_from: datetime | None, date_to: datetime | None) -> "Query":
    if date_from:
        q = q.filter(Transaction.date >= date_from)
    if date_to:
        q = q.filter(Transaction.date <= date_to)
    return q


# ---------- List ----------
def list_transactions(
    s: "Session",
    *,
    page: int = 1,
    limit: int = 10,
    status: Any = None,
    service_id: str | None = None,
    reference: str | None = None,
    search: str | None = None,
    channel: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    allowed_service_ids: list[str] | None = None,
    user_id: int | None = None,
) -> dict[str, Any]:
    """Paginated listing, newest business date first. Raises ValueError for malformed dates."""
    start = parse_iso_datetime(date_from)
    end = parse_iso_datetime(date_to)

    if not service_within_scope(allowed_service_ids, service_id):
        return {"data": [], "pagination": pagination_dict(page, limit, 0)}

    q = _apply_filters(
        s.query(Transaction),
        status=status,
        service_id=service_id,
        reference=reference,
        search=search,
        channel=channel,
        user_id=user_id,
        allowed_service_ids=allowed_service_ids,
    )
    q = _business_date_range(q, start, end)

    total = q.order_by(None).count()
    rows = (
        q.order_by(Transaction.date.desc(), Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": [serialize_transaction(t) for t in rows], "pagination": pagination_dict(page, limit, total)}


# ---------- Stats ----------
def get_stats(s: "Session", allowed_service_ids: list[str] | None = None, *, now: datetime | None = None) -> dict[str, Any]:
    """Dashboard counters; months are UTC calendar months on created_at."""
    now = to_utc_naive(now) if now else utcnow()
    this_month = month_start(now)
    prev_month = previous_month_start(now)

    scope = build_allowed_service_clause(allowed_service_ids)
    success = Transaction.status.in_(sorted(SUCCESS_STATUSES))
    in_this_month = Transaction.created_at >= this_month
    in_prev_month = and_(Transaction.created_at >= prev_month, Transaction.created_at < this_month)

    def _count(*conds) -> int:
        q = s.query(func.count(Transaction.id))
        if scope is not None:
            q = q.filter(scope)
        for c in conds:
            q = q.filter(c)
        return int(q.scalar() or 0)

    def _revenue(*conds) -> int:
        q = s.query(func.coalesce(func.sum(Transaction.total_amount_minor), 0)).filter(success)
        if scope is not None:
            q = q.filter(scope)
        for c in conds:
            q = q.filter(c)
        return int(q.scalar() or 0)

    total = _count()
    new_this_month = _count(in_this_month)
    prev_month_count = _count(in_prev_month)

    successful_total = _count(success)
    successful_this_month = _count(success, in_this_month)
    successful_prev_month = _count(success, in_prev_month)

    revenue_total = _revenue()
    revenue_this_month = _revenue(in_this_month)
    revenue_prev_month = _revenue(in_prev_month)

    return {
        "total": total,
        "newThisMonth": new_this_month,
        "growthPercentage": calculate_growth(new_this_month, prev_month_count),
        "successfulTotal": successful_total,
        "successfulThisMonth": successful_this_month,
        "successfulGrowthPercentage": calculate_growth(successful_this_month, successful_prev_month),
        "revenueTotalMinor": revenue_total,
        "revenueThisMonthMinor": revenue_this_month,
        "revenueGrowthPercentage": calculate_growth(revenue_this_month, revenue_prev_month),
    }


# ---------- Export ----------
def export_filename(now: datetime | None = None) -> str:
    stamp = isoformat_z(now or utcnow()) or ""
    return "transactions_" + stamp.replace(":", "-").replace(".", "-") + ".csv"


def export_transactions_csv(
    s: "Session",
    *,
    status: Any = None,
    service_id: str | None = None,
    reference: str | None = None,
    search: str | None = None,
    channel: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    allowed_service_ids: list[str] | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    """
    CSV export, oldest first, capped at EXPORT_ROW_LIMIT rows.
    The date window applies to the business date, or created_at for rows without one.
    """
    start = parse_iso_datetime(date_from)
    end = parse_iso_datetime(date_to)

    rows: list[Transaction] = []
    if service_within_scope(allowed_service_ids, service_id):
        q = _apply_filters(
            s.query(Transaction),
            status=status,
            service_id=service_id,
            reference=reference,
            search=search,
            channel=channel,
            allowed_service_ids=allowed_service_ids,
        )
        if start or end:
            dated = []
            undated = [Transaction.date.is_(None)]
            if start:
                dated.append(Transaction.date >= start)
                undated.append(Transaction.created_at >= start)
            if end:
                dated.append(Transaction.date <= end)
                undated.append(Transaction.created_at <= end)
            q = q.filter(or_(and_(Transaction.date.isnot(None), *dated), and_(*undated)))
        rows = q.order_by(Transaction.date.asc(), Transaction.created_at.asc(), Transaction.id.asc()).limit(EXPORT_ROW_LIMIT).all()

    out = io.StringIO()
    w = csv.writer(out, lineterminator="\n")
    w.writerow(EXPORT_HEADER)
    for t in rows:
        w.writerow(
            [
                isoformat_z(t.bucket_date) or "",
                (t.service_name or "").replace(",", " "),
                t.reference or "",
                t.status or "",
                t.channel or "",
                str(t.total_amount_minor if t.total_amount_minor is not None else ""),
                t.user_email or "",
                (t.user_full_name or "").replace(",", " "),
            ]
        )
    return {"filename": export_filename(now), "csv": out.getvalue().rstrip("\n")}


# ---------- Aggregation reports ----------
def period_value(value: datetime, period: str) -> str:
    """UTC bucket label: day YYYY-MM-DD, week = Monday of the ISO week, month YYYY-MM, year YYYY."""
    v = to_utc_naive(value)
    if period == "day":
        return v.strftime("%Y-%m-%d")
    if period == "week":
        return (v.date() - timedelta(days=v.weekday())).isoformat()
    if period == "month":
        return f"{v.year:04d}-{v.month:02d}"
    if period == "year":
        return f"{v.year:04d}"
    raise ValueError(f"Invalid period: {period}")


def success_rate(success_count: int, count: int) -> float:
    return 0.0 if count == 0 else success_count / count * 100


def _empty_report(period: str, series_by: str | None) -> dict[str, Any]:
    report: dict[str, Any] = {
        "period": period,
        "timeSeries": [],
        "totals": {"count": 0, "totalAmountMinor": 0, "successCount": 0, "successRate": 0.0},
        "byService": [],
        "byChannel": [],
    }
    if series_by:
        report["seriesBy"] = series_by
        report["timeSeriesByDimension"] = []
    return report


def _by_revenue(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda r: (-r["totalAmountMinor"], str(r["key"] or "")))


def aggregate_transactions(
    s: "Session",
    *,
    period: str,
    date_from: str | None = None,
    date_to: str | None = None,
    service_id: str | None = None,
    channel: str | None = None,
    status: Any = None,
    series_by: str | None = None,
    allowed_service_ids: list[str] | None = None,
) -> dict[str, Any]:
    """
    Time-bucketed transaction report.

    Rules:
    - Bucket date is the business date, falling back to created_at; always UTC.
    - A transaction is successful iff its status is paid or completed.
    - Revenue sums totalAmountMinor over every matched transaction.
    - Time series ascending by period; service/channel breakdowns and dimension series descending by revenue.
    """
    if period not in VALID_PERIODS:
        raise ValueError(f"Invalid period. Must be one of: {', '.join(VALID_PERIODS)}")
    if series_by and series_by not in VALID_SERIES_BY:
        raise ValueError(f"Invalid seriesBy. Must be one of: {', '.join(VALID_SERIES_BY)}")
    start = parse_iso_datetime(date_from)
    end = parse_iso_datetime(date_to)

    if not service_within_scope(allowed_service_ids, service_id):
        return _empty_report(period, series_by)

    q = _apply_filters(
        s.query(
            Transaction.date,
            Transaction.created_at,
            Transaction.status,
            Transaction.total_amount_minor,
            Transaction.service_id,
            Transaction.service_name,
            Transaction.channel,
        ),
        status=status,
        service_id=service_id,
        channel=channel,
        allowed_service_ids=allowed_service_ids,
    )
    q = _business_date_range(q, start, end)

    buckets: dict[str, dict[str, int]] = {}
    services: dict[tuple[str | None, str | None], dict[str, int]] = {}
    channels: dict[str | None, dict[str, int]] = {}
    series: dict[tuple[Any, Any], dict[str, Any]] = {}
    totals = {"count": 0, "totalAmountMinor": 0, "successCount": 0}

    for row_date, created_at, row_status, amount, row_service_id, row_service_name, row_channel in q.yield_per(AGGREGATE_BATCH_SIZE):
        amount = int(amount or 0)
        ok = 1 if row_status in SUCCESS_STATUSES else 0
        pv = period_value(row_date or created_at, period)

        b = buckets.setdefault(pv, {"count": 0, "totalAmountMinor": 0, "successCount": 0})
        b["count"] += 1
        b["totalAmountMinor"] += amount
        b["successCount"] += ok

        svc = services.setdefault((row_service_id, row_service_name), {"count": 0, "totalAmountMinor": 0})
        svc["count"] += 1
        svc["totalAmountMinor"] += amount

        ch = channels.setdefault(row_channel, {"count": 0, "totalAmountMinor": 0})
        ch["count"] += 1
        ch["totalAmountMinor"] += amount

        totals["count"] += 1
        totals["totalAmountMinor"] += amount
        totals["successCount"] += ok

        if series_by:
            if series_by == "service":
                dim_key, dim_label = row_service_id, row_service_name
            elif series_by == "channel":
                dim_key, dim_label = row_channel, row_channel
            else:
                dim_key, dim_label = row_status, row_status
            entry = series.setdefault((dim_key, dim_label), {"points": {}, "count": 0, "totalAmountMinor": 0})
            point = entry["points"].setdefault(pv, {"periodValue": pv, "count": 0, "totalAmountMinor": 0})
            point["count"] += 1
            point["totalAmountMinor"] += amount
            entry["count"] += 1
            entry["totalAmountMinor"] += amount

    time_series = [
        {
            "periodValue": pv,
            "count": b["count"],
            "totalAmountMinor": b["totalAmountMinor"],
            "successCount": b["successCount"],
            "successRate": success_rate(b["successCount"], b["count"]),
        }
        for pv, b in sorted(buckets.items(), key=lambda kv: kv[0])
    ]
    by_service = _by_revenue(
        [{"key": key, "label": label, "count": v["count"], "totalAmountMinor": v["totalAmountMinor"]} for (key, label), v in services.items()]
    )
    by_channel = _by_revenue(
        [{"key": key, "label": key, "count": v["count"], "totalAmountMinor": v["totalAmountMinor"]} for key, v in channels.items()]
    )

    report: dict[str, Any] = {
        "period": period,
        "timeSeries": time_series,
        "totals": {**totals, "successRate": success_rate(totals["successCount"], totals["count"])},
        "byService": by_service,
        "byChannel": by_channel,
    }
    if series_by:
        report["seriesBy"] = series_by
        report["timeSeriesByDimension"] = _by_revenue(
            [
                {
                    "key": key,
                    "label": label,
                    "points": [p for _, p in sorted(entry["points"].items(), key=lambda kv: kv[0])],
                    "count": entry["count"],
                    "totalAmountMinor": entry["totalAmountMinor"],
                }
                for (key, label), entry in series.items()
            ]
        )
    return report
