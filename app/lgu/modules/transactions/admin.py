from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.lgu.api import allowed_scope, json_body, page_args, validation_failed
from app.lgu.constants import ROLE_ADMIN
from app.lgu.db import db_session
from app.lgu.modules.transactions.models import Transaction
from app.lgu.modules.transactions.service import (
    DuplicateReferenceError,
    aggregate_transactions,
    count_transactions,
    create_transaction,
    delete_transaction,
    export_transactions_csv,
    get_stats,
    list_transactions,
    serialize_transaction,
    update_transaction,
    validate_transaction_payload,
)
from app.lgu.rbac import current_user, require_roles

bp = Blueprint("admin_transactions", __name__)


def _get_or_404(s, transaction_id: int) -> Transaction:
    tx = s.get(Transaction, transaction_id)
    if not tx:
        abort(404, description="Transaction not found")
    return tx


def _filter_args() -> dict:
    args = request.args
    return {
        "status": args.get("status") or None,
        "service_id": (args.get("serviceId") or "").strip() or None,
        "reference": (args.get("reference") or "").strip() or None,
        "search": (args.get("q") or "").strip() or None,
        "channel": (args.get("channel") or "").strip() or None,
        "date_from": args.get("dateFrom") or None,
        "date_to": args.get("dateTo") or None,
    }


@bp.post("/transactions")
@require_roles(ROLE_ADMIN)
def transactions_create():
    s = db_session()
    u = current_user()
    payload = json_body()

    errors = validate_transaction_payload(payload)
    if errors:
        return validation_failed(errors)
    try:
        tx = create_transaction(s, payload, actor=u, created_by=str(u.id))
    except DuplicateReferenceError as e:
        abort(409, description=str(e))
    except ValueError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(serialize_transaction(tx)), 201


@bp.get("/transactions")
@require_roles(ROLE_ADMIN)
def transactions_list():
    s = db_session()
    u = current_user()
    page, limit = page_args(default_limit=10)
    raw_user_id = (request.args.get("userId") or "").strip()
    if raw_user_id and not raw_user_id.isdecimal():
        abort(400, description="userId must be numeric")
    user_id = int(raw_user_id) if raw_user_id else None
    try:
        result = list_transactions(
            s,
            page=page,
            limit=limit,
            allowed_service_ids=allowed_scope(u),
            user_id=user_id,
            **_filter_args(),
        )
    except ValueError as e:
        abort(400, description=str(e))
    return jsonify(result)


@bp.get("/transactions/count")
@require_roles(ROLE_ADMIN)
def transactions_count():
    s = db_session()
    return jsonify({"count": count_transactions(s)})


@bp.get("/transactions/stats")
@require_roles(ROLE_ADMIN)
def transactions_stats():
    s = db_session()
    u = current_user()
    return jsonify(get_stats(s, allowed_scope(u)))


@bp.get("/transactions/reports/aggregate")
@require_roles(ROLE_ADMIN)
def transactions_aggregate():
    s = db_session()
    u = current_user()
    args = request.args
    try:
        report = aggregate_transactions(
            s,
            period=(args.get("period") or "day").strip(),
            date_from=args.get("dateFrom") or None,
            date_to=args.get("dateTo") or None,
            service_id=(args.get("serviceId") or "").strip() or None,
            channel=(args.get("channel") or "").strip() or None,
            status=args.get("status") or None,
            series_by=(args.get("seriesBy") or "").strip() or None,
            allowed_service_ids=allowed_scope(u),
        )
    except ValueError as e:
        abort(400, description=str(e))
    return jsonify(report)


@bp.get("/transactions/export")
@require_roles(ROLE_ADMIN)
def transactions_export():
    s = db_session()
    u = current_user()
    try:
        result = export_transactions_csv(s, allowed_service_ids=allowed_scope(u), **_filter_args())
    except ValueError as e:
        abort(400, description=str(e))
    return jsonify(result)


@bp.get("/transactions/<int:transaction_id>")
@require_roles(ROLE_ADMIN)
def transactions_get(transaction_id: int):
    s = db_session()
    return jsonify(serialize_transaction(_get_or_404(s, transaction_id)))


@bp.patch("/transactions/<int:transaction_id>")
@require_roles(ROLE_ADMIN)
def transactions_update(transaction_id: int):
    s = db_session()
    u = current_user()
    tx = _get_or_404(s, transaction_id)
    payload = json_body()

    errors = validate_transaction_payload(payload, partial=True)
    if errors:
        return validation_failed(errors)
    try:
        update_transaction(s, tx, payload, u)
    except DuplicateReferenceError as e:
        abort(409, description=str(e))
    except ValueError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(serialize_transaction(tx))


@bp.delete("/transactions/<int:transaction_id>")
@require_roles(ROLE_ADMIN)
def transactions_delete(transaction_id: int):
    s = db_session()
    u = current_user()
    tx = _get_or_404(s, transaction_id)
    delete_transaction(s, tx, u)
    s.commit()
    return jsonify({"message": "Deleted"})
