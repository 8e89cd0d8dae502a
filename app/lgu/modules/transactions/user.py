from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.lgu.api import page_args
from app.lgu.constants import ROLE_USER
from app.lgu.db import db_session
from app.lgu.modules.transactions.models import Transaction
from app.lgu.modules.transactions.service import list_transactions, serialize_transaction
from app.lgu.rbac import current_user, require_roles

bp = Blueprint("user_transactions", __name__)


@bp.get("/transactions")
@require_roles(ROLE_USER)
def my_transactions():
    s = db_session()
    u = current_user()
    page, limit = page_args(default_limit=10)
    args = request.args
    try:
        result = list_transactions(
            s,
            page=page,
            limit=limit,
            status=args.get("status") or None,
            service_id=(args.get("serviceId") or "").strip() or None,
            search=(args.get("q") or "").strip() or None,
            date_from=args.get("dateFrom") or None,
            date_to=args.get("dateTo") or None,
            user_id=u.id,
        )
    except ValueError as e:
        abort(400, description=str(e))
    return jsonify(result)


@bp.get("/transactions/<int:transaction_id>")
@require_roles(ROLE_USER)
def my_transaction_detail(transaction_id: int):
    s = db_session()
    u = current_user()
    tx = s.get(Transaction, transaction_id)
    # Other users' transactions look exactly like missing ones
    if not tx or tx.user_id != u.id:
        abort(404, description="Transaction not found")
    return jsonify(serialize_transaction(tx))
