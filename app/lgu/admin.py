from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, jsonify, request
from sqlalchemy import func, or_

from app.lgu.accounts import (
    AccountError,
    create_admin,
    delete_admin,
    serialize_user,
    update_admin,
    validate_admin_payload,
)
from app.lgu.api import json_body, page_args, validation_failed
from app.lgu.constants import ACCOUNT_TYPES, ADMIN_ROLES, ROLE_ADMIN, ROLE_SUPER_ADMIN, ROLE_USER
from app.lgu.audit import list_events, serialize_event
from app.lgu.db import db_session
from app.lgu.models import User
from app.lgu.rbac import current_user, require_roles
from app.lgu.utils import calculate_growth, month_start, pagination_dict, previous_month_start, utcnow

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _name_search(q, search: str):
    like = f"%{search.lower()}%"
    return q.filter(
        or_(
            func.lower(User.first_name).like(like),
            func.lower(User.last_name).like(like),
            func.lower(User.email).like(like),
        )
    )


def _get_admin_or_404(s, admin_id: int) -> User:
    admin = s.get(User, admin_id)
    if not admin or admin.role not in ADMIN_ROLES:
        abort(404, description="Admin not found")
    return admin


# ---------- Users ----------
@bp.get("/users/stats")
@require_roles(ROLE_ADMIN)
def users_stats():
    s = db_session()
    now = utcnow()
    this_month = month_start(now)
    prev_month = previous_month_start(now)

    total = s.query(func.count(User.id)).scalar() or 0
    active = s.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0
    new_this_month = s.query(func.count(User.id)).filter(User.created_at >= this_month).scalar() or 0
    new_last_month = (
        s.query(func.count(User.id))
        .filter(User.created_at >= prev_month, User.created_at < this_month)
        .scalar()
        or 0
    )
    admins = s.query(func.count(User.id)).filter(User.role == ROLE_ADMIN).scalar() or 0
    regular = s.query(func.count(User.id)).filter(User.role == ROLE_USER).scalar() or 0
    return jsonify(
        {
            "totalUsers": total,
            "activeUsers": active,
            "inactiveUsers": total - active,
            "newUsersThisMonth": new_this_month,
            "growthPercentage": calculate_growth(new_this_month, new_last_month),
            "adminUsers": admins,
            "regularUsers": regular,
        }
    )


@bp.get("/users")
@require_roles(ROLE_ADMIN)
def users_list():
    s = db_session()
    page, limit = page_args(default_limit=10)
    search = (request.args.get("search") or "").strip()
    account_type = (request.args.get("accountType") or "").strip()
    if account_type and account_type not in ACCOUNT_TYPES:
        abort(400, description="Invalid accountType")

    q = s.query(User).filter(User.role == ROLE_USER)
    if search:
        q = _name_search(q, search)
    if account_type:
        q = q.filter(User.account_type == account_type)
    total = q.count()
    users = q.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"users": [serialize_user(u) for u in users], "pagination": pagination_dict(page, limit, total)})


@bp.get("/users/<int:user_id>")
@require_roles(ROLE_ADMIN)
def users_get(user_id: int):
    u = db_session().get(User, user_id)
    if not u:
        abort(404, description="User not found")
    return jsonify(serialize_user(u))


# ---------- Admin accounts (super admin only) ----------
@bp.get("/admins")
@require_roles(ROLE_SUPER_ADMIN)
def admins_list():
    s = db_session()
    page, limit = page_args(default_limit=10)
    search = (request.args.get("search") or "").strip()
    q = s.query(User).filter(User.role == ROLE_ADMIN)
    if search:
        q = _name_search(q, search)
    total = q.count()
    admins = q.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"admins": [serialize_user(u) for u in admins], "pagination": pagination_dict(page, limit, total)})


@bp.get("/admins/<int:admin_id>")
@require_roles(ROLE_SUPER_ADMIN)
def admins_get(admin_id: int):
    return jsonify(serialize_user(_get_admin_or_404(db_session(), admin_id)))


@bp.post("/admins")
@require_roles(ROLE_SUPER_ADMIN)
def admins_create():
    payload = json_body()
    errors = validate_admin_payload(payload, partial=False)
    if errors:
        return validation_failed(errors)
    s = db_session()
    try:
        admin = create_admin(s, payload, current_user())
    except AccountError as e:
        abort(e.status_code, description=e.message)
    s.commit()
    return jsonify(serialize_user(admin)), 201


@bp.patch("/admins/<int:admin_id>")
@require_roles(ROLE_SUPER_ADMIN)
def admins_update(admin_id: int):
    s = db_session()
    admin = _get_admin_or_404(s, admin_id)
    payload = json_body()
    errors = validate_admin_payload(payload, partial=True)
    if errors:
        return validation_failed(errors)
    try:
        update_admin(s, admin, payload, current_user())
    except AccountError as e:
        abort(e.status_code, description=e.message)
    s.commit()
    return jsonify(serialize_user(admin))


@bp.delete("/admins/<int:admin_id>")
@require_roles(ROLE_SUPER_ADMIN)
def admins_delete(admin_id: int):
    s = db_session()
    admin = _get_admin_or_404(s, admin_id)
    try:
        delete_admin(s, admin, current_user())
    except AccountError as e:
        abort(e.status_code, description=e.message)
    s.commit()
    return jsonify({"message": "Admin deleted"})


@bp.get("/audit")
@require_roles(ROLE_SUPER_ADMIN)
def audit_list():
    args = request.args
    bounds: dict[str, date | None] = {}
    for key in ("date_from", "date_to"):
        raw = (args.get(key) or "").strip()
        bounds[key] = _parse_date(raw)
        if raw and bounds[key] is None:
            abort(400, description=f"{key} must be YYYY-MM-DD")

    events = list_events(
        db_session(),
        action=(args.get("action") or "").strip(),
        actor_email=(args.get("actor_email") or "").strip(),
        date_from=bounds["date_from"],
        date_to=bounds["date_to"],
    )
    return jsonify({"events": [serialize_event(e) for e in events]})
