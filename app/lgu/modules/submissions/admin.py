from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.lgu.api import json_body
from app.lgu.constants import ADMIN_STATUSES, ROLE_ADMIN
from app.lgu.db import db_session
from app.lgu.modules.application_services.service import find_titles_by_ids
from app.lgu.modules.submissions.service import (
    admin_list_submissions,
    get_submission,
    serialize_with_title,
    update_admin_status,
)
from app.lgu.rbac import current_user, require_roles

bp = Blueprint("admin_submissions", __name__)


def _get_or_404(s, submission_id: int):
    try:
        return get_submission(s, submission_id)
    except LookupError as e:
        abort(404, description=str(e))


def _with_title(s, sub) -> dict:
    sid = sub.custom_application_service_id
    return serialize_with_title(sub, find_titles_by_ids(s, [sid]).get(sid))


@bp.get("", strict_slashes=False)
@require_roles(ROLE_ADMIN)
def list_all():
    args = request.args
    user_id = (args.get("userId") or "").strip()
    if user_id and not user_id.isdigit():
        abort(400, description="userId must be numeric")
    result = admin_list_submissions(
        db_session(),
        user_id=int(user_id) if user_id else None,
        service_id=(args.get("customApplicationServiceId") or "").strip() or None,
        status=args.get("status") or None,
        admin_status=args.get("adminStatus") or None,
        search=args.get("search"),
        page=args.get("page"),
        limit=args.get("limit"),
    )
    return jsonify(result)


@bp.get("/<int:submission_id>")
@require_roles(ROLE_ADMIN)
def detail(submission_id: int):
    s = db_session()
    return jsonify(_with_title(s, _get_or_404(s, submission_id)))


@bp.patch("/<int:submission_id>/status")
@require_roles(ROLE_ADMIN)
def update_status(submission_id: int):
    s = db_session()
    sub = _get_or_404(s, submission_id)
    payload = json_body()
    admin_status = payload.get("adminStatus")
    if admin_status not in ADMIN_STATUSES:
        abort(400, description=f"adminStatus must be one of: {', '.join(ADMIN_STATUSES)}")
    notes = payload.get("adminNotes")
    if notes is not None and not isinstance(notes, str):
        abort(400, description="adminNotes must be a string")
    try:
        update_admin_status(s, sub, admin_status=admin_status, admin_notes=notes, actor=current_user())
    except PermissionError as e:
        abort(403, description=str(e))
    s.commit()
    return jsonify(_with_title(s, sub))
