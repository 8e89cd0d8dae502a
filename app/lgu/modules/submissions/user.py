from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.lgu.api import json_body, validation_failed
from app.lgu.constants import ROLE_USER
from app.lgu.db import db_session
from app.lgu.modules.submissions.service import (
    create_submission,
    delete_submission,
    get_owned_submission,
    list_submissions,
    serialize_submission,
    update_submission,
    validate_submission_payload,
)
from app.lgu.rbac import current_user, require_roles

bp = Blueprint("user_submissions", __name__)


def _owned_or_abort(s, submission_id: int):
    try:
        return get_owned_submission(s, submission_id, current_user().id)
    except LookupError as e:
        abort(404, description=str(e))
    except PermissionError as e:
        abort(403, description=str(e))


@bp.post("", strict_slashes=False)
@require_roles(ROLE_USER)
def create():
    payload = json_body()
    errors = validate_submission_payload(payload)
    if errors:
        return validation_failed(errors)
    s = db_session()
    sub = create_submission(s, current_user(), payload)
    s.commit()
    return jsonify(serialize_submission(sub)), 201


@bp.get("", strict_slashes=False)
@require_roles(ROLE_USER)
def list_mine():
    args = request.args
    result = list_submissions(
        db_session(),
        user_id=current_user().id,
        service_id=(args.get("customApplicationServiceId") or "").strip() or None,
        status=args.get("status") or None,
        page=args.get("page"),
        limit=args.get("limit"),
    )
    return jsonify(result)


@bp.get("/<int:submission_id>")
@require_roles(ROLE_USER)
def detail(submission_id: int):
    return jsonify(serialize_submission(_owned_or_abort(db_session(), submission_id)))


@bp.patch("/<int:submission_id>")
@require_roles(ROLE_USER)
def update(submission_id: int):
    s = db_session()
    sub = _owned_or_abort(s, submission_id)
    payload = json_body()
    errors = validate_submission_payload(payload, partial=True)
    if errors:
        return validation_failed(errors)
    update_submission(s, sub, payload, current_user())
    s.commit()
    return jsonify(serialize_submission(sub))


@bp.delete("/<int:submission_id>")
@require_roles(ROLE_USER)
def remove(submission_id: int):
    s = db_session()
    sub = _owned_or_abort(s, submission_id)
    delete_submission(s, sub)
    s.commit()
    return "", 204
