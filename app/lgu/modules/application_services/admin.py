from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.lgu.api import json_body, validation_failed
from app.lgu.constants import PERM_APPLICATION_SETTINGS
from app.lgu.db import db_session
from app.lgu.forms import FormSchemaError
from app.lgu.modules.application_services.service import (
    create_application_service,
    delete_application_service,
    find_application_service,
    find_application_services,
    serialize_application_service,
    set_application_service_visible,
    update_application_service,
    validate_application_service_payload,
)
from app.lgu.rbac import current_user, require_permission
from app.lgu.utils import as_bool

bp = Blueprint("application_services", __name__)


def _get_or_404(s, service_id: str):
    try:
        return find_application_service(s, service_id)
    except LookupError as e:
        abort(404, description=str(e))


# Public routes are registered before the parameterized admin routes.
@bp.get("/public/visible")
def public_visible():
    s = db_session()
    return jsonify([serialize_application_service(svc) for svc in find_application_services(s, visible=True)])


@bp.get("/public/<service_id>")
def public_detail(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    if not svc.visible:
        abort(404, description=f'Custom application service with ID "{service_id}" not found or not visible')
    return jsonify(serialize_application_service(svc))


@bp.post("", strict_slashes=False)
@require_permission(PERM_APPLICATION_SETTINGS)
def create():
    payload = json_body()
    errors = validate_application_service_payload(payload)
    if errors:
        return validation_failed(errors)
    s = db_session()
    try:
        svc = create_application_service(s, payload, current_user())
    except FormSchemaError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(serialize_application_service(svc)), 201


@bp.get("", strict_slashes=False)
@require_permission(PERM_APPLICATION_SETTINGS)
def list_all():
    s = db_session()
    raw = request.args.get("visible")
    visible = as_bool(raw) if raw not in (None, "") else None
    return jsonify([serialize_application_service(svc) for svc in find_application_services(s, visible=visible)])


@bp.get("/<service_id>")
@require_permission(PERM_APPLICATION_SETTINGS)
def detail(service_id: str):
    return jsonify(serialize_application_service(_get_or_404(db_session(), service_id)))


@bp.patch("/<service_id>")
@require_permission(PERM_APPLICATION_SETTINGS)
def update(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    payload = json_body()
    errors = validate_application_service_payload(payload, partial=True)
    if errors:
        return validation_failed(errors)
    try:
        update_application_service(s, svc, payload, current_user())
    except FormSchemaError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(serialize_application_service(svc))


@bp.delete("/<service_id>")
@require_permission(PERM_APPLICATION_SETTINGS)
def remove(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    delete_application_service(s, svc, current_user())
    s.commit()
    return jsonify({"message": "Deleted"})


@bp.patch("/<service_id>/visible")
@require_permission(PERM_APPLICATION_SETTINGS)
def update_visible(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    payload = json_body()
    if not isinstance(payload.get("visible"), bool):
        abort(400, description="visible must be a boolean")
    set_application_service_visible(s, svc, payload["visible"], current_user())
    s.commit()
    return jsonify(serialize_application_service(svc))
