from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.lgu.api import json_body, validation_failed
from app.lgu.constants import PERM_PAYMENT_SETTINGS
from app.lgu.db import db_session
from app.lgu.forms import FormSchemaError
from app.lgu.modules.payment_services.service import (
    create_payment_service,
    delete_payment_service,
    find_payment_service,
    find_payment_services,
    serialize_payment_service,
    set_payment_service_enabled,
    update_payment_service,
    validate_payment_service_payload,
)
from app.lgu.rbac import current_user, require_permission
from app.lgu.utils import as_bool

bp = Blueprint("payment_services", __name__)


def _get_or_404(s, service_id: str):
    try:
        return find_payment_service(s, service_id)
    except LookupError as e:
        abort(404, description=str(e))


@bp.get("/public/enabled")
def public_enabled():
    s = db_session()
    return jsonify([serialize_payment_service(svc) for svc in find_payment_services(s, enabled=True)])


@bp.get("/public/<service_id>")
def public_detail(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    if not svc.enabled:
        abort(404, description=f'Custom payment service with ID "{service_id}" not found or not enabled')
    return jsonify(serialize_payment_service(svc))


@bp.post("", strict_slashes=False)
@require_permission(PERM_PAYMENT_SETTINGS)
def create():
    payload = json_body()
    errors = validate_payment_service_payload(payload)
    if errors:
        return validation_failed(errors)
    s = db_session()
    try:
        svc = create_payment_service(s, payload, current_user())
    except FormSchemaError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(serialize_payment_service(svc)), 201


@bp.get("", strict_slashes=False)
@require_permission(PERM_PAYMENT_SETTINGS)
def list_all():
    raw = request.args.get("enabled")
    enabled = as_bool(raw) if raw not in (None, "") else None
    s = db_session()
    return jsonify([serialize_payment_service(svc) for svc in find_payment_services(s, enabled=enabled)])


@bp.get("/<service_id>")
@require_permission(PERM_PAYMENT_SETTINGS)
def detail(service_id: str):
    return jsonify(serialize_payment_service(_get_or_404(db_session(), service_id)))


@bp.patch("/<service_id>")
@require_permission(PERM_PAYMENT_SETTINGS)
def update(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    payload = json_body()
    errors = validate_payment_service_payload(payload, partial=True)
    if errors:
        return validation_failed(errors)
    try:
        update_payment_service(s, svc, payload, current_user())
    except FormSchemaError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(serialize_payment_service(svc))


@bp.delete("/<service_id>")
@require_permission(PERM_PAYMENT_SETTINGS)
def remove(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    delete_payment_service(s, svc, current_user())
    s.commit()
    return jsonify({"message": "Deleted"})


@bp.patch("/<service_id>/enabled")
@require_permission(PERM_PAYMENT_SETTINGS)
def update_enabled(service_id: str):
    s = db_session()
    svc = _get_or_404(s, service_id)
    payload = json_body()
    if not isinstance(payload.get("enabled"), bool):
        abort(400, description="enabled must be a boolean")
    set_payment_service_enabled(s, svc, payload["enabled"], current_user())
    s.commit()
    return jsonify(serialize_payment_service(svc))
