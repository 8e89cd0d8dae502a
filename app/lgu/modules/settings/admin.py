from __future__ import annotations

import mimetypes
import secrets
import time

from flask import Blueprint, abort, current_app, jsonify, request, send_file

from app.lgu.api import json_body
from app.lgu.constants import (
    PERM_APPLICATION_SETTINGS,
    PERM_MANAGE_SETTINGS,
    PERM_PAYMENT_SETTINGS,
    SERVICES_BY_ID,
    is_valid_service_id,
)
from app.lgu.db import db_session
from app.lgu.forms import FormSchemaError
from app.lgu.modules.settings.service import (
    get_enabled_services,
    get_form_config,
    get_or_create_settings,
    public_settings,
    save_form_config,
    serialize_settings,
    update_settings,
)
from app.lgu.rbac import current_user, require_permission, user_has_permission
from app.lgu.storage import StorageError, storage_from_config

bp = Blueprint("settings", __name__)

ASSET_MAX_BYTES = 2 * 1024 * 1024
ASSET_PREFIX = "settings"
ASSET_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
}


@bp.get("/public")
def settings_public():
    s = db_session()
    settings = get_or_create_settings(s)
    s.commit()
    return jsonify(public_settings(settings, request.host_url))


@bp.get("/", strict_slashes=False)
@require_permission(PERM_MANAGE_SETTINGS)
def settings_get():
    s = db_session()
    settings = get_or_create_settings(s)
    s.commit()
    return jsonify(serialize_settings(settings))


SECTION_PERMISSIONS = {
    "addOnServices": PERM_APPLICATION_SETTINGS,
    "customPaymentServices": PERM_PAYMENT_SETTINGS,
}


def _required_permissions(payload: dict) -> list[str]:
    needed: list[str] = []
    for key in payload:
        perm = SECTION_PERMISSIONS.get(key, PERM_MANAGE_SETTINGS)
        if perm not in needed:
            needed.append(perm)
    return needed or [PERM_MANAGE_SETTINGS]


@bp.patch("/", strict_slashes=False)
def settings_update():
    """
    Add-on services and custom payment services have their own permissions;
    any other section needs manage_settings. The caller must hold the
    permission of every section in the payload.
    """
    payload = json_body()
    u = current_user()
    for needed in _required_permissions(payload):
        if not user_has_permission(u, needed):
            abort(403, description=f"Access denied. Required permission: {needed}")

    s = db_session()
    settings = update_settings(s, payload, u)
    s.commit()
    return jsonify(serialize_settings(settings))


@bp.post("/assets")
@require_permission(PERM_MANAGE_SETTINGS)
def settings_upload_asset():
    f = request.files.get("file")
    if not f or not f.filename:
        abort(400, description="No file uploaded")
    content_type = (f.mimetype or "").lower()
    ext = ASSET_TYPES.get(content_type)
    if not ext:
        abort(400, description="Invalid file type")
    data = f.read()
    if len(data) > ASSET_MAX_BYTES:
        abort(400, description="File too large. Maximum size is 2MB.")

    key = f"{ASSET_PREFIX}/{int(time.time() * 1000)}-{secrets.token_hex(6)}{ext}"
    storage = storage_from_config(current_app.config)
    storage.put_bytes(key, data, content_type=content_type)
    current_app.logger.info("Stored settings asset key=%s bytes=%s", key, len(data))
    return jsonify({"url": storage.public_url(key)})


@bp.get("/assets/<path:key>")
def settings_asset(key: str):
    # only branding assets are public; citizen uploads go through signed URLs
    if not key.startswith(f"{ASSET_PREFIX}/"):
        abort(404, description="Asset not found")
    storage = storage_from_config(current_app.config)
    try:
        if not storage.exists(key):
            abort(404, description="Asset not found")
        fobj = storage.open(key)
    except StorageError:
        abort(404, description="Asset not found")
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return send_file(fobj, mimetype=mimetype, max_age=3600)


@bp.get("/enabled-services")
def settings_enabled_services():
    s = db_session()
    ids = get_enabled_services(s)
    s.commit()
    return jsonify([SERVICES_BY_ID[sid].to_dict() for sid in ids])


@bp.get("/add-on-services")
def settings_add_on_services():
    s = db_session()
    settings = get_or_create_settings(s)
    s.commit()
    return jsonify(list(settings.add_on_services or []))


@bp.get("/form-config/<service_id>")
def settings_form_config_get(service_id: str):
    if not is_valid_service_id(service_id):
        return jsonify({})
    s = db_session()
    cfg = get_form_config(s, service_id)
    s.commit()
    return jsonify(cfg or {})


@bp.patch("/form-config/<service_id>")
@require_permission(PERM_PAYMENT_SETTINGS)
def settings_form_config_update(service_id: str):
    if not is_valid_service_id(service_id):
        abort(400, description="Invalid service id")
    s = db_session()
    try:
        cfg = save_form_config(s, service_id, json_body(), current_user())
    except FormSchemaError as e:
        abort(400, description=str(e))
    s.commit()
    return jsonify(cfg)
