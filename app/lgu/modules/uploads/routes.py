from __future__ import annotations

import mimetypes

from flask import Blueprint, abort, current_app, jsonify, request, send_file

from app.lgu.api import json_body
from app.lgu.constants import ROLE_ADMIN, ROLE_SUPER_ADMIN, ROLE_USER
from app.lgu.db import db_session
from app.lgu.modules.uploads.service import (
    MAX_UPLOAD_BYTES,
    UploadError,
    UploadForbidden,
    authorize_view,
    create_presigned_get,
    create_presigned_put,
)
from app.lgu.rbac import current_user, require_roles
from app.lgu.storage import LocalStorage, StorageError, storage_from_config, verify_local_signature

bp = Blueprint("uploads", __name__)


@bp.post("/presign")
@require_roles(ROLE_USER)
def presign():
    payload = json_body()
    storage = storage_from_config(current_app.config)
    try:
        result = create_presigned_put(
            storage,
            content_type=str(payload.get("contentType") or ""),
            max_bytes=payload.get("maxBytes"),
            key_prefix=payload.get("keyPrefix"),
        )
    except UploadError as e:
        abort(400, description=str(e))
    current_app.logger.info("Presigned upload key=%s user_id=%s", result["key"], current_user().id)
    return jsonify(result)


@bp.get("/view")
@require_roles(ROLE_USER, ROLE_ADMIN, ROLE_SUPER_ADMIN)
def view():
    args = request.args
    key = args.get("key")
    try:
        authorize_view(
            db_session(),
            current_user(),
            key=key,
            transaction_id=(args.get("transactionId") or "").strip() or None,
            field_id=(args.get("fieldId") or "").strip() or None,
        )
    except UploadError as e:
        abort(400, description=str(e))
    except UploadForbidden as e:
        abort(403, description=str(e))
    except LookupError as e:
        abort(404, description=str(e))
    return jsonify({"url": create_presigned_get(storage_from_config(current_app.config), key)})


def _local_storage_or_404() -> LocalStorage:
    storage = storage_from_config(current_app.config)
    if not isinstance(storage, LocalStorage):
        abort(404)
    return storage


# Signed URL targets for the local backend; S3 URLs point at the bucket instead.
@bp.put("/files/<path:key>")
def local_put(key: str):
    storage = _local_storage_or_404()
    args = request.args
    if args.get("op") != "put" or not verify_local_signature(
        storage.signing_secret, "put", key, args.get("expires"), args.get("signature")
    ):
        abort(403, description="Invalid or expired upload URL")
    data = request.get_data(cache=False)
    if len(data) > MAX_UPLOAD_BYTES:
        abort(413, description="File too large")
    try:
        storage.put_bytes(key, data, content_type=request.content_type)
    except StorageError as e:
        abort(400, description=str(e))
    return "", 200


@bp.get("/files/<path:key>")
def local_get(key: str):
    storage = _local_storage_or_404()
    args = request.args
    if args.get("op") != "get" or not verify_local_signature(
        storage.signing_secret, "get", key, args.get("expires"), args.get("signature")
    ):
        abort(403, description="Invalid or expired download URL")
    try:
        if not storage.exists(key):
            abort(404, description="File not found")
        fobj = storage.open(key)
    except StorageError:
        abort(404, description="File not found")
    return send_file(fobj, mimetype=mimetypes.guess_type(key)[0] or "application/octet-stream")
