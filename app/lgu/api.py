"""Request/response helpers shared by the JSON blueprints."""
from __future__ import annotations

from typing import Any

from flask import abort, jsonify, request

from app.lgu.models import User
from app.lgu.utils import ValidationError, clamp_int


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        abort(400, description="Request body must be a JSON object")
    return payload


def validation_failed(errors: list[ValidationError]):
    return (
        jsonify(
            {
                "error": errors[0].message,
                "statusCode": 400,
                "errors": [{"field": e.field, "message": e.message} for e in errors],
            }
        ),
        400,
    )


def page_args(default_limit: int = 10, max_limit: int = 100) -> tuple[int, int]:
    page = clamp_int(request.args.get("page"), 1, 1)
    limit = clamp_int(request.args.get("limit"), default_limit, 1, max_limit)
    return page, limit


def allowed_scope(user: User) -> list[str] | None:
    """The caller's allowed-service list, or None when unrestricted."""
    allowed = user.allowed_services or []
    return list(allowed) if allowed else None
