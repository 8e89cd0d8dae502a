from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, make_response, request

from app.lgu.accounts import (
    AccountError,
    authenticate,
    change_password,
    find_user_by_email,
    normalize_email,
    register_user,
    request_password_reset,
    resend_verification,
    reset_password,
    serialize_user,
    update_profile,
    validate_password,
    validate_profile_payload,
    validate_register_payload,
    verify_email,
)
from app.lgu.api import json_body, validation_failed
from app.lgu.audit import record_event
from app.lgu.constants import ADMIN_ROLES, ROLE_USER
from app.lgu.db import db_session
from app.lgu.models import User
from app.lgu.rbac import current_user, require_auth
from app.lgu.tokens import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    clear_auth_cookies,
    generate_access_token,
    set_access_cookie,
    set_auth_cookies,
    verify_access_token,
    verify_refresh_token,
)
from app.lgu.utils import ValidationError

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _clear_attempts(ip: str) -> None:
    _login_attempts.pop(ip, None)


def load_current_user() -> None:
    """
    Loads g.current_user from the access-token cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/health", "/healthz")):
        return

    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        return
    claims = verify_access_token(token)
    if not claims:
        return

    try:
        s = db_session()
        user = s.get(User, int(claims.get("sub") or 0))
        if user and user.is_active:
            g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (treating as anonymous): %s", e)
        g.current_user = None


def _error(e: AccountError):
    return jsonify({"error": e.message, "statusCode": e.status_code}), e.status_code


def _login(roles: tuple[str, ...], action_prefix: str):
    payload = json_body()
    email = normalize_email(payload.get("email"))
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many login attempts. Please wait 5 minutes.", "statusCode": 429}), 429
    _record_attempt(ip)

    if not email or not password:
        return validation_failed([ValidationError("email", "Email and password are required")])

    s = db_session()
    try:
        user = authenticate(s, email, password, roles=roles)
    except AccountError as e:
        record_event(
            s,
            actor=None,
            action=f"{action_prefix}.login_failed",
            entity_type="User",
            entity_id=email,
            metadata={"ip": ip, "reason": e.message},
        )
        s.commit()
        return _error(e)

    _clear_attempts(ip)
    record_event(s, actor=user, action=f"{action_prefix}.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    resp = make_response(jsonify({"message": "Login successful", "user": serialize_user(user)}))
    set_auth_cookies(resp, user)
    return resp


@bp.post("/register")
def register():
    payload = json_body()
    errors = validate_register_payload(payload)
    if errors:
        return validation_failed(errors)
    s = db_session()
    try:
        user = register_user(s, payload)
    except AccountError as e:
        return _error(e)
    s.commit()
    return (
        jsonify(
            {
                "message": "Registration successful. Please check your email for the verification code.",
                "user": serialize_user(user),
            }
        ),
        201,
    )


@bp.post("/verify-email")
def verify_email_post():
    payload = json_body()
    s = db_session()
    try:
        verify_email(s, payload.get("email") or "", str(payload.get("code") or ""))
    except AccountError as e:
        return _error(e)
    s.commit()
    return jsonify({"message": "Email verified successfully"})


@bp.post("/resend-verification")
def resend_verification_post():
    payload = json_body()
    s = db_session()
    try:
        resend_verification(s, payload.get("email") or "")
    except AccountError as e:
        return _error(e)
    s.commit()
    return jsonify({"message": "Verification code sent"})


@bp.post("/login")
def login():
    return _login((ROLE_USER,), "auth")


@bp.post("/admin/login")
def admin_login():
    return _login(ADMIN_ROLES, "auth.admin")


@bp.post("/check-email")
def check_email():
    email = normalize_email(json_body().get("email"))
    if not email:
        return validation_failed([ValidationError("email", "Email is required")])
    taken = find_user_by_email(db_session(), email) is not None
    return jsonify(
        {
            "available": not taken,
            "message": "Email is already registered" if taken else "Email is available",
        }
    )


@bp.post("/refresh")
def refresh():
    token = request.cookies.get(REFRESH_COOKIE)
    if not token:
        return jsonify({"error": "Refresh token not found", "statusCode": 401}), 401
    claims = verify_refresh_token(token)
    user = None
    if claims:
        user = db_session().get(User, int(claims.get("sub") or 0))
    if not user or not user.is_active:
        return jsonify({"error": "Invalid refresh token", "statusCode": 401}), 401
    resp = make_response(jsonify({"message": "Token refreshed successfully"}))
    set_access_cookie(resp, generate_access_token(user))
    return resp


@bp.post("/logout")
def logout():
    u = getattr(g, "current_user", None)
    if u:
        s = db_session()
        record_event(s, actor=u, action="auth.logout", entity_type="User", entity_id=str(u.id))
        s.commit()
    resp = make_response(jsonify({"message": "Logout successful"}))
    clear_auth_cookies(resp)
    return resp


@bp.get("/verify-token")
@require_auth
def verify_token():
    return jsonify({"valid": True, "user": serialize_user(current_user())})


@bp.get("/profile")
@require_auth
def profile_get():
    return jsonify(serialize_user(current_user()))


@bp.patch("/profile")
@require_auth
def profile_update():
    payload = json_body()
    errors = validate_profile_payload(payload)
    if errors:
        return validation_failed(errors)
    s = db_session()
    u = current_user()
    update_profile(s, u, payload)
    s.commit()
    return jsonify({"message": "Profile updated successfully", "user": serialize_user(u)})


@bp.patch("/password")
@require_auth
def password_change():
    payload = json_body()
    errors: list[ValidationError] = []
    if not payload.get("currentPassword"):
        errors.append(ValidationError("currentPassword", "Current password is required"))
    errors.extend(validate_password(payload.get("newPassword"), "newPassword", "New password"))
    if errors:
        return validation_failed(errors)
    s = db_session()
    try:
        change_password(s, current_user(), payload["currentPassword"], payload["newPassword"])
    except AccountError as e:
        return _error(e)
    s.commit()
    return jsonify({"message": "Password changed successfully"})


@bp.post("/forgot-password")
def forgot_password():
    email = normalize_email(json_body().get("email"))
    s = db_session()
    if email:
        request_password_reset(s, email)
        s.commit()
    return jsonify({"message": "If an account with that email exists, a password reset code has been sent."})


@bp.post("/reset-password")
def reset_password_post():
    payload = json_body()
    errors: list[ValidationError] = []
    if not payload.get("email"):
        errors.append(ValidationError("email", "Email is required"))
    if not payload.get("code"):
        errors.append(ValidationError("code", "Code is required"))
    errors.extend(validate_password(payload.get("newPassword"), "newPassword", "New password"))
    if errors:
        return validation_failed(errors)
    s = db_session()
    try:
        reset_password(s, payload["email"], str(payload["code"]), payload["newPassword"])
    except AccountError as e:
        return _error(e)
    s.commit()
    return jsonify({"message": "Password reset successfully"})
