"""
JWT access/refresh tokens carried in httpOnly cookies.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

import jwt
from flask import Flask, Response, current_app
from jwt.exceptions import InvalidTokenError

from app.lgu.models import User
from app.lgu.utils import utcnow

ACCESS_COOKIE = "access-token"
REFRESH_COOKIE = "refresh-token"
ALGORITHM = "HS256"


def validate_jwt_secrets(app: Flask) -> None:
    """
    Production requires two distinct secrets of at least 32 characters.
    Elsewhere, missing secrets are derived from SECRET_KEY so local runs work.
    """
    access = str(app.config.get("JWT_ACCESS_SECRET") or "")
    refresh = str(app.config.get("JWT_REFRESH_SECRET") or "")
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if len(access) < 32 or len(refresh) < 32:
            raise RuntimeError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be at least 32 characters in production.")
        if access == refresh:
            raise RuntimeError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        return
    if not access or not refresh:
        app.logger.warning("JWT secrets not configured; deriving development secrets from SECRET_KEY.")
        base = str(app.config.get("SECRET_KEY") or "change-me")
        app.config["JWT_ACCESS_SECRET"] = access or f"{base}:access".ljust(32, "0")
        app.config["JWT_REFRESH_SECRET"] = refresh or f"{base}:refresh".ljust(32, "0")


def _encode(user: User, secret: str, ttl_seconds: int) -> str:
    now = utcnow()
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def generate_access_token(user: User) -> str:
    cfg = current_app.config
    return _encode(user, cfg["JWT_ACCESS_SECRET"], int(cfg["JWT_ACCESS_EXPIRES_SECONDS"]))


def generate_refresh_token(user: User) -> str:
    cfg = current_app.config
    return _encode(user, cfg["JWT_REFRESH_SECRET"], int(cfg["JWT_REFRESH_EXPIRES_SECONDS"]))


def _decode(token: str, secret: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(token, secret, algorithms=[ALGORITHM])
    except InvalidTokenError:
        return None


def verify_access_token(token: str) -> dict[str, Any] | None:
    return _decode(token, current_app.config["JWT_ACCESS_SECRET"])


def verify_refresh_token(token: str) -> dict[str, Any] | None:
    return _decode(token, current_app.config["JWT_REFRESH_SECRET"])


def _cookie_kwargs() -> dict[str, Any]:
    cfg = current_app.config
    kwargs: dict[str, Any] = {
        "httponly": True,
        "secure": bool(cfg.get("COOKIE_SECURE")),
        "samesite": cfg.get("COOKIE_SAMESITE") or "Strict",
        "path": "/",
    }
    env = (cfg.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and cfg.get("COOKIE_DOMAIN"):
        kwargs["domain"] = cfg["COOKIE_DOMAIN"]
    return kwargs


def set_access_cookie(resp: Response, token: str) -> None:
    resp.set_cookie(ACCESS_COOKIE, token, max_age=int(current_app.config["JWT_ACCESS_EXPIRES_SECONDS"]), **_cookie_kwargs())


def set_auth_cookies(resp: Response, user: User) -> None:
    set_access_cookie(resp, generate_access_token(user))
    resp.set_cookie(
        REFRESH_COOKIE,
        generate_refresh_token(user),
        max_age=int(current_app.config["JWT_REFRESH_EXPIRES_SECONDS"]),
        **_cookie_kwargs(),
    )


def clear_auth_cookies(resp: Response) -> None:
    kwargs = _cookie_kwargs()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        resp.delete_cookie(name, path="/", domain=kwargs.get("domain"), secure=kwargs["secure"], httponly=True, samesite=kwargs["samesite"])
