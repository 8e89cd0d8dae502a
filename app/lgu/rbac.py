from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.lgu.constants import ADMIN_ROLES, ROLE_ADMIN, ROLE_SUPER_ADMIN
from app.lgu.models import User


def user_has_role(user: User | None, *roles: str) -> bool:
    if not user or not user.is_active:
        return False
    if user.role in roles:
        return True
    # super_admin passes every admin gate
    return user.role == ROLE_SUPER_ADMIN and ROLE_ADMIN in roles


def user_has_permission(user: User | None, *permission_keys: str) -> bool:
    """Any one of the keys is enough; super_admin holds every permission."""
    if not user or not user.is_active:
        return False
    if user.role == ROLE_SUPER_ADMIN:
        return True
    held = set(user.permissions or [])
    return any(k in held for k in permission_keys)


def is_admin(user: User | None) -> bool:
    return bool(user and user.role in ADMIN_ROLES)


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        abort(401, description="Unauthorized")
    return u


def require_auth(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            abort(401, description="Unauthorized")
        return fn(*args, **kwargs)

    return wrapped


def require_roles(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401
            if not user or not user.is_active:
                abort(401, description="Unauthorized")
            # Authenticated but wrong role -> 403
            if not user_has_role(user, *roles):
                g.missing_role = ",".join(roles)
                abort(403, description="Insufficient role")
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_permission(*permission_keys: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                abort(401, description="Unauthorized")
            if not user_has_permission(user, *permission_keys):
                g.missing_permission = ",".join(permission_keys)
                abort(403, description="Insufficient permissions")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
