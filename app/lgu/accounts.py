"""
User account service: registration, verification codes, password changes,
admin account management and the super admin seed.
"""
from __future__ import annotations

import re
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from werkzeug.security import check_password_hash, generate_password_hash

from app.lgu.audit import record_event
from app.lgu.constants import (
    ACCOUNT_TYPES,
    CODE_EMAIL_VERIFICATION,
    CODE_PASSWORD_RESET,
    GENDERS,
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    ROLE_USER,
    VERIFICATION_CODE_TTL_MINUTES,
    normalize_to_service_id,
)
from app.lgu.models import User, VerificationCode
from app.lgu.utils import ValidationError, isoformat_z, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]")
ADMIN_CONTACT_RE = re.compile(r"^09\d{9}$")
PASSWORD_RULE = (
    "Password must contain at least one uppercase letter, one lowercase letter, "
    "one number and one special character (@$!%*?&)"
)


class AccountError(Exception):
    """Business rule failure carrying the HTTP status the API should answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def serialize_user(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "accountType": u.account_type,
        "email": u.email,
        "firstName": u.first_name,
        "middleName": u.middle_name,
        "lastName": u.last_name,
        "fullName": u.full_name,
        "gender": u.gender,
        "contact": u.contact,
        "role": u.role,
        "permissions": list(u.permissions or []),
        "allowedServices": list(u.allowed_services or []),
        "isActive": u.is_active,
        "isEmailVerified": u.is_email_verified,
        "lastLoginAt": isoformat_z(u.last_login_at),
        "createdAt": isoformat_z(u.created_at),
        "updatedAt": isoformat_z(u.updated_at),
    }


def normalize_email(raw: Any) -> str:
    return str(raw or "").strip().lower()


def find_user_by_email(s: "Session", email: str) -> User | None:
    return s.query(User).filter(User.email == normalize_email(email)).one_or_none()


# ---------- Validation ----------
def _validate_name(payload: dict, key: str, label: str, errors: list[ValidationError], *, required: bool) -> None:
    value = payload.get(key)
    if value is None or not str(value).strip():
        if required:
            errors.append(ValidationError(key, f"{label} is required"))
        return
    n = len(str(value).strip())
    if required and n < 2:
        errors.append(ValidationError(key, f"{label} must be at least 2 characters long"))
    if n > 50:
        errors.append(ValidationError(key, f"{label} must not exceed 50 characters"))


def validate_password(password: Any, field: str = "password", label: str = "Password") -> list[ValidationError]:
    if not isinstance(password, str) or not password:
        return [ValidationError(field, f"{label} is required")]
    if len(password) < 8:
        return [ValidationError(field, f"{label} must be at least 8 characters long")]
    if not PASSWORD_RE.match(password):
        return [ValidationError(field, PASSWORD_RULE)]
    return []


def validate_register_payload(payload: dict) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if payload.get("accountType") not in ACCOUNT_TYPES:
        errors.append(ValidationError("accountType", "Account type must be either individual or business"))
    if not EMAIL_RE.match(normalize_email(payload.get("email"))):
        errors.append(ValidationError("email", "Please provide a valid email address"))
    _validate_name(payload, "firstName", "First name", errors, required=True)
    _validate_name(payload, "middleName", "Middle name", errors, required=False)
    _validate_name(payload, "lastName", "Last name", errors, required=True)
    if payload.get("gender") not in GENDERS:
        errors.append(ValidationError("gender", "Gender must be either male or female"))
    if not str(payload.get("contact") or "").strip():
        errors.append(ValidationError("contact", "Contact number is required"))
    errors.extend(validate_password(payload.get("password")))
    return errors


def validate_profile_payload(payload: dict) -> list[ValidationError]:
    errors: list[ValidationError] = []
    _validate_name(payload, "firstName", "First name", errors, required=True)
    _validate_name(payload, "middleName", "Middle name", errors, required=False)
    _validate_name(payload, "lastName", "Last name", errors, required=True)
    if not str(payload.get("contact") or "").strip():
        errors.append(ValidationError("contact", "Contact number is required"))
    return errors


# ---------- Verification codes ----------
def issue_code(s: "Session", user: User, code_type: str) -> VerificationCode:
    """Replace any earlier code of the same type with a fresh 6-digit one."""
    s.query(VerificationCode).filter(VerificationCode.user_id == user.id, VerificationCode.type == code_type).delete(
        synchronize_session=False
    )
    vc = VerificationCode(
        user_id=user.id,
        code=f"{secrets.randbelow(900000) + 100000}",
        type=code_type,
        expires_at=utcnow() + timedelta(minutes=VERIFICATION_CODE_TTL_MINUTES),
        is_used=False,
    )
    s.add(vc)
    s.flush()
    return vc


def consume_code(s: "Session", user: User, code: str, code_type: str) -> bool:
    vc = (
        s.query(VerificationCode)
        .filter(
            VerificationCode.user_id == user.id,
            VerificationCode.code == str(code or "").strip(),
            VerificationCode.type == code_type,
            VerificationCode.is_used.is_(False),
            VerificationCode.expires_at > utcnow(),
        )
        .first()
    )
    if vc is None:
        return False
    vc.is_used = True
    return True


def send_verification_code(s: "Session", user: User) -> bool:
    from app.lgu.mailer import send_verification_email

    vc = issue_code(s, user, CODE_EMAIL_VERIFICATION)
    return send_verification_email(s, user.email, vc.code, user.first_name)


def send_password_reset_code(s: "Session", user: User) -> bool:
    from app.lgu.mailer import send_password_reset_email

    vc = issue_code(s, user, CODE_PASSWORD_RESET)
    return send_password_reset_email(s, user.email, vc.code, user.first_name)


# ---------- Registration / login ----------
def register_user(s: "Session", payload: dict) -> User:
    email = normalize_email(payload.get("email"))
    if find_user_by_email(s, email):
        raise AccountError("User with this email already exists", 409)
    now = utcnow()
    user = User(
        account_type=payload["accountType"],
        email=email,
        first_name=str(payload["firstName"]).strip(),
        middle_name=(str(payload.get("middleName") or "").strip() or None),
        last_name=str(payload["lastName"]).strip(),
        gender=payload.get("gender"),
        contact=str(payload.get("contact") or "").strip(),
        password_hash=generate_password_hash(payload["password"]),
        role=ROLE_USER,
        permissions=[],
        allowed_services=[],
        is_active=True,
        is_email_verified=False,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    send_verification_code(s, user)
    return user


def authenticate(s: "Session", email: str, password: str, *, roles: tuple[str, ...]) -> User:
    """
    Credential check for one login surface (citizen or admin).
    Accounts outside `roles` get the same answer as a wrong password.
    """
    user = find_user_by_email(s, email)
    if not user or user.role not in roles:
        raise AccountError("Invalid email or password", 401)
    if not user.is_active:
        raise AccountError("Account is deactivated. Please contact support", 401)
    if not user.is_email_verified:
        raise AccountError("Please verify your email address before logging in", 401)
    if not check_password_hash(user.password_hash, password or ""):
        raise AccountError("Invalid email or password", 401)
    user.last_login_at = utcnow()
    return user


def verify_email(s: "Session", email: str, code: str) -> None:
    user = find_user_by_email(s, email)
    if not user:
        raise AccountError("User not found", 404)
    if user.is_email_verified:
        raise AccountError("Email is already verified", 400)
    if not consume_code(s, user, code, CODE_EMAIL_VERIFICATION):
        raise AccountError("Invalid or expired verification code", 400)
    user.is_email_verified = True
    record_event(s, actor=user, action="auth.verify_email", entity_type="User", entity_id=str(user.id))


def resend_verification(s: "Session", email: str) -> None:
    user = find_user_by_email(s, email)
    if not user:
        raise AccountError("User not found", 404)
    if user.is_email_verified:
        raise AccountError("Email is already verified", 400)
    send_verification_code(s, user)


def update_profile(s: "Session", user: User, payload: dict) -> User:
    user.first_name = str(payload["firstName"]).strip()
    user.middle_name = str(payload.get("middleName") or "").strip() or None
    user.last_name = str(payload["lastName"]).strip()
    user.contact = str(payload.get("contact") or "").strip()
    user.updated_at = utcnow()
    record_event(s, actor=user, action="user.profile_update", entity_type="User", entity_id=str(user.id))
    return user


def change_password(s: "Session", user: User, current_password: str, new_password: str) -> None:
    if not check_password_hash(user.password_hash, current_password or ""):
        raise AccountError("Current password is incorrect", 401)
    user.password_hash = generate_password_hash(new_password)
    user.updated_at = utcnow()
    record_event(s, actor=user, action="user.password_change", entity_type="User", entity_id=str(user.id))


def request_password_reset(s: "Session", email: str) -> None:
    """Silently does nothing for unknown or inactive accounts."""
    user = find_user_by_email(s, email)
    if not user or not user.is_active:
        return
    send_password_reset_code(s, user)


def reset_password(s: "Session", email: str, code: str, new_password: str) -> None:
    user = find_user_by_email(s, email)
    if not user:
        raise AccountError("User not found", 404)
    if not user.is_active:
        raise AccountError("Account is deactivated. Please contact support", 400)
    if not consume_code(s, user, code, CODE_PASSWORD_RESET):
        raise AccountError("Invalid or expired verification code", 400)
    user.password_hash = generate_password_hash(new_password)
    user.updated_at = utcnow()
    record_event(s, actor=user, action="auth.password_reset", entity_type="User", entity_id=str(user.id))


# ---------- Admin accounts ----------
def clean_permissions(raw: Any) -> list[str]:
    out: list[str] = []
    for p in raw if isinstance(raw, list) else []:
        key = str(p or "").strip()
        if key and key not in out:
            out.append(key)
    return out


def clean_allowed_services(raw: Any) -> list[str]:
    """Catalog ids are canonicalized; unknown entries are kept (custom services, legacy names)."""
    out: list[str] = []
    for v in raw if isinstance(raw, list) else []:
        if not isinstance(v, str) or not v.strip():
            continue
        key = normalize_to_service_id(v) or v.strip()
        if key not in out:
            out.append(key)
    return out


def validate_admin_payload(payload: dict, *, partial: bool) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if "email" in payload or not partial:
        if not EMAIL_RE.match(normalize_email(payload.get("email"))):
            errors.append(ValidationError("email", "Please provide a valid email address"))
    for key, label in (("firstName", "First name"), ("lastName", "Last name")):
        if key in payload or not partial:
            _validate_name(payload, key, label, errors, required=True)
    if "middleName" in payload:
        _validate_name(payload, "middleName", "Middle name", errors, required=False)
    contact = payload.get("contact")
    if contact and not ADMIN_CONTACT_RE.match(str(contact).strip()):
        errors.append(ValidationError("contact", "Contact must be an 11-digit mobile number starting with 09"))
    if not partial and (not isinstance(payload.get("password"), str) or len(payload.get("password") or "") < 8):
        errors.append(ValidationError("password", "Password must be at least 8 characters long"))
    for key in ("permissions", "allowedServices"):
        if key in payload and not isinstance(payload.get(key), list):
            errors.append(ValidationError(key, f"{key} must be a list"))
    return errors


def create_admin(s: "Session", payload: dict, actor: User) -> User:
    email = normalize_email(payload.get("email"))
    if find_user_by_email(s, email):
        raise AccountError("Email already in use", 409)
    now = utcnow()
    admin = User(
        account_type="individual",
        email=email,
        first_name=str(payload.get("firstName") or "").strip(),
        middle_name=str(payload.get("middleName") or "").strip() or None,
        last_name=str(payload.get("lastName") or "").strip(),
        gender=payload.get("gender") if payload.get("gender") in GENDERS else None,
        contact=str(payload.get("contact") or "").strip() or None,
        password_hash=generate_password_hash(payload["password"]),
        role=ROLE_ADMIN,
        permissions=clean_permissions(payload.get("permissions")),
        allowed_services=clean_allowed_services(payload.get("allowedServices")),
        is_active=bool(payload.get("isActive", True)),
        is_email_verified=True,
        created_at=now,
        updated_at=now,
    )
    s.add(admin)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="admin.create",
        entity_type="User",
        entity_id=str(admin.id),
        metadata={"email": admin.email, "permissions": admin.permissions, "allowed_services": admin.allowed_services},
    )
    return admin


def update_admin(s: "Session", admin: User, payload: dict, actor: User) -> User:
    changes: dict[str, dict[str, Any]] = {}

    if "email" in payload:
        new_email = normalize_email(payload.get("email"))
        if new_email != admin.email:
            clash = find_user_by_email(s, new_email)
            if clash and clash.id != admin.id:
                raise AccountError("Email already in use", 409)
            changes["email"] = {"old": admin.email, "new": new_email}
            admin.email = new_email

    for key, attr in (("firstName", "first_name"), ("middleName", "middle_name"), ("lastName", "last_name"), ("contact", "contact")):
        if key in payload:
            new_val = str(payload.get(key) or "").strip() or None
            if attr in ("first_name", "last_name") and not new_val:
                continue
            if new_val != getattr(admin, attr):
                changes[key] = {"old": getattr(admin, attr), "new": new_val}
                setattr(admin, attr, new_val)

    if "password" in payload and payload.get("password"):
        password = str(payload["password"])
        if len(password) < 8:
            raise AccountError("Password too short", 400)
        admin.password_hash = generate_password_hash(password)
        changes["password"] = {"old": "***", "new": "***"}

    if "permissions" in payload:
        perms = clean_permissions(payload.get("permissions"))
        if perms != list(admin.permissions or []):
            changes["permissions"] = {"old": admin.permissions, "new": perms}
            admin.permissions = perms

    if "allowedServices" in payload:
        allowed = clean_allowed_services(payload.get("allowedServices"))
        if allowed != list(admin.allowed_services or []):
            changes["allowedServices"] = {"old": admin.allowed_services, "new": allowed}
            admin.allowed_services = allowed

    if payload.get("gender") in GENDERS and payload["gender"] != admin.gender:
        changes["gender"] = {"old": admin.gender, "new": payload["gender"]}
        admin.gender = payload["gender"]

    if "isActive" in payload and bool(payload["isActive"]) != admin.is_active:
        changes["isActive"] = {"old": admin.is_active, "new": bool(payload["isActive"])}
        admin.is_active = bool(payload["isActive"])

    admin.updated_at = utcnow()
    record_event(s, actor=actor, action="admin.edit", entity_type="User", entity_id=str(admin.id), metadata={"changes": changes})
    return admin


def delete_admin(s: "Session", admin: User, actor: User) -> None:
    if admin.role == ROLE_SUPER_ADMIN:
        raise AccountError("Cannot delete super admin", 400)
    record_event(s, actor=actor, action="admin.delete", entity_type="User", entity_id=str(admin.id), metadata={"email": admin.email})
    s.delete(admin)


def ensure_super_admin(s: "Session", email: str, password: str) -> User | None:
    """
    Seed the configured super admin if absent.
    Does NOT overwrite an existing account's password or role.
    """
    email = normalize_email(email)
    if not email or not password:
        return None
    existing = find_user_by_email(s, email)
    if existing:
        return existing
    now = utcnow()
    admin = User(
        account_type="individual",
        email=email,
        first_name="System",
        middle_name="Admin",
        last_name="User",
        password_hash=generate_password_hash(password),
        role=ROLE_SUPER_ADMIN,
        permissions=[],
        allowed_services=[],
        is_active=True,
        is_email_verified=True,
        created_at=now,
        updated_at=now,
    )
    s.add(admin)
    s.flush()
    record_event(s, actor=None, action="admin.seed", entity_type="User", entity_id=str(admin.id), metadata={"email": email})
    return admin
