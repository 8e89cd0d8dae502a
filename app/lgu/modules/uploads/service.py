"""
Presigned uploads for citizen form attachments.

Files go straight to the storage backend; the API only hands out short-lived
URLs. Reading a file back requires proving it belongs to one of the caller's
transactions unless the caller is an admin.
"""
from __future__ import annotations

import re
import secrets
import string
import time
from typing import TYPE_CHECKING, Any

from app.lgu.modules.transactions.models import Transaction
from app.lgu.rbac import is_admin

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.lgu.models import User
    from app.lgu.storage import Storage


ALLOWED_MIME_TYPES: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
PUT_EXPIRES_SECONDS = 60
GET_EXPIRES_DEFAULT = 60
DEFAULT_KEY_PREFIX = "user-uploads"

_PREFIX_RE = re.compile(r"[^a-z0-9/-]+", re.IGNORECASE)
_ALPHABET = string.ascii_lowercase + string.digits


class UploadError(ValueError):
    pass


class UploadForbidden(PermissionError):
    pass


def random_suffix(length: int = 12) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def clamp_max_bytes(value: Any) -> int:
    try:
        n = int(value) if value else MAX_UPLOAD_BYTES
    except (TypeError, ValueError):
        n = MAX_UPLOAD_BYTES
    return min(MAX_UPLOAD_BYTES, max(1, n))


def sanitize_key_prefix(value: Any) -> str:
    prefix = _PREFIX_RE.sub("-", str(value or DEFAULT_KEY_PREFIX)).strip("/")
    if not prefix or ".." in prefix:
        return DEFAULT_KEY_PREFIX
    return prefix


def create_presigned_put(storage: "Storage", *, content_type: str, max_bytes: Any = None, key_prefix: Any = None) -> dict[str, Any]:
    """Raises UploadError for an unsupported content type."""
    ext = ALLOWED_MIME_TYPES.get(content_type)
    if ext is None:
        raise UploadError("Unsupported file type")
    size = clamp_max_bytes(max_bytes)
    key = f"{sanitize_key_prefix(key_prefix)}/{int(time.time() * 1000)}-{random_suffix()}{ext}"
    url = storage.presigned_put_url(key, content_type=content_type, content_length=size, expires_in=PUT_EXPIRES_SECONDS)
    return {
        "key": key,
        "uploadUrl": url,
        "headers": {"Content-Type": content_type, "Content-Length": str(size)},
    }


def authorize_view(
    s: "Session",
    user: "User",
    *,
    key: str | None,
    transaction_id: str | None,
    field_id: str | None,
) -> None:
    """
    Raises UploadError for a bad key, LookupError for a missing transaction and
    UploadForbidden when a non-admin cannot tie the key to their own transaction.
    """
    if not key or ".." in key:
        raise UploadError("Invalid key")
    if is_admin(user):
        return
    if not transaction_id or not field_id:
        raise UploadForbidden("Missing transaction context")
    tx = s.get(Transaction, int(transaction_id)) if transaction_id.isdigit() else None
    if tx is None:
        raise LookupError("Transaction not found")
    if tx.user_id != user.id:
        raise UploadForbidden("Not allowed")
    value = (tx.form_data or {}).get(field_id)
    if not isinstance(value, str) or value != key:
        raise UploadForbidden("File not associated with this transaction")


def create_presigned_get(storage: "Storage", key: str, expires_in: int = GET_EXPIRES_DEFAULT) -> str:
    return storage.presigned_get_url(key, expires_in=min(3600, max(30, int(expires_in))))
