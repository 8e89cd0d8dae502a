"""
PayMongo checkout and webhook handling.

Flow: `create_payment_transaction` inserts an awaiting_payment transaction and
`create_checkout_session` opens a hosted checkout for it. PayMongo later posts
signed webhook events that move the transaction to paid, failed or refunded.
Every transition sends at most one email per outcome, tracked in `notifications.email.<kind>SentAt`.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import urllib.parse
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from app.lgu.audit import record_event
from app.lgu.constants import (
    BREAKDOWN_CODES,
    IMMUTABLE_STATUSES,
    PAYMENT_PROVIDER,
    build_service_reference,
    normalize_to_service_id,
)
from app.lgu.modules.payments.paymongo_client import PaymongoClient, PaymongoError, first_payment_id
from app.lgu.modules.transactions.models import Transaction
from app.lgu.modules.transactions.service import BREAKDOWN_MISMATCH, DuplicateReferenceError, breakdown_sum
from app.lgu.utils import ValidationError, isoformat_z, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.lgu.models import User

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("card", "digital-wallets", "dob", "qrph")
ALL_METHOD_TYPES = ["card", "gcash", "paymaya", "dob", "qrph"]
MAX_REFERENCE_ATTEMPTS = 5

PAID_EVENTS = frozenset({"checkout_session.payment.paid", "payment.paid"})
REFUND_EVENTS = frozenset({"payment.refunded", "payment.refund.updated", "refund.created", "refund.updated"})
_FAILED_RE = re.compile(r"failed|expired", re.IGNORECASE)


class WebhookSignatureError(ValueError):
    pass


# ---------- Helpers ----------
def payment_method_types(method: str | None) -> list[str]:
    if not method:
        return list(ALL_METHOD_TYPES)
    if method == "digital-wallets":
        return ["gcash", "paymaya"]
    return [method]


def initial_channel(method: str | None) -> tuple[str, str | None]:
    """(channel, subchannel) recorded before the customer actually pays."""
    if method == "card":
        return "card", None
    if method == "digital-wallets":
        return "online_wallet", "gcash"
    if method == "dob":
        return "online_banking", None
    if method == "qrph":
        return "qrph", None
    return "other", None


def channel_from_method(method: str | None) -> tuple[str, str | None]:
    """Map the method PayMongo reports as used onto our channel taxonomy."""
    m = (method or "").lower()
    if "card" in m:
        return "card", None
    if "gcash" in m:
        return "online_wallet", "gcash"
    if "maya" in m:
        return "online_wallet", "paymaya"
    if "bank" in m or "dob" in m:
        return "online_banking", None
    if "qris" in m or "qrph" in m:
        return "qrph", None
    return "other", None


def with_query_param(url: str, key: str, value: str) -> str:
    parts = urllib.parse.urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url
    query = [(k, v) for k, v in urllib.parse.parse_qsl(parts.query, keep_blank_values=True) if k != key]
    query.append((key, value))
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


def query_param(url: Any, key: str) -> str | None:
    if not isinstance(url, str) or not url:
        return None
    values = urllib.parse.parse_qs(urllib.parse.urlsplit(url).query).get(key)
    return values[0] if values else None


def build_description(tx: Transaction, extra: str = "") -> str:
    parts = [
        (p or "").strip()
        for p in (tx.reference, tx.user_full_name, tx.user_email, tx.service_name)
    ]
    base = " | ".join(p for p in parts if p) or "LGU payment"
    return f"{base} | {extra}" if extra else base


def _set_payment(tx: Transaction, **fields: Any) -> None:
    # JSON columns only notice reassignment
    payment = dict(tx.payment or {})
    payment.update({k: v for k, v in fields.items() if v is not None})
    payment["provider"] = PAYMENT_PROVIDER
    tx.payment = payment
    tx.channel = payment.get("channel") or None


# ---------- Validation ----------
def validate_initiate_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errors: list[ValidationError] = []
    for key in ("serviceId", "serviceName", "successUrl", "cancelUrl"):
        if not isinstance(payload.get(key), str) or not payload[key].strip():
            errors.append(ValidationError(key, f"{key} is required"))
    breakdown = payload.get("breakdown")
    if not isinstance(breakdown, list):
        errors.append(ValidationError("breakdown", "breakdown must be a list"))
    else:
        for i, item in enumerate(breakdown):
            if not isinstance(item, dict) or item.get("code") not in BREAKDOWN_CODES:
                errors.append(ValidationError(f"breakdown[{i}].code", f"code must be one of: {', '.join(BREAKDOWN_CODES)}"))
                continue
            if not str(item.get("label") or "").strip():
                errors.append(ValidationError(f"breakdown[{i}].label", "label is required"))
            amount = item.get("amountMinor")
            if isinstance(amount, bool) or not isinstance(amount, int):
                errors.append(ValidationError(f"breakdown[{i}].amountMinor", "amountMinor must be an integer"))
    total = payload.get("totalAmountMinor")
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        errors.append(ValidationError("totalAmountMinor", "totalAmountMinor must be a non-negative integer"))
    if payload.get("paymentMethod") not in (None, *PAYMENT_METHODS):
        errors.append(ValidationError("paymentMethod", f"paymentMethod must be one of: {', '.join(PAYMENT_METHODS)}"))
    if payload.get("formData") is not None and not isinstance(payload.get("formData"), dict):
        errors.append(ValidationError("formData", "formData must be an object"))
    if payload.get("reference") is not None and not isinstance(payload.get("reference"), str):
        errors.append(ValidationError("reference", "reference must be a string"))
    return errors


# ---------- Checkout ----------
def create_checkout_session(
    s: "Session",
    client: PaymongoClient,
    tx: Transaction,
    *,
    success_url: str,
    cancel_url: str,
    payment_method: str | None = None,
    description: str = "",
) -> dict[str, str]:
    """
    Open a hosted checkout for `tx` and mark it awaiting_payment.
    Raises ValueError for a non-positive amount and PaymongoError on provider failure.
    """
    if tx.total_amount_minor <= 0:
        raise ValueError("Invalid amount")
    tx_id = str(tx.id)
    attributes = {
        "billing": None,
        "cancel_url": with_query_param(cancel_url, "transactionId", tx_id),
        "success_url": with_query_param(success_url, "transactionId", tx_id),
        "description": build_description(tx, description),
        "line_items": [
            {
                "currency": "PHP",
                "amount": tx.total_amount_minor,
                "description": tx.service_name or "LGU Service",
                "name": tx.reference or "Reference",
                "quantity": 1,
            }
        ],
        "payment_method_types": payment_method_types(payment_method),
        "reference_number": tx.reference or None,
        "send_email_receipt": False,
        "show_description": True,
        "show_line_items": True,
        "statement_descriptor": "LGU Payment",
        "metadata": {
            "transactionId": tx_id,
            "reference": tx.reference or "",
            "userEmail": tx.user_email or "",
            "userFullName": tx.user_full_name or "",
            "serviceId": tx.service_id or "",
            "serviceName": tx.service_name or "",
            "user": {
                "id": str(tx.user_id or ""),
                "email": tx.user_email or "",
                "fullName": tx.user_full_name or "",
            },
        },
    }
    resp = client.create_checkout_session(attributes)
    data = resp.get("data") or {}
    checkout_url = (data.get("attributes") or {}).get("checkout_url")
    session_id = data.get("id")
    if not checkout_url or not session_id:
        raise PaymongoError("Invalid PayMongo response")

    channel, subchannel = initial_channel(payment_method)
    tx.status = "awaiting_payment"
    _set_payment(
        tx,
        channel=channel,
        subchannel=subchannel,
        providerSessionId=session_id,
        providerStatus=(data.get("attributes") or {}).get("status"),
    )
    tx.updated_at = utcnow()
    logger.info("Checkout session %s opened for transaction %s", session_id, tx.id)
    return {"checkoutUrl": checkout_url, "providerSessionId": session_id}


def create_payment_transaction(s: "Session", payload: dict[str, Any], user: "User") -> Transaction:
    """
    Insert the awaiting_payment transaction behind a checkout.

    Generated references are retried on collision; a caller-supplied reference
    that already exists raises DuplicateReferenceError.
    """
    breakdown = list(payload.get("breakdown") or [])
    total = int(payload["totalAmountMinor"])
    if breakdown_sum(breakdown) != total:
        raise ValueError(BREAKDOWN_MISMATCH)

    raw_service_id = str(payload["serviceId"]).strip()
    service_id = normalize_to_service_id(raw_service_id) or raw_service_id
    supplied = str(payload.get("reference") or "").strip()
    channel, subchannel = initial_channel(payload.get("paymentMethod"))

    for attempt in range(MAX_REFERENCE_ATTEMPTS):
        reference = supplied or build_service_reference(service_id, 13)
        if s.query(Transaction.id).filter(Transaction.reference == reference).first() is not None:
            if supplied:
                raise DuplicateReferenceError(f"Reference {reference} already exists")
            continue
        now = utcnow()
        tx = Transaction(
            date=now,
            service_id=service_id,
            service_name=str(payload["serviceName"]).strip(),
            service_other_info=None,
            service_approval_required=bool(payload.get("approvalRequired")),
            total_amount_minor=total,
            reference=reference,
            breakdown=breakdown,
            form_data=payload.get("formData"),
            status="awaiting_payment",
            user_id=user.id,
            user_email=user.email,
            user_full_name=" ".join(p for p in (user.first_name, user.last_name) if p).strip(),
            created_by_admin_id=str(user.id),
            notifications={"email": {}},
            created_at=now,
            updated_at=now,
        )
        _set_payment(tx, channel=channel, subchannel=subchannel)
        s.add(tx)
        try:
            s.flush()
        except IntegrityError:
            # a concurrent insert took the reference between the check and the flush
            s.rollback()
            if supplied:
                raise DuplicateReferenceError(f"Reference {reference} already exists")
            logger.warning("Reference collision on %s (attempt %s)", reference, attempt + 1)
            continue
        record_event(
            s,
            actor=user,
            action="payment.initiate",
            entity_type="Transaction",
            entity_id=str(tx.id),
            metadata={"reference": reference, "service_id": service_id, "total_amount_minor": total},
        )
        return tx
    raise RuntimeError("Failed to create transaction")


# ---------- Webhook ----------
def verify_signature(secret: str, raw_body: bytes, header: str | None) -> None:
    """
    Check a `paymongo-signature` header of the form `t=<ts>,te=<sig>,li=<sig>`.

    The signed payload is `<ts>.<raw body>` (HMAC-SHA256, hex). Test-mode secrets
    are checked against `te`, live secrets against `li`; when the expected
    part is absent either one is accepted. Raises WebhookSignatureError.
    """
    if not header:
        raise WebhookSignatureError("Missing signature")
    parts: dict[str, str] = {}
    for piece in header.split(","):
        name, _, value = piece.strip().partition("=")
        if value:
            parts[name] = value
    timestamp = parts.get("t", "")
    te, li = parts.get("te", ""), parts.get("li", "")
    if not timestamp or (not te and not li):
        raise WebhookSignatureError("Invalid signature header")

    signed = timestamp.encode("utf-8") + b"." + raw_body
    computed = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

    is_test = "test" in secret.lower()
    candidates = [te] if is_test and te else [li] if not is_test and li else [c for c in (te, li) if c]
    if not any(hmac.compare_digest(c, computed) for c in candidates):
        raise WebhookSignatureError("Invalid signature header")


def _event_type(event: dict[str, Any]) -> str:
    attrs = (event.get("data") or {}).get("attributes") or {}
    return str(event.get("type") or attrs.get("type") or "")


def _dig(obj: Any, *path: Any) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
        elif not isinstance(obj, dict):
            return None
        obj = obj[key] if isinstance(key, int) else obj.get(key)
    return obj


def _event_attributes(event: dict[str, Any]) -> dict[str, Any]:
    """
    Resource attributes of a webhook event.

    PayMongo wraps the resource as data.attributes.data for event objects; plain
    resources carry their attributes directly under data.attributes.
    """
    attrs = _dig(event, "data", "attributes") or {}
    inner = _dig(attrs, "data", "attributes")
    if isinstance(inner, dict) and "type" in attrs:
        return {**inner, "id": _dig(attrs, "data", "id")}
    return {**attrs, "id": _dig(event, "data", "id")}


def _metadata(attrs: dict[str, Any]) -> dict[str, Any]:
    for candidate in (
        attrs.get("metadata"),
        _dig(attrs, "payment_intent", "attributes", "metadata"),
        _dig(attrs, "payments", 0, "attributes", "metadata"),
    ):
        if isinstance(candidate, dict) and candidate:
            return candidate
    return {}


def _reference(attrs: dict[str, Any], meta: dict[str, Any]) -> str | None:
    ref = meta.get("reference") or attrs.get("reference_number") or attrs.get("external_reference_number")
    return str(ref) if ref else None


def _transaction_id(attrs: dict[str, Any], meta: dict[str, Any]) -> int | None:
    for raw in (
        meta.get("transactionId"),
        query_param(attrs.get("success_url"), "transactionId"),
        query_param(attrs.get("cancel_url"), "transactionId"),
    ):
        if raw is not None and str(raw).isdigit():
            return int(raw)
    return None


def _find_target(s: "Session", attrs: dict[str, Any]) -> tuple[Transaction | None, str | None]:
    meta = _metadata(attrs)
    reference = _reference(attrs, meta)
    tx_id = _transaction_id(attrs, meta)
    tx = s.get(Transaction, tx_id) if tx_id is not None else None
    if tx is None and reference:
        tx = s.query(Transaction).filter(Transaction.reference == reference).first()
    return tx, reference


def _intent_id(attrs: dict[str, Any]) -> str | None:
    intent = attrs.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id") or None
    if isinstance(intent, str) and intent:
        return intent
    return attrs.get("payment_intent_id") or None


def _audit_transition(s: "Session", tx: Transaction, kind: str, old: str, event_type: str) -> None:
    record_event(
        s,
        actor=None,
        action=f"payment.{kind}",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"old": old, "new": tx.status, "event": event_type, "reference": tx.reference},
    )


def process_paid(s: "Session", attrs: dict[str, Any], event_type: str, client: PaymongoClient | None = None) -> Transaction | None:
    tx, reference = _find_target(s, attrs)
    if tx is None:
        logger.warning("Paid event %s matched no transaction (reference=%s)", event_type, reference)
        return None

    first_payment = _dig(attrs, "payments", 0) or {}
    method = (
        _dig(first_payment, "attributes", "source", "type")
        or _dig(first_payment, "attributes", "payment_method_used")
        or attrs.get("payment_method_used")
        or _dig(attrs, "source", "type")
        or attrs.get("payment_method")
    )
    channel, subchannel = channel_from_method(method if isinstance(method, str) else None)

    ids = [first_payment.get("id") if isinstance(first_payment, dict) else None, attrs.get("id")]
    payment_id = next((i for i in ids if isinstance(i, str) and i.startswith("pay_")), None)
    session_id = next((i for i in ids if isinstance(i, str) and i.startswith("cs_")), None)
    intent_id = _intent_id(attrs)

    if not payment_id and client is not None:
        payment_id = resolve_payment_id(client, session_id=session_id, intent_id=intent_id)

    old = tx.status
    tx.status = "paid"
    _set_payment(
        tx,
        providerStatus=str(attrs.get("status") or "paid"),
        providerIntentId=intent_id,
        providerTransactionId=payment_id,
        providerSessionId=session_id,
        channel=channel,
        subchannel=subchannel,
        paidAt=isoformat_z(utcnow()),
    )
    tx.updated_at = utcnow()
    _audit_transition(s, tx, "paid", old, event_type)
    return tx


def process_failed(s: "Session", attrs: dict[str, Any], event_type: str) -> Transaction | None:
    tx, reference = _find_target(s, attrs)
    if tx is None:
        logger.warning("Failed event %s matched no transaction (reference=%s)", event_type, reference)
        return None
    old = tx.status
    tx.status = "failed"
    _set_payment(tx, providerStatus=str(attrs.get("status") or "failed"))
    tx.updated_at = utcnow()
    _audit_transition(s, tx, "failed", old, event_type)
    return tx


def process_refund(s: "Session", attrs: dict[str, Any], event_type: str) -> list[Transaction]:
    """Refund events identify the payment by id, intent or reference; every match is refunded."""
    payment = attrs.get("payment")
    payment_id = (payment if isinstance(payment, str) else _dig(attrs, "payment", "id")) or attrs.get("payment_id")
    intent_id = _intent_id(attrs)
    reference = attrs.get("reference_number") or attrs.get("external_reference_number")

    matches: dict[int, Transaction] = {}
    if payment_id:
        for tx in s.query(Transaction).filter(Transaction.payment["providerTransactionId"].as_string() == payment_id):
            matches[tx.id] = tx
    if intent_id:
        for tx in s.query(Transaction).filter(Transaction.payment["providerIntentId"].as_string() == intent_id):
            matches[tx.id] = tx
    if reference:
        for tx in s.query(Transaction).filter(Transaction.reference == str(reference)):
            matches[tx.id] = tx
    if not matches:
        logger.warning("Refund event %s matched no transaction (payment=%s reference=%s)", event_type, payment_id, reference)

    provider_status = str(attrs.get("status") or attrs.get("refund_status") or "refunded")
    for tx in matches.values():
        old = tx.status
        tx.status = "refunded"
        _set_payment(tx, providerStatus=provider_status)
        tx.updated_at = utcnow()
        _audit_transition(s, tx, "refunded", old, event_type)
    return list(matches.values())


def resolve_payment_id(client: PaymongoClient, *, session_id: str | None, intent_id: str | None) -> str | None:
    """Look up the final `pay_` id via the intent, then the session. Best effort."""
    lookups = []
    if intent_id:
        lookups.append(("intent", intent_id, client.get_payment_intent))
    if session_id:
        lookups.append(("session", session_id, client.get_checkout_session))
    for label, ident, fetch in lookups:
        try:
            pid = first_payment_id(fetch(ident))
        except PaymongoError as e:
            logger.warning("Could not resolve payment id from %s %s: %s", label, ident, e)
            continue
        if pid:
            return pid
    return None


def handle_webhook(
    s: "Session",
    *,
    secret: str,
    raw_body: bytes,
    signature: str | None,
    client: PaymongoClient | None = None,
) -> tuple[str, list[Transaction]]:
    """
    Verify and apply one webhook delivery. Returns (outcome, touched transactions)
    where outcome is paid / refunded / failed / ignored.
    Raises WebhookSignatureError for a bad signature or body.
    """
    verify_signature(secret, raw_body, signature)
    try:
        event = json.loads(raw_body.decode("utf-8"))
    except ValueError as e:
        raise WebhookSignatureError("Invalid webhook body") from e
    if not isinstance(event, dict):
        raise WebhookSignatureError("Invalid webhook body")

    event_type = _event_type(event)
    attrs = _event_attributes(event)
    if not event_type:
        return "ignored", []
    if event_type in PAID_EVENTS:
        tx = process_paid(s, attrs, event_type, client)
        return "paid", [tx] if tx else []
    if event_type in REFUND_EVENTS:
        return "refunded", process_refund(s, attrs, event_type)
    if event_type == "payment.cancelled" or _FAILED_RE.search(event_type):
        tx = process_failed(s, attrs, event_type)
        return "failed", [tx] if tx else []
    logger.info("Ignoring webhook event %s", event_type)
    return "ignored", []


def cancel_pending(s: "Session", tx: Transaction, user: "User | None") -> bool:
    """Mark an unfinished transaction failed. Returns False when it was already settled."""
    if tx.status in IMMUTABLE_STATUSES:
        return False
    old = tx.status
    tx.status = "failed"
    _set_payment(tx, providerStatus="cancelled")
    tx.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="payment.cancel",
        entity_type="Transaction",
        entity_id=str(tx.id),
        metadata={"old": old, "new": tx.status},
    )
    return True


# ---------- Email ----------
def send_payment_email_once(s: "Session", tx: Transaction, kind: str, *, seal_logo_url: str = "") -> bool:
    """
    Email the owner about `kind` (paid / failed / refunded) unless already done.
    Never raises; the flag is only set after an attempt was made.
    """
    from app.lgu.mailer import send_payment_email

    flag = f"{kind}SentAt"
    email_flags = dict((tx.notifications or {}).get("email") or {})
    if email_flags.get(flag):
        return False
    if not tx.user_email:
        logger.warning("Email skip: transaction %s has no userEmail", tx.id)
        return False

    logger.info("Sending %s email to %s for transaction %s", kind, tx.user_email, tx.id)
    try:
        sent = send_payment_email(s, tx, kind, seal_logo_url=seal_logo_url)
    except Exception:
        logger.exception("Payment email (%s) failed for transaction %s", kind, tx.id)
        return False
    if not sent:
        logger.error("Email send failed to %s for transaction %s", tx.user_email, tx.id)

    email_flags[flag] = isoformat_z(utcnow())
    tx.notifications = {**(tx.notifications or {}), "email": email_flags}
    return sent
