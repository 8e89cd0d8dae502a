from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request

from app.lgu.api import json_body, validation_failed
from app.lgu.constants import ROLE_USER
from app.lgu.db import db_session
from app.lgu.modules.payments.paymongo_client import PaymongoError, PaymongoNotConfigured, paymongo_from_config
from app.lgu.modules.payments.service import (
    WebhookSignatureError,
    cancel_pending,
    create_checkout_session,
    create_payment_transaction,
    handle_webhook,
    send_payment_email_once,
    validate_initiate_payload,
)
from app.lgu.modules.settings.service import get_or_create_settings, public_settings
from app.lgu.modules.transactions.models import Transaction
from app.lgu.modules.transactions.service import DuplicateReferenceError
from app.lgu.rbac import current_user, require_roles

bp = Blueprint("payments", __name__)


def _client():
    try:
        return paymongo_from_config(current_app.config)
    except PaymongoNotConfigured as e:
        abort(500, description=str(e))


def _own_transaction_or_404(s, transaction_id: int) -> Transaction:
    tx = s.get(Transaction, transaction_id)
    if not tx or tx.user_id != current_user().id:
        abort(404, description="Transaction not found")
    return tx


def _seal_logo_url(s) -> str:
    base = current_app.config.get("FRONTEND_URL") or request.host_url
    return public_settings(get_or_create_settings(s), base)["assets"].get("sealLogoUrl") or ""


@bp.post("/initiate")
@require_roles(ROLE_USER)
def initiate():
    payload = json_body()
    errors = validate_initiate_payload(payload)
    if errors:
        return validation_failed(errors)
    client = _client()
    s = db_session()
    try:
        tx = create_payment_transaction(s, payload, current_user())
    except DuplicateReferenceError as e:
        abort(409, description=str(e))
    except ValueError as e:
        abort(400, description=str(e))
    # the transaction is kept even when the provider call fails
    s.commit()
    try:
        result = create_checkout_session(
            s,
            client,
            tx,
            success_url=payload["successUrl"],
            cancel_url=payload["cancelUrl"],
            payment_method=payload.get("paymentMethod"),
        )
    except PaymongoError as e:
        current_app.logger.error("Checkout failed for transaction %s: %s", tx.id, e)
        abort(502, description="Payment provider error")
    s.commit()
    return jsonify({"checkoutUrl": result["checkoutUrl"], "transactionId": tx.id}), 201


@bp.post("/checkout")
@require_roles(ROLE_USER)
def checkout():
    payload = json_body()
    raw_id = payload.get("transactionId")
    if not str(raw_id or "").isdigit():
        abort(400, description="Transaction not found")
    for key in ("successUrl", "cancelUrl"):
        if not isinstance(payload.get(key), str) or not payload[key].strip():
            abort(400, description=f"{key} is required")
    client = _client()
    s = db_session()
    tx = s.get(Transaction, int(raw_id))
    if not tx or tx.user_id != current_user().id:
        abort(400, description="Transaction not found")
    try:
        result = create_checkout_session(
            s,
            client,
            tx,
            success_url=payload["successUrl"],
            cancel_url=payload["cancelUrl"],
            description=f"LGU payment for transaction {tx.id}",
        )
    except ValueError as e:
        abort(400, description=str(e))
    except PaymongoError as e:
        current_app.logger.error("Checkout failed for transaction %s: %s", tx.id, e)
        abort(502, description="Payment provider error")
    s.commit()
    return jsonify(result), 201


@bp.post("/webhook")
def webhook():
    secret = (current_app.config.get("PAYMONGO_WEBHOOK_SECRET") or "").strip()
    if not secret:
        abort(500, description="PAYMONGO_WEBHOOK_SECRET not configured")
    client = None
    if (current_app.config.get("PAYMONGO_SECRET_KEY") or "").strip():
        client = paymongo_from_config(current_app.config)

    s = db_session()
    try:
        outcome, touched = handle_webhook(
            s,
            secret=secret,
            raw_body=request.get_data(cache=True),
            signature=request.headers.get("paymongo-signature"),
            client=client,
        )
    except WebhookSignatureError as e:
        current_app.logger.warning("Webhook rejected: %s request_id=%s", e, getattr(g, "request_id", None))
        abort(400, description=str(e))
    s.commit()

    if touched:
        logo = _seal_logo_url(s)
        for tx in touched:
            send_payment_email_once(s, tx, outcome, seal_logo_url=logo)
        s.commit()
    current_app.logger.info("Webhook processed outcome=%s transactions=%s", outcome, [t.id for t in touched])
    return jsonify({"received": True})


@bp.patch("/cancel/<int:transaction_id>")
@require_roles(ROLE_USER)
def cancel(transaction_id: int):
    s = db_session()
    tx = _own_transaction_or_404(s, transaction_id)
    if cancel_pending(s, tx, current_user()):
        s.commit()
        send_payment_email_once(s, tx, "failed", seal_logo_url=_seal_logo_url(s))
        s.commit()
    return jsonify({"transactionId": tx.id, "status": "ok"})
