from __future__ import annotations

from typing import TYPE_CHECKING, Any

from app.lgu.audit import record_event
from app.lgu.forms import check_single_cost_field, generate_service_id, sanitize_payment_field
from app.lgu.modules.payment_services.models import CustomPaymentService
from app.lgu.utils import ValidationError, isoformat_z, non_negative, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.lgu.models import User


def serialize_payment_service(svc: CustomPaymentService) -> dict[str, Any]:
    return {
        "id": svc.id,
        "title": svc.title,
        "description": svc.description,
        "baseAmount": svc.base_amount,
        "processingFee": svc.processing_fee,
        "enabled": svc.enabled,
        "formFields": list(svc.form_fields or []),
        "createdBy": svc.created_by_user_id,
        "updatedBy": svc.updated_by_user_id,
        "createdAt": isoformat_z(svc.created_at),
        "updatedAt": isoformat_z(svc.updated_at),
    }


def validate_payment_service_payload(payload: dict[str, Any], *, partial: bool = False) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not partial or "title" in payload:
        if not str(payload.get("title") or "").strip():
            errors.append(ValidationError("title", "Title is required"))
    for key in ("baseAmount", "processingFee"):
        if key in payload and payload[key] is not None:
            v = payload[key]
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                errors.append(ValidationError(key, f"{key} must be a number"))
            elif v < 0:
                errors.append(ValidationError(key, f"{key} must be >= 0"))
    if "formFields" in payload and not isinstance(payload.get("formFields"), list):
        errors.append(ValidationError("formFields", "formFields must be a list"))
    if "enabled" in payload and not isinstance(payload.get("enabled"), bool):
        errors.append(ValidationError("enabled", "enabled must be a boolean"))
    return errors


def _fields(raw: list) -> tuple[list[dict[str, Any]], bool]:
    """Sanitized fields plus whether a cost field is present. Raises FormSchemaError."""
    fields = [sanitize_payment_field(f, i) for i, f in enumerate(raw)]
    return fields, check_single_cost_field(fields)


def create_payment_service(s: "Session", payload: dict[str, Any], user: "User | None") -> CustomPaymentService:
    title = str(payload["title"]).strip()
    fields, has_cost = _fields(payload.get("formFields") or [])
    now = utcnow()
    svc = CustomPaymentService(
        id=generate_service_id(s, CustomPaymentService, title, fallback="payment", now=now),
        title=title,
        description=str(payload.get("description") or "").strip(),
        base_amount=0 if has_cost else non_negative(payload.get("baseAmount")),
        processing_fee=non_negative(payload.get("processingFee")),
        enabled=payload.get("enabled") is not False,
        form_fields=fields,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    s.add(svc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="payment_service.create",
        entity_type="CustomPaymentService",
        entity_id=svc.id,
        metadata={"title": svc.title, "baseAmount": svc.base_amount, "fields": len(fields)},
    )
    return svc


def find_payment_services(s: "Session", enabled: bool | None = None) -> list[CustomPaymentService]:
    q = s.query(CustomPaymentService)
    if enabled is not None:
        q = q.filter(CustomPaymentService.enabled.is_(enabled))
    return q.order_by(CustomPaymentService.created_at.desc(), CustomPaymentService.id.desc()).all()


def find_payment_service(s: "Session", service_id: str) -> CustomPaymentService:
    svc = s.get(CustomPaymentService, service_id)
    if not svc:
        raise LookupError(f'Custom payment service with ID "{service_id}" not found')
    return svc


def update_payment_service(
    s: "Session", svc: CustomPaymentService, payload: dict[str, Any], user: "User | None"
) -> CustomPaymentService:
    """
    A cost field on the (new or existing) form always pins baseAmount to 0.
    Raises FormSchemaError on invalid fields.
    """
    changes: dict[str, Any] = {}

    if "formFields" in payload:
        fields, has_cost = _fields(payload.get("formFields") or [])
        svc.form_fields = fields
        changes["formFields"] = len(fields)
    else:
        has_cost = check_single_cost_field(list(svc.form_fields or []))

    if "title" in payload and str(payload.get("title") or "").strip():
        title = str(payload["title"]).strip()
        if title != svc.title:
            changes["title"] = {"old": svc.title, "new": title}
            svc.title = title
    if "description" in payload:
        svc.description = str(payload.get("description") or "").strip()

    new_base = 0 if has_cost else (non_negative(payload["baseAmount"]) if "baseAmount" in payload else svc.base_amount)
    if new_base != svc.base_amount:
        changes["baseAmount"] = {"old": svc.base_amount, "new": new_base}
        svc.base_amount = new_base
    if "processingFee" in payload:
        fee = non_negative(payload.get("processingFee"))
        if fee != svc.processing_fee:
            changes["processingFee"] = {"old": svc.processing_fee, "new": fee}
            svc.processing_fee = fee
    if "enabled" in payload and bool(payload["enabled"]) != svc.enabled:
        changes["enabled"] = {"old": svc.enabled, "new": bool(payload["enabled"])}
        svc.enabled = bool(payload["enabled"])

    if user is not None:
        svc.updated_by_user_id = user.id
    svc.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="payment_service.update",
        entity_type="CustomPaymentService",
        entity_id=svc.id,
        metadata={"changes": changes},
    )
    return svc


def set_payment_service_enabled(
    s: "Session", svc: CustomPaymentService, enabled: bool, user: "User | None"
) -> CustomPaymentService:
    old = svc.enabled
    svc.enabled = bool(enabled)
    if user is not None:
        svc.updated_by_user_id = user.id
    svc.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="payment_service.enabled",
        entity_type="CustomPaymentService",
        entity_id=svc.id,
        metadata={"old": old, "new": svc.enabled},
    )
    return svc


def delete_payment_service(s: "Session", svc: CustomPaymentService, user: "User | None") -> None:
    record_event(
        s,
        actor=user,
        action="payment_service.delete",
        entity_type="CustomPaymentService",
        entity_id=svc.id,
        metadata={"title": svc.title},
    )
    s.delete(svc)
