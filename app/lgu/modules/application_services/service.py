from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.lgu.audit import record_event
from app.lgu.forms import (
    button_texts,
    button_visibility,
    generate_service_id,
    sanitize_builder_field,
    sanitize_step,
)
from app.lgu.modules.application_services.models import CustomApplicationService
from app.lgu.utils import ValidationError, isoformat_z, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.lgu.models import User


def serialize_application_service(svc: CustomApplicationService) -> dict[str, Any]:
    return {
        "id": svc.id,
        "title": svc.title,
        "description": svc.description,
        "icon": svc.icon,
        "color": svc.color,
        "visible": svc.visible,
        "formFields": list(svc.form_fields or []),
        "formSteps": list(svc.form_steps or []),
        "buttonTexts": svc.button_texts,
        "buttonVisibility": svc.button_visibility,
        "createdBy": svc.created_by_user_id,
        "updatedBy": svc.updated_by_user_id,
        "createdAt": isoformat_z(svc.created_at),
        "updatedAt": isoformat_z(svc.updated_at),
    }


def validate_application_service_payload(payload: dict[str, Any], *, partial: bool = False) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not partial or "title" in payload:
        if not str(payload.get("title") or "").strip():
            errors.append(ValidationError("title", "Title is required"))
    for key in ("formFields", "formSteps"):
        if key in payload and not isinstance(payload.get(key), list):
            errors.append(ValidationError(key, f"{key} must be a list"))
    if "visible" in payload and not isinstance(payload.get("visible"), bool):
        errors.append(ValidationError("visible", "visible must be a boolean"))
    return errors


def _fields(raw: list) -> list[dict[str, Any]]:
    return [sanitize_builder_field(f, i) for i, f in enumerate(raw)]


def create_application_service(s: "Session", payload: dict[str, Any], user: "User | None") -> CustomApplicationService:
    """Raises FormSchemaError on an invalid field."""
    title = str(payload["title"]).strip()
    fields = _fields(payload.get("formFields") or [])
    now = utcnow()
    svc = CustomApplicationService(
        id=generate_service_id(s, CustomApplicationService, title, fallback="application", now=now),
        title=title,
        description=str(payload.get("description") or "").strip(),
        icon=str(payload.get("icon") or "").strip() or "FileText",
        color=str(payload.get("color") or "").strip() or "bg-blue-500",
        visible=bool(payload.get("visible", False)),
        form_fields=fields,
        form_steps=[sanitize_step(st) for st in (payload.get("formSteps") or [])],
        button_texts=button_texts(payload.get("buttonTexts")),
        button_visibility=button_visibility(payload.get("buttonVisibility")),
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
        action="application_service.create",
        entity_type="CustomApplicationService",
        entity_id=svc.id,
        metadata={"title": svc.title, "fields": len(fields)},
    )
    return svc


def find_application_services(s: "Session", visible: bool | None = None) -> list[CustomApplicationService]:
    q = s.query(CustomApplicationService)
    if visible is not None:
        q = q.filter(CustomApplicationService.visible.is_(visible))
    return q.order_by(CustomApplicationService.created_at.desc(), CustomApplicationService.id.desc()).all()


def find_application_service(s: "Session", service_id: str) -> CustomApplicationService:
    svc = s.get(CustomApplicationService, service_id)
    if not svc:
        raise LookupError(f'Custom application service with ID "{service_id}" not found')
    return svc


def find_ids_by_title_match(s: "Session", text: str | None) -> list[str]:
    """Ids of services whose title contains `text` (case-insensitive, literal match)."""
    needle = (text or "").strip().lower()
    if not needle:
        return []
    escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    rows = (
        s.query(CustomApplicationService.id)
        .filter(func.lower(CustomApplicationService.title).like(f"%{escaped}%", escape="\\"))
        .all()
    )
    return [r[0] for r in rows]


def find_titles_by_ids(s: "Session", ids: list[str]) -> dict[str, str]:
    unique = sorted({str(i).strip() for i in ids if i is not None and str(i).strip()})
    if not unique:
        return {}
    rows = (
        s.query(CustomApplicationService.id, CustomApplicationService.title)
        .filter(CustomApplicationService.id.in_(unique))
        .all()
    )
    return {sid: title for sid, title in rows}


def update_application_service(
    s: "Session", svc: CustomApplicationService, payload: dict[str, Any], user: "User | None"
) -> CustomApplicationService:
    changes: dict[str, Any] = {}

    if "formFields" in payload:
        svc.form_fields = _fields(payload.get("formFields") or [])
        changes["formFields"] = len(svc.form_fields)
    if "formSteps" in payload:
        svc.form_steps = [sanitize_step(st) for st in (payload.get("formSteps") or [])]
        changes["formSteps"] = len(svc.form_steps)
    if "buttonTexts" in payload:
        svc.button_texts = button_texts(payload.get("buttonTexts"))
        changes["buttonTexts"] = svc.button_texts
    if "buttonVisibility" in payload:
        svc.button_visibility = button_visibility(payload.get("buttonVisibility"))
        changes["buttonVisibility"] = svc.button_visibility

    for key, attr in (("title", "title"), ("icon", "icon"), ("color", "color")):
        value = str(payload.get(key) or "").strip()
        if value and value != getattr(svc, attr):
            changes[key] = {"old": getattr(svc, attr), "new": value}
            setattr(svc, attr, value)
    if "description" in payload:
        svc.description = str(payload.get("description") or "").strip()
    if "visible" in payload and bool(payload["visible"]) != svc.visible:
        changes["visible"] = {"old": svc.visible, "new": bool(payload["visible"])}
        svc.visible = bool(payload["visible"])

    if user is not None:
        svc.updated_by_user_id = user.id
    svc.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="application_service.update",
        entity_type="CustomApplicationService",
        entity_id=svc.id,
        metadata={"changes": changes},
    )
    return svc


def set_application_service_visible(
    s: "Session", svc: CustomApplicationService, visible: bool, user: "User | None"
) -> CustomApplicationService:
    old = svc.visible
    svc.visible = bool(visible)
    if user is not None:
        svc.updated_by_user_id = user.id
    svc.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="application_service.visible",
        entity_type="CustomApplicationService",
        entity_id=svc.id,
        metadata={"old": old, "new": svc.visible},
    )
    return svc


def delete_application_service(s: "Session", svc: CustomApplicationService, user: "User | None") -> None:
    record_event(
        s,
        actor=user,
        action="application_service.delete",
        entity_type="CustomApplicationService",
        entity_id=svc.id,
        metadata={"title": svc.title},
    )
    s.delete(svc)

