from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from app.lgu.audit import record_event
from app.lgu.constants import SERVICES, SERVICE_IDS
from app.lgu.forms import normalize_form_config, sanitize_add_on_services, sanitize_settings_payment_services
from app.lgu.modules.settings.models import PortalSettings
from app.lgu.utils import isoformat_z, non_negative, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.lgu.models import User

logger = logging.getLogger(__name__)

DEFAULT_CITY = {"name": "Default", "fullName": "City of Default"}
DEFAULT_BRANDING = {
    "systemName": "Payment System",
    "systemDescription": "Official payment system for city services",
}
DEFAULT_ASSETS = {
    "headerBackgroundUrl": "/uploads/homepage-header.jpg",
    "sealLogoUrl": "/uploads/seal-logo.svg",
    "faviconUrl": "/uploads/favicon.ico",
}
DEFAULT_CONTACT = {
    "address": "City Hall",
    "phone": "+63 (2) 0000-0000",
    "email": "info@city.gov.ph",
    "website": "https://city.gov.ph",
}
DEFAULT_CONVENIENCE_FEE = {
    "card": {"percent": 3.5, "fixed": 15, "min": 0},
    "digitalWallets": {"percent": 2.5, "fixed": 0, "min": 0},
    "dob": {"percent": 0.8, "fixed": 0, "min": 15},
    "qrph": {"percent": 1.5, "fixed": 0, "min": 0},
}
FAQ_CATEGORIES = ("general", "payment", "technical", "account")

# group name -> (model attribute, defaults) for the partially merged groups
_MERGED_GROUPS = {
    "city": ("city", DEFAULT_CITY),
    "branding": ("branding", DEFAULT_BRANDING),
    "assets": ("assets", DEFAULT_ASSETS),
    "contact": ("contact", DEFAULT_CONTACT),
}


def get_or_create_settings(s: "Session") -> PortalSettings:
    settings = s.query(PortalSettings).order_by(PortalSettings.id.asc()).first()
    if settings:
        return settings
    now = utcnow()
    settings = PortalSettings(
        city=dict(DEFAULT_CITY),
        branding=dict(DEFAULT_BRANDING),
        assets=dict(DEFAULT_ASSETS),
        contact=dict(DEFAULT_CONTACT),
        faq=[],
        convenience_fee=copy.deepcopy(DEFAULT_CONVENIENCE_FEE),
        enabled_services={sid: True for sid in SERVICE_IDS},
        form_configs={},
        add_on_services=[],
        custom_payment_services=[],
        created_at=now,
        updated_at=now,
    )
    s.add(settings)
    s.flush()
    logger.info("Created default portal settings (id=%s)", settings.id)
    return settings


def serialize_settings(settings: PortalSettings) -> dict[str, Any]:
    return {
        "id": settings.id,
        "city": {**DEFAULT_CITY, **(settings.city or {})},
        "branding": {**DEFAULT_BRANDING, **(settings.branding or {})},
        "assets": {**DEFAULT_ASSETS, **(settings.assets or {})},
        "contact": {**DEFAULT_CONTACT, **(settings.contact or {})},
        "faq": list(settings.faq or []),
        "convenienceFee": settings.convenience_fee or copy.deepcopy(DEFAULT_CONVENIENCE_FEE),
        "enabledServices": {sid: (settings.enabled_services or {}).get(sid) is not False for sid in sorted(SERVICE_IDS)},
        "formConfigs": dict(settings.form_configs or {}),
        "addOnServices": list(settings.add_on_services or []),
        "customPaymentServices": list(settings.custom_payment_services or []),
        "updatedBy": settings.updated_by_user_id,
        "createdAt": isoformat_z(settings.created_at),
        "updatedAt": isoformat_z(settings.updated_at),
    }


def public_settings(settings: PortalSettings, base_url: str) -> dict[str, Any]:
    """Citizen-facing subset. Relative asset paths are made absolute against base_url."""
    full = serialize_settings(settings)
    base = base_url.rstrip("/")

    def absolute(url: str | None) -> str | None:
        if url and url.startswith("/"):
            return f"{base}{url}"
        return url

    return {
        "city": full["city"],
        "branding": full["branding"],
        "assets": {k: absolute(v) for k, v in full["assets"].items()},
        "contact": full["contact"],
        "faq": full["faq"],
        "convenienceFee": full["convenienceFee"],
        "updatedAt": full["updatedAt"],
    }


def _merge_group(current: dict | None, update: dict, defaults: dict) -> dict:
    merged = {**defaults, **(current or {})}
    for key in defaults:
        if key in update and update[key] is not None:
            merged[key] = str(update[key]).strip()
    return merged


def _clean_faq(items: list) -> list[dict[str, str]]:
    out = []
    for item in items:
        if not isinstance(item, dict):
            continue
        question = str(item.get("question") or "").strip()
        answer = str(item.get("answer") or "").strip()
        if not question or not answer:
            continue
        category = item.get("category") if item.get("category") in FAQ_CATEGORIES else "general"
        out.append({"question": question, "answer": answer, "category": category})
    return out


def _clean_convenience_fee(current: dict | None, update: dict) -> dict:
    merged = copy.deepcopy(current or DEFAULT_CONVENIENCE_FEE)
    for channel in DEFAULT_CONVENIENCE_FEE:
        raw = update.get(channel)
        if not isinstance(raw, dict):
            continue
        entry = dict(merged.get(channel) or {})
        for key in ("percent", "fixed", "min"):
            if key in raw:
                entry[key] = non_negative(raw[key])
        merged[channel] = entry
    return merged


def update_settings(s: "Session", payload: dict[str, Any], user: "User | None") -> PortalSettings:
    settings = get_or_create_settings(s)
    changed: list[str] = []

    for group, (attr, defaults) in _MERGED_GROUPS.items():
        if isinstance(payload.get(group), dict):
            setattr(settings, attr, _merge_group(getattr(settings, attr), payload[group], defaults))
            changed.append(group)

    if isinstance(payload.get("faq"), list):
        settings.faq = _clean_faq(payload["faq"])
        changed.append("faq")

    if isinstance(payload.get("convenienceFee"), dict):
        settings.convenience_fee = _clean_convenience_fee(settings.convenience_fee, payload["convenienceFee"])
        changed.append("convenienceFee")

    if isinstance(payload.get("enabledServices"), dict):
        enabled = dict(settings.enabled_services or {sid: True for sid in SERVICE_IDS})
        for sid, flag in payload["enabledServices"].items():
            # unknown ids are ignored
            if sid in SERVICE_IDS:
                enabled[sid] = bool(flag)
        settings.enabled_services = enabled
        changed.append("enabledServices")

    if "customPaymentServices" in payload:
        settings.custom_payment_services = sanitize_settings_payment_services(payload.get("customPaymentServices"))
        changed.append("customPaymentServices")

    if "addOnServices" in payload:
        settings.add_on_services = sanitize_add_on_services(payload.get("addOnServices"))
        changed.append("addOnServices")

    if user is not None:
        settings.updated_by_user_id = user.id
    settings.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="settings.update",
        entity_type="PortalSettings",
        entity_id=str(settings.id),
        metadata={"sections": changed},
    )
    return settings


def get_enabled_services(s: "Session") -> list[str]:
    enabled = get_or_create_settings(s).enabled_services or {}
    return [svc.id for svc in SERVICES if enabled.get(svc.id) is not False]


def is_service_enabled(s: "Session", service_id: str) -> bool:
    return (get_or_create_settings(s).enabled_services or {}).get(service_id) is not False


def get_form_config(s: "Session", service_id: str) -> dict[str, Any] | None:
    return (get_or_create_settings(s).form_configs or {}).get(service_id)


def save_form_config(s: "Session", service_id: str, payload: dict[str, Any], user: "User | None" = None) -> dict[str, Any]:
    """Raises FormSchemaError (a ValueError) on an invalid schema."""
    settings = get_or_create_settings(s)
    normalized = normalize_form_config(payload)
    configs = dict(settings.form_configs or {})
    configs[service_id] = normalized
    # reassign so the JSON column is flagged dirty
    settings.form_configs = configs
    settings.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="settings.form_config",
        entity_type="PortalSettings",
        entity_id=service_id,
        metadata={"fields": len(normalized["formFields"]), "baseAmount": normalized["baseAmount"]},
    )
    return normalized
