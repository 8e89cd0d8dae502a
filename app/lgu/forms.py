"""
Form-schema sanitizers shared by the settings, custom application service and
custom payment service modules.

Two flavours exist:
- strict sanitizers (`sanitize_*_field`, `normalize_form_config`) raise
  FormSchemaError on an unknown type or a missing label; used by the CRUD APIs.
- lenient sanitizers (`sanitize_*_services`) silently drop unknown field types;
  used when the settings document is replaced wholesale.
"""
from __future__ import annotations

import math
from typing import Any

from app.lgu.utils import clip, non_negative, sanitize_text, slugify, utcnow

BUILDER_FIELD_TYPES = (
    "text",
    "number",
    "email",
    "password",
    "date",
    "file",
    "select",
    "radio",
    "checkbox",
    "textarea",
    "submit",
    "reset",
)
PAYMENT_FIELD_TYPES = (
    "text",
    "email",
    "tel",
    "number",
    "select",
    "textarea",
    "file",
    "date",
    "cost",
    "password",
    "radio",
    "checkbox",
)
SERVICE_FORM_FIELD_TYPES = ("text", "email", "tel", "number", "select", "textarea", "file", "date", "cost")
OPTION_FIELD_TYPES = frozenset({"select", "radio", "checkbox"})
BUTTON_KEYS = ("back", "next", "submit", "saveAsDraft", "cancel")


class FormSchemaError(ValueError):
    pass


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def _as_int(value: Any) -> int | None:
    n = _finite_number(value)
    return int(n) if n is not None else None


def button_texts(raw: Any) -> dict[str, str] | None:
    """Only non-empty strings survive; None when nothing is left."""
    if not isinstance(raw, dict):
        return None
    out = {}
    for key in BUTTON_KEYS:
        v = raw.get(key)
        if isinstance(v, str) and v.strip():
            out[key] = clip(v, 50)
    return out or None


def button_visibility(raw: Any) -> dict[str, bool] | None:
    if not isinstance(raw, dict):
        return None
    out = {key: raw[key] for key in BUTTON_KEYS if isinstance(raw.get(key), bool)}
    return out or None


def sanitize_step(raw: Any) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    step: dict[str, Any] = {
        "index": _as_int(raw.get("index")) or 0,
        "letter": clip(raw.get("letter"), 10, "A"),
        "label": clip(raw.get("label"), 120, "Step"),
    }
    texts = button_texts(raw.get("buttonTexts"))
    if texts:
        step["buttonTexts"] = texts
    visibility = button_visibility(raw.get("buttonVisibility"))
    if visibility:
        step["buttonVisibility"] = visibility
    return step


def sanitize_steps(raw: Any) -> list[dict[str, Any]]:
    steps = [sanitize_step(s) for s in (raw if isinstance(raw, list) else [])]
    return sorted(steps, key=lambda st: st["index"])


def _conditional_fields(option: dict) -> list[dict[str, Any]]:
    raw = option.get("conditionalFields")
    if not isinstance(raw, list):
        single = option.get("conditionalField")
        raw = [single] if isinstance(single, dict) else []
    out = []
    for cf in raw:
        if not isinstance(cf, dict) or not (cf.get("label") or cf.get("type")):
            continue
        mapped: dict[str, Any] = {
            "type": clip(cf.get("type"), 60, "text"),
            "label": clip(cf.get("label"), 200),
        }
        if cf.get("placeholder"):
            mapped["placeholder"] = clip(cf.get("placeholder"), 200)
        opts = [o for o in (cf.get("options") or []) if isinstance(o, dict) and (o.get("label") or o.get("value"))]
        if opts:
            mapped["options"] = [
                {
                    "value": clip(o.get("value") if o.get("value") is not None else o.get("label"), 200),
                    "label": clip(o.get("label") or o.get("value"), 200),
                }
                for o in opts
            ]
        out.append(mapped)
    return out


def _builder_options(raw: Any) -> list[dict[str, Any]]:
    out = []
    for o in raw if isinstance(raw, list) else []:
        if not isinstance(o, dict) or not o.get("label"):
            continue
        opt: dict[str, Any] = {"value": clip(o.get("value"), 120), "label": clip(o.get("label"), 120)}
        cond = _conditional_fields(o)
        if cond:
            opt["conditionalFields"] = cond
        out.append(opt)
    return out


def _copy_layout_keys(raw: dict, field: dict[str, Any]) -> None:
    for key in ("placeholder", "helpText", "header", "description", "reminder"):
        if isinstance(raw.get(key), str) and raw[key].strip():
            field[key] = clip(raw[key], 200)
    for key in ("stepIndex", "fieldOrder"):
        n = _as_int(raw.get(key))
        if n is not None:
            field[key] = n


def sanitize_builder_field(raw: Any, index: int) -> dict[str, Any]:
    """Application form-builder field. Raises on a missing label or unknown type."""
    raw = raw if isinstance(raw, dict) else {}
    label = str(raw.get("label") or "").strip()
    if not label:
        raise FormSchemaError(f"Field label is required for field at index {index}")
    ftype = raw.get("type")
    if ftype not in BUILDER_FIELD_TYPES:
        raise FormSchemaError(f"Invalid field type: {ftype}")
    field: dict[str, Any] = {"type": ftype, "label": label, "required": bool(raw.get("required"))}
    _copy_layout_keys(raw, field)
    if ftype in OPTION_FIELD_TYPES:
        options = _builder_options(raw.get("options"))
        if options:
            field["options"] = options
    return field


def _validation(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    min_v = _finite_number(raw.get("min"))
    max_v = _finite_number(raw.get("max"))
    min_v = max(0, min_v) if min_v is not None else None
    max_v = max(0, max_v) if max_v is not None else None
    if min_v is not None and max_v is not None and min_v > max_v:
        min_v, max_v = max_v, min_v
    out: dict[str, Any] = {}
    if min_v is not None:
        out["min"] = min_v
    if max_v is not None:
        out["max"] = max_v
    pattern = sanitize_text(raw.get("pattern"), 200)
    if pattern:
        out["pattern"] = pattern
    message = sanitize_text(raw.get("message"), 160)
    if message:
        out["message"] = message
    return out or None


def _simple_options(raw: Any, max_len: int = 100) -> list[dict[str, str]]:
    return [
        {"value": clip(o["value"], max_len), "label": clip(o["label"], max_len)}
        for o in (raw if isinstance(raw, list) else [])
        if isinstance(o, dict) and o.get("value") and o.get("label")
    ]


def sanitize_payment_field(raw: Any, index: int) -> dict[str, Any]:
    """Custom payment service field. Raises on a missing label or unknown type."""
    raw = raw if isinstance(raw, dict) else {}
    label = clip(raw.get("label"), 120)
    if not label:
        raise FormSchemaError(f"Field label is required for field at index {index}")
    ftype = raw.get("type")
    if ftype not in PAYMENT_FIELD_TYPES:
        raise FormSchemaError(f"Invalid field type: {ftype}")
    field: dict[str, Any] = {
        "id": slugify(raw.get("id") or label, max_len=80, fallback="field", allow_underscore=True),
        "label": label,
        "type": ftype,
        "required": bool(raw.get("required")),
    }
    if raw.get("placeholder"):
        field["placeholder"] = clip(raw.get("placeholder"), 200)
    if raw.get("reminder"):
        field["reminder"] = clip(raw.get("reminder"), 200)
    if ftype in OPTION_FIELD_TYPES:
        options = _simple_options(raw.get("options"))
        if options:
            field["options"] = options
    validation = _validation(raw.get("validation"))
    if validation:
        field["validation"] = validation
    return field


def count_cost_fields(fields: list[dict[str, Any]]) -> int:
    return sum(1 for f in fields if isinstance(f, dict) and f.get("type") == "cost")


def check_single_cost_field(fields: list[dict[str, Any]]) -> bool:
    """True when a cost field is present. Raises when there is more than one."""
    n = count_cost_fields(fields)
    if n > 1:
        raise FormSchemaError("Only one cost field is allowed")
    return n == 1


# ---------- Built-in service form configs ----------
def normalize_form_config(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Per-service form configuration saved under settings.formConfigs.
    A cost field lets the citizen type the amount, so baseAmount is forced to 0.
    """
    raw_fields = payload.get("formFields") if isinstance(payload.get("formFields"), list) else []
    has_cost = check_single_cost_field(raw_fields)

    fields: list[dict[str, Any]] = []
    for index, f in enumerate(raw_fields):
        f = f if isinstance(f, dict) else {}
        ftype = f.get("type")
        if ftype not in SERVICE_FORM_FIELD_TYPES:
            raise FormSchemaError(f"Invalid field type at index {index}")
        label = sanitize_text(f.get("label"), 120)
        if not label:
            raise FormSchemaError(f"Label is required for field at index {index}")
        field: dict[str, Any] = {
            "id": slugify(sanitize_text(f.get("id") or label, 120), max_len=60, fallback="field", allow_underscore=True),
            "label": label,
            "type": ftype,
            "required": bool(f.get("required")),
        }
        placeholder = sanitize_text(f.get("placeholder"), 200)
        if placeholder:
            field["placeholder"] = placeholder

        if ftype == "select":
            seen: set[str] = set()
            options: list[dict[str, str]] = []
            for opt in f.get("options") or []:
                if not isinstance(opt, dict):
                    continue
                opt_label = sanitize_text(opt.get("label") or opt.get("value") or "", 80)
                value = slugify(
                    sanitize_text(opt.get("value") or opt_label, 80), max_len=60, fallback="", allow_underscore=True
                )
                if not opt_label or not value or value in seen:
                    continue
                seen.add(value)
                options.append({"value": value, "label": opt_label})
            if not options:
                raise FormSchemaError(f"Select field at index {index} must have at least one option")
            field["options"] = options

        validation = _validation(f.get("validation"))
        if validation:
            field["validation"] = validation
        fields.append(field)

    return {
        "title": sanitize_text(payload.get("title"), 120) or "Service",
        "description": sanitize_text(payload.get("description"), 400),
        "formFields": fields,
        "baseAmount": 0 if has_cost else non_negative(payload.get("baseAmount")),
        "processingFee": non_negative(payload.get("processingFee")),
    }


# ---------- Lenient sanitizers for whole-document settings updates ----------
def sanitize_settings_payment_services(items: Any) -> list[dict[str, Any]]:
    out = []
    for item in items if isinstance(items, list) else []:
        item = item if isinstance(item, dict) else {}
        fields = []
        for f in item.get("formFields") or []:
            if not isinstance(f, dict) or f.get("type") not in PAYMENT_FIELD_TYPES:
                continue
            label = clip(f.get("label"), 120, "Field")
            field: dict[str, Any] = {
                "id": slugify(str(f.get("id") or "").strip() or label, fallback="payment"),
                "label": label,
                "type": f["type"],
                "required": bool(f.get("required")),
            }
            for key in ("placeholder", "reminder"):
                v = clip(f.get(key), 200)
                if v:
                    field[key] = v
            options = _simple_options(f.get("options"))
            if options:
                field["options"] = options
            validation = _validation(f.get("validation"))
            if validation:
                field["validation"] = validation
            fields.append(field)

        out.append(
            {
                "id": slugify(str(item.get("id") or "").strip() or str(item.get("title") or "").strip(), fallback="payment"),
                "title": clip(item.get("title"), 120, "Payment Service"),
                "description": clip(item.get("description"), 400),
                "baseAmount": non_negative(_finite_number(item.get("baseAmount"))),
                "processingFee": non_negative(_finite_number(item.get("processingFee"))),
                "enabled": bool(item["enabled"]) if "enabled" in item else True,
                "formFields": fields,
            }
        )
    return out


def sanitize_add_on_services(items: Any) -> list[dict[str, Any]]:
    out = []
    for item in items if isinstance(items, list) else []:
        item = item if isinstance(item, dict) else {}
        fields = []
        for f in item.get("formFields") or []:
            if not isinstance(f, dict) or f.get("type") not in BUILDER_FIELD_TYPES:
                continue
            field: dict[str, Any] = {
                "type": f["type"],
                "label": clip(f.get("label"), 120, "Field"),
                "placeholder": clip(f.get("placeholder"), 200),
                "required": bool(f.get("required")),
                "options": [
                    {"value": clip(o.get("value"), 120), "label": clip(o.get("label"), 120)}
                    for o in (f.get("options") or [])
                    if isinstance(o, dict) and (clip(o.get("value"), 120) or clip(o.get("label"), 120))
                ],
            }
            _copy_layout_keys({k: v for k, v in f.items() if k != "placeholder"}, field)
            fields.append(field)

        service: dict[str, Any] = {
            "id": slugify(item.get("id"), fallback="addon"),
            "title": clip(item.get("title"), 120, "Add-on"),
            "description": clip(item.get("description"), 400),
            "icon": clip(item.get("icon") or "FileText", 60, "FileText"),
            "color": clip(item.get("color") or "bg-blue-500", 60, "bg-blue-500"),
            "formFields": fields,
            # hidden from the citizen portal unless explicitly switched on
            "visible": item.get("visible") is True,
        }
        steps = sanitize_steps(item.get("formSteps"))
        if steps:
            service["formSteps"] = steps
        texts = button_texts(item.get("buttonTexts"))
        if texts:
            service["buttonTexts"] = texts
        visibility = button_visibility(item.get("buttonVisibility"))
        if visibility:
            service["buttonVisibility"] = visibility
        out.append(service)
    return out


def generate_service_id(s, model, title: Any, *, fallback: str, now=None) -> str:
    """
    `<slug(title)>_<YYYYMMDD>_<HHMMSS>_<n>`, where n counts same-slug ids created that day.
    `model` is any mapped class with a string `id` column.
    """
    now = now or utcnow()
    slug = slugify(title, max_len=50, fallback=fallback)
    day = now.strftime("%Y%m%d")
    prefix = f"{slug}_{day}_"
    same_day = s.query(model.id).filter(model.id.like(prefix.replace("_", "\\_") + "%", escape="\\")).count()
    return f"{prefix}{now.strftime('%H%M%S')}_{same_day + 1}"
