from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.lgu.audit import record_event
from app.lgu.constants import ADMIN_STATUSES, SUBMISSION_STATUSES
from app.lgu.models import User
from app.lgu.modules.application_services.service import find_ids_by_title_match, find_titles_by_ids
from app.lgu.modules.submissions.models import ApplicationSubmission
from app.lgu.utils import ValidationError, clamp_int, isoformat_z, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

NOT_FOUND = "Submission not found"
ACCESS_DENIED = "Access denied"
NOT_SUBMITTED = "Admin status can only be updated for submitted applications"


def serialize_submission(sub: ApplicationSubmission) -> dict[str, Any]:
    return {
        "id": sub.id,
        "userId": sub.user_id,
        "customApplicationServiceId": sub.custom_application_service_id,
        "status": sub.status,
        "adminStatus": sub.admin_status,
        "formData": sub.form_data or {},
        "adminNotes": sub.admin_notes,
        "createdAt": isoformat_z(sub.created_at),
        "updatedAt": isoformat_z(sub.updated_at),
    }


def serialize_with_title(sub: ApplicationSubmission, title: str | None) -> dict[str, Any]:
    return {**serialize_submission(sub), "customApplicationServiceTitle": title}


def validate_submission_payload(payload: dict[str, Any], *, partial: bool = False) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not partial or "customApplicationServiceId" in payload:
        sid = payload.get("customApplicationServiceId")
        if not isinstance(sid, str) or not sid.strip() or len(sid.strip()) > 120:
            errors.append(ValidationError("customApplicationServiceId", "customApplicationServiceId must be 1-120 characters"))
    if "status" in payload and payload.get("status") is not None and payload.get("status") not in SUBMISSION_STATUSES:
        errors.append(ValidationError("status", f"status must be one of: {', '.join(SUBMISSION_STATUSES)}"))
    if "formData" in payload and payload.get("formData") is not None and not isinstance(payload.get("formData"), dict):
        errors.append(ValidationError("formData", "formData must be an object"))
    return errors


def create_submission(s: "Session", user: User, payload: dict[str, Any]) -> ApplicationSubmission:
    status = payload.get("status") or "draft"
    now = utcnow()
    sub = ApplicationSubmission(
        user_id=user.id,
        custom_application_service_id=str(payload["customApplicationServiceId"]).strip(),
        status=status,
        admin_status="pending" if status == "submitted" else None,
        form_data=dict(payload.get("formData") or {}),
        created_at=now,
        updated_at=now,
    )
    s.add(sub)
    s.flush()
    if status == "submitted":
        record_event(
            s,
            actor=user,
            action="submission.submit",
            entity_type="ApplicationSubmission",
            entity_id=str(sub.id),
            metadata={"service_id": sub.custom_application_service_id},
        )
    return sub


def _filtered(
    s: "Session",
    *,
    user_id: int | None = None,
    service_id: str | None = None,
    status: str | None = None,
    admin_status: str | None = None,
) -> "Query":
    q = s.query(ApplicationSubmission)
    if user_id is not None:
        q = q.filter(ApplicationSubmission.user_id == user_id)
    if service_id:
        q = q.filter(ApplicationSubmission.custom_application_service_id == service_id)
    if status:
        q = q.filter(ApplicationSubmission.status == status)
    if admin_status:
        q = q.filter(ApplicationSubmission.admin_status == admin_status)
    return q


def _page(q: "Query", page: Any, limit: Any) -> tuple[list[ApplicationSubmission], int, int, int]:
    page_n = clamp_int(page, 1, 1)
    limit_n = clamp_int(limit, 20, 1, 100)
    total = q.count()
    items = (
        q.order_by(ApplicationSubmission.updated_at.desc(), ApplicationSubmission.id.desc())
        .offset((page_n - 1) * limit_n)
        .limit(limit_n)
        .all()
    )
    return items, total, page_n, limit_n


def _result(items: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    return {"items": items, "total": total, "page": page, "limit": limit, "totalPages": math.ceil(total / limit)}


def list_submissions(
    s: "Session",
    *,
    user_id: int | None = None,
    service_id: str | None = None,
    status: str | None = None,
    admin_status: str | None = None,
    page: Any = 1,
    limit: Any = 20,
) -> dict[str, Any]:
    q = _filtered(s, user_id=user_id, service_id=service_id, status=status, admin_status=admin_status)
    items, total, page_n, limit_n = _page(q, page, limit)
    return _result([serialize_submission(x) for x in items], total, page_n, limit_n)


def admin_list_submissions(
    s: "Session",
    *,
    user_id: int | None = None,
    service_id: str | None = None,
    status: str | None = None,
    admin_status: str | None = None,
    search: str | None = None,
    page: Any = 1,
    limit: Any = 20,
) -> dict[str, Any]:
    """
    Admin listing with free-text search.

    A numeric search matches a submission id or a user id; anything else is
    matched against service titles. Items carry `customApplicationServiceTitle`.
    """
    q = _filtered(s, user_id=user_id, service_id=service_id, status=status, admin_status=admin_status)
    term = (search or "").strip()
    if term:
        if term.isdigit():
            n = int(term)
            q = q.filter(or_(ApplicationSubmission.id == n, ApplicationSubmission.user_id == n))
        else:
            ids = find_ids_by_title_match(s, term)
            if not ids:
                return _result([], 0, clamp_int(page, 1, 1), clamp_int(limit, 20, 1, 100))
            if len(ids) == 1:
                q = q.filter(ApplicationSubmission.custom_application_service_id == ids[0])
            else:
                q = q.filter(ApplicationSubmission.custom_application_service_id.in_(ids))

    items, total, page_n, limit_n = _page(q, page, limit)
    titles = find_titles_by_ids(s, [x.custom_application_service_id for x in items])
    return _result(
        [serialize_with_title(x, titles.get(x.custom_application_service_id)) for x in items],
        total,
        page_n,
        limit_n,
    )


def get_submission(s: "Session", submission_id: int) -> ApplicationSubmission:
    sub = s.get(ApplicationSubmission, submission_id)
    if not sub:
        raise LookupError(NOT_FOUND)
    return sub


def get_owned_submission(s: "Session", submission_id: int, user_id: int) -> ApplicationSubmission:
    """Raises LookupError when missing and PermissionError when owned by someone else."""
    sub = get_submission(s, submission_id)
    if sub.user_id != user_id:
        raise PermissionError(ACCESS_DENIED)
    return sub


def update_submission(s: "Session", sub: ApplicationSubmission, payload: dict[str, Any], user: User) -> ApplicationSubmission:
    old_status = sub.status
    if "customApplicationServiceId" in payload:
        sub.custom_application_service_id = str(payload["customApplicationServiceId"]).strip()
    if payload.get("formData") is not None:
        sub.form_data = dict(payload["formData"])

    new_status = payload.get("status")
    if new_status:
        sub.status = new_status
        if new_status == "submitted" and not sub.admin_status:
            sub.admin_status = "pending"
        elif new_status == "draft":
            sub.admin_status = None
            sub.admin_notes = None
    sub.updated_at = utcnow()

    if old_status != sub.status:
        record_event(
            s,
            actor=user,
            action="submission.submit" if sub.status == "submitted" else "submission.withdraw",
            entity_type="ApplicationSubmission",
            entity_id=str(sub.id),
            metadata={"old": old_status, "new": sub.status},
        )
    return sub


def delete_submission(s: "Session", sub: ApplicationSubmission) -> None:
    s.delete(sub)


def update_admin_status(
    s: "Session",
    sub: ApplicationSubmission,
    *,
    admin_status: str,
    admin_notes: str | None,
    actor: User | None,
) -> ApplicationSubmission:
    """
    Record a review decision. Raises PermissionError unless the submission was submitted.
    The owner is emailed when the status changes; email failure never fails the update.
    """
    if admin_status not in ADMIN_STATUSES:
        raise ValueError(f"adminStatus must be one of: {', '.join(ADMIN_STATUSES)}")
    if sub.status != "submitted":
        raise PermissionError(NOT_SUBMITTED)

    old = sub.admin_status or "pending"
    sub.admin_status = admin_status
    if admin_notes is not None:
        sub.admin_notes = admin_notes
    sub.updated_at = utcnow()
    record_event(
        s,
        actor=actor,
        action="submission.review",
        entity_type="ApplicationSubmission",
        entity_id=str(sub.id),
        reason=admin_notes,
        metadata={"old": old, "new": admin_status},
    )

    if old != admin_status:
        _notify_status_change(s, sub)
    return sub


def _notify_status_change(s: "Session", sub: ApplicationSubmission) -> None:
    from app.lgu.mailer import send_application_status_email

    owner = s.get(User, sub.user_id)
    if not owner or not owner.email:
        logger.warning("Status email skipped: submission %s has no owner email", sub.id)
        return
    title = find_titles_by_ids(s, [sub.custom_application_service_id]).get(sub.custom_application_service_id)
    try:
        sent = send_application_status_email(
            s,
            email=owner.email,
            user_name=owner.first_name,
            service_title=title or sub.custom_application_service_id,
            submission_id=sub.id,
            status=sub.admin_status or "pending",
            admin_notes=sub.admin_notes,
        )
    except Exception:
        logger.exception("Status email failed for submission %s", sub.id)
        return
    if not sent:
        logger.warning("Status email not delivered for submission %s", sub.id)
