"""
Append-only audit trail.

Rows are only ever inserted; the admin API reads them back newest first.
"""
from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.lgu.models import AuditEvent, User

AUDIT_LIST_LIMIT = 200


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """Add one event to the session. The caller commits."""
    if request_id is None and has_request_context():
        request_id = getattr(g, "request_id", None)
    ev = AuditEvent(
        request_id=request_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev


def list_events(
    s: Session,
    *,
    action: str = "",
    actor_email: str = "",
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = AUDIT_LIST_LIMIT,
) -> list[AuditEvent]:
    """Newest first. `action` and `actor_email` are substring matches; the date range is inclusive."""
    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()


def serialize_event(e: AuditEvent) -> dict[str, Any]:
    return {
        "id": e.id,
        "createdAt": e.created_at.isoformat(),
        "requestId": e.request_id,
        "actorUserId": e.actor_user_id,
        "actorUserEmail": e.actor_user_email,
        "action": e.action,
        "entityType": e.entity_type,
        "entityId": e.entity_id,
        "reason": e.reason,
        "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
    }
