import json
import logging
from typing import Any

from flask import g, has_app_context, has_request_context
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.ebr.models import AuditEvent

logger = logging.getLogger(__name__)


def _dump(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def record_event(
    s: Session,
    *,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    batch_record_id: str | None = None,
    reason: str | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    The row joins the caller's session, so it is committed (or rolled back)
    together with the state change it describes.
    """
    rid = request_id
    if rid is None and has_app_context():
        rid = getattr(g, "request_id", None)
    if ip_address is None and has_request_context():
        from app.ebr.utils import get_client_ip

        ip_address = get_client_ip()
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_value_json=_dump(old_value),
        new_value_json=_dump(new_value),
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        batch_record_id=batch_record_id,
    )
    s.add(ev)
    logger.debug("audit %s %s/%s by %s", action, entity_type, entity_id, user_id)
    return ev


def list_events(
    s: Session,
    *,
    batch_record_id: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[AuditEvent]:
    q = select(AuditEvent)
    if batch_record_id:
        q = q.where(AuditEvent.batch_record_id == batch_record_id)
    if action:
        q = q.where(AuditEvent.action.ilike(f"%{action}%"))
    if entity_type:
        q = q.where(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.where(AuditEvent.entity_id == entity_id)
    q = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).offset(offset).limit(limit)
    return list(s.scalars(q))


def event_to_dict(ev: AuditEvent) -> dict:
    return {
        "id": ev.id,
        "timestamp": ev.created_at.isoformat() if ev.created_at else None,
        "requestId": ev.request_id,
        "userId": ev.actor_user_id,
        "action": ev.action,
        "entityType": ev.entity_type,
        "entityId": ev.entity_id,
        "oldValue": json.loads(ev.old_value_json) if ev.old_value_json else None,
        "newValue": json.loads(ev.new_value_json) if ev.new_value_json else None,
        "reason": ev.reason,
        "ipAddress": ev.ip_address,
        "userAgent": ev.user_agent,
        "batchRecordId": ev.batch_record_id,
    }
