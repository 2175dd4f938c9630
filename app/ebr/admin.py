from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.ebr.audit import event_to_dict, list_events
from app.ebr.db import db_session
from app.ebr.errors import ValidationError

bp = Blueprint("admin", __name__)


def _int_arg(name: str, default: int, *, maximum: int | None = None) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return min(value, maximum) if maximum is not None else value


@bp.get("/auditLogs")
def audit_list():
    """
    Read-only audit trail for reviewers (newest first) with simple filters:
    - batchRecordId (exact)
    - action (contains)
    - entityType / entityId (exact)
    """
    s = db_session()
    events = list_events(
        s,
        batch_record_id=(request.args.get("batchRecordId") or "").strip() or None,
        action=(request.args.get("action") or "").strip() or None,
        entity_type=(request.args.get("entityType") or "").strip() or None,
        entity_id=(request.args.get("entityId") or "").strip() or None,
        limit=_int_arg("limit", 50, maximum=500),
        offset=_int_arg("offset", 0),
    )
    return jsonify({"success": True, "data": [event_to_dict(ev) for ev in events]})
