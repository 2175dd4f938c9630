"""
Signature routes.
Clients sign the canonical payload of an action here, then pass the returned
id as `signatureId` to the protected endpoint.
"""
from __future__ import annotations

from flask import Blueprint, jsonify

from app.ebr.db import db_session
from app.ebr.utils import get_client_ip, get_user_agent, iso, json_body

from .service import create_signature

bp = Blueprint("signatures", __name__)


@bp.post("")
def signature_create():
    body = json_body()
    s = db_session()
    sig = create_signature(
        s,
        user_id=body.get("userId"),
        entity_type=body.get("entityType"),
        entity_id=body.get("entityId"),
        payload=body.get("canonicalPayload"),
        batch_record_id=body.get("batchRecordId"),
        section_record_id=body.get("sectionRecordId"),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    s.commit()
    return jsonify({"success": True, "data": {"id": sig.id, "createdAt": iso(sig.created_at)}})
