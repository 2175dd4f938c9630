"""
Approval request routes.
Listing, opening, approving (signed) and rejecting change/approval requests.
"""
from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.ebr.constants import ACTION_APPROVE_CHANGE_REQUEST, ENTITY_APPROVAL_REQUEST
from app.ebr.db import db_session
from app.ebr.errors import ValidationError
from app.ebr.modules.batch_sections.service import resolve_section_node_id, section_to_dict
from app.ebr.modules.signatures.guard import require_signature
from app.ebr.modules.templates.service import SqlTemplateCatalog
from app.ebr.utils import get_client_ip, get_user_agent, json_body

from .service import (
    approve_request,
    create_approval_request,
    get_approval_request,
    list_approval_requests,
    reject_request,
    request_to_dict,
)

bp = Blueprint("approvals", __name__)


def _approve_payload(body: dict, view_args: dict) -> dict:
    return {
        "action": ACTION_APPROVE_CHANGE_REQUEST,
        "entityType": ENTITY_APPROVAL_REQUEST,
        "entityId": view_args.get("request_id"),
        "batchRecordId": body.get("batchRecordId"),
        "sectionId": body.get("sectionId"),
    }


def _result_to_dict(result) -> dict:
    return {
        "success": result.success,
        "message": result.message,
        "data": {
            "request": request_to_dict(result.request),
            "section": section_to_dict(result.section) if result.section is not None else None,
        },
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@bp.get("")
def requests_list():
    s = db_session()
    items = list_approval_requests(
        s,
        batch_record_id=(request.args.get("batchRecordId") or "").strip() or None,
        status=(request.args.get("status") or "").strip() or None,
    )
    return jsonify({"success": True, "data": [request_to_dict(r) for r in items]})


@bp.get("/batch/<batch_record_id>")
def requests_for_batch(batch_record_id: str):
    s = db_session()
    items = list_approval_requests(s, batch_record_id=batch_record_id)
    return jsonify({"success": True, "data": [request_to_dict(r) for r in items]})


@bp.get("/<request_id>")
def request_detail(request_id: str):
    s = db_session()
    return jsonify({"success": True, "data": request_to_dict(get_approval_request(s, request_id))})


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@bp.post("")
def request_create():
    body = json_body()
    s = db_session()
    batch_record_id = body.get("batchRecordId")
    parent_ref = body.get("parentSectionId") or None
    parent_node_id = resolve_section_node_id(s, batch_record_id, parent_ref) if parent_ref and batch_record_id else None
    if parent_ref and parent_node_id is None:
        raise ValidationError(f"Parent section '{parent_ref}' not found")

    req = create_approval_request(
        s,
        batch_record_id=batch_record_id,
        section_id=body.get("sectionId"),
        request_type=body.get("requestType"),
        reason=body.get("reason"),
        requested_by=body.get("userId"),
        description=body.get("description"),
        existing_data=body.get("existingData"),
        proposed_data=body.get("proposedData"),
        parent_section_id=parent_node_id,
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    s.commit()
    return jsonify({"success": True, "data": request_to_dict(req)}), 201


@bp.post("/<request_id>/approve")
@require_signature(
    action=ACTION_APPROVE_CHANGE_REQUEST,
    make_payload=_approve_payload,
    expected_user=lambda body: body.get("reviewedBy"),
)
def request_approve(request_id: str):
    body = json_body()
    s = db_session()
    req = get_approval_request(s, request_id)
    if body.get("batchRecordId") != req.batch_record_id or body.get("sectionId") != req.section_id:
        raise ValidationError("Signed batchRecordId/sectionId do not match the approval request")

    result = approve_request(
        s,
        request_id=request_id,
        reviewed_by=body.get("reviewedBy"),
        review_comments=body.get("reviewComments"),
        templates=SqlTemplateCatalog(s),
        signature_id=getattr(g, "signature_id", None),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    s.commit()
    return jsonify(_result_to_dict(result))


@bp.post("/<request_id>/reject")
def request_reject(request_id: str):
    body = json_body()
    s = db_session()
    result = reject_request(
        s,
        request_id=request_id,
        reviewed_by=body.get("reviewedBy"),
        review_comments=body.get("reviewComments"),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    s.commit()
    return jsonify(_result_to_dict(result))
