"""
Batch record section routes.
Section reads (document, single section, history) and the signed
complete-section write.
"""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from app.ebr.constants import ACTION_COMPLETE_SECTION, ENTITY_SECTION, RequestType, RuleType, SectionStatus
from app.ebr.db import db_session
from app.ebr.errors import NotFound, ValidationError
from app.ebr.modules.approvals.service import create_approval_request
from app.ebr.modules.batch_records.service import get_batch_record
from app.ebr.modules.signatures.guard import require_signature
from app.ebr.modules.templates.service import SqlTemplateCatalog, rules_of_type
from app.ebr.utils import get_client_ip, get_user_agent, json_body

from .service import (
    ensure_section_structure,
    get_active_sections,
    get_section_history,
    get_section_tree,
    resolve_section_node_id,
    section_metadata,
    section_to_dict,
    sections_to_document,
    write_section,
)
from .validation import has_starting_materials, validate_starting_materials

bp = Blueprint("batch_sections", __name__)


def _complete_section_payload(body: dict, view_args: dict) -> dict:
    return {
        "action": ACTION_COMPLETE_SECTION,
        "entityType": ENTITY_SECTION,
        "batchRecordId": view_args.get("batch_record_id"),
        "sectionId": body.get("sectionId") or view_args.get("section_id"),
        "parentSectionId": body.get("parentSectionId") or None,
    }


def _nested_data(node: dict):
    data = node.get("sectionData")
    if not node["childSections"]:
        return data if data is not None else {}
    out = dict(data) if isinstance(data, dict) else ({} if data is None else {"value": data})
    for child in node["childSections"]:
        out[child["sectionId"]] = _nested_data(child)
    return out


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@bp.get("/<batch_record_id>")
def sections_document(batch_record_id: str):
    s = db_session()
    get_batch_record(s, batch_record_id)
    sections = get_active_sections(s, batch_record_id)
    return jsonify(
        {
            "sections": sections_to_document(sections),
            "metadata": {x.section_id: section_metadata(x) for x in sections},
        }
    )


@bp.get("/<batch_record_id>/section/<section_id>")
def section_detail(batch_record_id: str, section_id: str):
    s = db_session()
    tree = get_section_tree(s, batch_record_id, section_id)
    if tree is None:
        raise NotFound("Section not found")
    return jsonify(
        {
            "sectionData": _nested_data(tree),
            "metadata": {
                "status": tree["status"],
                "version": tree["version"],
                "lockedAt": tree["lockedAt"],
                "lockedBy": tree["lockedBy"],
                "isActive": tree["isActive"],
            },
            "section": tree,
        }
    )


@bp.get("/<batch_record_id>/section/<section_id>/history")
def section_history(batch_record_id: str, section_id: str):
    s = db_session()
    return jsonify(get_section_history(s, batch_record_id, section_id))


# ---------------------------------------------------------------------------
# Complete section (signed)
# ---------------------------------------------------------------------------


@bp.post("/<batch_record_id>/section")
@bp.post("/<batch_record_id>/section/<section_id>")
@require_signature(
    action=ACTION_COMPLETE_SECTION,
    make_payload=_complete_section_payload,
    expected_user=lambda body: body.get("userId"),
)
def section_save(batch_record_id: str, section_id: str | None = None):
    body = json_body()
    section_id = body.get("sectionId") or section_id
    section_data = body.get("sectionData")
    user_id = body.get("userId")
    parent_ref = body.get("parentSectionId") or None
    if not section_id or section_data is None or not user_id:
        raise ValidationError("Missing required fields: batchRecordId, sectionId, sectionData, userId")

    s = db_session()
    batch = get_batch_record(s, batch_record_id)
    if has_starting_materials(section_data):
        validate_starting_materials(section_data, batch.planned_quantity)

    templates = SqlTemplateCatalog(s)
    ip_address = get_client_ip()
    user_agent = get_user_agent()

    parent_node_id = None
    if parent_ref:
        ensure_section_structure(s, batch=batch, templates=templates)
        parent_node_id = resolve_section_node_id(s, batch_record_id, parent_ref)
        if parent_node_id is None:
            current_app.logger.info("Parent section '%s' not found, creating placeholder", parent_ref)
            placeholder = write_section(
                s,
                batch_record_id=batch_record_id,
                section_id=parent_ref,
                section_data={},
                user_id=user_id,
                status=SectionStatus.DRAFT,
                templates=templates,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            parent_node_id = placeholder.node_id

    section = write_section(
        s,
        batch_record_id=batch_record_id,
        section_id=section_id,
        section_data=section_data,
        user_id=user_id,
        parent_section_id=parent_node_id,
        status=SectionStatus.COMPLETED,
        templates=templates,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    approval = None
    rules = templates.get_section_rules(batch.template_id, section_id)
    if rules_of_type(rules, RuleType.APPROVAL_REQUIREMENT.value):
        approval = create_approval_request(
            s,
            batch_record_id=batch_record_id,
            section_id=section_id,
            request_type=RequestType.SECTION_APPROVAL.value,
            reason="APPROVAL_REQUIRED",
            requested_by=user_id,
            existing_data={},
            proposed_data=section_data,
            parent_section_id=section.parent_section_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    s.commit()
    out = section_to_dict(section)
    if approval is not None:
        out["approvalRequestId"] = approval.id
    return jsonify(out), 201
