"""
Approval workflow service layer.
Opens change/approval requests against locked sections and resolves them:
approval produces a new APPROVED section version (or approves the current one
in place), rejection restores the section's prior status without touching its
data.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.ebr.audit import record_event
from app.ebr.constants import (
    ENTITY_APPROVAL_REQUEST,
    ApprovalStatus,
    RequestType,
    SectionStatus,
)
from app.ebr.db import flush_or_conflict
from app.ebr.errors import NotFound, PendingApprovalConflict, ValidationError
from app.ebr.modules.batch_records.service import get_batch_record
from app.ebr.modules.batch_sections.models import BatchRecordSection
from app.ebr.modules.batch_sections.service import get_active_section, write_section
from app.ebr.modules.batch_sections.status import (
    active_for_node,
    propagate_parent_status,
    recompute_batch_status,
    update_section_status,
)
from app.ebr.modules.templates.service import TemplateCatalog
from app.ebr.utils import iso, new_id

from .models import ApprovalRequest

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    success: bool
    message: str
    request: ApprovalRequest
    section: BatchRecordSection | None = None


def create_approval_request(
    s: Session,
    *,
    batch_record_id: str,
    section_id: str,
    request_type: str,
    reason: str,
    requested_by: str,
    description: str | None = None,
    existing_data: Any = None,
    proposed_data: Any = None,
    parent_section_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ApprovalRequest:
    required = {
        "batchRecordId": batch_record_id,
        "sectionId": section_id,
        "requestType": request_type,
        "reason": reason,
        "userId": requested_by,
    }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    try:
        rtype = RequestType(request_type)
    except ValueError:
        raise ValidationError(f"Unknown request type '{request_type}'")

    get_batch_record(s, batch_record_id)
    section = get_active_section(
        s,
        batch_record_id=batch_record_id,
        section_id=section_id,
        parent_section_id=parent_section_id,
        for_update=True,
    )
    if section is None:
        raise NotFound(f"Active section '{section_id}' not found in batch {batch_record_id}")
    if section.status == SectionStatus.PENDING_APPROVAL.value:
        raise PendingApprovalConflict(f"Section '{section_id}' already has a pending approval request")

    now = datetime.utcnow()
    previous_status = section.status
    req = ApprovalRequest(
        id=new_id(),
        batch_record_id=batch_record_id,
        section_id=section_id,
        section_node_id=section.node_id,
        parent_section_id=section.parent_section_id,
        section_record_id=section.id,
        request_type=rtype.value,
        reason=reason,
        description=description,
        existing_data=existing_data,
        proposed_data=proposed_data,
        status=ApprovalStatus.PENDING.value,
        status_before_request=previous_status,
        requested_by=requested_by,
        requested_at=now,
    )
    s.add(req)

    update_section_status(s, section, SectionStatus.PENDING_APPROVAL, user_id=requested_by, now=now)
    section.approval_request_id = req.id
    if section.locked_at is None:
        section.locked_at = now
    if section.locked_by is None:
        section.locked_by = requested_by
    flush_or_conflict(s, f"approval request for section '{section_id}'")

    record_event(
        s,
        action="APPROVAL_REQUEST_CREATED",
        entity_type=ENTITY_APPROVAL_REQUEST,
        entity_id=req.id,
        old_value={"status": previous_status, "existingData": existing_data},
        new_value={
            "requestId": req.id,
            "requestType": req.request_type,
            "reason": reason,
            "sectionId": section_id,
            "status": SectionStatus.PENDING_APPROVAL.value,
            "proposedData": proposed_data,
        },
        user_id=requested_by,
        ip_address=ip_address,
        user_agent=user_agent,
        batch_record_id=batch_record_id,
        reason=reason,
    )
    propagate_parent_status(s, section=section, user_id=requested_by, now=now)
    recompute_batch_status(s, batch_record_id, user_id=requested_by)
    logger.info("Approval request %s (%s) opened for section %s by %s", req.id, req.request_type, section_id, requested_by)
    return req


def _load_pending(s: Session, request_id: str, verb: str) -> ApprovalRequest:
    req = s.scalars(select(ApprovalRequest).where(ApprovalRequest.id == request_id).with_for_update()).first()
    if req is None:
        raise NotFound(f"Approval request {request_id} not found")
    if req.status != ApprovalStatus.PENDING.value:
        raise ValidationError(f"Approval request {request_id} is {req.status} and cannot be {verb}")
    return req


def approve_request(
    s: Session,
    *,
    request_id: str,
    reviewed_by: str,
    review_comments: str | None = None,
    templates: TemplateCatalog,
    signature_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ApprovalResult:
    if not reviewed_by:
        raise ValidationError("reviewedBy is required")
    req = _load_pending(s, request_id, "approved")

    section = active_for_node(s, req.section_node_id)
    if section is None:
        raise NotFound(f"Active section '{req.section_id}' not found in batch {req.batch_record_id}")

    now = datetime.utcnow()
    req.status = ApprovalStatus.APPROVED.value
    req.reviewed_by = reviewed_by
    req.reviewed_at = now
    req.review_comments = review_comments
    req.signature_id = signature_id

    if req.request_type == RequestType.SECTION_APPROVAL.value:
        update_section_status(s, section, SectionStatus.APPROVED, user_id=reviewed_by, now=now)
        message = "Section approval completed"
    else:
        proposed = req.proposed_data if req.proposed_data is not None else section.section_data
        if proposed is None:
            raise ValidationError(f"Approval request {request_id} has no proposed data to apply")
        section = write_section(
            s,
            batch_record_id=req.batch_record_id,
            section_id=req.section_id,
            section_data=proposed,
            user_id=reviewed_by,
            parent_section_id=section.parent_section_id,
            status=SectionStatus.COMPLETED,
            bypass_locks=True,
            templates=templates,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        update_section_status(s, section, SectionStatus.APPROVED, user_id=reviewed_by, now=now)
        section.completed_at = now
        section.completed_by = reviewed_by
        message = "Approval request approved and new section version created"

    section.approval_request_id = None
    section.locked_at = now
    section.locked_by = reviewed_by
    req.resulting_section_record_id = section.id
    flush_or_conflict(s, f"approval of request {request_id}")

    propagate_parent_status(s, section=section, user_id=reviewed_by, now=now)
    recompute_batch_status(s, req.batch_record_id, user_id=reviewed_by)
    record_event(
        s,
        action="APPROVAL_SIGNED",
        entity_type=ENTITY_APPROVAL_REQUEST,
        entity_id=req.id,
        old_value={"status": ApprovalStatus.PENDING.value},
        new_value={
            "status": ApprovalStatus.APPROVED.value,
            "sectionId": req.section_id,
            "sectionVersion": section.version,
            "signatureId": signature_id,
            "reviewComments": review_comments,
        },
        user_id=reviewed_by,
        ip_address=ip_address,
        user_agent=user_agent,
        batch_record_id=req.batch_record_id,
    )
    logger.info("Approval request %s approved by %s (section %s v%d)", req.id, reviewed_by, req.section_id, section.version)
    return ApprovalResult(success=True, message=message, request=req, section=section)


def reject_request(
    s: Session,
    *,
    request_id: str,
    reviewed_by: str,
    review_comments: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ApprovalResult:
    if not reviewed_by:
        raise ValidationError("reviewedBy is required")
    req = _load_pending(s, request_id, "rejected")

    now = datetime.utcnow()
    req.status = ApprovalStatus.REJECTED.value
    req.reviewed_by = reviewed_by
    req.reviewed_at = now
    req.review_comments = review_comments

    section = active_for_node(s, req.section_node_id)
    restored = req.status_before_request or SectionStatus.COMPLETED.value
    if section is not None and section.status == SectionStatus.PENDING_APPROVAL.value:
        update_section_status(s, section, restored, user_id=reviewed_by, now=now)
        section.approval_request_id = None
        if restored == SectionStatus.DRAFT.value:
            section.locked_at = None
            section.locked_by = None
    flush_or_conflict(s, f"rejection of request {request_id}")

    if section is not None:
        propagate_parent_status(s, section=section, user_id=reviewed_by, now=now)
    recompute_batch_status(s, req.batch_record_id, user_id=reviewed_by)
    record_event(
        s,
        action="APPROVAL_REQUEST_REJECTED",
        entity_type=ENTITY_APPROVAL_REQUEST,
        entity_id=req.id,
        old_value={"status": SectionStatus.PENDING_APPROVAL.value},
        new_value={"status": restored, "reviewComments": review_comments},
        user_id=reviewed_by,
        ip_address=ip_address,
        user_agent=user_agent,
        batch_record_id=req.batch_record_id,
    )
    logger.info("Approval request %s rejected by %s", req.id, reviewed_by)
    return ApprovalResult(
        success=True, message="Approval request rejected. Section data unchanged.", request=req, section=section
    )


def get_approval_request(s: Session, request_id: str) -> ApprovalRequest:
    req = s.get(ApprovalRequest, request_id)
    if req is None:
        raise NotFound(f"Approval request {request_id} not found")
    return req


def list_approval_requests(
    s: Session,
    *,
    batch_record_id: str | None = None,
    status: str | None = None,
) -> list[ApprovalRequest]:
    q = select(ApprovalRequest)
    if batch_record_id:
        q = q.where(ApprovalRequest.batch_record_id == batch_record_id)
    if status:
        q = q.where(ApprovalRequest.status == status.upper())
    return list(s.scalars(q.order_by(ApprovalRequest.requested_at.desc())))


def get_approval_requests_for_section(s: Session, batch_record_id: str, section_id: str) -> list[ApprovalRequest]:
    return list(
        s.scalars(
            select(ApprovalRequest)
            .where(
                ApprovalRequest.batch_record_id == batch_record_id,
                ApprovalRequest.section_id == section_id,
            )
            .order_by(ApprovalRequest.requested_at.desc())
        )
    )


def request_to_dict(req: ApprovalRequest) -> dict:
    return {
        "id": req.id,
        "batchRecordId": req.batch_record_id,
        "sectionId": req.section_id,
        "sectionNodeId": req.section_node_id,
        "parentSectionId": req.parent_section_id,
        "sectionRecordId": req.section_record_id,
        "resultingSectionRecordId": req.resulting_section_record_id,
        "requestType": req.request_type,
        "reason": req.reason,
        "description": req.description,
        "existingData": req.existing_data,
        "proposedData": req.proposed_data,
        "status": req.status,
        "statusBeforeRequest": req.status_before_request,
        "requestedBy": req.requested_by,
        "requestedAt": iso(req.requested_at),
        "reviewedBy": req.reviewed_by,
        "reviewedAt": iso(req.reviewed_at),
        "reviewComments": req.review_comments,
        "signatureId": req.signature_id,
    }
