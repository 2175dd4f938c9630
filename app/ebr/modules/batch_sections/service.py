"""
Batch record section service layer.
Handles versioned section writes, lock enforcement, template structure
initialization and section reads (document, tree, history).
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.ebr.audit import record_event
from app.ebr.constants import ENTITY_SECTION, LOCKED_STATUSES, SectionStatus, SectionType, can_transition
from app.ebr.db import flush_or_conflict
from app.ebr.errors import IllegalTransition, LockConflict, NotFound, PendingApprovalConflict, ValidationError
from app.ebr.modules.approvals.models import ApprovalRequest
from app.ebr.modules.batch_records.models import BatchRecord
from app.ebr.modules.batch_records.service import get_batch_record
from app.ebr.modules.templates.service import TemplateCatalog, TemplateSection
from app.ebr.utils import is_json_empty, iso, new_id

from .dependencies import assert_dependencies_met
from .models import BatchRecordSection
from .status import active_children, propagate_parent_status, recompute_batch_status, update_section_status

logger = logging.getLogger(__name__)

__all__ = [
    "ensure_section_structure",
    "write_section",
    "update_section_status",
    "get_active_section",
    "get_active_sections",
    "get_section_tree",
    "get_section_history",
    "resolve_section_node_id",
    "sections_to_document",
    "section_to_dict",
]


def _is_placeholder(section: BatchRecordSection) -> bool:
    return section.status == SectionStatus.DRAFT.value and is_json_empty(section.section_data)


def _path_filter(q, *, batch_record_id: str, section_id: str, parent_section_id: str | None):
    q = q.where(
        BatchRecordSection.batch_record_id == batch_record_id,
        BatchRecordSection.section_id == section_id,
    )
    if parent_section_id is None:
        return q.where(BatchRecordSection.parent_section_id.is_(None))
    return q.where(BatchRecordSection.parent_section_id == parent_section_id)


def _apply_lock_fields(section: BatchRecordSection, status: SectionStatus, user_id: str, now: datetime) -> None:
    if status == SectionStatus.COMPLETED:
        section.locked_at = now
        section.locked_by = user_id
        section.completed_at = now
        section.completed_by = user_id
    elif status == SectionStatus.DRAFT:
        section.locked_at = None
        section.locked_by = None
        section.completed_at = None
        section.completed_by = None


def _check_transition(current: str, target: SectionStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(current, target.value)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


def ensure_section_structure(s: Session, *, batch: BatchRecord, templates: TemplateCatalog) -> list[TemplateSection]:
    """
    Materialize the template's section tree as empty DRAFT placeholders.
    Idempotent: paths that already have an active version are left alone.
    """
    if not batch.template_version_id:
        return []
    tree = templates.get_template_section_tree(batch.template_version_id)
    created = _ensure_nodes(s, batch_record_id=batch.id, nodes=tree, parent_node_id=None)
    if created:
        flush_or_conflict(s, f"section structure of batch {batch.batch_number}")
        logger.info("Initialized %d placeholder sections for batch %s", created, batch.batch_number)
    return tree


def _ensure_nodes(s: Session, *, batch_record_id: str, nodes: list[TemplateSection], parent_node_id: str | None) -> int:
    created = 0
    for node in nodes:
        q = _path_filter(
            select(BatchRecordSection),
            batch_record_id=batch_record_id,
            section_id=node.id,
            parent_section_id=parent_node_id,
        )
        active = s.scalars(q.where(BatchRecordSection.is_active.is_(True))).first()
        if active is None:
            active = _new_placeholder(batch_record_id=batch_record_id, section_id=node.id, parent_node_id=parent_node_id)
            s.add(active)
            # children reference this row by node_id, so it must exist first
            s.flush()
            created += 1
        if node.subsections:
            created += _ensure_nodes(
                s, batch_record_id=batch_record_id, nodes=node.subsections, parent_node_id=active.node_id
            )
    return created


def _new_placeholder(*, batch_record_id: str, section_id: str, parent_node_id: str | None) -> BatchRecordSection:
    record_id = new_id()
    return BatchRecordSection(
        id=record_id,
        node_id=record_id,
        batch_record_id=batch_record_id,
        section_id=section_id,
        parent_section_id=parent_node_id,
        section_type=(SectionType.SUBSECTION if parent_node_id else SectionType.SECTION).value,
        section_data={},
        status=SectionStatus.DRAFT.value,
        version=1,
        is_active=True,
    )


# ---------------------------------------------------------------------------
# Versioned write
# ---------------------------------------------------------------------------


def _load_path_versions(
    s: Session, *, batch_record_id: str, section_id: str, parent_section_id: str | None
) -> list[BatchRecordSection]:
    q = select(BatchRecordSection).where(
        BatchRecordSection.batch_record_id == batch_record_id,
        BatchRecordSection.section_id == section_id,
    )
    if parent_section_id is not None:
        q = q.where(BatchRecordSection.parent_section_id == parent_section_id)
    versions = list(s.scalars(q.order_by(BatchRecordSection.version.desc()).with_for_update()))

    if parent_section_id is None and len({v.node_id for v in versions}) > 1:
        raise ValidationError(
            f"Section '{section_id}' exists under more than one parent in batch {batch_record_id}; "
            "parentSectionId is required."
        )
    return versions


def write_section(
    s: Session,
    *,
    batch_record_id: str,
    section_id: str,
    section_data: Any,
    user_id: str,
    parent_section_id: str | None = None,
    status: SectionStatus | str = SectionStatus.COMPLETED,
    bypass_locks: bool = False,
    templates: TemplateCatalog,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> BatchRecordSection:
    """
    Record a new state of a section. Never modifies an existing version's data:
    the previous active version is deactivated and a new one inserted, except
    for an untouched placeholder which is filled in place as version 1.

    Raises LockConflict/PendingApprovalConflict for locked sections unless
    `bypass_locks` (approved change requests), in which case cross-section
    dependencies must be met.
    """
    if not section_id:
        raise ValidationError("sectionId is required")
    if not user_id:
        raise ValidationError("userId is required")
    try:
        target = SectionStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown section status '{status}'")

    batch = get_batch_record(s, batch_record_id)
    ensure_section_structure(s, batch=batch, templates=templates)

    if parent_section_id is not None:
        parent = s.get(BatchRecordSection, parent_section_id)
        if parent is None or parent.batch_record_id != batch_record_id:
            raise NotFound(f"Parent section {parent_section_id} not found in batch {batch_record_id}")

    versions = _load_path_versions(
        s, batch_record_id=batch_record_id, section_id=section_id, parent_section_id=parent_section_id
    )
    active = next((v for v in versions if v.is_active), None)
    latest = versions[0] if versions else None
    highest_version = latest.version if latest else 0

    if active is not None and _is_placeholder(active) and target == SectionStatus.DRAFT and is_json_empty(section_data):
        return active

    if active is not None and SectionStatus(active.status) in LOCKED_STATUSES:
        if not bypass_locks:
            if active.status == SectionStatus.PENDING_APPROVAL.value:
                raise PendingApprovalConflict(
                    f"Section '{section_id}' has a pending approval request. Cannot save until request is resolved."
                )
            raise LockConflict(
                f"Section '{section_id}' is completed and locked. An approval request is required to make changes."
            )
        assert_dependencies_met(s, section_id=section_id, batch_record_id=batch_record_id, templates=templates)

    now = datetime.utcnow()
    data = copy.deepcopy(section_data) if section_data is not None else {}

    if active is not None and _is_placeholder(active):
        old_value = active.section_data
        _check_transition(active.status, target)
        active.section_data = data
        active.status = target.value
        active.updated_at = now
        active.updated_by = user_id
        active.created_by = active.created_by or user_id
        _apply_lock_fields(active, target, user_id, now)
        section = active
        action = "CREATE"
    elif active is not None:
        old_value = active.section_data
        _check_transition(active.status, target)
        active.is_active = False
        active.updated_at = now
        flush_or_conflict(s, f"section '{section_id}'")
        section = BatchRecordSection(
            id=new_id(),
            node_id=active.node_id,
            batch_record_id=batch_record_id,
            section_id=section_id,
            parent_section_id=parent_section_id or active.parent_section_id,
            section_type=active.section_type,
            section_data=data,
            status=target.value,
            version=highest_version + 1,
            is_active=True,
            previous_version_id=active.id,
            created_at=now,
            updated_at=now,
            created_by=user_id,
            updated_by=user_id,
        )
        _apply_lock_fields(section, target, user_id, now)
        s.add(section)
        action = "UPDATE"
    else:
        old_value = latest.section_data if latest else None
        record_id = new_id()
        parent_node_id = parent_section_id or (latest.parent_section_id if latest else None)
        section = BatchRecordSection(
            id=record_id,
            node_id=latest.node_id if latest else record_id,
            batch_record_id=batch_record_id,
            section_id=section_id,
            parent_section_id=parent_node_id,
            section_type=(SectionType.SUBSECTION if parent_node_id else SectionType.SECTION).value,
            section_data=data,
            status=target.value,
            version=highest_version + 1,
            is_active=True,
            previous_version_id=latest.id if latest else None,
            created_at=now,
            updated_at=now,
            created_by=user_id,
            updated_by=user_id,
        )
        _apply_lock_fields(section, target, user_id, now)
        s.add(section)
        action = "REACTIVATE" if latest else "CREATE"

    flush_or_conflict(s, f"section '{section_id}'")

    propagate_parent_status(s, section=section, user_id=user_id, now=now)
    recompute_batch_status(s, batch_record_id, user_id=user_id)

    record_event(
        s,
        action=action,
        entity_type=ENTITY_SECTION,
        entity_id=section_id,
        old_value=old_value,
        new_value=data,
        user_id=user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        batch_record_id=batch_record_id,
    )
    logger.info(
        "Section %s of batch %s saved as v%d (%s, %s)",
        section_id,
        batch.batch_number,
        section.version,
        section.status,
        action,
    )
    return section


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_active_section(
    s: Session,
    *,
    batch_record_id: str,
    section_id: str,
    parent_section_id: str | None = None,
    for_update: bool = False,
) -> BatchRecordSection | None:
    """
    Active version of a section. Without a parent the section id alone is
    used and must identify a single node.
    """
    q = select(BatchRecordSection).where(
        BatchRecordSection.batch_record_id == batch_record_id,
        BatchRecordSection.section_id == section_id,
        BatchRecordSection.is_active.is_(True),
    )
    if parent_section_id is not None:
        q = q.where(BatchRecordSection.parent_section_id == parent_section_id)
    if for_update:
        q = q.with_for_update()
    rows = list(s.scalars(q))
    if len(rows) > 1:
        raise ValidationError(
            f"Section '{section_id}' exists under more than one parent in batch {batch_record_id}; "
            "parentSectionId is required."
        )
    return rows[0] if rows else None


def get_active_sections(s: Session, batch_record_id: str) -> list[BatchRecordSection]:
    return list(
        s.scalars(
            select(BatchRecordSection)
            .where(
                BatchRecordSection.batch_record_id == batch_record_id,
                BatchRecordSection.is_active.is_(True),
            )
            .order_by(BatchRecordSection.created_at.asc(), BatchRecordSection.section_id.asc())
        )
    )


def resolve_section_node_id(s: Session, batch_record_id: str, section_id: str) -> str | None:
    """Template section id -> stable node id of the (single) matching node."""
    section = get_active_section(s, batch_record_id=batch_record_id, section_id=section_id)
    if section is not None:
        return section.node_id
    latest = s.scalars(
        select(BatchRecordSection)
        .where(
            BatchRecordSection.batch_record_id == batch_record_id,
            BatchRecordSection.section_id == section_id,
        )
        .order_by(BatchRecordSection.version.desc())
    ).first()
    return latest.node_id if latest else None


def get_section_tree(s: Session, batch_record_id: str, section_id: str) -> dict | None:
    section = get_active_section(s, batch_record_id=batch_record_id, section_id=section_id)
    if section is None:
        return None
    return _tree_node(s, section)


def _tree_node(s: Session, section: BatchRecordSection) -> dict:
    d = section_to_dict(section)
    d["childSections"] = [_tree_node(s, child) for child in active_children(s, section.node_id)]
    return d


def sections_to_document(sections: list[BatchRecordSection]) -> dict:
    """
    Merge active sections into the nested document the batch record form uses:
    `{sectionId: {...sectionData, childSectionId: {...}}}`.
    """
    by_node = {x.node_id: x for x in sections}
    children: dict[str, list[BatchRecordSection]] = {}
    for x in sections:
        if x.parent_section_id:
            children.setdefault(x.parent_section_id, []).append(x)

    def build(section: BatchRecordSection) -> Any:
        data = copy.deepcopy(section.section_data) if section.section_data is not None else {}
        kids = children.get(section.node_id, [])
        if not kids:
            return data
        if not isinstance(data, dict):
            data = {"value": data}
        for child in kids:
            data[child.section_id] = build(child)
        return data

    doc: dict = {}
    for x in sections:
        # orphans (parent not active) surface at the top level
        if x.parent_section_id is None or x.parent_section_id not in by_node:
            doc[x.section_id] = build(x)
    return doc


def section_metadata(section: BatchRecordSection) -> dict:
    return {
        "status": section.status,
        "version": section.version,
        "lockedAt": iso(section.locked_at),
        "lockedBy": section.locked_by,
        "isActive": section.is_active,
    }


def section_to_dict(section: BatchRecordSection) -> dict:
    return {
        "id": section.id,
        "nodeId": section.node_id,
        "batchRecordId": section.batch_record_id,
        "sectionId": section.section_id,
        "parentSectionId": section.parent_section_id,
        "sectionType": section.section_type,
        "sectionData": section.section_data,
        "status": section.status,
        "version": section.version,
        "isActive": section.is_active,
        "previousVersionId": section.previous_version_id,
        "approvalRequestId": section.approval_request_id,
        "lockedAt": iso(section.locked_at),
        "lockedBy": section.locked_by,
        "completedAt": iso(section.completed_at),
        "completedBy": section.completed_by,
        "createdAt": iso(section.created_at),
        "updatedAt": iso(section.updated_at),
        "createdBy": section.created_by,
        "updatedBy": section.updated_by,
    }


def get_section_history(s: Session, batch_record_id: str, section_id: str) -> list[dict]:
    """
    All versions of a section, newest first. Each version lists the approval
    requests opened against it or that produced it.
    """
    versions = list(
        s.scalars(
            select(BatchRecordSection)
            .where(
                BatchRecordSection.batch_record_id == batch_record_id,
                BatchRecordSection.section_id == section_id,
            )
            .order_by(BatchRecordSection.version.desc(), BatchRecordSection.created_at.desc())
        )
    )
    if not versions:
        return []

    version_ids = [v.id for v in versions]
    requests = list(
        s.scalars(
            select(ApprovalRequest)
            .where(
                or_(
                    ApprovalRequest.section_record_id.in_(version_ids),
                    ApprovalRequest.resulting_section_record_id.in_(version_ids),
                )
            )
            .order_by(ApprovalRequest.requested_at.desc())
        )
    )

    out: list[dict] = []
    for v in versions:
        related = [r for r in requests if v.id in (r.section_record_id, r.resulting_section_record_id)]
        out.append(
            {
                "id": v.id,
                "version": v.version,
                "isActive": v.is_active,
                "status": v.status,
                "sectionData": v.section_data,
                "parentSectionId": v.parent_section_id,
                "previousVersionId": v.previous_version_id,
                "completedAt": iso(v.completed_at),
                "completedBy": v.completed_by,
                "updatedAt": iso(v.updated_at),
                "updatedBy": v.updated_by,
                "approvalRequestId": v.approval_request_id,
                "approvalRequests": [
                    {
                        "id": r.id,
                        "requestType": r.request_type,
                        "status": r.status,
                        "sectionId": r.section_id,
                        "requestedAt": iso(r.requested_at),
                        "requestedBy": r.requested_by,
                        "reviewedAt": iso(r.reviewed_at),
                        "reviewedBy": r.reviewed_by,
                        "reviewComments": r.review_comments,
                        "existingData": r.existing_data,
                        "proposedData": r.proposed_data,
                    }
                    for r in related
                ],
            }
        )
    return out
