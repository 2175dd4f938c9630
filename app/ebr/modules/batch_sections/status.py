"""
Status aggregation: parent sections follow their children, batch records
follow their top-level sections.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.ebr.audit import record_event
from app.ebr.constants import (
    COMPLETED_EQUIVALENT,
    ENTITY_BATCH_RECORD,
    FINALIZED_STATUSES,
    LOCKED_STATUSES,
    BatchStatus,
    SectionStatus,
    can_transition,
)
from app.ebr.errors import IllegalTransition
from app.ebr.modules.batch_records.models import BatchRecord
from app.ebr.utils import is_json_empty

from .models import BatchRecordSection

logger = logging.getLogger(__name__)


def update_section_status(
    s: Session,
    section: BatchRecordSection,
    new_status: SectionStatus | str,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> None:
    """In-place status change on a version, checked against the transition table."""
    target = SectionStatus(new_status)
    current = SectionStatus(section.status)
    if not can_transition(current, target):
        raise IllegalTransition(current.value, target.value)
    section.status = target.value
    section.updated_at = now or datetime.utcnow()
    if user_id:
        section.updated_by = user_id


def active_children(s: Session, parent_node_id: str) -> list[BatchRecordSection]:
    return list(
        s.scalars(
            select(BatchRecordSection)
            .where(
                BatchRecordSection.parent_section_id == parent_node_id,
                BatchRecordSection.is_active.is_(True),
            )
            .order_by(BatchRecordSection.created_at.asc(), BatchRecordSection.section_id.asc())
        )
    )


def active_for_node(s: Session, node_id: str) -> BatchRecordSection | None:
    return s.scalars(
        select(BatchRecordSection).where(
            BatchRecordSection.node_id == node_id,
            BatchRecordSection.is_active.is_(True),
        )
    ).first()


def propagate_parent_status(
    s: Session,
    *,
    section: BatchRecordSection,
    user_id: str,
    now: datetime | None = None,
) -> None:
    """
    Walk up from `section`:
      - every active child completed-equivalent -> parent becomes COMPLETED and locked
      - any child incomplete while the parent is locked -> parent back to DRAFT, unlocked
    Parents with an open approval request are left alone.
    """
    now = now or datetime.utcnow()
    parent_node_id = section.parent_section_id
    while parent_node_id:
        parent = active_for_node(s, parent_node_id)
        if parent is None or parent.status == SectionStatus.PENDING_APPROVAL.value:
            return

        children = active_children(s, parent_node_id)
        all_done = bool(children) and all(SectionStatus(c.status) in COMPLETED_EQUIVALENT for c in children)
        current = SectionStatus(parent.status)

        if all_done and current not in COMPLETED_EQUIVALENT:
            update_section_status(s, parent, SectionStatus.COMPLETED, user_id=user_id, now=now)
            parent.locked_at = now
            parent.locked_by = user_id
            parent.completed_at = now
            parent.completed_by = user_id
            logger.info("Parent section %s completed (all %d children done)", parent.section_id, len(children))
        elif not all_done and current in LOCKED_STATUSES:
            update_section_status(s, parent, SectionStatus.DRAFT, user_id=user_id, now=now)
            parent.locked_at = None
            parent.locked_by = None
            parent.completed_at = None
            parent.completed_by = None
            logger.info("Parent section %s reverted to DRAFT (incomplete children)", parent.section_id)
        else:
            return

        s.flush()
        parent_node_id = parent.parent_section_id


def recompute_batch_status(s: Session, batch_record_id: str, *, user_id: str | None = None) -> BatchRecord | None:
    batch = s.get(BatchRecord, batch_record_id)
    if batch is None:
        return None

    sections = list(
        s.scalars(
            select(BatchRecordSection).where(
                BatchRecordSection.batch_record_id == batch_record_id,
                BatchRecordSection.is_active.is_(True),
            )
        )
    )
    top_level = [x for x in sections if x.parent_section_id is None]

    if top_level and all(SectionStatus(x.status) in FINALIZED_STATUSES for x in top_level):
        new_status = BatchStatus.COMPLETED.value
    elif any(x.status != SectionStatus.DRAFT.value or not is_json_empty(x.section_data) for x in sections):
        new_status = BatchStatus.IN_PROGRESS.value
    else:
        new_status = batch.status

    if new_status != batch.status:
        old_status = batch.status
        batch.status = new_status
        batch.updated_at = datetime.utcnow()
        record_event(
            s,
            action="STATUS_CHANGE",
            entity_type=ENTITY_BATCH_RECORD,
            entity_id=batch.id,
            old_value={"status": old_status},
            new_value={"status": new_status},
            user_id=user_id,
            batch_record_id=batch.id,
        )
        logger.info("Batch record %s status %s -> %s", batch.batch_number, old_status, new_status)
    return batch
