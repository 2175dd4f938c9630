"""
Central constants for the batch record core: status enums and the section
status transition table.
"""
from __future__ import annotations

import enum


class SectionStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    COMPLETED = "COMPLETED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    APPROVED_FOR_CHANGE = "APPROVED_FOR_CHANGE"


class SectionType(str, enum.Enum):
    SECTION = "SECTION"
    SUBSECTION = "SUBSECTION"


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RequestType(str, enum.Enum):
    SECTION_APPROVAL = "SECTION_APPROVAL"
    DEVIATION = "DEVIATION"
    CAPA = "CAPA"
    CHANGE_REQUEST = "CHANGE_REQUEST"


class BatchStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class RuleType(str, enum.Enum):
    SECTION_DEPENDENCY = "SECTION_DEPENDENCY"
    FIELD_VALIDATION = "FIELD_VALIDATION"
    APPROVAL_REQUIREMENT = "APPROVAL_REQUIREMENT"
    BUSINESS_RULE = "BUSINESS_RULE"


S = SectionStatus

# Valid section status transitions. Applies to in-place status changes and to
# the status a new version takes relative to the version it supersedes.
SECTION_TRANSITIONS: dict[SectionStatus, frozenset[SectionStatus]] = {
    S.DRAFT: frozenset({S.DRAFT, S.COMPLETED, S.PENDING_APPROVAL}),
    S.COMPLETED: frozenset({S.COMPLETED, S.PENDING_APPROVAL, S.APPROVED, S.DRAFT}),
    S.PENDING_APPROVAL: frozenset({S.COMPLETED, S.APPROVED, S.APPROVED_FOR_CHANGE, S.DRAFT}),
    S.APPROVED: frozenset({S.APPROVED, S.COMPLETED, S.PENDING_APPROVAL, S.DRAFT}),
    S.APPROVED_FOR_CHANGE: frozenset({S.DRAFT, S.COMPLETED, S.PENDING_APPROVAL, S.APPROVED}),
}

# Active version cannot be overwritten without an approved change request.
LOCKED_STATUSES = frozenset({S.COMPLETED, S.PENDING_APPROVAL, S.APPROVED})

# Counts as "done" for parent propagation and the `completed` dependency condition.
COMPLETED_EQUIVALENT = frozenset({S.COMPLETED, S.PENDING_APPROVAL, S.APPROVED, S.APPROVED_FOR_CHANGE})

APPROVED_EQUIVALENT = frozenset({S.APPROVED, S.APPROVED_FOR_CHANGE})

# Batch completion excludes sections with an open change request.
FINALIZED_STATUSES = frozenset({S.COMPLETED, S.APPROVED, S.APPROVED_FOR_CHANGE})

del S


def can_transition(from_status: str | SectionStatus, to_status: str | SectionStatus) -> bool:
    try:
        src = SectionStatus(from_status)
        dst = SectionStatus(to_status)
    except ValueError:
        return False
    return dst in SECTION_TRANSITIONS[src]


# Canonical signature actions bound into signed payloads.
ACTION_COMPLETE_SECTION = "COMPLETE_SECTION"
ACTION_APPROVE_CHANGE_REQUEST = "APPROVE_CHANGE_REQUEST"

ENTITY_SECTION = "BatchRecordSection"
ENTITY_APPROVAL_REQUEST = "ApprovalRequest"
ENTITY_BATCH_RECORD = "BatchRecord"
