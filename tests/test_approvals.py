import pytest
from sqlalchemy import select

from app.ebr.db import flush_or_conflict, session_scope
from app.ebr.errors import (
    ConcurrencyConflict,
    DependencyUnmet,
    LockConflict,
    NotFound,
    PendingApprovalConflict,
    ValidationError,
)
from app.ebr.models import AuditEvent, BatchRecord
from app.ebr.modules.approvals.models import ApprovalRequest
from app.ebr.modules.approvals.service import (
    approve_request,
    create_approval_request,
    get_approval_requests_for_section,
    list_approval_requests,
    reject_request,
)
from app.ebr.modules.batch_sections.models import BatchRecordSection
from app.ebr.modules.batch_sections.service import get_active_section, get_section_history, write_section
from app.ebr.modules.templates.service import SqlTemplateCatalog


def _complete(app, batch_id, section_id, data, user_id="u1"):
    with session_scope(app) as s:
        write_section(
            s,
            batch_record_id=batch_id,
            section_id=section_id,
            section_data=data,
            user_id=user_id,
            templates=SqlTemplateCatalog(s),
        )


def _request(app, batch_id, section_id, *, request_type="CHANGE_REQUEST", proposed=None, existing=None):
    with session_scope(app) as s:
        req = create_approval_request(
            s,
            batch_record_id=batch_id,
            section_id=section_id,
            request_type=request_type,
            reason="Transcription error",
            requested_by="u1",
            existing_data=existing,
            proposed_data=proposed,
        )
        return req.id


def _approve(app, request_id, reviewer="qa1"):
    with session_scope(app) as s:
        result = approve_request(
            s, request_id=request_id, reviewed_by=reviewer, templates=SqlTemplateCatalog(s), signature_id="sig-1"
        )
        return result.message


def _versions(s, batch_id, section_id):
    return list(
        s.scalars(
            select(BatchRecordSection)
            .where(BatchRecordSection.batch_record_id == batch_id, BatchRecordSection.section_id == section_id)
            .order_by(BatchRecordSection.version)
        )
    )


def test_request_marks_section_pending(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    req_id = _request(app, batch_id, "S1", proposed={"x": 2}, existing={"x": 1})

    with session_scope(app) as s:
        section = get_active_section(s, batch_record_id=batch_id, section_id="S1")
        assert section.status == "PENDING_APPROVAL"
        assert section.approval_request_id == req_id
        assert section.section_data == {"x": 1}
        req = s.get(ApprovalRequest, req_id)
        assert req.status == "PENDING"
        assert req.status_before_request == "COMPLETED"
        assert req.section_record_id == section.id
        ev = s.scalars(select(AuditEvent).where(AuditEvent.action == "APPROVAL_REQUEST_CREATED")).one()
        assert ev.entity_id == req_id
        assert ev.reason == "Transcription error"

    with pytest.raises(PendingApprovalConflict, match="pending approval request"):
        _complete(app, batch_id, "S1", {"x": 3})


def test_approve_change_request_creates_approved_version(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    req_id = _request(app, batch_id, "S1", proposed={"x": 2})

    assert _approve(app, req_id) == "Approval request approved and new section version created"

    with session_scope(app) as s:
        v1, v2 = _versions(s, batch_id, "S1")
        assert not v1.is_active
        assert v1.section_data == {"x": 1}
        assert v1.version == 1
        assert v2.is_active
        assert v2.version == 2
        assert v2.section_data == {"x": 2}
        assert v2.status == "APPROVED"
        assert v2.locked_by == "qa1"
        assert v2.approval_request_id is None
        assert v2.previous_version_id == v1.id

        req = s.get(ApprovalRequest, req_id)
        assert req.status == "APPROVED"
        assert req.reviewed_by == "qa1"
        assert req.signature_id == "sig-1"
        assert req.resulting_section_record_id == v2.id

        actions = [e.action for e in s.scalars(select(AuditEvent).order_by(AuditEvent.id))]
        assert "APPROVAL_SIGNED" in actions
        assert actions.index("APPROVAL_REQUEST_CREATED") < actions.index("UPDATE") < actions.index("APPROVAL_SIGNED")

        history = get_section_history(s, batch_id, "S1")
        assert [h["version"] for h in history] == [2, 1]
        assert [r["id"] for r in history[0]["approvalRequests"]] == [req_id]
        assert [r["id"] for r in history[1]["approvalRequests"]] == [req_id]


def test_approved_section_is_locked_again(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    _approve(app, _request(app, batch_id, "S1", proposed={"x": 2}))

    with pytest.raises(LockConflict, match="is completed and locked"):
        _complete(app, batch_id, "S1", {"x": 9})


def test_section_approval_approves_in_place(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    req_id = _request(app, batch_id, "S1", request_type="SECTION_APPROVAL", proposed={"x": 1})

    assert _approve(app, req_id) == "Section approval completed"

    with session_scope(app) as s:
        (v1,) = _versions(s, batch_id, "S1")
        assert v1.status == "APPROVED"
        assert v1.is_active
        assert v1.approval_request_id is None
        assert s.get(ApprovalRequest, req_id).resulting_section_record_id == v1.id


def test_reject_leaves_data_untouched(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1, "rows": [1, 2, 3]})
    req_id = _request(app, batch_id, "S1", proposed={"x": 2})

    with session_scope(app) as s:
        result = reject_request(s, request_id=req_id, reviewed_by="qa1", review_comments="Not justified")
        assert result.message == "Approval request rejected. Section data unchanged."

    with session_scope(app) as s:
        (v1,) = _versions(s, batch_id, "S1")
        assert v1.section_data == {"x": 1, "rows": [1, 2, 3]}
        assert v1.status == "COMPLETED"
        assert v1.approval_request_id is None
        req = s.get(ApprovalRequest, req_id)
        assert req.status == "REJECTED"
        assert req.review_comments == "Not justified"
        assert s.scalars(select(AuditEvent).where(AuditEvent.action == "APPROVAL_REQUEST_REJECTED")).one()


def test_reject_restores_prior_approved_status(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    _approve(app, _request(app, batch_id, "S1", request_type="SECTION_APPROVAL"))
    req_id = _request(app, batch_id, "S1", proposed={"x": 2})

    with session_scope(app) as s:
        reject_request(s, request_id=req_id, reviewed_by="qa1")

    with session_scope(app) as s:
        section = get_active_section(s, batch_record_id=batch_id, section_id="S1")
        assert section.status == "APPROVED"


def test_one_pending_request_per_section(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    _request(app, batch_id, "S1", proposed={"x": 2})
    with pytest.raises(PendingApprovalConflict):
        _request(app, batch_id, "S1", proposed={"x": 3})

    with session_scope(app) as s:
        assert len(get_approval_requests_for_section(s, batch_id, "S1")) == 1


def test_resolved_requests_cannot_be_resolved_again(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    req_id = _request(app, batch_id, "S1", proposed={"x": 2})
    _approve(app, req_id)

    with pytest.raises(ValidationError, match="cannot be approved"):
        _approve(app, req_id)
    with pytest.raises(ValidationError, match="cannot be rejected"):
        with session_scope(app) as s:
            reject_request(s, request_id=req_id, reviewed_by="qa1")
    with pytest.raises(NotFound):
        _approve(app, "missing")


def test_request_validation(app, make_batch):
    batch_id = make_batch()
    with pytest.raises(ValidationError, match="Missing required fields: reason"):
        with session_scope(app) as s:
            create_approval_request(
                s, batch_record_id=batch_id, section_id="S1", request_type="DEVIATION", reason="", requested_by="u1"
            )
    with pytest.raises(ValidationError, match="Unknown request type"):
        _request(app, batch_id, "S1", request_type="WHIM")
    with pytest.raises(NotFound):
        _request(app, batch_id, "Ghost")


def test_approval_respects_dependencies(app, make_batch):
    batch_id = make_batch(rules=[("S2", "SECTION_DEPENDENCY", {"sourceSectionId": "S1", "condition": "completed"})])
    # initial entry is not gated
    _complete(app, batch_id, "S2", {"b": 1})
    req_id = _request(app, batch_id, "S2", proposed={"b": 2})

    with pytest.raises(DependencyUnmet, match="Section 'S1' must be 'completed'"):
        _approve(app, req_id)

    with session_scope(app) as s:
        assert s.get(ApprovalRequest, req_id).status == "PENDING"
        assert len(_versions(s, batch_id, "S2")) == 1

    _complete(app, batch_id, "S1", {"a": 1})
    _approve(app, req_id)

    with session_scope(app) as s:
        section = get_active_section(s, batch_record_id=batch_id, section_id="S2")
        assert section.version == 2
        assert section.section_data == {"b": 2}
        assert section.status == "APPROVED"


def test_pending_request_blocks_batch_completion(app, make_batch):
    batch_id = make_batch(sections=[{"id": "S1"}])
    _complete(app, batch_id, "S1", {"x": 1})
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "COMPLETED"

    req_id = _request(app, batch_id, "S1", proposed={"x": 2})
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "IN_PROGRESS"
        assert [r.id for r in list_approval_requests(s, batch_record_id=batch_id, status="pending")] == [req_id]

    _approve(app, req_id)
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "COMPLETED"


def test_second_pending_request_for_node_is_a_conflict(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    req_id = _request(app, batch_id, "S1", proposed={"x": 2})

    with pytest.raises(ConcurrencyConflict, match="Concurrent modification detected"):
        with session_scope(app) as s:
            first = s.get(ApprovalRequest, req_id)
            # a competing request that got past the pending-status check
            s.add(
                ApprovalRequest(
                    batch_record_id=batch_id,
                    section_id="S1",
                    section_node_id=first.section_node_id,
                    request_type="DEVIATION",
                    reason="Raced",
                    requested_by="u2",
                    status="PENDING",
                )
            )
            flush_or_conflict(s, "approval request for section 'S1'")

    with session_scope(app) as s:
        assert [r.id for r in get_approval_requests_for_section(s, batch_id, "S1")] == [req_id]


def test_resolved_requests_do_not_block_new_pending_one(app, make_batch):
    batch_id = make_batch()
    _complete(app, batch_id, "S1", {"x": 1})
    first = _request(app, batch_id, "S1", proposed={"x": 2})
    with session_scope(app) as s:
        reject_request(s, request_id=first, reviewed_by="qa1")

    second = _request(app, batch_id, "S1", proposed={"x": 3})
    with session_scope(app) as s:
        assert {r.id for r in get_approval_requests_for_section(s, batch_id, "S1")} == {first, second}
