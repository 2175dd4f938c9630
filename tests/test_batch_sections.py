import pytest
from sqlalchemy import select

from app.ebr.db import flush_or_conflict, session_scope
from app.ebr.errors import ConcurrencyConflict, LockConflict, NotFound, ValidationError
from app.ebr.models import AuditEvent, BatchRecord
from app.ebr.modules.batch_records.service import get_batch_record
from app.ebr.modules.batch_sections.models import BatchRecordSection
from app.ebr.modules.batch_sections.service import (
    ensure_section_structure,
    get_active_section,
    get_active_sections,
    get_section_history,
    get_section_tree,
    resolve_section_node_id,
    sections_to_document,
    write_section,
)
from app.ebr.modules.batch_sections.status import propagate_parent_status, update_section_status
from app.ebr.modules.templates.service import SqlTemplateCatalog


def _write(app, batch_id, section_id, data, *, user_id="u1", parent=None, status="COMPLETED"):
    with session_scope(app) as s:
        parent_node = None
        if parent:
            ensure_section_structure(s, batch=get_batch_record(s, batch_id), templates=SqlTemplateCatalog(s))
            parent_node = resolve_section_node_id(s, batch_id, parent)
        section = write_section(
            s,
            batch_record_id=batch_id,
            section_id=section_id,
            section_data=data,
            user_id=user_id,
            parent_section_id=parent_node,
            status=status,
            templates=SqlTemplateCatalog(s),
        )
        return section.id


def _versions(s, batch_id, section_id):
    return list(
        s.scalars(
            select(BatchRecordSection)
            .where(BatchRecordSection.batch_record_id == batch_id, BatchRecordSection.section_id == section_id)
            .order_by(BatchRecordSection.version)
        )
    )


def _section_events(s, section_id):
    return list(
        s.scalars(
            select(AuditEvent)
            .where(AuditEvent.entity_type == "BatchRecordSection", AuditEvent.entity_id == section_id)
            .order_by(AuditEvent.id)
        )
    )


def test_structure_initialized_as_placeholders(app, make_batch):
    batch_id = make_batch()
    with session_scope(app) as s:
        batch = get_batch_record(s, batch_id)
        ensure_section_structure(s, batch=batch, templates=SqlTemplateCatalog(s))
        ensure_section_structure(s, batch=batch, templates=SqlTemplateCatalog(s))

    with session_scope(app) as s:
        sections = get_active_sections(s, batch_id)
        assert sorted(x.section_id for x in sections) == ["C1", "C2", "P", "S1", "S2"]
        assert all(x.status == "DRAFT" and x.version == 1 and x.section_data == {} for x in sections)
        by_id = {x.section_id: x for x in sections}
        assert by_id["C1"].parent_section_id == by_id["P"].node_id
        assert by_id["C1"].section_type == "SUBSECTION"
        assert by_id["S1"].parent_section_id is None
        assert by_id["S1"].node_id == by_id["S1"].id


def test_first_write_fills_placeholder(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "S1", {"x": 1})

    with session_scope(app) as s:
        versions = _versions(s, batch_id, "S1")
        assert len(versions) == 1
        v1 = versions[0]
        assert v1.version == 1
        assert v1.is_active
        assert v1.status == "COMPLETED"
        assert v1.section_data == {"x": 1}
        assert v1.locked_by == "u1" and v1.locked_at is not None
        assert v1.completed_by == "u1"
        events = _section_events(s, "S1")
        assert [e.action for e in events] == ["CREATE"]
        assert events[0].batch_record_id == batch_id


def test_completed_section_is_locked(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "S1", {"x": 1})

    with pytest.raises(LockConflict, match="Section 'S1' is completed and locked"):
        _write(app, batch_id, "S1", {"x": 2})

    with session_scope(app) as s:
        versions = _versions(s, batch_id, "S1")
        assert len(versions) == 1
        assert versions[0].section_data == {"x": 1}


def test_draft_rewrite_creates_new_version(app, make_batch):
    batch_id = make_batch()
    first = _write(app, batch_id, "S1", {"a": 1}, status="DRAFT")
    second = _write(app, batch_id, "S1", {"a": 2}, status="DRAFT")

    with session_scope(app) as s:
        v1, v2 = _versions(s, batch_id, "S1")
        assert (v1.id, v2.id) == (first, second)
        assert not v1.is_active and v2.is_active
        assert v1.section_data == {"a": 1}
        assert v2.section_data == {"a": 2}
        assert v2.version == 2
        assert v2.previous_version_id == v1.id
        assert v2.node_id == v1.node_id
        assert v2.locked_at is None
        assert [e.action for e in _section_events(s, "S1")] == ["CREATE", "UPDATE"]


def test_empty_draft_on_placeholder_is_noop(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "S1", {}, status="DRAFT")

    with session_scope(app) as s:
        versions = _versions(s, batch_id, "S1")
        assert len(versions) == 1
        assert versions[0].status == "DRAFT"
        assert _section_events(s, "S1") == []
        assert s.get(BatchRecord, batch_id).status == "DRAFT"


def test_exactly_one_active_version_per_path(app, make_batch):
    batch_id = make_batch()
    for n in range(3):
        _write(app, batch_id, "S1", {"n": n}, status="DRAFT")
    _write(app, batch_id, "S1", {"n": 3})

    with session_scope(app) as s:
        versions = _versions(s, batch_id, "S1")
        assert [v.version for v in versions] == [1, 2, 3, 4]
        assert [v.is_active for v in versions] == [False, False, False, True]
        assert versions[-1].status == "COMPLETED"


def test_parent_completes_when_all_children_complete(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "C1", {"c": 1}, user_id="u1", parent="P")

    with session_scope(app) as s:
        parent = get_active_section(s, batch_record_id=batch_id, section_id="P")
        assert parent.status == "DRAFT"

    _write(app, batch_id, "C2", {"c": 2}, user_id="u2", parent="P")

    with session_scope(app) as s:
        parent = get_active_section(s, batch_record_id=batch_id, section_id="P")
        assert parent.status == "COMPLETED"
        assert parent.locked_by == "u2"
        assert parent.locked_at is not None
        # propagation changes status in place, no new parent version
        assert parent.version == 1


def test_parent_reverts_when_child_reopens(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "C1", {"c": 1}, parent="P")
    _write(app, batch_id, "C2", {"c": 2}, parent="P")

    with session_scope(app) as s:
        child = get_active_section(s, batch_record_id=batch_id, section_id="C2")
        update_section_status(s, child, "DRAFT", user_id="u1")
        s.flush()
        propagate_parent_status(s, section=child, user_id="u1")

    with session_scope(app) as s:
        parent = get_active_section(s, batch_record_id=batch_id, section_id="P")
        assert parent.status == "DRAFT"
        assert parent.locked_at is None
        assert parent.locked_by is None


def test_batch_status_follows_top_level_sections(app, make_batch):
    batch_id = make_batch()
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "DRAFT"

    _write(app, batch_id, "S1", {"x": 1})
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "IN_PROGRESS"

    _write(app, batch_id, "S2", {"x": 2})
    _write(app, batch_id, "C1", {"x": 3}, parent="P")
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "IN_PROGRESS"

    _write(app, batch_id, "C2", {"x": 4}, parent="P")
    with session_scope(app) as s:
        assert s.get(BatchRecord, batch_id).status == "COMPLETED"
        changes = list(s.scalars(select(AuditEvent).where(AuditEvent.entity_type == "BatchRecord").order_by(AuditEvent.id)))
        assert [e.action for e in changes] == ["STATUS_CHANGE", "STATUS_CHANGE"]


def test_ambiguous_section_id_requires_parent(app, make_batch):
    batch_id = make_batch(
        sections=[
            {"id": "A", "subsections": [{"id": "Notes"}]},
            {"id": "B", "subsections": [{"id": "Notes"}]},
        ]
    )
    with pytest.raises(ValidationError, match="more than one parent"):
        _write(app, batch_id, "Notes", {"text": "hello"})

    _write(app, batch_id, "Notes", {"text": "hello"}, parent="B")
    with session_scope(app) as s:
        b_node = resolve_section_node_id(s, batch_id, "B")
        notes = get_active_section(s, batch_record_id=batch_id, section_id="Notes", parent_section_id=b_node)
        assert notes.section_data == {"text": "hello"}


def test_unknown_batch_and_parent(app, make_batch):
    with pytest.raises(NotFound):
        _write(app, "missing-batch", "S1", {"x": 1})

    batch_id = make_batch()
    with pytest.raises(NotFound):
        with session_scope(app) as s:
            write_section(
                s,
                batch_record_id=batch_id,
                section_id="C1",
                section_data={"x": 1},
                user_id="u1",
                parent_section_id="no-such-node",
                templates=SqlTemplateCatalog(s),
            )


def test_section_outside_template_is_created(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "Extra", {"note": "ad hoc"})
    with session_scope(app) as s:
        (v1,) = _versions(s, batch_id, "Extra")
        assert v1.version == 1
        assert v1.section_type == "SECTION"
        assert [e.action for e in _section_events(s, "Extra")] == ["CREATE"]


def test_document_tree_and_history(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "S1", {"x": 1}, status="DRAFT")
    _write(app, batch_id, "S1", {"x": 2})
    _write(app, batch_id, "C1", {"y": 2}, parent="P")

    with session_scope(app) as s:
        doc = sections_to_document(get_active_sections(s, batch_id))
        assert doc["S1"] == {"x": 2}
        assert doc["S2"] == {}
        assert doc["P"] == {"C1": {"y": 2}, "C2": {}}

        tree = get_section_tree(s, batch_id, "P")
        assert [c["sectionId"] for c in tree["childSections"]] == ["C1", "C2"]
        assert get_section_tree(s, batch_id, "nope") is None

        history = get_section_history(s, batch_id, "S1")
        assert [h["version"] for h in history] == [2, 1]
        assert history[0]["isActive"] and not history[1]["isActive"]
        assert history[1]["sectionData"] == {"x": 1}
        assert history[0]["approvalRequests"] == []
        assert get_section_history(s, batch_id, "nope") == []


def test_second_active_version_on_path_is_a_conflict(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "S1", {"x": 1})

    with pytest.raises(ConcurrencyConflict, match="Concurrent modification detected while saving section 'S1'"):
        with session_scope(app) as s:
            # a competing writer inserting its own active row for the same path
            s.add(
                BatchRecordSection(
                    id="competing-s1",
                    node_id="competing-s1",
                    batch_record_id=batch_id,
                    section_id="S1",
                    section_data={"x": 2},
                    status="COMPLETED",
                    version=1,
                    is_active=True,
                )
            )
            flush_or_conflict(s, "section 'S1'")

    with session_scope(app) as s:
        (v1,) = _versions(s, batch_id, "S1")
        assert v1.section_data == {"x": 1}


def test_inactive_rows_do_not_conflict(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "S1", {"x": 1})

    with session_scope(app) as s:
        s.add(
            BatchRecordSection(
                id="old-s1",
                node_id="old-s1",
                batch_record_id=batch_id,
                section_id="S1",
                section_data={"x": 0},
                status="DRAFT",
                version=1,
                is_active=False,
            )
        )
        flush_or_conflict(s, "section 'S1'")

    with session_scope(app) as s:
        assert len(_versions(s, batch_id, "S1")) == 2


def test_promoted_parent_carries_completion_stamps(app, make_batch):
    batch_id = make_batch()
    _write(app, batch_id, "C1", {"c": 1}, user_id="u1", parent="P")
    _write(app, batch_id, "C2", {"c": 2}, user_id="u2", parent="P")

    with session_scope(app) as s:
        parent = get_active_section(s, batch_record_id=batch_id, section_id="P")
        assert parent.status == "COMPLETED"
        assert parent.completed_by == "u2"
        assert parent.completed_at == parent.locked_at

        child = get_active_section(s, batch_record_id=batch_id, section_id="C2")
        update_section_status(s, child, "DRAFT", user_id="u1")
        s.flush()
        propagate_parent_status(s, section=child, user_id="u1")

    with session_scope(app) as s:
        parent = get_active_section(s, batch_record_id=batch_id, section_id="P")
        assert parent.status == "DRAFT"
        assert parent.completed_at is None
        assert parent.completed_by is None
