from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.ebr.db import session_scope
from app.ebr.errors import SignatureInvalid, ValidationError
from app.ebr.models import AuditEvent
from app.ebr.modules.signatures.models import ElectronicSignature
from app.ebr.modules.signatures.service import (
    consume_signature,
    create_signature,
    require_valid_signature,
    verify_signature,
)

PAYLOAD = {
    "action": "COMPLETE_SECTION",
    "entityType": "BatchRecordSection",
    "batchRecordId": "batch-1",
    "sectionId": "S1",
    "parentSectionId": None,
}


def _sign(app, user_id="u1", payload=PAYLOAD) -> str:
    with session_scope(app) as s:
        sig = create_signature(s, user_id=user_id, entity_type="BatchRecordSection", entity_id="S1", payload=payload)
        return sig.id


def test_create_and_verify_ok(app):
    sig_id = _sign(app)
    with session_scope(app) as s:
        reordered = dict(reversed(list(PAYLOAD.items())))
        result = verify_signature(s, signature_id=sig_id, expected_user_id="u1", expected_payload=reordered)
        assert result.ok
        assert result.reason is None
        # read-only: repeatable
        assert verify_signature(s, signature_id=sig_id, expected_user_id="u1", expected_payload=PAYLOAD).ok


def test_verify_failure_reasons(app):
    sig_id = _sign(app)
    with session_scope(app) as s:
        assert verify_signature(s, signature_id="nope", expected_user_id="u1", expected_payload=PAYLOAD).reason == "NOT_FOUND"
        assert verify_signature(s, signature_id=sig_id, expected_user_id="u2", expected_payload=PAYLOAD).reason == "USER_MISMATCH"
        tampered = dict(PAYLOAD, sectionId="S2")
        assert verify_signature(s, signature_id=sig_id, expected_user_id="u1", expected_payload=tampered).reason == "HASH_MISMATCH"


def test_user_mismatch_checked_before_hash(app):
    sig_id = _sign(app)
    with session_scope(app) as s:
        result = verify_signature(s, signature_id=sig_id, expected_user_id="u2", expected_payload={"other": 1})
        assert result.reason == "USER_MISMATCH"


def test_expiry(app):
    sig_id = _sign(app)
    with session_scope(app) as s:
        sig = s.get(ElectronicSignature, sig_id)
        fresh = sig.created_at + timedelta(seconds=299)
        stale = sig.created_at + timedelta(seconds=301)
        kwargs = dict(signature_id=sig_id, expected_user_id="u1", expected_payload=PAYLOAD, max_age_seconds=300)
        assert verify_signature(s, now=fresh, **kwargs).ok
        assert verify_signature(s, now=stale, **kwargs).reason == "EXPIRED"
        # no limit given -> age ignored
        assert verify_signature(s, signature_id=sig_id, expected_user_id="u1", expected_payload=PAYLOAD, now=stale).ok


def test_require_valid_signature_raises(app):
    sig_id = _sign(app)
    with session_scope(app) as s:
        with pytest.raises(SignatureInvalid) as exc:
            require_valid_signature(s, signature_id=sig_id, expected_user_id="u9", expected_payload=PAYLOAD)
        assert exc.value.reason == "USER_MISMATCH"
        assert exc.value.status_code == 401
        assert exc.value.to_dict() == {"success": False, "error": "Invalid signature: USER_MISMATCH", "reason": "USER_MISMATCH"}


def test_consume_is_single_use(app):
    sig_id = _sign(app)
    with session_scope(app) as s:
        consume_signature(s, signature_id=sig_id, action="COMPLETE_SECTION")
        sig = s.get(ElectronicSignature, sig_id)
        assert sig.consumed_at is not None
        assert sig.consumed_action == "COMPLETE_SECTION"

    with pytest.raises(SignatureInvalid) as exc:
        with session_scope(app) as s:
            consume_signature(s, signature_id=sig_id, action="COMPLETE_SECTION")
    assert exc.value.reason == "ALREADY_USED"

    with pytest.raises(SignatureInvalid) as exc:
        with session_scope(app) as s:
            consume_signature(s, signature_id="missing", action="COMPLETE_SECTION")
    assert exc.value.reason == "NOT_FOUND"


def test_create_requires_fields_and_audits(app):
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            create_signature(s, user_id="", entity_type="X", entity_id="1", payload={})

    sig_id = _sign(app)
    with session_scope(app) as s:
        ev = s.scalars(select(AuditEvent).where(AuditEvent.action == "SIGNATURE_CREATED")).one()
        assert ev.actor_user_id == "u1"
        assert sig_id in (ev.new_value_json or "")


def test_same_payload_signed_twice_gives_distinct_records(app):
    a = _sign(app)
    b = _sign(app)
    assert a != b
    with session_scope(app) as s:
        assert s.get(ElectronicSignature, a).payload_hash == s.get(ElectronicSignature, b).payload_hash
        assert s.get(ElectronicSignature, a).created_at <= datetime.utcnow()
