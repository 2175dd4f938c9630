"""
Electronic signature service.
Issues signatures over canonical payloads and verifies them before a
protected action runs. Knows nothing about sections or approvals.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.ebr.audit import record_event
from app.ebr.errors import SignatureInvalid, ValidationError

from .canonical import payload_hash
from .models import ElectronicSignature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str | None = None


def create_signature(
    s: Session,
    *,
    user_id: str,
    entity_type: str,
    entity_id: str,
    payload: Any,
    batch_record_id: str | None = None,
    section_record_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ElectronicSignature:
    """Create an immutable signature over the canonical form of `payload`."""
    missing = [
        name
        for name, value in (("userId", user_id), ("entityType", entity_type), ("entityId", entity_id))
        if not value
    ]
    if missing or payload is None:
        raise ValidationError(f"Missing required fields: {', '.join(missing or ['canonicalPayload'])}")

    sig = ElectronicSignature(
        user_id=str(user_id),
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload_hash=payload_hash(payload),
        batch_record_id=batch_record_id,
        section_record_id=section_record_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    s.add(sig)
    s.flush()

    record_event(
        s,
        action="SIGNATURE_CREATED",
        entity_type=entity_type,
        entity_id=str(entity_id),
        new_value={"signatureId": sig.id},
        user_id=str(user_id),
        ip_address=ip_address,
        user_agent=user_agent,
        batch_record_id=batch_record_id,
    )
    logger.info("Signature %s created by %s for %s/%s", sig.id, user_id, entity_type, entity_id)
    return sig


def verify_signature(
    s: Session,
    *,
    signature_id: str,
    expected_user_id: str,
    expected_payload: Any,
    max_age_seconds: int | None = None,
    now: datetime | None = None,
) -> VerificationResult:
    """
    Read-only check that `signature_id` was issued to `expected_user_id` over
    exactly `expected_payload`, and (optionally) is not older than the limit.
    """
    sig = s.get(ElectronicSignature, signature_id) if signature_id else None
    if sig is None:
        return VerificationResult(False, SignatureInvalid.NOT_FOUND)
    if sig.user_id != str(expected_user_id):
        return VerificationResult(False, SignatureInvalid.USER_MISMATCH)
    if sig.payload_hash != payload_hash(expected_payload):
        return VerificationResult(False, SignatureInvalid.HASH_MISMATCH)
    if max_age_seconds:
        age = ((now or datetime.utcnow()) - sig.created_at).total_seconds()
        if age > max_age_seconds:
            return VerificationResult(False, SignatureInvalid.EXPIRED)
    return VerificationResult(True)


def require_valid_signature(
    s: Session,
    *,
    signature_id: str,
    expected_user_id: str,
    expected_payload: Any,
    max_age_seconds: int | None = None,
) -> None:
    result = verify_signature(
        s,
        signature_id=signature_id,
        expected_user_id=expected_user_id,
        expected_payload=expected_payload,
        max_age_seconds=max_age_seconds,
    )
    if not result.ok:
        logger.warning("Signature %s rejected: %s", signature_id, result.reason)
        raise SignatureInvalid(result.reason or SignatureInvalid.NOT_FOUND)


def consume_signature(s: Session, *, signature_id: str, action: str) -> None:
    """
    Mark a signature as used by `action`. Conditional update, so two requests
    racing on the same signature cannot both succeed.
    """
    res = s.execute(
        update(ElectronicSignature)
        .where(ElectronicSignature.id == signature_id, ElectronicSignature.consumed_at.is_(None))
        .values(consumed_at=datetime.utcnow(), consumed_action=action)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        if s.get(ElectronicSignature, signature_id) is None:
            raise SignatureInvalid(SignatureInvalid.NOT_FOUND)
        raise SignatureInvalid(SignatureInvalid.ALREADY_USED)
    sig = s.get(ElectronicSignature, signature_id)
    if sig is not None:
        s.refresh(sig)
