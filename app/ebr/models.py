from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Structured documents: JSONB on Postgres, plain JSON elsewhere (SQLite in dev/tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class AuditEvent(Base):
    """
    Append-only audit trail event.
    One row per state-changing action; old/new values are JSON strings so the
    row is a faithful snapshot regardless of later schema changes.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_batch", "batch_record_id"),
        Index("idx_audit_events_entity", "entity_type", "entity_id"),
        Index("idx_audit_events_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "APPROVAL_REQUEST_CREATED"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "BatchRecordSection"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    old_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    batch_record_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.ebr.modules.templates.models import BatchRecordTemplate, TemplateRule, TemplateVersion  # noqa: E402,F401
from app.ebr.modules.batch_records.models import BatchRecord  # noqa: E402,F401
from app.ebr.modules.batch_sections.models import BatchRecordSection  # noqa: E402,F401
from app.ebr.modules.approvals.models import ApprovalRequest  # noqa: E402,F401
from app.ebr.modules.signatures.models import ElectronicSignature  # noqa: E402,F401
