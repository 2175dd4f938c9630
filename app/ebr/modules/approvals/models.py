from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.ebr.models import Base, JSONDocument
from app.ebr.utils import new_id


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"
    __table_args__ = (
        Index("idx_approval_requests_batch", "batch_record_id"),
        Index("idx_approval_requests_status", "status"),
        Index("idx_approval_requests_section", "batch_record_id", "section_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    batch_record_id: Mapped[str] = mapped_column(ForeignKey("batch_records.id", ondelete="CASCADE"), nullable=False)

    # Section addressed by the request
    section_id: Mapped[str] = mapped_column(String(128), nullable=False)
    section_node_id: Mapped[str] = mapped_column(String(36), nullable=False)
    parent_section_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    section_record_id: Mapped[str | None] = mapped_column(
        ForeignKey("batch_record_sections.id", ondelete="RESTRICT"), nullable=True
    )  # version the request was opened against
    resulting_section_record_id: Mapped[str | None] = mapped_column(
        ForeignKey("batch_record_sections.id", ondelete="RESTRICT"), nullable=True
    )  # version produced by approval

    request_type: Mapped[str] = mapped_column(String(32), nullable=False)  # SECTION_APPROVAL, DEVIATION, CAPA, CHANGE_REQUEST
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    existing_data: Mapped[dict | list | None] = mapped_column(JSONDocument, nullable=True)
    proposed_data: Mapped[dict | list | None] = mapped_column(JSONDocument, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")  # PENDING, APPROVED, REJECTED
    status_before_request: Mapped[str | None] = mapped_column(String(32), nullable=True)

    requested_by: Mapped[str] = mapped_column(String(128), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    review_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


# One pending request per section node.
Index(
    "uq_approval_requests_pending_node",
    ApprovalRequest.section_node_id,
    unique=True,
    sqlite_where=text("status = 'PENDING'"),
    postgresql_where=text("status = 'PENDING'"),
)
