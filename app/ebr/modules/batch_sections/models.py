from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func, literal, text
from sqlalchemy.orm import Mapped, mapped_column

from app.ebr.models import Base, JSONDocument
from app.ebr.utils import new_id


class BatchRecordSection(Base):
    """
    One immutable version of a section of a batch record.

    A section path is (batch_record_id, section_id, parent_section_id). Every
    write to a path inserts a new row; the superseded row only has its
    `is_active` flag cleared. `node_id` is the id of the path's first version
    and never changes, so children reference their parent by it.
    """

    __tablename__ = "batch_record_sections"
    __table_args__ = (
        UniqueConstraint("node_id", "version", name="uq_batch_record_sections_node_version"),
        Index("idx_batch_record_sections_batch", "batch_record_id"),
        Index("idx_batch_record_sections_parent", "parent_section_id"),
        Index("idx_batch_record_sections_section", "batch_record_id", "section_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    node_id: Mapped[str] = mapped_column(String(36), nullable=False)

    batch_record_id: Mapped[str] = mapped_column(ForeignKey("batch_records.id", ondelete="CASCADE"), nullable=False)
    section_id: Mapped[str] = mapped_column(String(128), nullable=False)  # template section id
    parent_section_id: Mapped[str | None] = mapped_column(
        ForeignKey("batch_record_sections.id", ondelete="RESTRICT"), nullable=True
    )  # parent's node_id
    section_type: Mapped[str] = mapped_column(String(16), nullable=False, default="SECTION")  # SECTION, SUBSECTION

    section_data: Mapped[dict | list | None] = mapped_column(JSONDocument, nullable=True, default=dict)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT")

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    previous_version_id: Mapped[str | None] = mapped_column(
        ForeignKey("batch_record_sections.id", ondelete="RESTRICT"), nullable=True
    )

    # Open approval request (cleared on resolution)
    approval_request_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Lock metadata
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


# At most one active version per section path. NULL parents are folded to ''
# so top-level paths are covered too.
Index(
    "uq_batch_record_sections_active_path",
    BatchRecordSection.batch_record_id,
    BatchRecordSection.section_id,
    func.coalesce(BatchRecordSection.parent_section_id, literal("")),
    unique=True,
    sqlite_where=text("is_active"),
    postgresql_where=text("is_active"),
)
