from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.ebr.models import Base
from app.ebr.utils import new_id


class BatchRecord(Base):
    __tablename__ = "batch_records"
    __table_args__ = (
        Index("idx_batch_records_status", "status"),
        Index("idx_batch_records_template", "template_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    batch_number: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    template_id: Mapped[str] = mapped_column(ForeignKey("batch_record_templates.id", ondelete="RESTRICT"), nullable=False)
    template_version_id: Mapped[str | None] = mapped_column(
        ForeignKey("template_versions.id", ondelete="RESTRICT"), nullable=True
    )

    planned_quantity: Mapped[float | None] = mapped_column(Float, nullable=True)  # drives starting-material balance
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT")  # DRAFT, IN_PROGRESS, COMPLETED

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
