from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.ebr.models import Base, JSONDocument
from app.ebr.utils import new_id


class BatchRecordTemplate(Base):
    __tablename__ = "batch_record_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class TemplateVersion(Base):
    __tablename__ = "template_versions"
    __table_args__ = (
        UniqueConstraint("template_id", "version", name="uq_template_versions_template_version"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    template_id: Mapped[str] = mapped_column(ForeignKey("batch_record_templates.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # {"sections": [{"id": "...", "subsections": [...]}, ...]}
    data: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class TemplateRule(Base):
    __tablename__ = "template_rules"
    __table_args__ = (
        Index("idx_template_rules_target", "template_id", "target_section_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    template_id: Mapped[str] = mapped_column(ForeignKey("batch_record_templates.id", ondelete="CASCADE"), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(64), nullable=False)  # SECTION_DEPENDENCY, APPROVAL_REQUIREMENT, ...
    # SECTION_DEPENDENCY: {"sourceSectionId"|"dependsOn": "...", "condition": "completed", "message": "..."}
    rule_data: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    target_section_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_field_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
