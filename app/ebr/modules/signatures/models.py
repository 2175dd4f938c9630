from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.ebr.models import Base
from app.ebr.utils import new_id


class ElectronicSignature(Base):
    """
    Immutable record binding a user to the hash of an exact action payload.
    Only the consumption stamp is ever written after insert.
    """

    __tablename__ = "electronic_signatures"
    __table_args__ = (
        Index("idx_electronic_signatures_user", "user_id"),
        Index("idx_electronic_signatures_entity", "entity_type", "entity_id"),
        Index("idx_electronic_signatures_batch", "batch_record_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)  # sha256 hex of canonical payload

    batch_record_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    section_record_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Single-use consumption by a protected action
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    consumed_action: Mapped[str | None] = mapped_column(String(128), nullable=True)
