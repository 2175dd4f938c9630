from __future__ import annotations

from sqlalchemy.orm import Session

from app.ebr.errors import NotFound

from .models import BatchRecord


def get_batch_record(s: Session, batch_record_id: str) -> BatchRecord:
    batch = s.get(BatchRecord, batch_record_id) if batch_record_id else None
    if batch is None:
        raise NotFound(f"Batch record {batch_record_id} not found")
    return batch
