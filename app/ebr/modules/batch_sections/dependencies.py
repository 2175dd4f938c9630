"""
Cross-section dependency gating.

Templates can declare SECTION_DEPENDENCY rules ("section A must be completed
before section B can change"). Only changes to already-locked sections are
gated; initial data entry is not.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.ebr.constants import APPROVED_EQUIVALENT, COMPLETED_EQUIVALENT, RuleType
from app.ebr.errors import DependencyUnmet, ValidationError
from app.ebr.modules.batch_records.models import BatchRecord
from app.ebr.modules.templates.service import TemplateCatalog, rules_of_type

from .models import BatchRecordSection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyCheck:
    ok: bool
    message: str | None = None


def condition_satisfied(status: str | None, condition: str | None) -> bool:
    if not status or not condition:
        return False
    st = str(status).upper()
    cond = str(condition).upper()
    if cond == "COMPLETED":
        return st in {x.value for x in COMPLETED_EQUIVALENT}
    if cond == "APPROVED":
        return st in {x.value for x in APPROVED_EQUIVALENT}
    return st == cond


def check_section_dependencies(
    s: Session,
    *,
    section_id: str,
    batch_record_id: str,
    templates: TemplateCatalog,
) -> DependencyCheck:
    batch = s.get(BatchRecord, batch_record_id)
    if batch is None:
        return DependencyCheck(False, "Batch record not found.")

    rules = rules_of_type(templates.get_section_rules(batch.template_id, section_id), RuleType.SECTION_DEPENDENCY.value)
    for rule in rules:
        data = rule.rule_data
        source_id = data.get("sourceSectionId") or data.get("dependsOn")
        if not source_id:
            continue
        condition = data.get("condition")

        sources = list(
            s.scalars(
                select(BatchRecordSection).where(
                    BatchRecordSection.batch_record_id == batch_record_id,
                    BatchRecordSection.section_id == source_id,
                    BatchRecordSection.is_active.is_(True),
                )
            )
        )
        if len(sources) > 1:
            raise ValidationError(
                f"Dependency source section '{source_id}' exists under more than one parent in batch "
                f"{batch_record_id}; dependency rules must name a unique section id."
            )
        source = sources[0] if sources else None

        if source is None or not condition_satisfied(source.status, condition):
            message = (
                f"Section dependency not met: Section '{source_id}' must be '{condition or 'completed'}' "
                "before changes can be made to this section."
            )
            if data.get("message"):
                message = f"{message} {data['message']}"
            logger.info(
                "Dependency blocks %s in batch %s: %s is %s, needs %s",
                section_id,
                batch_record_id,
                source_id,
                source.status if source else "missing",
                condition,
            )
            return DependencyCheck(False, message)

    return DependencyCheck(True)


def assert_dependencies_met(
    s: Session,
    *,
    section_id: str,
    batch_record_id: str,
    templates: TemplateCatalog,
) -> None:
    check = check_section_dependencies(s, section_id=section_id, batch_record_id=batch_record_id, templates=templates)
    if not check.ok:
        raise DependencyUnmet(f"Section '{section_id}' cannot be saved: {check.message}")
