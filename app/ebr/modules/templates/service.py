"""
Template collaborator.

The batch record core only reads templates: the section tree of a template
version (for structural initialization) and the rules targeting a section.
Authoring templates happens elsewhere.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import TemplateRule, TemplateVersion


@dataclass(frozen=True)
class SectionRule:
    rule_type: str
    rule_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TemplateSection:
    id: str
    subsections: list["TemplateSection"] = field(default_factory=list)


class TemplateCatalog(Protocol):
    def get_section_rules(self, template_id: str, section_id: str) -> list[SectionRule]: ...

    def get_template_section_tree(self, template_version_id: str) -> list[TemplateSection]: ...


def parse_section_tree(raw: object) -> list[TemplateSection]:
    """Parse `[{id, subsections?}]`, ignoring malformed nodes."""
    out: list[TemplateSection] = []
    if not isinstance(raw, list):
        return out
    for node in raw:
        if not isinstance(node, dict) or not node.get("id"):
            continue
        out.append(TemplateSection(id=str(node["id"]), subsections=parse_section_tree(node.get("subsections"))))
    return out


class SqlTemplateCatalog:
    """TemplateCatalog backed by the template tables in the same database."""

    def __init__(self, s: Session) -> None:
        self.s = s

    def get_section_rules(self, template_id: str, section_id: str) -> list[SectionRule]:
        rows = self.s.scalars(
            select(TemplateRule)
            .where(
                TemplateRule.template_id == template_id,
                TemplateRule.target_section_id == section_id,
                TemplateRule.is_active.is_(True),
            )
            .order_by(TemplateRule.created_at.desc())
        )
        return [SectionRule(rule_type=r.rule_type, rule_data=dict(r.rule_data or {})) for r in rows]

    def get_template_section_tree(self, template_version_id: str) -> list[TemplateSection]:
        tv = self.s.get(TemplateVersion, template_version_id)
        if tv is None or not isinstance(tv.data, dict):
            return []
        return parse_section_tree(tv.data.get("sections"))


def rules_of_type(rules: list[SectionRule], rule_type: str) -> list[SectionRule]:
    return [r for r in rules if r.rule_type == rule_type]
