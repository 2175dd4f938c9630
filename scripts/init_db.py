import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ebr.models import BatchRecordTemplate, TemplateRule, TemplateVersion

DEFAULT_TEMPLATE_PATH = ROOT / "scripts" / "seed_template.json"


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed_template(s: Session, definition: dict) -> BatchRecordTemplate:
    """
    Create the template, its version and its rules if they do not exist yet.
    Existing rows are left untouched (template versions are immutable).
    """
    tpl = s.get(BatchRecordTemplate, definition["id"])
    if tpl is None:
        tpl = BatchRecordTemplate(id=definition["id"], title=definition["title"], description=definition.get("description"))
        s.add(tpl)
        s.flush()

    version_no = int(definition.get("version") or 1)
    tv = s.scalars(
        select(TemplateVersion).where(TemplateVersion.template_id == tpl.id, TemplateVersion.version == version_no)
    ).first()
    if tv is None:
        tv = TemplateVersion(
            id=definition.get("versionId") or f"{tpl.id}-v{version_no}",
            template_id=tpl.id,
            version=version_no,
            data={"sections": definition.get("sections") or []},
        )
        s.add(tv)

    has_rules = s.scalars(select(TemplateRule.id).where(TemplateRule.template_id == tpl.id).limit(1)).first()
    if not has_rules:
        for rule in definition.get("rules") or []:
            s.add(
                TemplateRule(
                    template_id=tpl.id,
                    rule_type=rule["ruleType"],
                    rule_data=rule.get("ruleData") or {},
                    target_section_id=rule.get("targetSectionId"),
                    target_field_id=rule.get("targetFieldId"),
                )
            )
    return tpl


def seed_only(*, database_url: str | None = None, template_path: str | None = None) -> None:
    """
    Seed the default batch record template in an idempotent way.
    """
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///ebr.db").strip()
    path = Path(template_path or os.environ.get("EBR_SEED_TEMPLATE") or DEFAULT_TEMPLATE_PATH)
    definition = json.loads(path.read_text(encoding="utf-8"))

    # Use direct engine/session so this can run in release without importing app.wsgi (avoids recursion).
    with _session_scope(db_url) as s:
        tpl = seed_template(s, definition)

    print("Initialized database (seed_only).")
    print(f"Template: {tpl.id} ({path.name})")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
