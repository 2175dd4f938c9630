import itertools

import pytest

from app.ebr import create_app
from app.ebr.db import session_scope
from app.ebr.models import Base, BatchRecord, BatchRecordTemplate, TemplateRule, TemplateVersion

# S1, S2 top-level; P has two subsections.
DEFAULT_SECTIONS = [
    {"id": "S1"},
    {"id": "S2"},
    {"id": "P", "subsections": [{"id": "C1"}, {"id": "C2"}]},
]


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("SIGNATURE_MAX_AGE_SECONDS", "SIGNATURE_SINGLE_USE", "LOG_LEVEL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_batch(app):
    """
    Factory: seeds a template (version + rules) and a batch record using it.
    `rules` is a list of (target_section_id, rule_type, rule_data).
    """
    counter = itertools.count(1)

    def _make(*, sections=None, rules=(), planned_quantity=1000.0) -> str:
        n = next(counter)
        with session_scope(app) as s:
            tpl = BatchRecordTemplate(id=f"tpl-{n}", title=f"Template {n}")
            s.add(tpl)
            s.flush()
            tv = TemplateVersion(
                id=f"tpl-{n}-v1",
                template_id=tpl.id,
                version=1,
                data={"sections": DEFAULT_SECTIONS if sections is None else sections},
            )
            s.add(tv)
            for target, rule_type, data in rules:
                s.add(TemplateRule(template_id=tpl.id, rule_type=rule_type, rule_data=data, target_section_id=target))
            s.flush()
            s.add(
                BatchRecord(
                    id=f"batch-{n}",
                    batch_number=f"B-{n:04d}",
                    template_id=tpl.id,
                    template_version_id=tv.id,
                    planned_quantity=planned_quantity,
                    created_by="u-admin",
                )
            )
        return f"batch-{n}"

    return _make
