from __future__ import annotations

import json

import exam_core.audit_catalog as audit_catalog
from exam_core.catalog import exam_from_dict, load_catalog
from exam_core.types import ModuleType, QuestionKey
from tests.conftest import build_synthetic_test


def test_packaged_catalog_is_clean():
    tests = load_catalog()
    assert {t.module_type for t in tests} == set(ModuleType)
    summary = audit_catalog.audit_tests(tests)
    assert summary["warnings"] == []
    assert all(problems == [] for problems in summary["tables"].values())


def test_productive_tests_get_default_tasks():
    writing = exam_from_dict({"id": "w", "slug": "w", "module_type": "writing", "duration_seconds": 60})
    speaking = exam_from_dict({"id": "s", "slug": "s", "module_type": "speaking", "duration_seconds": 60})
    assert writing.tasks == ["task1", "task2"]
    assert speaking.tasks == ["part1", "part2", "part3"]


def test_audit_flags_broken_content():
    bad = build_synthetic_test(slug="dup", questions=2, required_plan="platinum")
    bad.questions.append(QuestionKey(question_id="q1", type="drag_drop", correct_answers=[" "], max_score=0))
    empty = build_synthetic_test(slug="dup", questions=0)
    no_tasks = build_synthetic_test(slug="w", module="writing")
    no_tasks.tasks = []

    warnings = "\n".join(audit_catalog.audit_tests([bad, empty, no_tasks])["warnings"])
    assert "dup: unknown required plan 'platinum'" in warnings
    assert "dup: duplicate question q1" in warnings
    assert "dup/q1: unknown type 'drag_drop'" in warnings
    assert "dup/q1: no accepted answer" in warnings
    assert "dup/q1: max_score must be positive" in warnings
    assert "dup: duplicate slug" in warnings
    assert "dup: objective test has no answer keys" in warnings
    assert "w: writing test has no tasks" in warnings


def test_main_writes_summary_and_exit_code(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(audit_catalog, "load_catalog", lambda: [build_synthetic_test(slug="ok")])
    out = tmp_path / "audit.json"
    assert audit_catalog.main([str(out)]) == 0
    assert json.loads(out.read_text(encoding="utf-8"))["warnings"] == []
    assert "No warnings." in capsys.readouterr().out

    monkeypatch.setattr(audit_catalog, "load_catalog", lambda: [build_synthetic_test(slug="bad", questions=0)])
    assert audit_catalog.main([]) == 2
