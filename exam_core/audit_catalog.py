from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable

from .bands import BAND_TABLES, validate_table
from .catalog import load_catalog
from .entitlements import PlanParseError, parse_plan
from .types import ExamTest, ModuleType

KNOWN_TYPES: frozenset[str] = frozenset({"single_choice", "multi_select", "short_answer"})


def _blank_module() -> dict[str, object]:
    return {"tests": 0, "questions": 0, "marks": 0, "by_type": {t: 0 for t in sorted(KNOWN_TYPES)}}


def audit_tests(tests: Iterable[ExamTest]) -> dict[str, object]:
    coverage: dict[str, dict[str, object]] = {m.value: _blank_module() for m in ModuleType}
    warnings: list[str] = []
    slugs: set[str] = set()

    for test in tests:
        data = coverage.setdefault(test.module_type.value, _blank_module())
        data["tests"] += 1  # type: ignore[operator]

        if test.slug in slugs:
            warnings.append(f"{test.slug}: duplicate slug")
        slugs.add(test.slug)

        try:
            parse_plan(test.required_plan)
        except PlanParseError:
            warnings.append(f"{test.slug}: unknown required plan {test.required_plan!r}")

        if test.duration_seconds <= 0:
            warnings.append(f"{test.slug}: non-positive duration")

        if not test.module_type.is_objective:
            if not test.tasks:
                warnings.append(f"{test.slug}: {test.module_type.value} test has no tasks")
            if test.questions:
                warnings.append(f"{test.slug}: {test.module_type.value} test carries answer keys")
            continue

        if not test.questions:
            warnings.append(f"{test.slug}: objective test has no answer keys")
        seen: set[str] = set()
        by_type: dict[str, int] = data["by_type"]  # type: ignore[assignment]
        for key in test.questions:
            if key.question_id in seen:
                warnings.append(f"{test.slug}: duplicate question {key.question_id}")
            seen.add(key.question_id)
            if key.type not in KNOWN_TYPES:
                warnings.append(f"{test.slug}/{key.question_id}: unknown type {key.type!r}")
            else:
                by_type[key.type] += 1
            if not [a for a in key.correct_answers if str(a).strip()]:
                warnings.append(f"{test.slug}/{key.question_id}: no accepted answer")
            if key.max_score <= 0:
                warnings.append(f"{test.slug}/{key.question_id}: max_score must be positive")
            data["questions"] += 1  # type: ignore[operator]
            data["marks"] += max(0, key.max_score)  # type: ignore[operator]

    tables: dict[str, list[str]] = {}
    for name, table in sorted(BAND_TABLES.items()):
        problems = validate_table(table)
        tables[name] = problems
        warnings.extend(f"band table {name}: {p}" for p in problems)

    return {"coverage": coverage, "tables": tables, "warnings": warnings}


def print_report(summary: dict[str, object]) -> None:
    coverage: dict[str, dict[str, object]] = summary["coverage"]  # type: ignore[assignment]
    print("=== Catalog Coverage ===")
    for module in sorted(coverage):
        data = coverage[module]
        by_type: dict[str, int] = data["by_type"]  # type: ignore[assignment]
        types = "  ".join(f"{t}:{n:3d}" for t, n in by_type.items())
        print(f"\n{module}: tests={data['tests']} questions={data['questions']} marks={data['marks']}")
        if data["questions"]:
            print("  " + types)

    tables: dict[str, list[str]] = summary["tables"]  # type: ignore[assignment]
    print("\nBand tables:")
    for name, problems in tables.items():
        print(f"  {name}: {'ok' if not problems else f'{len(problems)} problem(s)'}")

    warnings: list[str] = summary["warnings"]  # type: ignore[assignment]
    if warnings:
        print("\nWarnings:")
        for msg in warnings:
            print(f" - {msg}")
    else:
        print("\nNo warnings.")


def write_summary(summary: dict[str, object], path: Path) -> str:
    text = json.dumps(summary, indent=2, sort_keys=True)
    path.write_text(text + "\n", encoding="utf-8")
    return text


def main(argv: list[str] | None = None) -> int:
    summary = audit_tests(load_catalog())
    print_report(summary)
    if argv:
        write_summary(summary, Path(argv[0]))
    return 2 if summary["warnings"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
