from __future__ import annotations
import json, importlib.resources as ir
from typing import Any, Dict, List
from .types import ExamTest, ModuleType, QuestionKey

DEFAULT_TASKS: Dict[str, List[str]] = {
    "writing": ["task1", "task2"],
    "speaking": ["part1", "part2", "part3"],
}


def exam_from_dict(raw: Dict[str, Any]) -> ExamTest:
    module = ModuleType(raw["module_type"])
    questions = [QuestionKey(**q) for q in raw.get("questions", [])]
    tasks = list(raw.get("tasks") or DEFAULT_TASKS.get(module.value, []))
    return ExamTest(
        id=raw["id"],
        slug=raw["slug"],
        module_type=module,
        duration_seconds=int(raw["duration_seconds"]),
        total_questions=int(raw.get("total_questions") or len(questions)),
        required_plan=raw.get("required_plan", "free"),
        variant=raw.get("variant"),
        tasks=tasks,
        questions=questions,
    )


def load_catalog() -> List[ExamTest]:
    data = ir.files(__package__).joinpath("data/catalog.json").read_text(encoding="utf-8")
    return [exam_from_dict(r) for r in json.loads(data)]
