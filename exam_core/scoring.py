from __future__ import annotations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Any
import logging
import re

from .bands import raw_to_band, round_half_ielts
from .types import AnswerRecord, AnswerValue, ExamTest, ModuleType, QuestionKey, ScoringResult

log = logging.getLogger(__name__)

_WS_RX = re.compile(r"\s+")

WRITING_CRITERIA: tuple[str, ...] = ("TR", "CC", "LR", "GRA")
SPEAKING_CRITERIA: tuple[str, ...] = ("FC", "LR", "GRA", "P")


def _normalize_choice(value: object) -> str:
    return _WS_RX.sub(" ", str(value if value is not None else "")).strip().lower()


def _normalize_short(value: object) -> str:
    return str(value if value is not None else "").strip().lower()


def _as_list(value: AnswerValue | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _score_single(key: QuestionKey, value: AnswerValue | None) -> bool:
    given = _as_list(value)
    if len(given) != 1:
        return False
    chosen = _normalize_choice(given[0])
    return bool(chosen) and chosen in {_normalize_choice(a) for a in key.correct_answers}


def _score_multi(key: QuestionKey, value: AnswerValue | None) -> bool:
    given = {_normalize_choice(v) for v in _as_list(value)}
    given.discard("")
    expected = {_normalize_choice(a) for a in key.correct_answers}
    return bool(given) and given == expected


def _score_short(key: QuestionKey, value: AnswerValue | None) -> bool:
    given = _as_list(value)
    if len(given) != 1:
        return False
    text = _normalize_short(given[0])
    return bool(text) and text in {_normalize_short(a) for a in key.correct_answers}


def score_question(key: QuestionKey, value: AnswerValue | None) -> Tuple[int, Dict[str, Any]]:
    """
    Returns (marks, meta).
    single_choice: whitespace/case-normalised equality against any accepted key.
    multi_select: case-normalised set equality, order irrelevant.
    short_answer: trimmed lower-cased equality against any accepted key.
    """
    t = str(key.type or "").lower()
    if t == "single_choice":
        ok = _score_single(key, value)
    elif t == "multi_select":
        ok = _score_multi(key, value)
    elif t == "short_answer":
        ok = _score_short(key, value)
    else:
        log.warning("unknown question type %r on %s; scoring as incorrect", t, key.question_id)
        ok = False
    marks = int(key.max_score) if ok else 0
    return marks, {"type": t, "correct": ok, "marks": marks}


def score_objective(
    test: ExamTest,
    answers: Iterable[AnswerRecord],
    keys: Sequence[QuestionKey] | None = None,
) -> ScoringResult:
    keys = list(keys if keys is not None else test.questions)
    by_question: Dict[str, AnswerValue] = {a.question_id: a.value for a in answers}
    raw = 0
    correctness: Dict[str, bool] = {}
    for key in keys:
        marks, meta = score_question(key, by_question.get(key.question_id))
        raw += marks
        correctness[key.question_id] = bool(meta["correct"])
    for qid in by_question:
        if qid not in correctness:
            # answers for unknown questions never earn marks
            correctness[qid] = False
    total = sum(int(k.max_score) for k in keys) or test.total_questions
    if total <= 0:
        raise ValueError(f"test {test.slug} has no scorable questions")
    band = raw_to_band(raw, total, test.module_type.value, test.variant)
    return ScoringResult(raw_score=raw, band_score=band, total_questions=total, correctness=correctness)


def _criteria_mean(criteria: Mapping[str, float], names: Sequence[str]) -> float:
    missing = [n for n in names if n not in criteria]
    if missing:
        raise ValueError(f"missing criteria: {', '.join(missing)}")
    values = [float(criteria[n]) for n in names]
    for n, v in zip(names, values):
        if not 0.0 <= v <= 9.0:
            raise ValueError(f"criterion {n} out of range: {v}")
    return sum(values) / len(values)


def writing_task_band(criteria: Mapping[str, float]) -> float:
    return _criteria_mean(criteria, WRITING_CRITERIA)


def writing_overall_band(task1_band: float, task2_band: float) -> float:
    """Task 2 carries double weight."""
    return round_half_ielts((float(task1_band) + 2.0 * float(task2_band)) / 3.0)


def speaking_overall_band(criteria: Mapping[str, float]) -> float:
    return round_half_ielts(_criteria_mean(criteria, SPEAKING_CRITERIA))


def score_evaluation(module: ModuleType, evaluation: Mapping[str, Any]) -> float:
    """Band for an externally evaluated attempt (writing or speaking)."""
    if module == ModuleType.WRITING:
        t1 = evaluation.get("task1") or {}
        t2 = evaluation.get("task2") or {}
        return writing_overall_band(writing_task_band(t1), writing_task_band(t2))
    if module == ModuleType.SPEAKING:
        return speaking_overall_band(evaluation.get("criteria") or {})
    raise ValueError(f"{module.value} attempts are scored objectively")


def score_attempt(
    test: ExamTest,
    answers: Iterable[AnswerRecord],
    keys: Optional[Sequence[QuestionKey]] = None,
) -> ScoringResult:
    """Objective modules get raw and band now; productive modules wait for evaluation."""
    if test.module_type.is_objective:
        return score_objective(test, answers, keys)
    return ScoringResult(raw_score=None, band_score=None, total_questions=len(test.tasks))


__all__ = [
    "WRITING_CRITERIA",
    "SPEAKING_CRITERIA",
    "score_question",
    "score_objective",
    "writing_task_band",
    "writing_overall_band",
    "speaking_overall_band",
    "score_evaluation",
    "score_attempt",
]
