from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Union, Literal

AnswerValue = Union[str, List[str]]
QuestionType = Literal["single_choice", "multi_select", "short_answer"]


class ModuleType(str, Enum):
    LISTENING = "listening"
    READING = "reading"
    WRITING = "writing"
    SPEAKING = "speaking"

    @property
    def is_objective(self) -> bool:
        return self in (ModuleType.LISTENING, ModuleType.READING)


class AttemptMode(str, Enum):
    PRACTICE = "practice"
    MOCK = "mock"


class AttemptStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    EVALUATED = "evaluated"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES


OPEN_STATUSES = frozenset({AttemptStatus.CREATED, AttemptStatus.IN_PROGRESS})

_FORWARD: Dict[AttemptStatus, frozenset] = {
    AttemptStatus.CREATED: frozenset({AttemptStatus.IN_PROGRESS, AttemptStatus.EXPIRED}),
    AttemptStatus.IN_PROGRESS: frozenset({AttemptStatus.SUBMITTED, AttemptStatus.EXPIRED}),
    AttemptStatus.SUBMITTED: frozenset({AttemptStatus.EVALUATED}),
    AttemptStatus.EVALUATED: frozenset(),
    AttemptStatus.EXPIRED: frozenset(),
}


def can_transition(src: AttemptStatus, dst: AttemptStatus) -> bool:
    """Forward-only attempt lifecycle; `created` may be finalized directly."""
    if src == AttemptStatus.CREATED and dst == AttemptStatus.SUBMITTED:
        return True
    return dst in _FORWARD[src]


@dataclass
class QuestionKey:
    question_id: str
    type: QuestionType
    correct_answers: List[str]
    max_score: int = 1


@dataclass
class ExamTest:
    id: str
    slug: str
    module_type: ModuleType
    duration_seconds: int
    total_questions: int = 0
    required_plan: str = "free"
    variant: Optional[str] = None
    tasks: List[str] = field(default_factory=list)
    questions: List[QuestionKey] = field(default_factory=list)


@dataclass
class AnswerRecord:
    attempt_id: str
    question_id: str
    value: AnswerValue
    is_correct: Optional[bool] = None
    updated_at: Optional[str] = None


@dataclass
class Attempt:
    id: str
    user_id: str
    test_id: str
    module_type: ModuleType
    mode: AttemptMode
    status: AttemptStatus
    started_at: Optional[str]
    duration_seconds: int
    remaining_seconds: int
    elapsed_seconds: int = 0
    submitted_at: Optional[str] = None
    evaluated_at: Optional[str] = None
    raw_score: Optional[int] = None
    band_score: Optional[float] = None
    evaluation: Optional[Dict[str, object]] = None

    def deadline(self) -> Optional[datetime]:
        if not self.started_at:
            return None
        return datetime.fromisoformat(self.started_at) + timedelta(seconds=self.duration_seconds)

    def is_overdue(self, now: datetime, grace_seconds: int = 0) -> bool:
        due = self.deadline()
        return due is not None and now > due + timedelta(seconds=grace_seconds)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "testId": self.test_id,
            "moduleType": self.module_type.value,
            "mode": self.mode.value,
            "status": self.status.value,
            "startedAt": self.started_at,
            "submittedAt": self.submitted_at,
            "evaluatedAt": self.evaluated_at,
            "durationSeconds": self.duration_seconds,
            "remainingSeconds": self.remaining_seconds,
            "elapsedSeconds": self.elapsed_seconds,
            "rawScore": self.raw_score,
            "bandScore": self.band_score,
            "evaluation": self.evaluation,
        }


@dataclass
class ScoringResult:
    raw_score: Optional[int]
    band_score: Optional[float]
    total_questions: int = 0
    correctness: Dict[str, bool] = field(default_factory=dict)


@dataclass
class NotificationEvent:
    id: str
    event_key: str
    user_id: str
    idempotency_key: str
    payload: Dict[str, object] = field(default_factory=dict)
    created_at: Optional[str] = None
