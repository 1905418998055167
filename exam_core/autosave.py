from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Tuple

from .errors import LockedStateError
from .types import AnswerValue, Attempt

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def collapse_answers(answers: Iterable[Tuple[str, AnswerValue]]) -> List[Tuple[str, AnswerValue]]:
    """Last occurrence of a question id wins, first-seen order is kept."""
    merged: Dict[str, AnswerValue] = {}
    for question_id, value in answers:
        merged[str(question_id)] = value
    return list(merged.items())


def next_timer(attempt: Attempt, elapsed_seconds: int) -> Tuple[int, int]:
    """(elapsed, remaining) after a client report.

    Elapsed time never moves backwards: a lower report (clock drift, a resumed
    tab) keeps the stored value so remaining time cannot grow.
    """
    elapsed = max(int(attempt.elapsed_seconds or 0), max(0, int(elapsed_seconds)))
    remaining = max(0, int(attempt.duration_seconds) - elapsed)
    return elapsed, remaining


class AutosaveCoordinator:
    """Merges partial answers into an open attempt. No scoring happens here."""

    def __init__(self, attempts: Any, clock: Clock = _utcnow) -> None:
        self.attempts = attempts
        self.clock = clock

    def merge(
        self,
        conn: Any,
        attempt: Attempt,
        elapsed_seconds: int,
        answers: Iterable[Tuple[str, AnswerValue]],
        now: datetime,
    ) -> int:
        pairs = collapse_answers(answers)
        elapsed, remaining = next_timer(attempt, elapsed_seconds)
        if elapsed > int(elapsed_seconds):
            log.debug("attempt %s reported elapsed %s below stored %s", attempt.id, elapsed_seconds, elapsed)
        if not self.attempts.touch_timer(conn, attempt.id, elapsed, remaining):
            raise LockedStateError("Attempt is locked", attemptId=attempt.id)
        return self.attempts.upsert_answers(conn, attempt.id, pairs, now)

    def save(
        self,
        attempt_id: str,
        caller_id: str,
        elapsed_seconds: int,
        answers: Iterable[Tuple[str, AnswerValue]],
    ) -> Dict[str, Any]:
        now = self.clock()
        expired = False
        saved = 0
        with self.attempts.db.transaction() as conn:
            attempt = self.attempts.load(attempt_id, caller_id, conn)
            if not attempt.status.is_open:
                raise LockedStateError("Attempt is locked", attemptId=attempt_id, status=attempt.status.value)
            if attempt.is_overdue(now, self.attempts.grace_seconds):
                self.attempts.expire(attempt_id, conn)
                expired = True
            else:
                saved = self.merge(conn, attempt, elapsed_seconds, answers, now)
        if expired:
            log.info("autosave on overdue attempt %s; expired", attempt_id)
            raise LockedStateError("Attempt time has expired", attemptId=attempt_id, status="expired")
        log.debug("autosaved %d answers on %s", saved, attempt_id)
        return {"ok": True, "savedAt": now.isoformat(), "saved": saved}


__all__ = ["AutosaveCoordinator", "collapse_answers", "next_timer"]
