"""Start, submit and evaluate an attempt.

Submission merges the final answers, scores and compare-and-swaps the attempt
inside one store transaction, so of N concurrent submits exactly one commits
and the others leave nothing behind. Notifications are fired after commit.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from . import scoring
from .autosave import AutosaveCoordinator
from .entitlements import EntitlementGate, PlanGuardContext, PlanParseError, parse_plan
from .errors import InternalError, LockedStateError, NotFoundError, ValidationError
from .notifications import (
    EVENT_ATTEMPT_EVALUATED,
    EVENT_ATTEMPT_SUBMITTED,
    NotificationTrigger,
    attempt_key,
    submitted_payload,
)
from .types import AnswerValue, Attempt, AttemptMode, ExamTest, ModuleType

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class AttemptLifecycle:
    def __init__(
        self,
        attempts: Any,
        content: Any,
        autosave: AutosaveCoordinator,
        notifier: NotificationTrigger,
        gate: EntitlementGate,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.attempts = attempts
        self.content = content
        self.autosave = autosave
        self.notifier = notifier
        self.gate = gate
        self.clock = clock

    def start(
        self,
        ctx: PlanGuardContext,
        user_id: str,
        module: ModuleType,
        test_slug: str,
        mode: AttemptMode,
    ) -> Tuple[Attempt, bool]:
        test = self.content.get_by_slug(test_slug, module)
        self.require_test_plan(ctx, test)

        now = self.clock()
        if mode == AttemptMode.MOCK and self._starts_new(user_id, test.id, mode, now):
            since = start_of_day(now).isoformat()
            self.gate.enforce_daily_mock_quota(
                ctx, lambda: self.attempts.count_started_since(user_id, mode, since)
            )
        return self.attempts.create_or_resume(user_id, test, mode, now=now)

    def _starts_new(self, user_id: str, test_id: str, mode: AttemptMode, now) -> bool:
        # an overdue open attempt is replaced by create_or_resume, so it counts as a new start
        open_ = self.attempts.find_open(user_id, test_id, mode)
        return open_ is None or open_.is_overdue(now, self.attempts.grace_seconds)

    def require_test_plan(self, ctx: PlanGuardContext, test: ExamTest) -> None:
        """Check the caller still holds the tier a test itself requires."""
        try:
            required = parse_plan(test.required_plan)
        except PlanParseError as exc:
            log.error("test %s has an invalid required plan: %s", test.slug, exc)
            raise InternalError("test content is invalid") from exc
        self.gate.require_tier(ctx, required)

    def submit(
        self,
        user_id: str,
        attempt_id: str,
        elapsed_seconds: int,
        answers: Iterable[Tuple[str, AnswerValue]],
        module: Optional[ModuleType] = None,
        ctx: Optional[PlanGuardContext] = None,
    ) -> Attempt:
        now = self.clock()
        expired = False
        with self.attempts.db.transaction() as conn:
            attempt = self.attempts.load(attempt_id, user_id, conn)
            if module is not None and attempt.module_type != module:
                raise NotFoundError("Attempt not found")
            if not attempt.status.is_open:
                raise LockedStateError("Attempt already submitted", attemptId=attempt_id, status=attempt.status.value)
            if attempt.is_overdue(now, self.attempts.grace_seconds):
                self.attempts.expire(attempt_id, conn)
                expired = True
            else:
                test = self.content.get(attempt.test_id, conn)
                if ctx is not None:
                    self.require_test_plan(ctx, test)
                self.autosave.merge(conn, attempt, elapsed_seconds, answers, now)
                result = scoring.score_attempt(test, self.attempts.answers(attempt_id, conn))
                attempt = self.attempts.finalize(attempt_id, result, conn, now=now)
        if expired:
            raise LockedStateError("Attempt time has expired", attemptId=attempt_id, status="expired")

        log.info(
            "attempt %s submitted raw=%s band=%s",
            attempt.id,
            attempt.raw_score,
            attempt.band_score,
        )
        self.notifier.fire(
            attempt.user_id,
            EVENT_ATTEMPT_SUBMITTED,
            submitted_payload(attempt.to_dict()),
            idempotency_key=attempt_key(EVENT_ATTEMPT_SUBMITTED, attempt.id),
        )
        return attempt

    def evaluate(self, attempt_id: str, evaluation: Mapping[str, Any]) -> Attempt:
        """Attach external criterion bands to a submitted writing/speaking attempt."""
        attempt = self.attempts.get(attempt_id)
        if attempt.module_type.is_objective:
            raise ValidationError("Objective attempts are scored at submit", attemptId=attempt_id)
        try:
            band = scoring.score_evaluation(attempt.module_type, evaluation)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        stored: Dict[str, Any] = {k: dict(v) if isinstance(v, Mapping) else v for k, v in evaluation.items()}
        if attempt.module_type == ModuleType.WRITING:
            for task in ("task1", "task2"):
                stored[task]["band"] = scoring.writing_task_band(evaluation[task])
        stored["overallBand"] = band

        attempt = self.attempts.record_evaluation(attempt_id, stored, band, now=self.clock())
        log.info("attempt %s evaluated band=%s", attempt_id, band)
        self.notifier.fire(
            attempt.user_id,
            EVENT_ATTEMPT_EVALUATED,
            {"attemptId": attempt.id, "module": attempt.module_type.value, "bandScore": band},
            idempotency_key=attempt_key(EVENT_ATTEMPT_EVALUATED, attempt.id),
        )
        return attempt


__all__ = ["AttemptLifecycle", "start_of_day"]
