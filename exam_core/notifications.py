"""Idempotent enqueueing of lifecycle notifications.

Rows land in `notification_events`; an external worker fans them out to
channels. The unique index on the idempotency key is the only dedup mechanism,
so concurrent duplicates collapse to a single row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Protocol

from .errors import DuplicateNotificationError
from .types import NotificationEvent

log = logging.getLogger(__name__)

EVENT_ATTEMPT_SUBMITTED = "attempt_submitted"
EVENT_ATTEMPT_EVALUATED = "attempt_evaluated"
EVENT_PLAN_CHANGED = "plan_changed"
EVENT_NUDGE = "nudge"


class NotificationSink(Protocol):
    def insert_notification_event(
        self, event_key: str, user_id: str, idempotency_key: str, payload: Mapping[str, Any]
    ) -> NotificationEvent:
        ...


@dataclass
class EnqueueResult:
    status: Literal["queued", "duplicate", "failed"]
    event_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("queued", "duplicate")


def daily_key(event_key: str, user_id: str, now: Optional[datetime] = None) -> str:
    day = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"{event_key}:{user_id}:{day}"


def attempt_key(event_key: str, attempt_id: str) -> str:
    return f"{event_key}:{attempt_id}"


class NotificationTrigger:
    def __init__(self, sink: NotificationSink, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.sink = sink
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def enqueue(
        self,
        user_id: str,
        event_key: str,
        payload: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Store one event per key. A repeated key is reported, not raised.

        Without an explicit key the event is deduplicated per user and UTC day,
        the day taken from `now` or the trigger's clock.
        """
        key = idempotency_key or daily_key(event_key, user_id, now or self.clock())
        try:
            event = self.sink.insert_notification_event(event_key, user_id, key, dict(payload or {}))
        except DuplicateNotificationError as dup:
            log.info("notification %s already enqueued", key)
            return EnqueueResult(status="duplicate", event_id=dup.event_id, idempotency_key=key)
        log.info("enqueued %s for %s", event_key, user_id)
        return EnqueueResult(status="queued", event_id=event.id, idempotency_key=key)

    def fire(
        self,
        user_id: str,
        event_key: str,
        payload: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Lifecycle entry point: an enqueue failure never fails the caller."""
        try:
            return self.enqueue(user_id, event_key, payload, idempotency_key, now=now)
        except Exception:
            log.exception("failed to enqueue %s for %s", event_key, user_id)
            return EnqueueResult(status="failed", idempotency_key=idempotency_key)


def submitted_payload(attempt_dict: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "attemptId": attempt_dict.get("id"),
        "module": attempt_dict.get("moduleType"),
        "mode": attempt_dict.get("mode"),
        "bandScore": attempt_dict.get("bandScore"),
        "url": f"/attempts/{attempt_dict.get('id')}",
    }


__all__ = [
    "EVENT_ATTEMPT_SUBMITTED",
    "EVENT_ATTEMPT_EVALUATED",
    "EVENT_PLAN_CHANGED",
    "EVENT_NUDGE",
    "EnqueueResult",
    "NotificationTrigger",
    "daily_key",
    "attempt_key",
    "submitted_payload",
]
