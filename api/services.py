from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from exam_core.autosave import AutosaveCoordinator
from exam_core.catalog import load_catalog
from exam_core.config import Settings
from exam_core.entitlements import EntitlementGate
from exam_core.flags import StoreFlagResolver
from exam_core.lifecycle import AttemptLifecycle
from exam_core.notifications import NotificationTrigger

from .records import ContentStore, FlagStore, NotificationStore, ProfileStore
from .storage import AttemptStore, Database

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    settings: Settings
    db: Database
    attempts: AttemptStore
    content: ContentStore
    profiles: ProfileStore
    flags: FlagStore
    notifications: NotificationStore
    gate: EntitlementGate
    notifier: NotificationTrigger
    autosave: AutosaveCoordinator
    lifecycle: AttemptLifecycle


def seed_catalog(content: ContentStore) -> int:
    if content.count_tests() > 0:
        return 0
    tests = load_catalog()
    for test in tests:
        content.upsert_test(test)
    log.info("seeded %d tests from the packaged catalog", len(tests))
    return len(tests)


def build_services(settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> Services:
    clock = clock or _utcnow
    db = Database(settings.db_path, settings.db_busy_timeout_ms)
    db.init_schema()

    attempts = AttemptStore(db, grace_seconds=settings.attempt_grace_seconds)
    content = ContentStore(db)
    profiles = ProfileStore(db)
    flags = FlagStore(db)
    notifications = NotificationStore(db)
    if settings.seed_catalog:
        seed_catalog(content)

    gate = EntitlementGate(
        profiles,
        StoreFlagResolver(flags, forced=settings.kill_switches),
        upgrade_url_base=settings.upgrade_url_base,
    )
    notifier = NotificationTrigger(notifications, clock=clock)
    autosave = AutosaveCoordinator(attempts, clock=clock)
    lifecycle = AttemptLifecycle(attempts, content, autosave, notifier, gate, clock=clock)
    return Services(
        settings=settings,
        db=db,
        attempts=attempts,
        content=content,
        profiles=profiles,
        flags=flags,
        notifications=notifications,
        gate=gate,
        notifier=notifier,
        autosave=autosave,
        lifecycle=lifecycle,
    )


__all__ = ["Services", "build_services", "seed_catalog"]
