"""Reference-data and side tables: test content, profiles, sessions, flags and
notification events."""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import uuid
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from exam_core.errors import DuplicateNotificationError, NotFoundError
from exam_core.types import ExamTest, ModuleType, NotificationEvent, QuestionKey

from .storage import Database, utcnow_iso

log = logging.getLogger(__name__)


class ContentStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert_test(self, test: ExamTest) -> None:
        with self.db.transaction() as c:
            c.execute(
                "INSERT INTO exam_tests (id, slug, module_type, duration_seconds, total_questions,"
                " required_plan, variant, tasks) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                " ON CONFLICT (id) DO UPDATE SET slug = excluded.slug, module_type = excluded.module_type,"
                " duration_seconds = excluded.duration_seconds, total_questions = excluded.total_questions,"
                " required_plan = excluded.required_plan, variant = excluded.variant, tasks = excluded.tasks",
                (
                    test.id,
                    test.slug,
                    test.module_type.value,
                    int(test.duration_seconds),
                    int(test.total_questions or len(test.questions)),
                    test.required_plan,
                    test.variant,
                    json.dumps(list(test.tasks)),
                ),
            )
            c.execute("DELETE FROM question_keys WHERE test_id = ?", (test.id,))
            for pos, key in enumerate(test.questions):
                c.execute(
                    "INSERT INTO question_keys (test_id, question_id, type, correct_answers, max_score, position)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (test.id, key.question_id, key.type, json.dumps(list(key.correct_answers)), int(key.max_score), pos),
                )

    def count_tests(self) -> int:
        with self.db.read() as c:
            return int(c.execute("SELECT COUNT(*) FROM exam_tests").fetchone()[0])

    def _build(self, c: sqlite3.Connection, row: sqlite3.Row) -> ExamTest:
        keys = c.execute(
            "SELECT * FROM question_keys WHERE test_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        return ExamTest(
            id=row["id"],
            slug=row["slug"],
            module_type=ModuleType(row["module_type"]),
            duration_seconds=int(row["duration_seconds"]),
            total_questions=int(row["total_questions"]),
            required_plan=row["required_plan"],
            variant=row["variant"],
            tasks=json.loads(row["tasks"] or "[]"),
            questions=[
                QuestionKey(
                    question_id=k["question_id"],
                    type=k["type"],
                    correct_answers=json.loads(k["correct_answers"]),
                    max_score=int(k["max_score"]),
                )
                for k in keys
            ],
        )

    def get_by_slug(self, slug: str, module: Optional[ModuleType] = None) -> ExamTest:
        with self.db.read() as c:
            row = c.execute("SELECT * FROM exam_tests WHERE slug = ?", (slug,)).fetchone()
            if row is None or (module is not None and row["module_type"] != module.value):
                raise NotFoundError("Test not found")
            return self._build(c, row)

    def get(self, test_id: str, conn: Optional[sqlite3.Connection] = None) -> ExamTest:
        if conn is not None:
            row = conn.execute("SELECT * FROM exam_tests WHERE id = ?", (test_id,)).fetchone()
            if row is None:
                raise NotFoundError("Test not found")
            return self._build(conn, row)
        with self.db.read() as c:
            return self.get(test_id, c)


class ProfileStore:
    """Plans, roles and session tokens. Values are stored raw and parsed by the gate."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_profile(self, user_id: str) -> Optional[Tuple[Optional[str], Optional[str]]]:
        with self.db.read() as c:
            row = c.execute("SELECT plan, role FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return row["plan"], row["role"]

    def set_plan(self, user_id: str, plan: str) -> None:
        with self.db.transaction() as c:
            c.execute(
                "INSERT INTO profiles (user_id, plan, role, updated_at) VALUES (?, ?, NULL, ?)"
                " ON CONFLICT (user_id) DO UPDATE SET plan = excluded.plan, updated_at = excluded.updated_at",
                (user_id, plan, utcnow_iso()),
            )

    def set_role(self, user_id: str, role: Optional[str]) -> None:
        with self.db.transaction() as c:
            c.execute(
                "INSERT INTO profiles (user_id, plan, role, updated_at) VALUES (?, NULL, ?, ?)"
                " ON CONFLICT (user_id) DO UPDATE SET role = excluded.role, updated_at = excluded.updated_at",
                (user_id, role, utcnow_iso()),
            )

    def create_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(24)
        with self.db.transaction() as c:
            c.execute(
                "INSERT INTO sessions (token, user_id, created_at) VALUES (?, ?, ?)",
                (token, user_id, utcnow_iso()),
            )
        return token

    def resolve_session(self, token: str) -> Optional[str]:
        with self.db.read() as c:
            row = c.execute("SELECT user_id FROM sessions WHERE token = ?", (token,)).fetchone()
        return row["user_id"] if row else None


class FlagStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def list_flags(self) -> Sequence[Tuple[str, bool, Optional[str]]]:
        with self.db.read() as c:
            rows = c.execute("SELECT key, enabled, audience_plans FROM feature_flags ORDER BY key").fetchall()
        return [(r["key"], bool(r["enabled"]), r["audience_plans"]) for r in rows]

    def set_flag(self, key: str, enabled: bool, audience_plans: Optional[str] = None) -> None:
        with self.db.transaction() as c:
            c.execute(
                "INSERT INTO feature_flags (key, enabled, audience_plans) VALUES (?, ?, ?)"
                " ON CONFLICT (key) DO UPDATE SET enabled = excluded.enabled,"
                " audience_plans = excluded.audience_plans",
                (key, 1 if enabled else 0, audience_plans),
            )


def _row_to_event(row: sqlite3.Row) -> NotificationEvent:
    return NotificationEvent(
        id=row["id"],
        event_key=row["event_key"],
        user_id=row["user_id"],
        idempotency_key=row["idempotency_key"],
        payload=json.loads(row["payload"] or "{}"),
        created_at=row["created_at"],
    )


class NotificationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def insert_notification_event(
        self, event_key: str, user_id: str, idempotency_key: str, payload: Mapping[str, Any]
    ) -> NotificationEvent:
        event_id = str(uuid.uuid4())
        with self.db.transaction() as c:
            try:
                c.execute(
                    "INSERT INTO notification_events (id, event_key, user_id, idempotency_key, payload, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (event_id, event_key, user_id, idempotency_key, json.dumps(dict(payload)), utcnow_iso()),
                )
            except sqlite3.IntegrityError:
                existing = c.execute(
                    "SELECT id FROM notification_events WHERE idempotency_key = ?", (idempotency_key,)
                ).fetchone()
                raise DuplicateNotificationError(existing["id"] if existing else None)
            row = c.execute("SELECT * FROM notification_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row)

    def list_for_user(self, user_id: str, limit: int = 50) -> List[NotificationEvent]:
        with self.db.read() as c:
            rows = c.execute(
                "SELECT * FROM notification_events WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, int(limit)),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def count_by_key(self, idempotency_key: str) -> int:
        with self.db.read() as c:
            return int(
                c.execute(
                    "SELECT COUNT(*) FROM notification_events WHERE idempotency_key = ?", (idempotency_key,)
                ).fetchone()[0]
            )


__all__ = ["ContentStore", "ProfileStore", "FlagStore", "NotificationStore"]
