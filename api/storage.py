"""SQLite persistence for attempts and their answers.

Every mutating call runs inside one `BEGIN IMMEDIATE` transaction on a fresh
connection, so SQLite's write lock serialises concurrent requests. Methods take
an optional `conn` so a caller can compose several steps (merge, score,
finalize) into a single transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from exam_core.errors import LockedStateError, NotFoundError, OwnershipError, StorageError
from exam_core.types import (
    AnswerRecord,
    AnswerValue,
    Attempt,
    AttemptMode,
    AttemptStatus,
    ExamTest,
    ModuleType,
    ScoringResult,
)

log = logging.getLogger(__name__)

_OPEN = (AttemptStatus.CREATED.value, AttemptStatus.IN_PROGRESS.value)

SCHEMA = """
CREATE TABLE IF NOT EXISTS exam_tests (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    module_type TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    total_questions INTEGER NOT NULL DEFAULT 0,
    required_plan TEXT NOT NULL DEFAULT 'free',
    variant TEXT,
    tasks TEXT NOT NULL DEFAULT '[]'
);
CREATE TABLE IF NOT EXISTS question_keys (
    test_id TEXT NOT NULL REFERENCES exam_tests(id) ON DELETE CASCADE,
    question_id TEXT NOT NULL,
    type TEXT NOT NULL,
    correct_answers TEXT NOT NULL,
    max_score INTEGER NOT NULL DEFAULT 1,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (test_id, question_id)
);
CREATE TABLE IF NOT EXISTS attempts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    test_id TEXT NOT NULL REFERENCES exam_tests(id),
    module_type TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT,
    submitted_at TEXT,
    evaluated_at TEXT,
    duration_seconds INTEGER NOT NULL,
    remaining_seconds INTEGER NOT NULL,
    elapsed_seconds INTEGER NOT NULL DEFAULT 0,
    raw_score INTEGER,
    band_score REAL,
    evaluation TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS attempts_one_open
    ON attempts (user_id, test_id, mode)
    WHERE status IN ('created', 'in_progress');
CREATE INDEX IF NOT EXISTS attempts_by_user ON attempts (user_id, started_at);
CREATE TABLE IF NOT EXISTS attempt_answers (
    attempt_id TEXT NOT NULL REFERENCES attempts(id) ON DELETE CASCADE,
    question_id TEXT NOT NULL,
    value TEXT NOT NULL,
    is_correct INTEGER,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (attempt_id, question_id)
);
CREATE TABLE IF NOT EXISTS notification_events (
    id TEXT PRIMARY KEY,
    event_key TEXT NOT NULL,
    user_id TEXT NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'queued',
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS profiles (
    user_id TEXT PRIMARY KEY,
    plan TEXT,
    role TEXT,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS feature_flags (
    key TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL DEFAULT 0,
    audience_plans TEXT
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            log.warning("rollback failed", exc_info=True)


class Database:
    def __init__(self, path: Path | str, busy_timeout_ms: int = 5000) -> None:
        self.path = Path(path)
        self.busy_timeout = max(0.0, busy_timeout_ms / 1000.0)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageError("schema init failed") from exc
        log.info("database ready at %s", self.path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError("store unavailable") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            _rollback(conn)
            log.error("transaction failed: %s", exc)
            raise StorageError("store operation failed") from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError("store unavailable") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            log.error("read failed: %s", exc)
            raise StorageError("store read failed") from exc
        finally:
            conn.close()

    @contextmanager
    def using(self, conn: Optional[sqlite3.Connection], readonly: bool = False) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with (self.read() if readonly else self.transaction()) as own:
            yield own


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _row_to_attempt(row: sqlite3.Row) -> Attempt:
    return Attempt(
        id=row["id"],
        user_id=row["user_id"],
        test_id=row["test_id"],
        module_type=ModuleType(row["module_type"]),
        mode=AttemptMode(row["mode"]),
        status=AttemptStatus(row["status"]),
        started_at=row["started_at"],
        submitted_at=row["submitted_at"],
        evaluated_at=row["evaluated_at"],
        duration_seconds=int(row["duration_seconds"]),
        remaining_seconds=int(row["remaining_seconds"]),
        elapsed_seconds=int(row["elapsed_seconds"] or 0),
        raw_score=row["raw_score"],
        band_score=row["band_score"],
        evaluation=json.loads(row["evaluation"]) if row["evaluation"] else None,
    )


def _row_to_answer(row: sqlite3.Row) -> AnswerRecord:
    correct = row["is_correct"]
    return AnswerRecord(
        attempt_id=row["attempt_id"],
        question_id=row["question_id"],
        value=json.loads(row["value"]),
        is_correct=None if correct is None else bool(correct),
        updated_at=row["updated_at"],
    )


class AttemptStore:
    """Sole writer of attempt rows; answer rows are written through `upsert_answers`."""

    def __init__(self, db: Database, grace_seconds: int = 0) -> None:
        self.db = db
        self.grace_seconds = grace_seconds

    # ---- reads ----
    def get(self, attempt_id: str, conn: Optional[sqlite3.Connection] = None) -> Attempt:
        with self.db.using(conn, readonly=True) as c:
            row = c.execute("SELECT * FROM attempts WHERE id = ?", (attempt_id,)).fetchone()
        if row is None:
            raise NotFoundError("Attempt not found")
        return _row_to_attempt(row)

    def load(self, attempt_id: str, caller_id: str, conn: Optional[sqlite3.Connection] = None) -> Attempt:
        attempt = self.get(attempt_id, conn)
        if attempt.user_id != caller_id:
            raise OwnershipError()
        return attempt

    def answers(self, attempt_id: str, conn: Optional[sqlite3.Connection] = None) -> List[AnswerRecord]:
        with self.db.using(conn, readonly=True) as c:
            rows = c.execute(
                "SELECT * FROM attempt_answers WHERE attempt_id = ? ORDER BY question_id",
                (attempt_id,),
            ).fetchall()
        return [_row_to_answer(r) for r in rows]

    def find_open(self, user_id: str, test_id: str, mode: AttemptMode) -> Optional[Attempt]:
        with self.db.read() as c:
            row = c.execute(
                "SELECT * FROM attempts WHERE user_id = ? AND test_id = ? AND mode = ?"
                " AND status IN (?, ?)",
                (user_id, test_id, mode.value, *_OPEN),
            ).fetchone()
        return _row_to_attempt(row) if row else None

    def list_for_user(self, user_id: str, module: Optional[ModuleType] = None, limit: int = 50) -> List[Attempt]:
        sql = "SELECT * FROM attempts WHERE user_id = ?"
        params: List[Any] = [user_id]
        if module is not None:
            sql += " AND module_type = ?"
            params.append(module.value)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(int(limit))
        with self.db.read() as c:
            rows = c.execute(sql, params).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def count_started_since(self, user_id: str, mode: AttemptMode, since_iso: str) -> int:
        with self.db.read() as c:
            row = c.execute(
                "SELECT COUNT(*) AS n FROM attempts WHERE user_id = ? AND mode = ? AND started_at >= ?",
                (user_id, mode.value, since_iso),
            ).fetchone()
        return int(row["n"])

    # ---- lifecycle writes ----
    def create_or_resume(
        self,
        user_id: str,
        test: ExamTest,
        mode: AttemptMode,
        now: Optional[datetime] = None,
    ) -> Tuple[Attempt, bool]:
        """Return the open attempt for (user, test, mode) or start a new one.

        The second element is True when an existing attempt was resumed.
        """
        now = now or utcnow()
        with self.db.transaction() as c:
            row = c.execute(
                "SELECT * FROM attempts WHERE user_id = ? AND test_id = ? AND mode = ?"
                " AND status IN (?, ?)",
                (user_id, test.id, mode.value, *_OPEN),
            ).fetchone()
            if row is not None:
                existing = _row_to_attempt(row)
                if not existing.is_overdue(now, self.grace_seconds):
                    return existing, True
                self._set_expired(c, existing.id)
                log.info("attempt %s expired before resume", existing.id)

            attempt_id = str(uuid.uuid4())
            c.execute(
                "INSERT INTO attempts (id, user_id, test_id, module_type, mode, status, started_at,"
                " duration_seconds, remaining_seconds, elapsed_seconds)"
                " VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?, 0)",
                (
                    attempt_id,
                    user_id,
                    test.id,
                    test.module_type.value,
                    mode.value,
                    AttemptStatus.CREATED.value,
                    test.duration_seconds,
                    test.duration_seconds,
                ),
            )
            stamp = now.isoformat()
            for task in test.tasks:
                c.execute(
                    "INSERT INTO attempt_answers (attempt_id, question_id, value, is_correct, updated_at)"
                    " VALUES (?, ?, ?, NULL, ?)",
                    (attempt_id, task, _dumps(""), stamp),
                )
            c.execute(
                "UPDATE attempts SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                (AttemptStatus.IN_PROGRESS.value, stamp, attempt_id, AttemptStatus.CREATED.value),
            )
            created = _row_to_attempt(c.execute("SELECT * FROM attempts WHERE id = ?", (attempt_id,)).fetchone())
        log.info("started %s attempt %s for %s on %s", mode.value, attempt_id, user_id, test.slug)
        return created, False

    def touch_timer(
        self,
        conn: sqlite3.Connection,
        attempt_id: str,
        elapsed_seconds: int,
        remaining_seconds: int,
    ) -> bool:
        """Record timer progress on an open attempt; moves `created` to `in_progress`."""
        cur = conn.execute(
            "UPDATE attempts SET elapsed_seconds = ?, remaining_seconds = ?, status = ?"
            " WHERE id = ? AND status IN (?, ?)",
            (
                int(elapsed_seconds),
                int(remaining_seconds),
                AttemptStatus.IN_PROGRESS.value,
                attempt_id,
                *_OPEN,
            ),
        )
        return cur.rowcount == 1

    def finalize(
        self,
        attempt_id: str,
        result: ScoringResult,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> Attempt:
        """Compare-and-swap an open attempt to `submitted`.

        Zero affected rows means another request already finalized (or expired)
        the attempt; that is a LockedStateError, never a silent success.
        """
        stamp = (now or utcnow()).isoformat()
        with self.db.using(conn) as c:
            cur = c.execute(
                "UPDATE attempts SET status = ?, raw_score = ?, band_score = ?, submitted_at = ?"
                " WHERE id = ? AND status IN (?, ?)",
                (
                    AttemptStatus.SUBMITTED.value,
                    result.raw_score,
                    result.band_score,
                    stamp,
                    attempt_id,
                    *_OPEN,
                ),
            )
            if cur.rowcount == 0:
                raise LockedStateError("Attempt already submitted", attemptId=attempt_id)
            for question_id, correct in result.correctness.items():
                c.execute(
                    "UPDATE attempt_answers SET is_correct = ? WHERE attempt_id = ? AND question_id = ?",
                    (1 if correct else 0, attempt_id, question_id),
                )
            row = c.execute("SELECT * FROM attempts WHERE id = ?", (attempt_id,)).fetchone()
        return _row_to_attempt(row)

    def expire(self, attempt_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self.db.using(conn) as c:
            return self._set_expired(c, attempt_id)

    def _set_expired(self, conn: sqlite3.Connection, attempt_id: str) -> bool:
        cur = conn.execute(
            "UPDATE attempts SET status = ?, remaining_seconds = 0 WHERE id = ? AND status IN (?, ?)",
            (AttemptStatus.EXPIRED.value, attempt_id, *_OPEN),
        )
        return cur.rowcount == 1

    def record_evaluation(
        self,
        attempt_id: str,
        evaluation: Dict[str, Any],
        band_score: float,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> Attempt:
        stamp = (now or utcnow()).isoformat()
        with self.db.using(conn) as c:
            cur = c.execute(
                "UPDATE attempts SET status = ?, band_score = ?, evaluation = ?, evaluated_at = ?"
                " WHERE id = ? AND status = ?",
                (
                    AttemptStatus.EVALUATED.value,
                    band_score,
                    _dumps(evaluation),
                    stamp,
                    attempt_id,
                    AttemptStatus.SUBMITTED.value,
                ),
            )
            if cur.rowcount == 0:
                raise LockedStateError("Attempt is not awaiting evaluation", attemptId=attempt_id)
            row = c.execute("SELECT * FROM attempts WHERE id = ?", (attempt_id,)).fetchone()
        return _row_to_attempt(row)

    # ---- answers ----
    def upsert_answers(
        self,
        conn: sqlite3.Connection,
        attempt_id: str,
        answers: Iterable[Tuple[str, AnswerValue]],
        now: Optional[datetime] = None,
    ) -> int:
        stamp = (now or utcnow()).isoformat()
        count = 0
        for question_id, value in answers:
            conn.execute(
                "INSERT INTO attempt_answers (attempt_id, question_id, value, is_correct, updated_at)"
                " VALUES (?, ?, ?, NULL, ?)"
                " ON CONFLICT (attempt_id, question_id)"
                " DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (attempt_id, question_id, _dumps(value), stamp),
            )
            count += 1
        return count


__all__ = [
    "Database",
    "AttemptStore",
    "SCHEMA",
    "utcnow",
    "utcnow_iso",
]
