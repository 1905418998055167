from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from exam_core.catalog import DEFAULT_TASKS
from exam_core.config import Settings
from exam_core.types import ExamTest, ModuleType, QuestionKey

WORKER_SECRET = "worker-secret"
WEBHOOK_SECRET = "hook-secret"


def build_synthetic_test(
    *,
    slug: str,
    module: str = "listening",
    questions: int = 40,
    required_plan: str = "free",
    duration_seconds: int = 1800,
    variant: str | None = None,
) -> ExamTest:
    """Deterministic test content: every objective answer key is "A"."""

    module_type = ModuleType(module)
    keys: list[QuestionKey] = []
    if module_type.is_objective:
        keys = [
            QuestionKey(question_id=f"q{i}", type="single_choice", correct_answers=["A"])
            for i in range(1, questions + 1)
        ]
    return ExamTest(
        id=f"test-{slug}",
        slug=slug,
        module_type=module_type,
        duration_seconds=duration_seconds,
        total_questions=len(keys),
        required_plan=required_plan,
        variant=variant,
        tasks=list(DEFAULT_TASKS.get(module, [])),
        questions=keys,
    )


def synthetic_catalog() -> list[ExamTest]:
    return [
        build_synthetic_test(slug="listening-40"),
        build_synthetic_test(slug="listening-20", questions=20),
        build_synthetic_test(slug="listening-premium", questions=10, required_plan="master"),
        build_synthetic_test(slug="reading-40", module="reading", variant="academic", duration_seconds=3600),
        build_synthetic_test(slug="writing-1", module="writing", required_plan="starter", duration_seconds=3600),
        build_synthetic_test(slug="speaking-1", module="speaking", required_plan="booster", duration_seconds=840),
    ]


def answers_for(correct: int, total: int = 40) -> list[dict]:
    """`correct` right answers ("A") followed by wrong ones ("B")."""
    return [
        {"questionId": f"q{i}", "value": "A" if i <= correct else "B"}
        for i in range(1, total + 1)
    ]


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_settings(tmp_path, **overrides) -> Settings:
    base = dict(
        data_dir=tmp_path,
        db_path=tmp_path / "exam.db",
        seed_catalog=False,
        worker_secret=WORKER_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        log_level="DEBUG",
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def client(settings, clock):
    app = create_app(settings, clock=clock)
    with TestClient(app) as c:
        for test in synthetic_catalog():
            app.state.services.content.upsert_test(test)
        yield c


@pytest.fixture
def services(client):
    return client.app.state.services


@pytest.fixture
def make_user(services):
    """Create a profile and a session; returns the auth headers."""

    def _make(user_id: str, plan: str | None = "free", role: str | None = None) -> dict[str, str]:
        if plan is not None:
            services.profiles.set_plan(user_id, plan)
        if role is not None:
            services.profiles.set_role(user_id, role)
        token = services.profiles.create_session(user_id)
        return {"Authorization": f"Bearer {token}"}

    return _make
