from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from api.app import create_app
from tests.conftest import WEBHOOK_SECRET, WORKER_SECRET, answers_for, make_settings


def _start(client, headers, module="listening", slug="listening-40", mode="practice"):
    resp = client.post(f"/{module}/attempts/start", json={"testSlug": slug, "mode": mode}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "ok"
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["tests"] == 6


def test_listening_start_autosave_submit(client, make_user):
    headers = make_user("u1")
    started = _start(client, headers)
    assert started["resumed"] is False
    assert started["status"] == "in_progress"
    assert started["durationSeconds"] == 1800

    resumed = _start(client, headers)
    assert resumed["resumed"] is True
    assert resumed["attemptId"] == started["attemptId"]

    aid = started["attemptId"]
    saved = client.post(
        "/listening/attempts/autosave",
        json={"attemptId": aid, "elapsedSeconds": 120, "answers": answers_for(10)[:10]},
        headers=headers,
    )
    assert saved.status_code == 200
    assert saved.json()["ok"] is True and "savedAt" in saved.json()

    submitted = client.post(
        "/listening/attempts/submit",
        json={"attemptId": aid, "elapsedSeconds": 1500, "answers": answers_for(39)},
        headers=headers,
    )
    assert submitted.status_code == 200, submitted.text
    body = submitted.json()
    assert (body["rawScore"], body["bandScore"], body["status"]) == (39, 9.0, "submitted")

    detail = client.get(f"/attempts/{aid}", headers=headers).json()
    assert detail["attempt"]["bandScore"] == 9.0
    assert len(detail["answers"]) == 40
    assert sum(1 for a in detail["answers"] if a["isCorrect"]) == 39

    history = client.get("/attempts", params={"module": "listening"}, headers=headers).json()
    assert [a["id"] for a in history["attempts"]] == [aid]
    assert client.get("/attempts", params={"module": "writing"}, headers=headers).json()["attempts"] == []

    notes = client.get("/notifications", headers=headers).json()["notifications"]
    assert [n["eventKey"] for n in notes] == ["attempt_submitted"]
    assert notes[0]["payload"]["bandScore"] == 9.0


def test_second_submit_and_late_autosave_are_locked(client, make_user):
    headers = make_user("u1")
    aid = _start(client, headers)["attemptId"]
    first = client.post(
        "/listening/attempts/submit",
        json={"attemptId": aid, "elapsedSeconds": 900, "answers": answers_for(30)},
        headers=headers,
    )
    assert first.json()["bandScore"] == 7.0

    again = client.post(
        "/listening/attempts/submit",
        json={"attemptId": aid, "elapsedSeconds": 901, "answers": answers_for(40)},
        headers=headers,
    )
    assert again.status_code == 409
    assert again.json()["error"] == "Attempt already submitted"

    late = client.post(
        "/listening/attempts/autosave",
        json={"attemptId": aid, "elapsedSeconds": 950, "answers": [{"questionId": "q31", "value": "A"}]},
        headers=headers,
    )
    assert late.status_code == 409
    detail = client.get(f"/attempts/{aid}", headers=headers).json()
    assert detail["attempt"]["bandScore"] == 7.0
    assert next(a for a in detail["answers"] if a["questionId"] == "q31")["value"] == "B"


def test_concurrent_http_submits(client, make_user):
    headers = make_user("u1")
    aid = _start(client, headers)["attemptId"]

    def submit(correct):
        return client.post(
            "/listening/attempts/submit",
            json={"attemptId": aid, "elapsedSeconds": 600, "answers": answers_for(correct)},
            headers=headers,
        )

    with ThreadPoolExecutor(max_workers=4) as pool:
        responses = list(pool.map(submit, [40, 30, 23, 16]))

    codes = sorted(r.status_code for r in responses)
    assert codes == [200, 409, 409, 409]
    winner = next(r.json() for r in responses if r.status_code == 200)
    stored = client.get(f"/attempts/{aid}", headers=headers).json()["attempt"]
    assert stored["bandScore"] == winner["bandScore"]


def test_reading_uses_reading_table(client, make_user):
    headers = make_user("u1")
    aid = _start(client, headers, module="reading", slug="reading-40")["attemptId"]
    body = client.post(
        "/reading/attempts/submit",
        json={"attemptId": aid, "elapsedSeconds": 100, "answers": answers_for(33)},
        headers=headers,
    ).json()
    assert body["bandScore"] == 7.5


def test_missing_identity_is_401_even_on_free_module(client):
    resp = client.post("/listening/attempts/start", json={"testSlug": "listening-40"})
    assert resp.status_code == 401
    bogus = client.post(
        "/listening/attempts/start",
        json={"testSlug": "listening-40"},
        headers={"Authorization": "Bearer nope"},
    )
    assert bogus.status_code == 401
    assert client.get("/attempts").status_code == 401


def test_invalid_body_is_400(client, make_user):
    headers = make_user("u1")
    resp = client.post("/listening/attempts/start", json={"mode": "practice"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid body"
    bad_mode = client.post("/listening/attempts/start", json={"testSlug": "listening-40", "mode": "exam"}, headers=headers)
    assert bad_mode.status_code == 400
    negative = client.post(
        "/listening/attempts/autosave",
        json={"attemptId": "x", "elapsedSeconds": -5, "answers": []},
        headers=headers,
    )
    assert negative.status_code == 400


def test_unknown_test_or_attempt_is_404(client, make_user):
    headers = make_user("u1")
    assert client.post("/listening/attempts/start", json={"testSlug": "nope"}, headers=headers).status_code == 404
    assert client.get("/attempts/missing", headers=headers).status_code == 404
    aid = _start(client, headers)["attemptId"]
    # an attempt submitted through another module's route does not exist there
    wrong = client.post(
        "/reading/attempts/submit",
        json={"attemptId": aid, "elapsedSeconds": 1, "answers": []},
        headers=headers,
    )
    assert wrong.status_code == 404


def test_foreign_attempt_is_403(client, make_user):
    owner = make_user("owner")
    other = make_user("other")
    aid = _start(client, owner)["attemptId"]
    assert client.get(f"/attempts/{aid}", headers=other).status_code == 403
    resp = client.post(
        "/listening/attempts/autosave",
        json={"attemptId": aid, "elapsedSeconds": 10, "answers": []},
        headers=other,
    )
    assert resp.status_code == 403


def test_premium_test_on_free_module_needs_plan(client, make_user):
    free = make_user("free-user")
    resp = client.post("/listening/attempts/start", json={"testSlug": "listening-premium"}, headers=free)
    assert resp.status_code == 402
    assert resp.json()["requiredPlan"] == "master"

    admin = make_user("admin-user", plan="free", role="admin")
    _start(client, admin, slug="listening-premium")


def test_downgraded_user_cannot_finish_a_premium_test(client, services, make_user):
    headers = make_user("m1", plan="master")
    aid = _start(client, headers, slug="listening-premium")["attemptId"]
    services.profiles.set_plan("m1", "free")

    body = {"attemptId": aid, "elapsedSeconds": 60, "answers": answers_for(10, total=10)}
    saved = client.post("/listening/attempts/autosave", json=body, headers=headers)
    assert saved.status_code == 402
    resp = client.post("/listening/attempts/submit", json=body, headers=headers)
    assert resp.status_code == 402
    assert resp.json()["requiredPlan"] == "master"
    stored = services.attempts.get(aid)
    assert stored.status.value == "in_progress"
    assert stored.raw_score is None


def test_writing_requires_starter_and_speaking_booster(client, make_user):
    starter = make_user("s1", plan="starter")
    resp = client.post("/speaking/attempts/start", json={"testSlug": "speaking-1"}, headers=starter)
    assert resp.status_code == 402
    body = resp.json()
    assert body == {
        "error": "Upgrade required",
        "requiredPlan": "booster",
        "currentPlan": "starter",
        "upgradeUrl": "/pricing?required=booster",
    }
    _start(client, starter, module="writing", slug="writing-1")


def test_kill_switch_returns_503(client, services, make_user):
    headers = make_user("m1", plan="master")
    services.flags.set_flag("writing_attempts", True)
    resp = client.post("/writing/attempts/start", json={"testSlug": "writing-1"}, headers=headers)
    assert resp.status_code == 503
    assert resp.json()["flag"] == "writing_attempts"

    services.flags.set_flag("writing_attempts", False)
    _start(client, headers, module="writing", slug="writing-1")


def test_mock_quota_over_http(client, make_user):
    headers = make_user("u1")
    _start(client, headers, mode="mock")
    resp = client.post("/listening/attempts/start", json={"testSlug": "listening-20", "mode": "mock"}, headers=headers)
    assert resp.status_code == 402
    assert resp.json()["quota"]["key"] == "dailyMocks"
    assert resp.json()["upgradePlan"] == "starter"


def test_letting_a_mock_run_out_does_not_reset_the_quota(client, clock, make_user):
    headers = make_user("u1")
    first = _start(client, headers, mode="mock")
    clock.advance(3 * 3600)
    resp = client.post("/listening/attempts/start", json={"testSlug": "listening-40", "mode": "mock"}, headers=headers)
    assert resp.status_code == 402
    assert resp.json()["quota"]["key"] == "dailyMocks"

    clock.advance(24 * 3600)
    again = _start(client, headers, mode="mock")
    assert again["attemptId"] != first["attemptId"] and not again["resumed"]


def test_free_module_kill_switch_is_reported(tmp_path, caplog):
    settings = make_settings(tmp_path, kill_switches=("listening_attempts", "writing_attempts"))
    with caplog.at_level(logging.WARNING, logger="api.app"):
        create_app(settings)
    warned = [r.getMessage() for r in caplog.records if "has no effect" in r.getMessage()]
    assert warned == ["kill switch listening_attempts has no effect: listening routes are free and skip the flag check"]


def test_evaluation_endpoint(client, make_user):
    headers = make_user("b1", plan="booster")
    aid = _start(client, headers, module="speaking", slug="speaking-1")["attemptId"]
    submitted = client.post(
        "/speaking/attempts/submit",
        json={"attemptId": aid, "elapsedSeconds": 700, "answers": [{"questionId": "part1", "value": "audio-1"}]},
        headers=headers,
    ).json()
    assert submitted["bandScore"] is None

    payload = {"criteria": {"FC": 6, "LR": 6.5, "GRA": 6, "P": 7}}
    assert client.post(f"/attempts/{aid}/evaluation", json=payload).status_code == 401
    wrong = client.post(f"/attempts/{aid}/evaluation", json=payload, headers={"X-Worker-Secret": "guess"})
    assert wrong.status_code == 401

    ok = client.post(f"/attempts/{aid}/evaluation", json=payload, headers={"X-Worker-Secret": WORKER_SECRET})
    assert ok.status_code == 200, ok.text
    assert ok.json()["bandScore"] == 6.5

    again = client.post(f"/attempts/{aid}/evaluation", json=payload, headers={"X-Worker-Secret": WORKER_SECRET})
    assert again.status_code == 409

    events = [n["eventKey"] for n in client.get("/notifications", headers=headers).json()["notifications"]]
    assert sorted(events) == ["attempt_evaluated", "attempt_submitted"]


def test_evaluation_rejects_bad_criteria(client, make_user):
    headers = make_user("s1", plan="starter")
    aid = _start(client, headers, module="writing", slug="writing-1")["attemptId"]
    client.post("/writing/attempts/submit", json={"attemptId": aid, "elapsedSeconds": 10}, headers=headers)
    only_task2 = {"task2": {"TR": 7, "CC": 7, "LR": 7, "GRA": 7}}
    resp = client.post(f"/attempts/{aid}/evaluation", json=only_task2, headers={"X-Worker-Secret": WORKER_SECRET})
    assert resp.status_code == 400
    out_of_range = {"task1": {"TR": 12, "CC": 7, "LR": 7, "GRA": 7}, "task2": only_task2["task2"]}
    resp = client.post(f"/attempts/{aid}/evaluation", json=out_of_range, headers={"X-Worker-Secret": WORKER_SECRET})
    assert resp.status_code == 400


def test_plan_changed_webhook(client, services, make_user):
    headers = make_user("u1", plan="free")
    body = {"userId": "u1", "plan": "rocket", "eventId": "evt_1"}
    assert client.post("/webhooks/plan-changed", json=body).status_code == 401

    hook = {"X-Webhook-Secret": WEBHOOK_SECRET}
    first = client.post("/webhooks/plan-changed", json=body, headers=hook)
    assert first.status_code == 200
    assert first.json() == {"ok": True, "plan": "starter", "notification": "queued"}
    replay = client.post("/webhooks/plan-changed", json=body, headers=hook)
    assert replay.json()["notification"] == "duplicate"
    assert services.notifications.count_by_key("plan_changed:evt_1") == 1

    # the new plan unlocks writing
    _start(client, headers, module="writing", slug="writing-1")

    unknown = client.post("/webhooks/plan-changed", json={"userId": "u1", "plan": "platinum"}, headers=hook)
    assert unknown.status_code == 400


def test_nudge_is_daily_and_staff_only_for_others(client, make_user):
    starter = make_user("s1", plan="starter")
    teacher = make_user("t1", plan="free", role="teacher")
    free = make_user("f1", plan="free")

    assert client.post("/notifications/nudge", json={}, headers=free).status_code == 402
    assert client.post("/notifications/nudge", json={"userId": "f1"}, headers=starter).status_code == 403

    first = client.post("/notifications/nudge", json={"userId": "f1", "message": "keep going"}, headers=teacher)
    assert first.json()["status"] == "queued"
    assert first.json()["idempotencyKey"].startswith("nudge:f1:")
    second = client.post("/notifications/nudge", json={"userId": "f1"}, headers=teacher)
    assert second.json()["status"] == "duplicate"

    notes = client.get("/notifications", headers=free).json()["notifications"]
    assert [n["payload"]["from"] for n in notes] == ["t1"]


def test_nudge_dedup_window_follows_the_clock(client, clock, make_user):
    teacher = make_user("t1", plan="free", role="teacher")
    make_user("f1", plan="free")

    def nudge():
        return client.post("/notifications/nudge", json={"userId": "f1"}, headers=teacher).json()

    first = nudge()
    assert first["idempotencyKey"] == "nudge:f1:2026-03-02"
    clock.advance(14 * 3600)
    assert nudge()["status"] == "duplicate"

    clock.advance(2 * 3600)
    next_day = nudge()
    assert next_day["status"] == "queued"
    assert next_day["idempotencyKey"] == "nudge:f1:2026-03-03"
