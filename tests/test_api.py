"""HTTP API の結合テスト（TestClient + 一時 SQLite）。"""

import asyncio
import importlib
import json
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

USER = {"X-User-Id": "learner-1"}
ATTEMPT = "Es war ein Abend im Oktober, als der Wind vom Meer her kam."


def _reload_backend_app(monkeypatch: pytest.MonkeyPatch, *, strict: bool, db_path: Path):
    """テスト用に stylo.* モジュールを再読み込みしてクリーンな状態を準備する補助関数。"""

    backend_root = Path(__file__).resolve().parents[1] / "apps" / "backend"
    if str(backend_root) not in sys.path:
        sys.path.insert(0, str(backend_root))

    monkeypatch.setenv("STRICT_MODE", "true" if strict else "false")
    monkeypatch.setenv("STYLO_DB_PATH", str(db_path))
    monkeypatch.setenv("GRADER_PROVIDER", "local")

    # stylo.* を一度破棄して設定と永続層のキャッシュをリセット
    for name in list(sys.modules.keys()):
        if name == "stylo" or name.startswith("stylo."):
            sys.modules.pop(name)

    importlib.import_module("stylo.config")
    importlib.import_module("stylo.store")
    return importlib.import_module("stylo.main")


class _ScriptedGrader:
    """Returns scripted payloads (or raises scripted errors); the last entry repeats."""

    def __init__(self, output_model, script) -> None:
        self._output_model = output_model
        self.script = list(script)
        self.calls = 0

    async def grade(self, request):
        self.calls += 1
        step = self.script[min(self.calls, len(self.script)) - 1]
        if isinstance(step, BaseException):
            raise step
        return self._output_model.model_validate(step)


class _HangingGrader:
    """Never finishes grading; `started` is set once a call is in flight."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self._never = asyncio.Event()
        self.calls = 0

    async def grade(self, request):
        self.calls += 1
        self.started.set()
        await self._never.wait()


def _payload(accuracy: float) -> dict:
    return {
        "overall_accuracy": accuracy,
        "scores": {"structure": accuracy, "vocabulary": accuracy, "rhythm": accuracy, "tone": accuracy},
        "feedback": "Rhythm is close; vocabulary slightly modern.",
    }


def _build_env(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    *,
    script=None,
    grader=None,
    quota_capacity: int = 10,
):
    main = _reload_backend_app(monkeypatch, strict=False, db_path=tmp_path / "api.sqlite3")
    errors = importlib.import_module("stylo.errors")
    training = importlib.import_module("stylo.models.training")
    store_mod = importlib.import_module("stylo.store")
    flows = importlib.import_module("stylo.flows.submission")
    quota_mod = importlib.import_module("stylo.quota")
    retry = importlib.import_module("stylo.retry")
    scheduler = importlib.import_module("stylo.scheduler")
    train = importlib.import_module("stylo.routers.train")

    store = store_mod.store
    store.add_item(
        "storm-001",
        "Der Schimmelreiter",
        "Was ich zu berichten beabsichtige, ist mir vor reichlich einem halben Jahrhundert bekannt geworden.",
        collection="storm",
        metrics={"sentence_length_avg": 16.0},
    )
    store.add_item("kafka-001", "Die Verwandlung", "Als Gregor Samsa eines Morgens erwachte.", collection="kafka")

    if callable(script):
        script = script(errors)
    if grader is None:
        grader = _ScriptedGrader(training.GraderOutput, script or [_payload(85.0)])
    quota = quota_mod.QuotaService(capacity=quota_capacity, interval_seconds=3600)

    async def _no_sleep(_delay: float) -> None:
        return None

    coordinator = flows.SubmissionCoordinator(
        store=store,
        grader=grader,
        quota=quota,
        scheduler=scheduler.RetentionScheduler(scheduler.SchedulerParameters(enable_fuzz=False)),
        retry_policy=retry.RetryPolicy(max_attempts=3, base_delay_seconds=1.0),
        idempotency_window=timedelta(seconds=60),
        sleep=_no_sleep,
    )
    train.set_coordinator(coordinator)
    return SimpleNamespace(
        app=main.app,
        client=TestClient(main.app),
        store=store,
        grader=grader,
        errors=errors,
        quota=quota,
    )


def _submit(client: TestClient, token: str = "tok-1", text: str = ATTEMPT, item_id: str = "storm-001"):
    return client.post(
        "/api/train/submit",
        json={"item_id": item_id, "candidate_text": text, "idempotency_token": token},
        headers=USER,
    )


def test_health(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    resp = env.client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"]


def test_request_id_is_propagated(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    resp = env.client.get("/healthz", headers={"X-Request-ID": "req-abc-123"})

    assert resp.headers["X-Request-ID"] == "req-abc-123"


def test_submit_returns_grade_and_schedule(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    resp = _submit(env.client)

    assert resp.status_code == 200
    assert "Idempotent-Replayed" not in resp.headers
    body = resp.json()
    assert body["accuracy"] == 85.0
    assert body["sub_scores"]["tone"] == 85.0
    assert body["schedule"]["grade"] == 3
    assert body["schedule"]["interval_days"] == 6
    assert body["schedule"]["message"] == "Good: next review in 6 days"
    assert env.store.get_card("learner-1", "storm-001").reps == 1


def test_duplicate_submit_is_replayed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    first = _submit(env.client, token="tok-1")
    second = _submit(env.client, token="tok-1")
    third = _submit(env.client, token="tok-2")

    assert second.status_code == 200
    assert second.headers["Idempotent-Replayed"] == "true"
    assert second.json() == first.json()
    assert third.headers["Idempotent-Replayed"] == "true"
    assert env.grader.calls == 1
    assert env.store.get_card("learner-1", "storm-001").reps == 1


def test_token_reuse_with_other_text_is_400(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)
    _submit(env.client, token="tok-1")

    resp = _submit(env.client, token="tok-1", text="Ein ganz anderer Versuch.")

    assert resp.status_code == 400
    assert resp.json()["detail"]["reason_code"] == "VALIDATION_ERROR"


def test_submit_validation_errors_are_400(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    missing = env.client.post("/api/train/submit", json={"item_id": "storm-001"}, headers=USER)
    blank = _submit(env.client, text="   ")
    too_long = _submit(env.client, text="x" * 10_001)

    for resp in (missing, blank, too_long):
        assert resp.status_code == 400
        assert resp.json()["detail"]["reason_code"] == "VALIDATION_ERROR"
    assert env.grader.calls == 0


def test_submit_requires_user(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    resp = env.client.post(
        "/api/train/submit",
        json={"item_id": "storm-001", "candidate_text": ATTEMPT, "idempotency_token": "t"},
    )

    assert resp.status_code == 401
    assert resp.json()["detail"]["reason_code"] == "UNAUTHENTICATED"


def test_submit_unknown_item_is_404(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    resp = _submit(env.client, item_id="missing")

    assert resp.status_code == 404
    assert resp.json()["detail"]["reason_code"] == "NOT_FOUND"


def test_submit_quota_exhausted_is_429(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path, quota_capacity=1)
    assert _submit(env.client, token="tok-1").status_code == 200

    resp = _submit(env.client, token="tok-2", item_id="kafka-001")

    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "60"
    assert resp.json()["detail"]["reason_code"] == "QUOTA_EXCEEDED"


def test_grader_outage_is_503_and_nothing_is_saved(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path, script=lambda errors: [errors.GraderUnavailable()])

    resp = _submit(env.client)

    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "60"
    assert resp.json()["detail"]["message"] == (
        "Grading is temporarily unavailable, please resubmit your text"
    )
    assert env.grader.calls == 3
    assert env.store.get_card("learner-1", "storm-001") is None
    assert env.quota.remaining("learner-1") == 10


def test_persistence_failure_is_500(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    def broken_commit(**kwargs):
        raise env.errors.PersistenceError()

    monkeypatch.setattr(env.store, "commit_submission", broken_commit)

    resp = _submit(env.client)

    assert resp.status_code == 500
    assert resp.json()["detail"]["reason_code"] == "PERSISTENCE_ERROR"


def test_next_prefers_new_items_then_due(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    fresh = env.client.get("/api/train/next", params={"collection": "storm"}, headers=USER)
    assert fresh.status_code == 200
    assert fresh.json()["status"] == "item"
    assert fresh.json()["is_new"] is True
    assert fresh.json()["item"]["id"] == "storm-001"

    _submit(env.client)
    caught_up = env.client.get("/api/train/next", params={"collection": "storm"}, headers=USER)
    assert caught_up.json()["status"] == "caught_up"
    assert caught_up.json()["message"]

    excluded = env.client.get(
        "/api/train/next", params={"exclude_item_id": "kafka-001", "collection": "kafka"}, headers=USER
    )
    assert excluded.json()["status"] == "exhausted"


def test_settings_round_trip_and_linear_mode(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    assert env.client.get("/api/train/settings", headers=USER).json() == {"study_mode": "spaced"}
    updated = env.client.put("/api/train/settings", json={"study_mode": "linear"}, headers=USER)
    assert updated.status_code == 200
    assert env.client.get("/api/train/settings", headers=USER).json() == {"study_mode": "linear"}

    invalid = env.client.put("/api/train/settings", json={"study_mode": "random"}, headers=USER)
    assert invalid.status_code == 400

    _submit(env.client)
    _submit(env.client, token="tok-2", item_id="kafka-001")
    done = env.client.get("/api/train/next", headers=USER)
    assert done.json()["status"] == "all_attempted"


def test_stats_and_history(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)

    empty = env.client.get("/api/train/stats", headers=USER).json()
    assert empty["total_studied"] == 0
    assert empty["by_state"] == {"new": 0, "learning": 0, "review": 0, "relearning": 0}

    _submit(env.client, token="tok-1")
    _submit(env.client, token="tok-2", item_id="kafka-001")

    stats = env.client.get("/api/train/stats", headers=USER).json()
    assert stats["total_studied"] == 2
    assert stats["due_now"] == 0
    assert stats["average_reps"] == 1
    assert stats["by_state"]["learning"] == 2

    history = env.client.get("/api/train/history", params={"limit": 1}, headers=USER)
    assert history.status_code == 200
    items = history.json()["items"]
    assert len(items) == 1
    assert items[0]["item_id"] == "kafka-001"
    assert items[0]["result"]["schedule"]["grade"] == 3

    assert env.client.get("/api/train/history", params={"limit": 0}, headers=USER).status_code == 400


def test_metrics_counts_submission_outcomes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    env = _build_env(monkeypatch, tmp_path)
    _submit(env.client, token="tok-1")
    _submit(env.client, token="tok-1")

    body = env.client.get("/metrics").json()

    assert body["submissions"]["committed"] == 1
    assert body["submissions"]["replayed"] == 1
    assert "/api/train/submit" in body["paths"]


def test_client_disconnect_during_grading_returns_204_without_side_effects(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
):
    grader = _HangingGrader()
    env = _build_env(monkeypatch, tmp_path, grader=grader)
    body = json.dumps(
        {"item_id": "storm-001", "candidate_text": ATTEMPT, "idempotency_token": "tok-1"}
    ).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/train/submit",
        "raw_path": b"/api/train/submit",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
            (b"x-user-id", b"learner-1"),
        ],
        "client": ("203.0.113.5", 50000),
        "server": ("testserver", 80),
    }
    messages: list[dict] = []
    body_sent = False

    async def receive():
        nonlocal body_sent
        if not body_sent:
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        # the client goes away once grading is in flight
        await grader.started.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    asyncio.run(asyncio.wait_for(env.app(scope, receive, send), timeout=10))

    start = next(m for m in messages if m["type"] == "http.response.start")
    assert start["status"] == 204
    assert b"x-request-id" in {name.lower() for name, _ in start["headers"]}
    assert grader.calls == 1
    assert env.store.get_card("learner-1", "storm-001") is None
    assert env.store.list_recent_submissions("learner-1") == []
    assert env.quota.remaining("learner-1") == 10
