from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi.testclient import TestClient

import autosurveyagent.core.run_manager as run_manager_module
from autosurveyagent.app import app
from autosurveyagent.core.survey_types import EngineEvent, RunReport

TERMINAL = ("success", "blocked", "error")


class _FakeRunner:
    def __init__(self, run_input):
        self.input = run_input

    async def run(self) -> RunReport:
        started = datetime.now(timezone.utc)
        self.input.on_event(
            EngineEvent(type="log", level="info", message=f"Opening survey: {self.input.survey_url}")
        )
        self.input.on_event(EngineEvent(type="status", status="success", message="Done."))
        return RunReport(
            run_id=self.input.run_id,
            survey_url=self.input.survey_url,
            status="success",
            started_at=started,
            finished_at=datetime.now(timezone.utc),
            steps=[],
            message="Done.",
            artifacts_dir=str(self.input.artifacts_dir),
        )


def _wait_terminal(client: TestClient, run_id: str) -> dict:
    for _ in range(200):
        run = client.get(f"/api/runs/{run_id}").json()["run"]
        if run["status"] in TERMINAL:
            return run
        time.sleep(0.01)
    raise AssertionError(f"run {run_id} did not finish")


def _body(**overrides) -> dict:
    body = {
        "survey_url": "https://acme.typeform.com/to/abc",
        "instructions": "Answer yes",
        "provider": "openai",
        "api_key": "sk-test",
    }
    body.update(overrides)
    return body


def test_health(isolated_db):
    with TestClient(app) as client:
        resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_providers_report_env_keys(isolated_db, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    monkeypatch.delenv("XAI_API_KEY", raising=False)
    with TestClient(app) as client:
        data = client.get("/api/llm/providers").json()
    assert data["ok"] is True
    providers = {p["provider"]: p for p in data["providers"]}
    assert len(providers) == 7
    assert providers["openai"]["api_key_env"] == "OPENAI_API_KEY"
    assert providers["openai"]["has_env_key"] is True
    assert providers["xai"]["has_env_key"] is False


def test_create_run_and_query_it(isolated_db, monkeypatch):
    monkeypatch.setattr(run_manager_module.run_manager, "runner_factory", _FakeRunner)

    with TestClient(app) as client:
        resp = client.post("/api/runs", json=_body(strategy="random", speed_mode="reliable"))
        assert resp.status_code == 202
        created = resp.json()
        assert created["ok"] is True
        assert created["status"] == "queued"
        run_id = created["run_id"]

        run = _wait_terminal(client, run_id)
        assert run["status"] == "success"
        assert run["report"]["message"] == "Done."

        listed = client.get("/api/runs").json()["runs"]
        assert run_id in [r["run_id"] for r in listed]

        events = client.get(f"/api/runs/{run_id}/events").json()["events"]
        assert [e["type"] for e in events] == ["log", "status"]

        logs = client.get(f"/api/runs/{run_id}/logs").json()["logs"]
        assert logs[0]["message"] == "Opening survey: https://acme.typeform.com/to/abc"

        history = client.get("/api/runs/history", params={"limit": 5}).json()["runs"]
        row = next(r for r in history if r["id"] == run_id)
        assert row["status"] == "success"
        assert row["strategy"] == "random"
        assert row["provider"] == "openai"


def test_create_run_uses_env_key_when_body_omits_it(isolated_db, monkeypatch):
    monkeypatch.setattr(run_manager_module.run_manager, "runner_factory", _FakeRunner)
    monkeypatch.setenv("GROQ_API_KEY", "env-key")

    body = _body(provider="groq")
    body.pop("api_key")
    with TestClient(app) as client:
        resp = client.post("/api/runs", json=body)
        assert resp.status_code == 202
        _wait_terminal(client, resp.json()["run_id"])


def test_create_run_without_key_is_rejected(isolated_db, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    body = _body(provider="anthropic")
    body.pop("api_key")
    with TestClient(app) as client:
        resp = client.post("/api/runs", json=body)
    assert resp.status_code == 400
    data = resp.json()
    assert data["ok"] is False
    assert "ANTHROPIC_API_KEY" in data["error"]


def test_create_run_validation(isolated_db):
    with TestClient(app) as client:
        assert client.post("/api/runs", json=_body(survey_url="ftp://x")).status_code == 422
        assert client.post("/api/runs", json=_body(provider="pigeon")).status_code == 422
        assert client.post("/api/runs", json=_body(instructions="")).status_code == 422
        assert client.post("/api/runs", json=_body(max_steps=0)).status_code == 422
        assert client.post("/api/runs", json=_body(strategy="best")).status_code == 422
        bad_ruleset = _body(strategy="ruleset", ruleset={"multi_select": {"mode": "some"}})
        assert client.post("/api/runs", json=bad_ruleset).status_code == 422
        misspelled = _body(strategy="ruleset", ruleset={"multi_selct": {"mode": "all"}})
        assert client.post("/api/runs", json=misspelled).status_code == 422


def test_unknown_run_returns_404(isolated_db):
    with TestClient(app) as client:
        resp = client.get("/api/runs/does-not-exist")
        assert resp.status_code == 404
        assert resp.json() == {"ok": False, "error": "Run not found."}
        assert client.get("/api/runs/does-not-exist/events").status_code == 404
        assert client.get("/api/runs/does-not-exist/logs").json() == {"ok": True, "logs": []}


def test_websocket_handshake_and_subscribe(isolated_db):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "ready"}

            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid WS payload."}

            ws.send_json({"type": "subscribe", "run_id": "run-42"})
            assert ws.receive_json() == {"type": "subscribed", "run_id": "run-42"}
