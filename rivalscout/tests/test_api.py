"""HTTP-level tests for the FastAPI app using TestClient and an in-memory database."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from rivalscout.search import SearchResult
from rivalscout.services import create_run
from rivalscout.tests.fakes import FakeSearch, PageFetcher

STRIPE_URL = "https://stripe.com/pricing"
STRIPE_HTML = """<html><head><title>Stripe Pricing</title></head><body>
<h2>Starter</h2><p>$50/mo</p>
<p>SSO, webhooks and dashboards. Integrates with Slack.</p>
</body></html>"""


@pytest.fixture()
def client(session_factory, make_deps):
    """TestClient whose app, scheduler and pipeline all use the in-memory database and fakes."""
    from rivalscout.app import app, db_session, pipeline_deps

    def override_db_session():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    deps = make_deps(
        search=FakeSearch([SearchResult(title="Stripe Pricing", url=STRIPE_URL, snippet="Pricing", source="fake")]),
        fetch=PageFetcher({STRIPE_URL: STRIPE_HTML}),
    )
    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[pipeline_deps] = lambda: deps
    with patch("rivalscout.app.init_db"), \
         patch("rivalscout.app.get_session_factory", return_value=session_factory):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


class TestProjectEndpoints:
    def test_create_project_sanitizes_input(self, client, user):
        resp = client.post("/api/projects", json={
            "name": "  <b>Acme</b> Pay ",
            "user_id": user.id,
            "industry": "Fintech",
            "keywords": ["<i>payouts</i>", "   "],
            "features": ["SSO", "Single Sign-On"],
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "Acme Pay"
        assert body["keywords"] == ["payouts"]
        assert body["features"] == ["Single Sign On"]

        fetched = client.get(f"/api/projects/{body['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["user_id"] == user.id

    def test_unknown_field_rejected(self, client):
        resp = client.post("/api/projects", json={"name": "Acme", "pricing": "cheap"})
        assert resp.status_code == 422

    def test_blank_name_rejected(self, client):
        resp = client.post("/api/projects", json={"name": "<p></p>"})
        assert resp.status_code == 422

    def test_unknown_user(self, client):
        resp = client.post("/api/projects", json={"name": "Acme", "user_id": 999})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "User not found"

    def test_missing_project(self, client):
        assert client.get("/api/projects/999").status_code == 404


class TestRunEndpoints:
    def test_trigger_run_completes_in_background(self, client, project, user):
        resp = client.post(f"/api/projects/{project.id}/runs")
        assert resp.status_code == 202
        run_id = resp.json()["id"]
        assert resp.json()["status"] == "NEW"

        run = client.get(f"/api/runs/{run_id}").json()
        assert run["status"] == "COMPLETE"
        assert run["completed_at"] is not None

        logs = client.get(f"/api/runs/{run_id}/logs").json()
        assert logs[-1] == "Email notification sent to owner@acmepay.test"

        findings = client.get(f"/api/runs/{run_id}/findings").json()
        assert findings and all({"kind", "text", "confidence"} <= set(f) for f in findings)

        report = client.get(f"/api/runs/{run_id}/report").json()
        assert report["headline"] == "Acme Pay Competitive Report"
        assert report["format"] == "MARKDOWN"

        matrix = client.get(f"/api/runs/{run_id}/matrix.csv")
        assert matrix.headers["content-type"].startswith("text/csv")
        assert matrix.text.splitlines()[0] == "Feature,Stripe"

        runs = client.get(f"/api/projects/{project.id}/runs").json()
        assert [r["id"] for r in runs] == [run_id]
        assert client.get(f"/api/users/{user.id}/credits").json() == {"limit": 10, "used": 1, "remaining": 9}

    def test_trigger_run_without_credits(self, client, session, project, user):
        user.credits_used = user.credit_limit
        session.commit()

        resp = client.post(f"/api/projects/{project.id}/runs")

        assert resp.status_code == 402
        assert client.get(f"/api/projects/{project.id}/runs").json() == []

    def test_skip_only_new_runs(self, client, session, project):
        run = create_run(session, project.id)

        first = client.post(f"/api/runs/{run.id}/skip")
        assert first.status_code == 200
        assert first.json()["status"] == "SKIPPED"

        again = client.post(f"/api/runs/{run.id}/skip")
        assert again.status_code == 409

    def test_report_missing(self, client, run):
        resp = client.get(f"/api/runs/{run.id}/report")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Report not found"

    def test_empty_matrix(self, client, run):
        assert client.get(f"/api/runs/{run.id}/matrix.csv").text == "Feature\n"

    def test_unknown_run(self, client):
        assert client.get("/api/runs/999").status_code == 404
        assert client.get("/api/runs/999/logs").status_code == 404


class TestMonitoringEndpoints:
    def test_schedule_list_cancel(self, client, project, user):
        resp = client.post(f"/api/projects/{project.id}/monitoring", json={"user_id": user.id})
        assert resp.status_code == 201
        task = resp.json()
        assert task["type"] == "AUTO_RERUN"
        assert task["project_id"] == project.id
        assert task["user_id"] == user.id
        assert task["scheduled_for"].endswith("T09:00:00")

        assert [t["id"] for t in client.get("/api/tasks").json()] == [task["id"]]

        assert client.delete(f"/api/projects/{project.id}/monitoring").json() == {"cancelled": 1}
        assert client.get("/api/tasks").json() == []

    def test_unknown_user(self, client, project):
        resp = client.post(f"/api/projects/{project.id}/monitoring", json={"user_id": 999})
        assert resp.status_code == 404

    def test_scheduler_unavailable(self, client):
        scheduler = client.app.state.scheduler
        client.app.state.scheduler = None
        try:
            assert client.get("/api/tasks").status_code == 503
        finally:
            client.app.state.scheduler = scheduler


class TestAdminEndpoints:
    def test_credits_for_unknown_user(self, client):
        assert client.get("/api/users/999/credits").status_code == 404

    def test_settings_round_trip(self, client, monkeypatch):
        monkeypatch.delenv("AI_PROVIDER", raising=False)
        resp = client.put("/api/settings", json={"staleness_days": 30})
        assert resp.status_code == 200
        assert resp.json()["staleness_days"] == 30
        assert client.get("/api/settings").json()["staleness_days"] == 30

    def test_settings_rejects_provider_without_key(self, client, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        resp = client.put("/api/settings", json={"ai_provider": "openai"})
        assert resp.status_code == 400
        assert "API key" in resp.json()["detail"]

    def test_settings_rejects_unknown_keys(self, client):
        assert client.put("/api/settings", json={"colour": "blue"}).status_code == 422
