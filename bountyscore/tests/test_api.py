from __future__ import annotations

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from bountyscore import app as app_module
from bountyscore.github import sign_payload
from bountyscore.models import Component, Evaluation, PullRequest
from bountyscore.tests.conftest import (
    GITHUB_REPO_ID,
    INSTALLATION_ID,
    REPO_NAME,
    FakeClassifier,
    make_pull,
)
from bountyscore.utils import utcnow


@pytest.fixture()
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture()
def client(session, acme, settings, fake_github, classifier):
    app = app_module.app

    def override_session():
        yield session

    app.dependency_overrides[app_module.db_session] = override_session
    app.dependency_overrides[app_module.app_settings] = lambda: settings
    app.dependency_overrides[app_module.get_classifier] = lambda: classifier
    app.dependency_overrides[app_module.github_factory] = lambda: (lambda s, org: fake_github.client(settings))
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _event(number: int = 1, merged: bool = True, repo_id: int = GITHUB_REPO_ID,
           installation: int | None = INSTALLATION_ID, action: str = "closed") -> dict:
    payload = {
        "action": action,
        "pull_request": make_pull(number, merged=merged),
        "repository": {"id": repo_id, "full_name": REPO_NAME},
    }
    if installation is not None:
        payload["installation"] = {"id": installation}
    return payload


def _post(client: TestClient, payload, event: str = "pull_request", secret: str = "topsecret",
          raw: bytes | None = None):
    body = raw if raw is not None else json.dumps(payload).encode()
    return client.post(
        "/api/github/webhooks",
        content=body,
        headers={
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": "d-1",
            "X-Hub-Signature-256": sign_payload(secret, body),
            "Content-Type": "application/json",
        },
    )


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestWebhook:
    def test_health(self, client):
        assert client.get("/api/github/webhooks").json()["ok"] is True

    def test_bad_signature_is_401(self, client, session):
        resp = _post(client, _event(), secret="wrong")
        assert resp.status_code == 401
        assert _count(session, PullRequest) == 0

    def test_missing_secret_rejects_unless_allowed(self, client, settings):
        settings.webhook_secret = ""
        assert _post(client, {"zen": "hi"}, event="ping").status_code == 401
        settings.allow_unsigned_webhooks = True
        assert _post(client, {"zen": "hi"}, event="ping").status_code == 200

    def test_ping(self, client):
        resp = _post(client, {"zen": "Keep it simple"}, event="ping")
        assert resp.status_code == 200
        assert resp.json()["message"] == "pong"

    def test_malformed_json_is_400(self, client):
        assert _post(client, None, raw=b"{not json").status_code == 400

    @pytest.mark.parametrize("pr_data", ["not-an-object", [1, 2]])
    def test_non_object_pull_request_is_400(self, client, pr_data):
        payload = {"action": "closed", "pull_request": pr_data}
        assert _post(client, payload).status_code == 400

    def test_other_events_are_ignored(self, client):
        resp = _post(client, {"ref": "refs/heads/main"}, event="push")
        assert resp.json()["status"] == "ignored"

    def test_closed_without_merge_is_ignored(self, client, session, classifier):
        resp = _post(client, _event(merged=False))
        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"
        assert classifier.calls == []
        assert _count(session, PullRequest) == 0

    def test_untracked_repository_is_ignored(self, client, classifier):
        resp = _post(client, _event(repo_id=999))
        assert resp.json()["status"] == "ignored"
        assert classifier.calls == []

    def test_unknown_installation_is_ignored(self, client):
        assert _post(client, _event(installation=31337)).json()["status"] == "ignored"

    def test_merged_pr_is_processed_and_commented(self, client, session, fake_github):
        resp = _post(client, _event())
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "processed"
        assert data["delivery"] == "d-1"
        assert data["result"]["final_score"] == 100.0
        assert _count(session, Evaluation) == 1
        assert len(fake_github.comments) == 1

    def test_redelivery_keeps_one_evaluation(self, client, session):
        assert _post(client, _event()).status_code == 200
        assert _post(client, _event()).status_code == 200
        assert _count(session, PullRequest) == 1
        assert _count(session, Evaluation) == 1

    def test_oracle_failure_is_500(self, client, session):
        app_module.app.dependency_overrides[app_module.get_classifier] = lambda: FakeClassifier(fail_titles={"PR 1"})
        resp = _post(client, _event())
        assert resp.status_code == 500
        assert _count(session, PullRequest) == 1
        assert _count(session, Evaluation) == 0


# ---------------------------------------------------------------------------
# Pipeline endpoints
# ---------------------------------------------------------------------------


class TestPipeline:
    def test_sync_then_backfill(self, client, session, fake_github, classifier):
        fake_github.pulls = [make_pull(n) for n in range(1, 6)]
        resp = client.post("/api/orgs/acme/sync", json={"lookback_months": 3})
        assert resp.status_code == 200
        assert resp.json()["synced"] == 5
        assert classifier.calls == []

        unprocessed = client.get("/api/orgs/acme/unprocessed").json()
        assert unprocessed["total"] == 5

        summary = client.post("/api/orgs/acme/backfill", json={"limit": 2}).json()
        assert summary["processed"] == 2
        assert client.get("/api/orgs/acme/unprocessed").json()["total"] == 3
        assert len(client.get("/api/orgs/acme/evaluations").json()) == 2

        stats = client.get("/api/orgs/acme/stats").json()
        assert stats["pull_requests"] == 5
        assert stats["evaluated"] == 2
        assert stats["top_developers"][0]["login"] == "alice"

    def test_backfill_batches_and_pull_components(self, client, session, fake_github):
        fake_github.pulls = [make_pull(1), make_pull(2)]
        client.post("/api/orgs/acme/sync", json={})
        summary = client.post("/api/orgs/acme/backfill", json={}).json()

        batches = client.get("/api/orgs/acme/batches").json()
        assert [b["id"] for b in batches] == [summary["batch_id"]]
        assert (batches[0]["status"], batches[0]["processed"]) == ("completed", 2)

        pr_id = session.execute(select(PullRequest.id).where(PullRequest.number == 1)).scalar_one()
        components = client.get(f"/api/orgs/acme/pulls/{pr_id}/components").json()
        assert components == [{"component_id": components[0]["component_id"], "key": "OTHER",
                               "lines_changed": 0, "is_primary": True}]

    def test_unknown_org_is_404(self, client):
        assert client.get("/api/orgs/nobody/stats").status_code == 404

    def test_reprocess_single_pr(self, client, session, classifier):
        _post(client, _event())
        pr_id = session.execute(select(PullRequest.id)).scalar_one()
        resp = client.post(f"/api/orgs/acme/pulls/{pr_id}/process")
        assert resp.status_code == 200
        assert resp.json()["created"] is False
        assert len(classifier.calls) == 2
        assert _count(session, Evaluation) == 1


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_put_component_then_list(self, client):
        resp = client.put("/api/orgs/acme/components", json={"key": "UI", "name": "Frontend", "multiplier": 1.5})
        assert resp.status_code == 200
        keys = [c["key"] for c in client.get("/api/orgs/acme/components").json()]
        assert {"OTHER", "CORE", "UI"} <= set(keys)

    def test_negative_multiplier_rejected(self, client):
        assert client.put("/api/orgs/acme/components", json={"key": "UI", "multiplier": -1}).status_code == 422

    def test_other_cannot_be_deleted(self, client, session):
        other = session.execute(select(Component).where(Component.key == "OTHER")).scalar_one()
        assert client.delete(f"/api/orgs/acme/components/{other.id}").status_code == 409

    def test_other_multiplier_stays_one(self, client):
        resp = client.put("/api/orgs/acme/components", json={"key": "OTHER", "multiplier": 3.0})
        assert resp.json()["multiplier"] == 1.0

    def test_file_rules_add_list_delete(self, client, session):
        core = session.execute(select(Component).where(Component.key == "CORE")).scalar_one()
        resp = client.post(f"/api/orgs/acme/components/{core.id}/rules",
                           json={"match_type": "glob", "pattern": "src/*.py", "priority": 2})
        assert resp.status_code == 201
        rule_id = resp.json()["id"]
        assert [r["pattern"] for r in client.get("/api/orgs/acme/rules").json()] == ["src/*.py"]
        assert client.delete(f"/api/orgs/acme/rules/{rule_id}").json() == {"ok": True}
        assert client.get("/api/orgs/acme/rules").json() == []

    def test_invalid_regex_rule_is_422(self, client, session):
        core = session.execute(select(Component).where(Component.key == "CORE")).scalar_one()
        resp = client.post(f"/api/orgs/acme/components/{core.id}/rules",
                           json={"match_type": "regex", "pattern": "(unclosed"})
        assert resp.status_code == 422

    def test_component_used_by_evaluations_cannot_be_deleted(self, client, session):
        _post(client, _event())
        core = session.execute(select(Component).where(Component.key == "CORE")).scalar_one()
        assert client.delete(f"/api/orgs/acme/components/{core.id}").status_code == 409
        resp = client.put("/api/orgs/acme/components", json={"key": "CORE", "multiplier": 2.0, "is_active": False})
        assert (resp.json()["id"], resp.json()["is_active"]) == (core.id, False)

    def test_unused_component_is_deleted_with_its_rules(self, client, session):
        resp = client.put("/api/orgs/acme/components", json={"key": "UI", "multiplier": 1.5})
        ui_id = resp.json()["id"]
        client.post(f"/api/orgs/acme/components/{ui_id}/rules", json={"match_type": "suffix", "pattern": ".tsx"})
        assert client.delete(f"/api/orgs/acme/components/{ui_id}").json() == {"ok": True}
        assert client.get("/api/orgs/acme/rules").json() == []

    def test_severities_listed_in_order(self, client):
        keys = [s["key"] for s in client.get("/api/orgs/acme/severities").json()]
        assert keys == ["P0", "P1", "P2", "P3"]


# ---------------------------------------------------------------------------
# Programs and rewards
# ---------------------------------------------------------------------------


def _program(**overrides) -> dict:
    today = utcnow().date()
    data = {
        "name": "Q1 bounties",
        "program_type": "ranking",
        "period_type": "custom",
        "start_date": (today - timedelta(days=30)).isoformat(),
        "end_date": (today + timedelta(days=1)).isoformat(),
        "ranking_rewards": [{"rank": 1, "amount": 500}, {"rank": 2, "amount": 300}],
    }
    data.update(overrides)
    return data


class TestPrograms:
    def test_overlapping_tiers_are_422(self, client):
        resp = client.post("/api/orgs/acme/programs", json=_program(
            program_type="tier", ranking_rewards=[],
            tiers=[{"name": "Gold", "min_score": 400, "amount": 1000},
                   {"name": "Silver", "min_score": 200, "max_score": 450, "amount": 250}],
        ))
        assert resp.status_code == 422

    def test_custom_without_dates_is_422(self, client):
        assert client.post("/api/orgs/acme/programs", json=_program(start_date=None)).status_code == 422

    def test_draft_programs_cannot_commit_rewards(self, client):
        program = client.post("/api/orgs/acme/programs", json=_program()).json()
        assert program["status"] == "draft"
        assert client.post(f"/api/orgs/acme/programs/{program['id']}/rewards").status_code == 409

    def test_reward_lifecycle(self, client):
        assert _post(client, _event()).json()["status"] == "processed"
        program = client.post("/api/orgs/acme/programs", json=_program()).json()
        pid = program["id"]

        preview = client.get(f"/api/orgs/acme/programs/{pid}/rewards", params={"preview": "true"}).json()
        assert [(r["login"], r["rank"], r["amount"]) for r in preview] == [("alice", 1, 500.0)]

        assert client.patch(f"/api/orgs/acme/programs/{pid}", json={"status": "active"}).status_code == 200
        rewards = client.post(f"/api/orgs/acme/programs/{pid}/rewards").json()
        assert len(rewards) == 1
        reward_id = rewards[0]["id"]
        assert rewards[0]["payout_status"] == "pending"

        # Paying before approval is not allowed
        assert client.post(f"/api/rewards/{reward_id}/paid",
                           json={"payout_method": "wire", "payout_reference": "TX-1"}).status_code == 409
        assert client.post(f"/api/rewards/{reward_id}/approve").json()["payout_status"] == "approved"
        paid = client.post(f"/api/rewards/{reward_id}/paid", json={"payout_method": "wire", "payout_reference": "TX-1"})
        assert paid.json()["payout_status"] == "paid"
        assert client.post(f"/api/rewards/{reward_id}/reject", json={"reason": "dup"}).status_code == 409

        # Re-committing never overwrites a paid reward
        again = client.post(f"/api/orgs/acme/programs/{pid}/rewards").json()
        assert again[0]["payout_status"] == "paid"

    def test_status_transitions(self, client):
        pid = client.post("/api/orgs/acme/programs", json=_program()).json()["id"]
        assert client.patch(f"/api/orgs/acme/programs/{pid}", json={"status": "completed"}).status_code == 409
        assert client.patch(f"/api/orgs/acme/programs/{pid}", json={"status": "active"}).status_code == 200
        assert client.delete(f"/api/orgs/acme/programs/{pid}").status_code == 409
        assert client.patch(f"/api/orgs/acme/programs/{pid}", json={"status": "completed"}).status_code == 200

    def test_delete_draft(self, client):
        pid = client.post("/api/orgs/acme/programs", json=_program()).json()["id"]
        assert client.delete(f"/api/orgs/acme/programs/{pid}").json() == {"ok": True}
        assert client.get(f"/api/orgs/acme/programs/{pid}").status_code == 404
