"""Shared fixtures: in-memory database, seeded organization, GitHub and oracle fakes."""
from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bountyscore.classifier import (
    ClassificationRequest,
    ClassificationResult,
    LLMCallError,
    parse_verdict,
)
from bountyscore.config import Settings
from bountyscore.db import seed_organization
from bountyscore.github import GitHubClient, StaticTokenProvider
from bountyscore.models import Base, Component, GithubConnection, Organization, Repository
from bountyscore.utils import utcnow

INSTALLATION_ID = 42
GITHUB_REPO_ID = 1001
REPO_NAME = "acme/widgets"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(SessionLocal) -> Session:
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_path=tmp_path / "test.db",
        github_api_url="https://api.github.test",
        webhook_secret="topsecret",
        allow_unsigned_webhooks=False,
        request_delay_seconds=0.0,
        llm_timeout_seconds=5.0,
        ruleset_seed_file=None,
    )


def seed_acme(session: Session) -> tuple[Organization, Repository]:
    org = Organization(slug="acme", name="Acme")
    session.add(org)
    session.flush()
    seed_organization(session, org, Settings(ruleset_seed_file=None))
    session.add(Component(org_id=org.id, key="CORE", name="Core engine", multiplier=2.0))
    session.add(GithubConnection(
        org_id=org.id, installation_type="app", github_installation_id=INSTALLATION_ID, is_active=True,
    ))
    repo = Repository(org_id=org.id, github_repo_id=GITHUB_REPO_ID, full_name=REPO_NAME)
    session.add(repo)
    session.commit()
    return org, repo


@pytest.fixture()
def acme(session) -> tuple[Organization, Repository]:
    return seed_acme(session)


# ---------------------------------------------------------------------------
# GitHub payloads and fake API
# ---------------------------------------------------------------------------


def gh_time(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def make_pull(
    number: int,
    *,
    merged_at: datetime | None = None,
    merged: bool = True,
    login: str = "alice",
    user_id: int = 501,
    title: str | None = None,
    body: str | None = "Fixes #12",
    **extra: Any,
) -> dict[str, Any]:
    if merged and merged_at is None:
        merged_at = utcnow() - timedelta(days=1)
    if not merged:
        merged_at = None
    pull = {
        "id": 90_000 + number,
        "number": number,
        "title": title or f"PR {number}",
        "body": body,
        "state": "closed",
        "merged": merged,
        "merged_at": gh_time(merged_at) if merged_at else None,
        "created_at": gh_time(utcnow() - timedelta(days=3)),
        "user": {"id": user_id, "login": login, "avatar_url": f"https://avatars.test/{login}"},
        "head": {"sha": f"head{number}"},
        "base": {"sha": f"base{number}"},
        "html_url": f"https://github.test/{REPO_NAME}/pull/{number}",
    }
    pull.update(extra)
    return pull


class FakeGitHub:
    """Routes the handful of GitHub endpoints the pipeline calls."""

    def __init__(
        self,
        pulls: list[dict[str, Any]] | None = None,
        files: dict[int, list[dict[str, Any]]] | None = None,
        fail_files: bool = False,
        fail_comments: bool = False,
    ):
        self.pulls = pulls or []
        self.files = files or {}
        self.fail_files = fail_files
        self.fail_comments = fail_comments
        self.requests: list[httpx.Request] = []
        self.comments: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path == f"/repos/{REPO_NAME}/pulls":
            page = int(request.url.params.get("page", "1"))
            per_page = int(request.url.params.get("per_page", "30"))
            return httpx.Response(200, json=self.pulls[(page - 1) * per_page: page * per_page])
        m = re.fullmatch(rf"/repos/{REPO_NAME}/pulls/(\d+)/files", path)
        if m and request.method == "GET":
            if self.fail_files:
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json=self.files.get(int(m.group(1)), []))
        m = re.fullmatch(rf"/repos/{REPO_NAME}/issues/(\d+)/comments", path)
        if m and request.method == "POST":
            if self.fail_comments:
                return httpx.Response(403, json={"message": "Resource not accessible by integration"})
            self.comments.append({"number": int(m.group(1)), **json.loads(request.content)})
            return httpx.Response(201, json={"id": len(self.comments)})
        return httpx.Response(404, json={"message": "Not Found"})

    def client(self, settings: Settings) -> GitHubClient:
        return GitHubClient(
            StaticTokenProvider("test-token"), settings=settings, transport=httpx.MockTransport(self.handler),
        )

    @property
    def list_calls(self) -> int:
        return sum(1 for r in self.requests if r.method == "GET" and r.url.path.endswith("/pulls"))


@pytest.fixture()
def fake_github() -> FakeGitHub:
    return FakeGitHub(files={
        1: [{"filename": "src/core.py", "status": "modified", "additions": 3, "deletions": 1,
             "patch": "@@ -1 +1 @@\n-bug\n+fix"}],
    })


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------


def verdict_json(
    component: str = "CORE",
    severity: str = "P1",
    eligible: bool = True,
    **overrides: Any,
) -> str:
    data = {
        "primary_component_key": component,
        "severity_key": severity,
        "eligibility": {"issue": eligible, "fix_implementation": True, "pr_linked": True, "tests": True},
        "justification_component": "Touches the core engine.",
        "justification_severity": "Crash for many users.",
        "impact_summary": "Fixes a crash on startup.",
    }
    data.update(overrides)
    return json.dumps(data)


class FakeClassifier:
    """Returns canned oracle text; raises for PR titles listed in *fail_titles*."""

    def __init__(self, text: str | None = None, fail_titles: set[str] | None = None):
        self.text = text if text is not None else verdict_json()
        self.fail_titles = fail_titles or set()
        self.calls: list[ClassificationRequest] = []

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        self.calls.append(request)
        for title in self.fail_titles:
            if f"Title: {title}\n" in request.pr_context:
                raise LLMCallError("oracle unavailable", retryable=True)
        return ClassificationResult(parse_verdict(self.text), self.text, "fake-model")
