from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from bountyscore import services
from bountyscore.classifier import Classifier, LLMClassifier
from bountyscore.config import Settings, get_settings
from bountyscore.db import init_db, session_generator
from bountyscore.github import GitHubAPIError, GitHubClient, NoActiveConnectionError, verify_signature
from bountyscore.models import (
    BountyProgram,
    BountyReward,
    Component,
    ComponentFileRule,
    Organization,
    PullRequest,
    Repository,
    SeverityLevel,
)
from bountyscore.rewards import ProgramConfigError
from bountyscore.schemas import (
    BackfillRequest,
    BatchOut,
    BatchSummary,
    ComponentIn,
    ComponentOut,
    EvaluationOut,
    FileRuleIn,
    FileRuleOut,
    MarkPaidRequest,
    ProgramCreate,
    ProgramStatusUpdate,
    PullRequestComponentOut,
    PullRequestEvent,
    RejectRequest,
    RewardOut,
    SeverityIn,
    SeverityOut,
    StatsOut,
    SyncRequest,
)
from bountyscore.scoring import ConfigurationError
from bountyscore.throttle import Throttle

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="bountyscore",
    version="0.1.0",
    description=(
        "Scores merged GitHub pull requests with an AI classifier and a deterministic "
        "rule engine, and turns the scores into bounty program payouts."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Webhooks", "description": "GitHub webhook receiver."},
        {"name": "Pipeline", "description": "Sync, backfill and single-PR processing."},
        {"name": "Configuration", "description": "Components and severity levels."},
        {"name": "Programs", "description": "Bounty programs and reward payouts."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def app_settings() -> Settings:
    return get_settings()


def get_classifier() -> Classifier:
    return LLMClassifier()


def get_throttle(settings: Settings = Depends(app_settings)) -> Throttle:
    return Throttle(settings.request_delay_seconds)


GitHubFactory = Callable[[Session, Organization], GitHubClient]


def github_factory(settings: Settings = Depends(app_settings)) -> GitHubFactory:
    return lambda session, org: services.github_client_for_org(session, org, settings)


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _org_or_404(session: Session, slug: str) -> Organization:
    org = services.get_org_by_slug(session, slug)
    if org is None:
        raise HTTPException(404, f"Organization '{slug}' not found")
    return org


def _program_or_404(session: Session, org: Organization, program_id: int) -> BountyProgram:
    program = _get_or_404(session, BountyProgram, program_id, "Program")
    if program.org_id != org.id:
        raise HTTPException(404, "Program not found")
    return program


def _ignored(reason: str, **extra: Any) -> dict[str, Any]:
    return {"ok": True, "status": "ignored", "message": reason, **extra}


# ---------------------------------------------------------------------------
# Routes: Webhooks
# ---------------------------------------------------------------------------


@app.get("/api/github/webhooks", tags=["Webhooks"], summary="Webhook endpoint health check")
async def webhook_health():
    return {"ok": True, "message": "GitHub webhook endpoint is ready"}


@app.post("/api/github/webhooks", tags=["Webhooks"],
          summary="Receive a GitHub event; merged pull requests are scored synchronously")
async def github_webhook(
    request: Request,
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
    make_client: GitHubFactory = Depends(github_factory),
    classifier: Classifier = Depends(get_classifier),
):
    body = await request.body()
    if settings.webhook_secret:
        if not verify_signature(settings.webhook_secret, body, request.headers.get("x-hub-signature-256")):
            raise HTTPException(401, "Invalid webhook signature")
    elif not settings.allow_unsigned_webhooks:
        raise HTTPException(401, "Webhook secret is not configured")

    event = request.headers.get("x-github-event", "")
    delivery = request.headers.get("x-github-delivery", "")
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(400, "Malformed webhook payload")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Malformed webhook payload")

    if event == "ping":
        return {"ok": True, "message": "pong", "delivery": delivery}
    if event != "pull_request":
        return _ignored(f"Event '{event}' is not handled", delivery=delivery)
    pr_data = payload.get("pull_request") or {}
    if not isinstance(pr_data, dict):
        raise HTTPException(400, "Malformed pull_request event")
    if payload.get("action") != "closed" or pr_data.get("merged") is not True:
        return _ignored("Only merged pull requests are scored", delivery=delivery)

    try:
        parsed = PullRequestEvent.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(400, f"Malformed pull_request event: {exc.error_count()} invalid fields")
    if parsed.installation is None:
        return _ignored("Event has no installation", delivery=delivery)

    org = services.get_org_for_installation(session, parsed.installation.id)
    if org is None:
        return _ignored(f"No organization for installation {parsed.installation.id}", delivery=delivery)
    repo = services.get_tracked_repository(session, org.id, parsed.repository.id)
    if repo is None:
        return _ignored(f"Repository {parsed.repository.full_name} is not tracked", delivery=delivery)

    label = f"{repo.full_name}#{parsed.pull_request.number}"
    log.info("Webhook %s: processing %s", delivery or "-", label)
    try:
        async with make_client(session, org) as github:
            result = await services.process_pull_request(
                session, org, repo, parsed.pull_request, github, classifier, settings=settings,
            )
    except Exception as exc:
        session.rollback()
        log.exception("Webhook processing failed for %s", label)
        raise HTTPException(500, f"Processing {label} failed: {exc}")
    return {"ok": True, "status": "processed", "delivery": delivery, "result": result.as_dict()}


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.post("/api/orgs/{org_slug}/sync", tags=["Pipeline"],
          summary="Record merged pull requests for tracked repositories (no evaluation)")
async def sync_org(
    org_slug: str,
    body: SyncRequest | None = None,
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
    make_client: GitHubFactory = Depends(github_factory),
    throttle: Throttle = Depends(get_throttle),
):
    body = body or SyncRequest()
    org = _org_or_404(session, org_slug)
    stmt = select(Repository).where(Repository.org_id == org.id, Repository.is_active.is_(True))
    if body.repo_id is not None:
        stmt = stmt.where(Repository.id == body.repo_id)
    repos = session.execute(stmt).scalars().all()
    if body.repo_id is not None and not repos:
        raise HTTPException(404, "Repository not found")

    try:
        github = make_client(session, org)
    except NoActiveConnectionError as exc:
        raise HTTPException(400, str(exc))

    results, errors = [], []
    async with github:
        for repo in repos:
            try:
                results.append(await services.sync_repository(
                    session, org, repo, github, body.lookback_months, throttle, settings,
                ))
            except (GitHubAPIError, NoActiveConnectionError) as exc:
                session.rollback()
                log.warning("Sync failed for %s: %s", repo.full_name, exc)
                errors.append({"repo": repo.full_name, "error": str(exc)})
    return {
        "repos": results,
        "synced": sum(r["synced"] for r in results),
        "skipped": sum(r["skipped"] for r in results),
        "errors": errors,
    }


@app.post("/api/orgs/{org_slug}/backfill", response_model=BatchSummary, tags=["Pipeline"],
          summary="Evaluate recorded merged pull requests lacking an evaluation")
async def backfill_org(
    org_slug: str,
    body: BackfillRequest | None = None,
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
    make_client: GitHubFactory = Depends(github_factory),
    classifier: Classifier = Depends(get_classifier),
    throttle: Throttle = Depends(get_throttle),
):
    body = body or BackfillRequest()
    org = _org_or_404(session, org_slug)
    try:
        github = make_client(session, org)
    except NoActiveConnectionError as exc:
        raise HTTPException(400, str(exc))
    async with github:
        try:
            return await services.backfill(
                session, org, github, classifier, throttle,
                repo_id=body.repo_id, limit=body.limit, post_comments=body.post_comments, settings=settings,
            )
        except ConfigurationError as exc:
            raise HTTPException(400, str(exc))


@app.get("/api/orgs/{org_slug}/unprocessed", tags=["Pipeline"],
         summary="List recorded merged pull requests with no evaluation under the active ruleset")
async def list_unprocessed(
    org_slug: str,
    repo_id: int | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    org = _org_or_404(session, org_slug)
    try:
        ruleset = services.get_active_ruleset(session, org.id)
    except ConfigurationError as exc:
        raise HTTPException(400, str(exc))
    prs = services.find_unprocessed(session, org.id, ruleset.id, repo_id=repo_id, limit=limit)
    return {
        "total": len(prs),
        "items": [
            {"id": pr.id, "repository": pr.repository.full_name, "number": pr.number, "title": pr.title,
             "merged_at": pr.merged_at.isoformat() if pr.merged_at else None}
            for pr in prs
        ],
    }


@app.post("/api/orgs/{org_slug}/pulls/{pr_id}/process", tags=["Pipeline"],
          summary="Run (or re-run) the single-PR flow for a recorded pull request")
async def process_one(
    org_slug: str,
    pr_id: int,
    post_comment: bool = Query(False),
    session: Session = Depends(db_session),
    settings: Settings = Depends(app_settings),
    make_client: GitHubFactory = Depends(github_factory),
    classifier: Classifier = Depends(get_classifier),
):
    org = _org_or_404(session, org_slug)
    pr = _get_or_404(session, PullRequest, pr_id, "Pull request")
    if pr.org_id != org.id:
        raise HTTPException(404, "Pull request not found")
    try:
        github = make_client(session, org)
        async with github:
            result = await services.process_pull_request(
                session, org, pr.repository, services.pull_payload_from_row(pr), github, classifier,
                post_comment=post_comment, settings=settings,
            )
    except (ConfigurationError, NoActiveConnectionError) as exc:
        raise HTTPException(400, str(exc))
    except Exception as exc:
        session.rollback()
        log.exception("Processing failed for pull request %s", pr_id)
        raise HTTPException(500, f"Processing failed: {exc}")
    return result.as_dict()


@app.get("/api/orgs/{org_slug}/pulls/{pr_id}/components", response_model=list[PullRequestComponentOut],
         tags=["Pipeline"], summary="Components credited with the pull request's changed lines")
async def pull_components(org_slug: str, pr_id: int, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    pr = _get_or_404(session, PullRequest, pr_id, "Pull request")
    if pr.org_id != org.id:
        raise HTTPException(404, "Pull request not found")
    return services.pull_request_components(session, pr.id)


@app.get("/api/orgs/{org_slug}/evaluations", response_model=list[EvaluationOut], tags=["Pipeline"],
         summary="List evaluations under the active ruleset, newest merge first")
async def list_evaluations(
    org_slug: str,
    eligible_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    org = _org_or_404(session, org_slug)
    try:
        evaluations = services.list_evaluations(session, org.id, eligible_only=eligible_only, limit=limit)
    except ConfigurationError as exc:
        raise HTTPException(400, str(exc))
    return [services.evaluation_summary(ev) for ev in evaluations]


@app.get("/api/orgs/{org_slug}/batches", response_model=list[BatchOut], tags=["Pipeline"],
         summary="Recent evaluation batches, newest first")
async def list_batches(
    org_slug: str,
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(db_session),
):
    org = _org_or_404(session, org_slug)
    return [services.batch_summary(b) for b in services.list_batches(session, org.id, limit=limit)]


# ---------------------------------------------------------------------------
# Routes: Configuration
# ---------------------------------------------------------------------------


@app.get("/api/orgs/{org_slug}/components", response_model=list[ComponentOut], tags=["Configuration"])
async def list_components(org_slug: str, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    return session.execute(
        select(Component).where(Component.org_id == org.id).order_by(Component.sort_order, Component.key)
    ).scalars().all()


@app.put("/api/orgs/{org_slug}/components", response_model=ComponentOut, tags=["Configuration"],
         summary="Create or update a component by key")
async def put_component(org_slug: str, body: ComponentIn, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    row = services.upsert_component(session, org.id, body.model_dump())
    session.commit()
    return row


@app.delete("/api/orgs/{org_slug}/components/{component_id}", tags=["Configuration"])
async def remove_component(org_slug: str, component_id: int, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    row = _get_or_404(session, Component, component_id, "Component")
    if row.org_id != org.id:
        raise HTTPException(404, "Component not found")
    try:
        services.delete_component(session, row)
    except services.InvalidTransitionError as exc:
        raise HTTPException(409, str(exc))
    session.commit()
    return {"ok": True}


@app.get("/api/orgs/{org_slug}/rules", response_model=list[FileRuleOut], tags=["Configuration"])
async def list_rules(org_slug: str, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    return services.list_file_rules(session, org.id)


@app.post("/api/orgs/{org_slug}/components/{component_id}/rules", response_model=FileRuleOut, status_code=201,
          tags=["Configuration"], summary="Add a file rule crediting matching paths to the component")
async def add_rule(org_slug: str, component_id: int, body: FileRuleIn, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    component = _get_or_404(session, Component, component_id, "Component")
    if component.org_id != org.id:
        raise HTTPException(404, "Component not found")
    rule = services.add_file_rule(session, component, body.match_type, body.pattern, body.priority)
    session.commit()
    return rule


@app.delete("/api/orgs/{org_slug}/rules/{rule_id}", tags=["Configuration"])
async def remove_rule(org_slug: str, rule_id: int, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    rule = _get_or_404(session, ComponentFileRule, rule_id, "Rule")
    if rule.component.org_id != org.id:
        raise HTTPException(404, "Rule not found")
    session.delete(rule)
    session.commit()
    return {"ok": True}


@app.get("/api/orgs/{org_slug}/severities", response_model=list[SeverityOut], tags=["Configuration"])
async def list_severities(org_slug: str, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    return session.execute(
        select(SeverityLevel).where(SeverityLevel.org_id == org.id).order_by(SeverityLevel.sort_order)
    ).scalars().all()


@app.put("/api/orgs/{org_slug}/severities", response_model=SeverityOut, tags=["Configuration"],
         summary="Create or update a severity level by key")
async def put_severity(org_slug: str, body: SeverityIn, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    row = services.upsert_severity(session, org.id, body.model_dump())
    session.commit()
    return row


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/orgs/{org_slug}/stats", response_model=StatsOut, tags=["Stats"])
async def get_stats(org_slug: str, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    try:
        return services.compute_stats(session, org.id)
    except ConfigurationError as exc:
        raise HTTPException(400, str(exc))


# ---------------------------------------------------------------------------
# Routes: Programs
# ---------------------------------------------------------------------------


@app.get("/api/orgs/{org_slug}/programs", tags=["Programs"])
async def list_programs(org_slug: str, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    programs = session.execute(
        select(BountyProgram).where(BountyProgram.org_id == org.id).order_by(BountyProgram.start_date.desc())
    ).scalars().all()
    return [services.program_summary(p) for p in programs]


@app.post("/api/orgs/{org_slug}/programs", status_code=201, tags=["Programs"],
          summary="Create a draft bounty program")
async def create_program(org_slug: str, body: ProgramCreate, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    try:
        program = services.create_program(session, org, body)
    except ProgramConfigError as exc:
        session.rollback()
        raise HTTPException(422, str(exc))
    session.commit()
    return services.program_summary(program)


@app.get("/api/orgs/{org_slug}/programs/{program_id}", tags=["Programs"])
async def get_program(org_slug: str, program_id: int, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    return services.program_summary(_program_or_404(session, org, program_id))


@app.patch("/api/orgs/{org_slug}/programs/{program_id}", tags=["Programs"],
           summary="Move a program through draft -> active -> completed, or cancel it")
async def update_program(org_slug: str, program_id: int, body: ProgramStatusUpdate,
                         session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    program = _program_or_404(session, org, program_id)
    try:
        services.update_program_status(program, body.status)
    except services.InvalidTransitionError as exc:
        raise HTTPException(409, str(exc))
    session.commit()
    return services.program_summary(program)


@app.delete("/api/orgs/{org_slug}/programs/{program_id}", tags=["Programs"])
async def delete_program(org_slug: str, program_id: int, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    program = _program_or_404(session, org, program_id)
    try:
        services.delete_program(session, program)
    except services.InvalidTransitionError as exc:
        raise HTTPException(409, str(exc))
    session.commit()
    return {"ok": True}


@app.get("/api/orgs/{org_slug}/programs/{program_id}/rewards", response_model=list[RewardOut], tags=["Programs"],
         summary="Committed rewards, or the pending projection with preview=true")
async def program_rewards(org_slug: str, program_id: int, preview: bool = Query(False),
                          session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    program = _program_or_404(session, org, program_id)
    if preview:
        try:
            calculated = services.calculate_program_rewards(session, program)
        except ConfigurationError as exc:
            raise HTTPException(400, str(exc))
        return [services.calculated_summary(session, c) for c in calculated]
    rewards = session.execute(
        select(BountyReward).where(BountyReward.program_id == program.id).order_by(BountyReward.final_score.desc())
    ).scalars().all()
    return [services.reward_summary(r) for r in rewards]


@app.post("/api/orgs/{org_slug}/programs/{program_id}/rewards", response_model=list[RewardOut], tags=["Programs"],
          summary="Commit the calculated rewards as pending payouts")
async def commit_rewards(org_slug: str, program_id: int, session: Session = Depends(db_session)):
    org = _org_or_404(session, org_slug)
    program = _program_or_404(session, org, program_id)
    try:
        rewards = services.commit_program_rewards(session, program)
    except services.InvalidTransitionError as exc:
        raise HTTPException(409, str(exc))
    except ConfigurationError as exc:
        raise HTTPException(400, str(exc))
    session.commit()
    return [services.reward_summary(r) for r in rewards]


def _transition(session: Session, reward_id: int, apply: Callable[[BountyReward], None]) -> dict[str, Any]:
    reward = _get_or_404(session, BountyReward, reward_id, "Reward")
    try:
        apply(reward)
    except services.InvalidTransitionError as exc:
        raise HTTPException(409, str(exc))
    session.commit()
    return services.reward_summary(reward)


@app.post("/api/rewards/{reward_id}/approve", response_model=RewardOut, tags=["Programs"])
async def approve_reward(reward_id: int, session: Session = Depends(db_session)):
    return _transition(session, reward_id, services.approve_reward)


@app.post("/api/rewards/{reward_id}/paid", response_model=RewardOut, tags=["Programs"])
async def mark_paid(reward_id: int, body: MarkPaidRequest, session: Session = Depends(db_session)):
    return _transition(
        session, reward_id,
        lambda r: services.mark_reward_paid(r, body.payout_method, body.payout_reference, body.payout_notes),
    )


@app.post("/api/rewards/{reward_id}/reject", response_model=RewardOut, tags=["Programs"])
async def reject_reward(reward_id: int, body: RejectRequest | None = None, session: Session = Depends(db_session)):
    reason = body.reason if body else ""
    return _transition(session, reward_id, lambda r: services.reject_reward(r, reason))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("bountyscore.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
