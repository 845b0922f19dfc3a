"""Shared business logic for the API, CLI and MCP server.

Every trigger (webhook, sync, backfill) funnels into ``process_pull_request``.
Idempotency comes from the upserts keyed on (org_id, github_pr_id) and
(pull_request_id, rule_set_id); nothing here holds an in-process lock.
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import delete, exists, func, select
from sqlalchemy.orm import Session

from bountyscore.classifier import ClassificationRequest, Classifier, LLMClassifier
from bountyscore.config import Settings, get_settings
from bountyscore.context import PRInfo, build_pr_context
from bountyscore.db import upsert_statement
from bountyscore.github import (
    GitHubAPIError,
    GitHubClient,
    NoActiveConnectionError,
    filter_merged_since,
    get_active_connection,
    provider_for,
    should_fetch_next_page,
)
from bountyscore.models import (
    BountyProgram,
    BountyRankingReward,
    BountyReward,
    BountyTier,
    Component,
    ComponentFileRule,
    DeveloperIdentity,
    Evaluation,
    EvaluationBatch,
    GithubConnection,
    Organization,
    PullRequest,
    PullRequestComponent,
    Repository,
    RuleSet,
    SeverityLevel,
)
from bountyscore.mapping import ComponentShare, FileRule, check_pattern, map_components
from bountyscore.rewards import (
    CalculatedReward,
    RankReward,
    ScoredEvaluation,
    TierBucket,
    calculate_rewards,
    period_bounds,
    validate_rank_rewards,
    validate_tiers,
)
from bountyscore.schemas import GitHubUser, GitRef, ProgramCreate, PullPayload
from bountyscore.scoring import (
    OTHER_KEY,
    ComponentSpec,
    ConfigurationError,
    Eligibility,
    SeveritySpec,
    score,
)
from bountyscore.throttle import Throttle, throttled
from bountyscore.utils import utc_naive, utcnow

log = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """A bounty program or reward cannot move to the requested state."""


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_org_by_slug(session: Session, slug: str) -> Organization | None:
    return session.execute(select(Organization).where(Organization.slug == slug)).scalar_one_or_none()


def get_org_for_installation(session: Session, installation_id: int) -> Organization | None:
    conn = session.execute(
        select(GithubConnection).where(
            GithubConnection.github_installation_id == installation_id,
            GithubConnection.is_active.is_(True),
        ).limit(1)
    ).scalar_one_or_none()
    return conn.organization if conn else None


def get_tracked_repository(session: Session, org_id: int, github_repo_id: int) -> Repository | None:
    return session.execute(
        select(Repository).where(
            Repository.org_id == org_id,
            Repository.github_repo_id == github_repo_id,
            Repository.is_active.is_(True),
        )
    ).scalar_one_or_none()


def get_active_ruleset(session: Session, org_id: int) -> RuleSet:
    ruleset = session.execute(
        select(RuleSet)
        .where(RuleSet.org_id == org_id)
        .order_by(RuleSet.is_default.desc(), RuleSet.active_from.desc(), RuleSet.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if ruleset is None:
        raise ConfigurationError(f"No scoring ruleset configured for organization {org_id}")
    return ruleset


def load_components(session: Session, org_id: int) -> list[ComponentSpec]:
    rows = session.execute(
        select(Component)
        .where(Component.org_id == org_id, Component.is_active.is_(True))
        .order_by(Component.sort_order, Component.key)
    ).scalars().all()
    return [ComponentSpec(key=c.key, multiplier=c.multiplier, name=c.name, description=c.description, id=c.id)
            for c in rows]


def load_severities(session: Session, org_id: int) -> list[SeveritySpec]:
    rows = session.execute(
        select(SeverityLevel).where(SeverityLevel.org_id == org_id).order_by(SeverityLevel.sort_order)
    ).scalars().all()
    return [SeveritySpec(key=s.key, base_points=s.base_points, sort_order=s.sort_order,
                         name=s.name, description=s.description, id=s.id)
            for s in rows]


def load_scoring_config(session: Session, org_id: int) -> tuple[RuleSet, list[ComponentSpec], list[SeveritySpec]]:
    """Active ruleset plus its tables; raises ConfigurationError if anything is missing."""
    ruleset = get_active_ruleset(session, org_id)
    components = load_components(session, org_id)
    severities = load_severities(session, org_id)
    if not severities:
        raise ConfigurationError(f"No severity levels configured for organization {org_id}")
    if not components:
        raise ConfigurationError(f"No components configured for organization {org_id}")
    return ruleset, components, severities


def load_file_rules(session: Session, org_id: int) -> tuple[list[FileRule], int | None]:
    """File rules of active components, plus the id of the OTHER component (if any)."""
    rows = session.execute(
        select(ComponentFileRule)
        .join(Component, ComponentFileRule.component_id == Component.id)
        .where(Component.org_id == org_id, Component.is_active.is_(True))
        .order_by(ComponentFileRule.priority.desc(), ComponentFileRule.id)
    ).scalars().all()
    other_id = session.execute(
        select(Component.id).where(Component.org_id == org_id, Component.key == OTHER_KEY)
    ).scalar_one_or_none()
    return [FileRule(r.component_id, r.match_type, r.pattern, r.priority) for r in rows], other_id


def map_pull_request_components(
    session: Session, org_id: int, pr: PullRequest, files: list[dict[str, Any]],
) -> list[ComponentShare]:
    """Replace the PR's component rows with a fresh mapping of *files*. Caller must commit."""
    rules, other_id = load_file_rules(session, org_id)
    shares = map_components(files, rules, other_id)
    session.execute(delete(PullRequestComponent).where(PullRequestComponent.pull_request_id == pr.id))
    for share in shares:
        session.add(PullRequestComponent(
            pull_request_id=pr.id, component_id=share.component_id,
            lines_changed=share.lines_changed, is_primary=share.is_primary,
        ))
    session.flush()
    return shares


def pull_request_components(session: Session, pull_request_id: int) -> list[dict[str, Any]]:
    rows = session.execute(
        select(PullRequestComponent)
        .where(PullRequestComponent.pull_request_id == pull_request_id)
        .order_by(PullRequestComponent.is_primary.desc(), PullRequestComponent.lines_changed.desc())
    ).scalars().all()
    return [{"component_id": r.component_id, "key": r.component.key,
             "lines_changed": r.lines_changed, "is_primary": r.is_primary} for r in rows]


def github_client_for_org(session: Session, org: Organization, settings: Settings | None = None) -> GitHubClient:
    settings = settings or get_settings()
    conn = get_active_connection(session, org.id)
    return GitHubClient(provider_for(conn, settings), conn.github_installation_id, settings)


# ---------------------------------------------------------------------------
# Identities and pull requests
# ---------------------------------------------------------------------------


def _find_identity(session: Session, user: GitHubUser) -> DeveloperIdentity | None:
    ident = session.execute(
        select(DeveloperIdentity).where(DeveloperIdentity.login == user.login)
    ).scalar_one_or_none()
    if ident is not None:
        if ident.github_user_id is None:
            ident.github_user_id = user.id
        if user.avatar_url:
            ident.avatar_url = user.avatar_url
        return ident

    ident = session.execute(
        select(DeveloperIdentity).where(DeveloperIdentity.github_user_id == user.id)
    ).scalar_one_or_none()
    if ident is not None:
        log.info("Developer %s renamed to %s", ident.login, user.login)
        ident.login = user.login
        if user.avatar_url:
            ident.avatar_url = user.avatar_url
    return ident


def resolve_identity(session: Session, user: GitHubUser) -> DeveloperIdentity:
    """Find the developer by exact login, then by GitHub user id, else create.

    A match on user id with a different login is a rename; the login is
    updated in place so no second identity appears. Creation is an upsert on
    the user id, so a concurrent insert of the same author is absorbed.
    Caller must commit.
    """
    ident = _find_identity(session, user)
    if ident is not None:
        return ident

    values = {"github_user_id": user.id, "login": user.login, "avatar_url": user.avatar_url}
    session.execute(upsert_statement(session, DeveloperIdentity, values, ["github_user_id"], ["login"]))
    return session.execute(
        select(DeveloperIdentity)
        .where(DeveloperIdentity.github_user_id == user.id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def upsert_pull_request(
    session: Session, org_id: int, repo: Repository, pull: PullPayload, author_id: int | None,
) -> tuple[PullRequest, bool]:
    """Insert or update the PR row keyed on (org_id, github_pr_id).

    Returns ``(row, created)``. Caller must commit.
    """
    existed = session.execute(
        select(exists().where(PullRequest.org_id == org_id, PullRequest.github_pr_id == pull.id))
    ).scalar()
    values = {
        "org_id": org_id,
        "repo_id": repo.id,
        "github_pr_id": pull.id,
        "number": pull.number,
        "title": pull.title,
        "body": pull.body,
        "author_id": author_id,
        "merged_at": utc_naive(pull.merged_at),
        "created_at_gh": utc_naive(pull.created_at),
        "additions": pull.additions,
        "deletions": pull.deletions,
        "changed_files": pull.changed_files,
        "head_sha": pull.head.sha,
        "base_sha": pull.base.sha,
        "url": pull.html_url,
        "last_synced_at": utcnow(),
    }
    keep: set[str] = {"org_id", "github_pr_id"}
    if author_id is None:
        keep.add("author_id")
    if not (pull.additions or pull.deletions or pull.changed_files):
        # List-pulls payloads carry no change stats; keep the ones already stored
        keep.update(("additions", "deletions", "changed_files"))
    update_cols = [k for k in values if k not in keep]
    session.execute(upsert_statement(session, PullRequest, values, ["org_id", "github_pr_id"], update_cols))
    row = session.execute(
        select(PullRequest)
        .where(PullRequest.org_id == org_id, PullRequest.github_pr_id == pull.id)
        .execution_options(populate_existing=True)
    ).scalar_one()
    return row, not existed


def pull_payload_from_row(pr: PullRequest) -> PullPayload:
    author = pr.author
    return PullPayload(
        id=pr.github_pr_id,
        number=pr.number,
        title=pr.title,
        body=pr.body,
        merged=pr.merged_at is not None,
        merged_at=pr.merged_at,
        created_at=pr.created_at_gh,
        user=GitHubUser(id=author.github_user_id, login=author.login, avatar_url=author.avatar_url)
        if author is not None and author.github_user_id is not None else None,
        additions=pr.additions,
        deletions=pr.deletions,
        changed_files=pr.changed_files,
        head=GitRef(sha=pr.head_sha),
        base=GitRef(sha=pr.base_sha),
        html_url=pr.url,
    )


# ---------------------------------------------------------------------------
# Single-PR flow
# ---------------------------------------------------------------------------


@dataclass
class ProcessResult:
    pull_request_id: int
    evaluation_id: int
    repository: str
    number: int
    author: str
    created: bool
    component_key: str
    severity_key: str
    is_eligible: bool
    base_points: float
    multiplier: float
    final_score: float
    eligibility: dict[str, bool]
    impact_summary: str = ""
    mapped_component: str | None = None
    comment_posted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


async def process_pull_request(
    session: Session,
    org: Organization,
    repo: Repository,
    pull: PullPayload,
    github: GitHubClient,
    classifier: Classifier | None = None,
    *,
    post_comment: bool = True,
    batch_id: int | None = None,
    settings: Settings | None = None,
) -> ProcessResult:
    """Identity -> PR upsert -> files -> component mapping -> context -> classify
    -> score -> evaluation upsert -> comment.

    Commits after the PR row, after the component mapping (both survive an
    oracle failure) and after the evaluation. The comment is best-effort.
    When the file listing fails the previous mapping is kept.
    """
    settings = settings or get_settings()
    classifier = classifier or LLMClassifier(settings=settings)
    ruleset, components, severities = load_scoring_config(session, org.id)

    author = resolve_identity(session, pull.user) if pull.user else None
    pr, created = upsert_pull_request(session, org.id, repo, pull, author.id if author else None)
    session.commit()

    files: list[dict[str, Any]] | None
    try:
        files = await github.list_files(repo.full_name, pull.number)
    except GitHubAPIError as exc:
        log.warning("Could not list files for %s#%s: %s", repo.full_name, pull.number, exc)
        files = None

    mapped_component = None
    if files is not None:
        shares = map_pull_request_components(session, org.id, pr, files)
        session.commit()
        primary = next((s for s in shares if s.is_primary), None)
        if primary is not None:
            mapped_component = session.get(Component, primary.component_id).key

    context = build_pr_context(
        PRInfo(
            title=pr.title, repository=repo.full_name, author=author.login if author else "unknown",
            number=pr.number, body=pr.body, merged_at=pr.merged_at, additions=pr.additions,
            deletions=pr.deletions, changed_files=pr.changed_files, url=pr.url,
        ),
        files,
        max_files=settings.max_context_files,
        max_diff_chars=settings.max_diff_chars,
    )

    result = await classifier.classify(ClassificationRequest(
        components=components, severities=severities, pr_context=context,
        prompt_template=ruleset.prompt_template, model=ruleset.model_name,
    ))
    verdict = result.verdict
    scored = score(
        verdict.primary_component_key,
        verdict.severity_key,
        Eligibility(**verdict.eligibility.model_dump()),
        components,
        severities,
    )
    if scored.component_fallback:
        log.info("Unknown component %r for %s#%s, using %s",
                 verdict.primary_component_key, repo.full_name, pull.number, scored.component.key)

    values = {
        "org_id": org.id,
        "pull_request_id": pr.id,
        "rule_set_id": ruleset.id,
        "batch_id": batch_id,
        "component_id": scored.component.id,
        "component_key": scored.component.key,
        "severity_id": scored.severity.id,
        "severity_key": scored.severity.key,
        "eligibility_issue": scored.eligibility.issue,
        "eligibility_fix_implementation": scored.eligibility.fix_implementation,
        "eligibility_pr_linked": scored.eligibility.pr_linked,
        "eligibility_tests": scored.eligibility.tests,
        "is_eligible": scored.is_eligible,
        "base_points": scored.base_points,
        "multiplier": scored.multiplier,
        "final_score": scored.final_score,
        "justification_component": verdict.justification_component,
        "justification_severity": verdict.justification_severity,
        "impact_summary": verdict.impact_summary,
        "eligibility_notes": verdict.eligibility_notes or "",
        "review_notes": verdict.review_notes or "",
        "raw_response": result.raw_text,
        "model_name": result.model_name,
        "evaluation_source": "auto",
        "evaluated_at": utcnow(),
    }
    update_cols = [k for k in values if k not in ("pull_request_id", "rule_set_id")]
    session.execute(upsert_statement(session, Evaluation, values, ["pull_request_id", "rule_set_id"], update_cols))
    session.commit()
    evaluation_id = session.execute(
        select(Evaluation.id).where(Evaluation.pull_request_id == pr.id, Evaluation.rule_set_id == ruleset.id)
    ).scalar_one()

    outcome = ProcessResult(
        pull_request_id=pr.id,
        evaluation_id=evaluation_id,
        repository=repo.full_name,
        number=pr.number,
        author=author.login if author else "unknown",
        created=created,
        component_key=scored.component.key,
        severity_key=scored.severity.key,
        is_eligible=scored.is_eligible,
        base_points=scored.base_points,
        multiplier=scored.multiplier,
        final_score=scored.final_score,
        eligibility=verdict.eligibility.model_dump(),
        impact_summary=verdict.impact_summary,
        mapped_component=mapped_component,
    )
    log.info("Evaluated %s#%s: %s/%s eligible=%s score=%.1f", repo.full_name, pr.number,
             outcome.component_key, outcome.severity_key, outcome.is_eligible, outcome.final_score)

    if post_comment:
        try:
            await github.create_comment(repo.full_name, pr.number, format_evaluation_comment(outcome))
            outcome.comment_posted = True
        except (GitHubAPIError, NoActiveConnectionError) as exc:
            log.warning("Comment on %s#%s failed: %s", repo.full_name, pr.number, exc)
    return outcome


_CHECK_LABELS = (
    ("issue", "Linked issue with reproducible steps"),
    ("fix_implementation", "Working fix"),
    ("pr_linked", "PR references the issue"),
    ("tests", "Tests included or updated"),
)


def format_evaluation_comment(result: ProcessResult) -> str:
    lines = [
        "## Bounty evaluation",
        "",
        "| | |",
        "|---|---|",
        f"| Component | `{result.component_key}` (x{result.multiplier:g}) |",
        f"| Severity | `{result.severity_key}` ({result.base_points:g} pts) |",
        f"| Score | **{result.final_score:g}** |",
        "",
        "**Eligibility**",
        "",
    ]
    for key, label in _CHECK_LABELS:
        mark = "x" if result.eligibility.get(key) else " "
        lines.append(f"- [{mark}] {label}")
    if not result.is_eligible:
        lines += ["", "_Not eligible: all four checks must pass for a non-zero score._"]
    if result.impact_summary:
        lines += ["", f"> {result.impact_summary}"]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


async def sync_repository_page(
    session: Session,
    org: Organization,
    repo: Repository,
    github: GitHubClient,
    page: int,
    cutoff: datetime,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Record one page of merged PRs without evaluating them (caller must commit)."""
    settings = settings or get_settings()
    raw = await github.list_pulls(repo.full_name, page=page, per_page=settings.sync_page_size)
    qualifying = filter_merged_since(raw, cutoff)
    synced = skipped = 0
    for item in qualifying:
        pull = PullPayload.model_validate(item)
        author = resolve_identity(session, pull.user) if pull.user else None
        _, created = upsert_pull_request(session, org.id, repo, pull, author.id if author else None)
        if created:
            synced += 1
        else:
            skipped += 1
    return {
        "page": page,
        "fetched": len(raw),
        "merged_in_range": len(qualifying),
        "synced": synced,
        "skipped": skipped,
        "has_more": should_fetch_next_page(
            page, len(raw), len(qualifying), settings.sync_page_size, settings.sync_max_pages,
        ),
    }


async def sync_repository(
    session: Session,
    org: Organization,
    repo: Repository,
    github: GitHubClient,
    lookback_months: int = 3,
    throttle: Throttle | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    throttle = throttle or Throttle(settings.request_delay_seconds)
    cutoff = utcnow() - timedelta(days=30 * lookback_months)
    summary = {"repo": repo.full_name, "pages": 0, "synced": 0, "skipped": 0,
               "fetched": 0, "merged_in_range": 0, "has_more": False}
    page = 1
    while True:
        await throttle.acquire()
        result = await sync_repository_page(session, org, repo, github, page, cutoff, settings)
        session.commit()
        summary["pages"] += 1
        for key in ("synced", "skipped", "fetched", "merged_in_range"):
            summary[key] += result[key]
        if not result["has_more"]:
            # Stopped by the ceiling while pages were still full or qualifying
            summary["has_more"] = page >= settings.sync_max_pages and (
                result["merged_in_range"] > 0 or result["fetched"] >= settings.sync_page_size
            )
            break
        page += 1
    repo.last_synced_at = utcnow()
    session.commit()
    log.info("Synced %s: %d new, %d existing over %d pages", repo.full_name,
             summary["synced"], summary["skipped"], summary["pages"])
    return summary


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


def _evaluated_clause(ruleset_id: int):
    return exists().where(Evaluation.pull_request_id == PullRequest.id, Evaluation.rule_set_id == ruleset_id)


def is_evaluated(session: Session, pull_request_id: int, ruleset_id: int) -> bool:
    return session.execute(
        select(Evaluation.id)
        .where(Evaluation.pull_request_id == pull_request_id, Evaluation.rule_set_id == ruleset_id)
        .limit(1)
    ).first() is not None


def find_unprocessed(
    session: Session, org_id: int, ruleset_id: int, repo_id: int | None = None, limit: int | None = None,
) -> list[PullRequest]:
    """Recorded merged PRs with no evaluation under *ruleset_id*, newest first."""
    stmt = (
        select(PullRequest)
        .where(PullRequest.org_id == org_id, PullRequest.merged_at.is_not(None), ~_evaluated_clause(ruleset_id))
        .order_by(PullRequest.merged_at.desc(), PullRequest.id.desc())
    )
    if repo_id is not None:
        stmt = stmt.where(PullRequest.repo_id == repo_id)
    if limit:
        stmt = stmt.limit(limit)
    return list(session.execute(stmt).scalars().all())


def start_batch(session: Session, org_id: int, ruleset_id: int, run_type: str = "manual",
                total: int = 0) -> EvaluationBatch:
    batch = EvaluationBatch(org_id=org_id, rule_set_id=ruleset_id, run_type=run_type, status="running",
                            total=total, started_at=utcnow())
    session.add(batch)
    session.commit()
    return batch


def finish_batch(session: Session, batch: EvaluationBatch, summary: dict[str, Any],
                 error: str | None = None) -> None:
    batch.processed = summary["processed"]
    batch.skipped = summary["skipped"]
    batch.errors = summary["errors"]
    batch.status = "failed" if error else "completed"
    batch.error_message = error
    batch.completed_at = utcnow()
    session.commit()


def batch_summary(batch: EvaluationBatch) -> dict[str, Any]:
    return {
        "id": batch.id,
        "rule_set_id": batch.rule_set_id,
        "run_type": batch.run_type,
        "status": batch.status,
        "total": batch.total,
        "processed": batch.processed,
        "skipped": batch.skipped,
        "errors": batch.errors,
        "error_message": batch.error_message,
        "started_at": batch.started_at.isoformat() if batch.started_at else None,
        "completed_at": batch.completed_at.isoformat() if batch.completed_at else None,
    }


def list_batches(session: Session, org_id: int, limit: int = 20) -> list[EvaluationBatch]:
    return list(session.execute(
        select(EvaluationBatch)
        .where(EvaluationBatch.org_id == org_id)
        .order_by(EvaluationBatch.id.desc())
        .limit(limit)
    ).scalars().all())


async def backfill(
    session: Session,
    org: Organization,
    github: GitHubClient,
    classifier: Classifier | None = None,
    throttle: Throttle | None = None,
    repo_id: int | None = None,
    limit: int | None = None,
    post_comments: bool = False,
    run_type: str = "manual",
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Evaluate every recorded merged PR missing an evaluation, one at a time.

    Per-item failures are counted, never raised. Configuration problems
    surface before the loop starts. The run is recorded as an evaluation
    batch: completed when the loop finishes, failed (with the error) when
    something outside a single item breaks it.
    """
    settings = settings or get_settings()
    classifier = classifier or LLMClassifier(settings=settings)
    throttle = throttle or Throttle(settings.request_delay_seconds)
    ruleset, _, _ = load_scoring_config(session, org.id)
    pending = find_unprocessed(session, org.id, ruleset.id, repo_id=repo_id, limit=limit)
    batch = start_batch(session, org.id, ruleset.id, run_type, total=len(pending))
    summary: dict[str, Any] = {"batch_id": batch.id, "total": len(pending), "processed": 0, "skipped": 0,
                               "errors": 0, "details": []}

    try:
        async for pr in throttled(pending, throttle):
            label = f"{pr.repository.full_name}#{pr.number}"
            # Another trigger may have evaluated it since the list was built
            if is_evaluated(session, pr.id, ruleset.id):
                summary["skipped"] += 1
                summary["details"].append({"pull_request_id": pr.id, "pr": label, "status": "skipped"})
                continue
            try:
                result = await process_pull_request(
                    session, org, pr.repository, pull_payload_from_row(pr), github, classifier,
                    post_comment=post_comments, batch_id=batch.id, settings=settings,
                )
            except Exception as exc:
                session.rollback()
                if isinstance(exc, GitHubAPIError) and exc.rate_limited:
                    throttle.backoff()
                log.warning("Backfill failed for %s: %s", label, exc)
                summary["errors"] += 1
                summary["details"].append({"pull_request_id": pr.id, "pr": label, "status": "error",
                                           "error": str(exc)})
                continue
            throttle.reset()
            summary["processed"] += 1
            summary["details"].append({"pull_request_id": pr.id, "pr": label, "status": "processed",
                                       "final_score": result.final_score})
    except Exception as exc:
        session.rollback()
        log.exception("Backfill batch %d for %s failed", batch.id, org.slug)
        finish_batch(session, batch, summary, error=str(exc))
        raise
    finish_batch(session, batch, summary)
    log.info("Backfill for %s: %d processed, %d skipped, %d errors",
             org.slug, summary["processed"], summary["skipped"], summary["errors"])
    return summary


# ---------------------------------------------------------------------------
# Serialization and stats
# ---------------------------------------------------------------------------


def evaluation_summary(ev: Evaluation) -> dict[str, Any]:
    pr = ev.pull_request
    return {
        "id": ev.id,
        "pull_request_id": pr.id,
        "repository": pr.repository.full_name,
        "number": pr.number,
        "title": pr.title,
        "author": pr.author.login if pr.author else None,
        "merged_at": pr.merged_at.isoformat() if pr.merged_at else None,
        "component_key": ev.component_key,
        "severity_key": ev.severity_key,
        "is_eligible": ev.is_eligible,
        "final_score": ev.final_score,
        "impact_summary": ev.impact_summary,
        "evaluated_at": ev.evaluated_at.isoformat() if ev.evaluated_at else None,
    }


def list_evaluations(
    session: Session, org_id: int, *, eligible_only: bool = False, limit: int = 50,
) -> list[Evaluation]:
    ruleset = get_active_ruleset(session, org_id)
    stmt = (
        select(Evaluation)
        .join(PullRequest, Evaluation.pull_request_id == PullRequest.id)
        .where(Evaluation.org_id == org_id, Evaluation.rule_set_id == ruleset.id)
        .order_by(PullRequest.merged_at.desc(), Evaluation.id.desc())
        .limit(limit)
    )
    if eligible_only:
        stmt = stmt.where(Evaluation.is_eligible.is_(True))
    return list(session.execute(stmt).scalars().all())


def compute_stats(session: Session, org_id: int) -> dict[str, Any]:
    ruleset = get_active_ruleset(session, org_id)
    total_prs = session.execute(
        select(func.count(PullRequest.id)).where(PullRequest.org_id == org_id, PullRequest.merged_at.is_not(None))
    ).scalar_one()
    evaluations = session.execute(
        select(Evaluation).where(Evaluation.org_id == org_id, Evaluation.rule_set_id == ruleset.id)
    ).scalars().all()

    by_severity: Counter[str] = Counter()
    by_component: Counter[str] = Counter()
    scores: dict[str, float] = defaultdict(float)
    eligible = 0
    for ev in evaluations:
        by_severity[ev.severity_key] += 1
        by_component[ev.component_key] += 1
        if ev.is_eligible:
            eligible += 1
            author = ev.pull_request.author
            scores[author.login if author else "unknown"] += ev.final_score
    top = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
    return {
        "pull_requests": total_prs,
        "evaluated": len(evaluations),
        "unprocessed": max(total_prs - len(evaluations), 0),
        "eligible": eligible,
        "total_score": sum(scores.values()),
        "by_severity": dict(by_severity),
        "by_component": dict(by_component),
        "top_developers": [{"login": login, "score": s} for login, s in top],
    }


# ---------------------------------------------------------------------------
# Bounty programs
# ---------------------------------------------------------------------------

_PROGRAM_TRANSITIONS = {
    "draft": {"active", "cancelled"},
    "active": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def create_program(session: Session, org: Organization, data: ProgramCreate, today: date | None = None) -> BountyProgram:
    """Validate and add a draft program (caller must commit).

    Raises ProgramConfigError for invalid ranks or overlapping tiers.
    """
    if data.program_type == "ranking":
        validate_rank_rewards([RankReward(r.rank, r.amount, r.currency) for r in data.ranking_rewards])
    else:
        validate_tiers([TierBucket(t.name, t.min_score, t.amount, t.max_score, t.currency) for t in data.tiers])

    if data.start_date and data.end_date:
        start = datetime.combine(data.start_date, datetime.min.time())
        end = datetime.combine(data.end_date, datetime.max.time())
    else:
        start, end = period_bounds(data.period_type, today or utcnow().date())

    program = BountyProgram(
        org_id=org.id, name=data.name, description=data.description, program_type=data.program_type,
        status="draft", period_type=data.period_type, start_date=start, end_date=end,
    )
    if data.program_type == "ranking":
        program.ranking_rewards = [BountyRankingReward(rank=r.rank, amount=r.amount, currency=r.currency)
                                   for r in data.ranking_rewards]
    else:
        ordered = sorted(data.tiers, key=lambda t: t.min_score, reverse=True)
        program.tiers = [BountyTier(name=t.name, min_score=t.min_score, max_score=t.max_score,
                                    amount=t.amount, currency=t.currency, sort_order=i)
                         for i, t in enumerate(ordered)]
    session.add(program)
    session.flush()
    return program


def update_program_status(program: BountyProgram, status: str) -> None:
    if status == program.status:
        return
    if status not in _PROGRAM_TRANSITIONS.get(program.status, set()):
        raise InvalidTransitionError(f"Program cannot move from {program.status} to {status}")
    program.status = status


def delete_program(session: Session, program: BountyProgram) -> None:
    if program.status != "draft":
        raise InvalidTransitionError("Only draft programs can be deleted")
    session.delete(program)


def scored_evaluations(session: Session, org_id: int, ruleset_id: int) -> list[ScoredEvaluation]:
    rows = session.execute(
        select(PullRequest.author_id, Evaluation.final_score, Evaluation.is_eligible, PullRequest.merged_at)
        .join(PullRequest, Evaluation.pull_request_id == PullRequest.id)
        .where(Evaluation.org_id == org_id, Evaluation.rule_set_id == ruleset_id, PullRequest.author_id.is_not(None))
    ).all()
    return [ScoredEvaluation(developer_id=a, final_score=s, is_eligible=e, merged_at=m) for a, s, e, m in rows]


def calculate_program_rewards(session: Session, program: BountyProgram) -> list[CalculatedReward]:
    """Pending reward projection from the active ruleset's evaluations. Writes nothing."""
    ruleset = get_active_ruleset(session, program.org_id)
    return calculate_rewards(
        program.program_type,
        scored_evaluations(session, program.org_id, ruleset.id),
        program.start_date,
        program.end_date,
        rank_rewards=[RankReward(r.rank, r.amount, r.currency) for r in program.ranking_rewards],
        tiers=[TierBucket(t.name, t.min_score, t.amount, t.max_score, t.currency) for t in program.tiers],
    )


def commit_program_rewards(session: Session, program: BountyProgram) -> list[BountyReward]:
    """Persist the projection as pending rewards (caller must commit).

    Rows already approved, paid or rejected are left untouched; stale
    pending rows for developers who no longer qualify are removed.
    """
    if program.status in ("draft", "cancelled"):
        raise InvalidTransitionError(f"Cannot commit rewards for a {program.status} program")
    calculated = {c.developer_id: c for c in calculate_program_rewards(session, program)}
    existing = {r.developer_id: r for r in session.execute(
        select(BountyReward).where(BountyReward.program_id == program.id)
    ).scalars()}

    for dev_id, row in existing.items():
        if row.payout_status == "pending" and dev_id not in calculated:
            session.delete(row)

    for dev_id, calc in calculated.items():
        row = existing.get(dev_id)
        if row is None:
            row = BountyReward(program_id=program.id, org_id=program.org_id, developer_id=dev_id)
            session.add(row)
        elif row.payout_status != "pending":
            continue
        row.final_score = calc.final_score
        row.rank = calc.rank
        row.tier_name = calc.tier_name
        row.amount = calc.amount
        row.currency = calc.currency
        row.payout_status = "pending"
    session.flush()
    return list(session.execute(
        select(BountyReward).where(BountyReward.program_id == program.id).order_by(BountyReward.final_score.desc())
    ).scalars())


def approve_reward(reward: BountyReward) -> None:
    if reward.payout_status != "pending":
        raise InvalidTransitionError(f"Only pending rewards can be approved (is {reward.payout_status})")
    reward.payout_status = "approved"
    reward.approved_at = utcnow()


def mark_reward_paid(reward: BountyReward, method: str, reference: str, notes: str = "") -> None:
    if reward.payout_status != "approved":
        raise InvalidTransitionError(f"Only approved rewards can be paid (is {reward.payout_status})")
    if not method or not reference:
        raise ValueError("payout_method and payout_reference are required")
    reward.payout_status = "paid"
    reward.payout_method = method
    reward.payout_reference = reference
    reward.payout_notes = notes
    reward.paid_at = utcnow()


def reject_reward(reward: BountyReward, reason: str = "") -> None:
    if reward.payout_status in ("paid", "rejected"):
        raise InvalidTransitionError(f"A {reward.payout_status} reward cannot be rejected")
    reward.payout_status = "rejected"
    if reason:
        reward.payout_notes = reason


def reward_summary(reward: BountyReward) -> dict[str, Any]:
    return {
        "id": reward.id,
        "developer_id": reward.developer_id,
        "login": reward.developer.login if reward.developer else "",
        "final_score": reward.final_score,
        "rank": reward.rank,
        "tier_name": reward.tier_name,
        "amount": reward.amount,
        "currency": reward.currency,
        "payout_status": reward.payout_status,
    }


def calculated_summary(session: Session, calc: CalculatedReward) -> dict[str, Any]:
    dev = session.get(DeveloperIdentity, calc.developer_id)
    return {
        "id": None,
        "developer_id": calc.developer_id,
        "login": dev.login if dev else "",
        "final_score": calc.final_score,
        "rank": calc.rank,
        "tier_name": calc.tier_name,
        "amount": calc.amount,
        "currency": calc.currency,
        "payout_status": calc.payout_status,
    }


def program_summary(program: BountyProgram) -> dict[str, Any]:
    return {
        "id": program.id,
        "name": program.name,
        "description": program.description,
        "program_type": program.program_type,
        "status": program.status,
        "period_type": program.period_type,
        "start_date": program.start_date.isoformat(),
        "end_date": program.end_date.isoformat(),
        "ranking_rewards": [{"rank": r.rank, "amount": r.amount, "currency": r.currency}
                            for r in program.ranking_rewards],
        "tiers": [{"name": t.name, "min_score": t.min_score, "max_score": t.max_score,
                   "amount": t.amount, "currency": t.currency} for t in program.tiers],
    }


# ---------------------------------------------------------------------------
# Configuration tables
# ---------------------------------------------------------------------------


def upsert_component(session: Session, org_id: int, data: dict[str, Any]) -> Component:
    row = session.execute(
        select(Component).where(Component.org_id == org_id, Component.key == data["key"])
    ).scalar_one_or_none()
    if row is None:
        row = Component(org_id=org_id, key=data["key"])
        session.add(row)
    for field in ("name", "description", "multiplier", "is_active", "sort_order", "repo_id"):
        if field in data:
            setattr(row, field, data[field])
    if row.key == OTHER_KEY:
        # Fallback target: always active, always x1
        row.is_active = True
        row.multiplier = 1.0
    session.flush()
    return row


def delete_component(session: Session, row: Component) -> None:
    """Delete a component and its file rules. Caller must commit.

    Components that evaluations still point at can only be deactivated.
    """
    if row.key == OTHER_KEY:
        raise InvalidTransitionError("The OTHER component cannot be deleted")
    referenced = session.execute(
        select(Evaluation.id).where(Evaluation.component_id == row.id).limit(1)
    ).first()
    if referenced is not None:
        raise InvalidTransitionError(f"Component {row.key} is used by evaluations; deactivate it instead")
    session.execute(delete(PullRequestComponent).where(PullRequestComponent.component_id == row.id))
    session.delete(row)
    session.flush()


def add_file_rule(session: Session, component: Component, match_type: str, pattern: str,
                  priority: int = 0) -> ComponentFileRule:
    check_pattern(match_type, pattern)
    rule = ComponentFileRule(component_id=component.id, match_type=match_type, pattern=pattern, priority=priority)
    session.add(rule)
    session.flush()
    return rule


def list_file_rules(session: Session, org_id: int) -> list[ComponentFileRule]:
    return list(session.execute(
        select(ComponentFileRule)
        .join(Component, ComponentFileRule.component_id == Component.id)
        .where(Component.org_id == org_id)
        .order_by(Component.key, ComponentFileRule.priority.desc(), ComponentFileRule.id)
    ).scalars().all())


def upsert_severity(session: Session, org_id: int, data: dict[str, Any]) -> SeverityLevel:
    row = session.execute(
        select(SeverityLevel).where(SeverityLevel.org_id == org_id, SeverityLevel.key == data["key"])
    ).scalar_one_or_none()
    if row is None:
        row = SeverityLevel(org_id=org_id, key=data["key"])
        session.add(row)
    for field in ("name", "description", "base_points", "sort_order"):
        if field in data:
            setattr(row, field, data[field])
    session.flush()
    return row
