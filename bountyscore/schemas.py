"""Pydantic schemas: GitHub payloads at the boundary, API request/response bodies."""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bountyscore.mapping import check_pattern


# ---------------------------------------------------------------------------
# GitHub payloads
# ---------------------------------------------------------------------------


class _GitHubModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GitHubUser(_GitHubModel):
    id: int
    login: str
    avatar_url: str = ""


class GitRef(_GitHubModel):
    sha: str = ""


class PullPayload(_GitHubModel):
    """A pull request as delivered by webhooks and the list-pulls endpoint."""
    id: int
    number: int
    title: str = ""
    body: str | None = None
    merged: bool = False
    merged_at: datetime | None = None
    created_at: datetime | None = None
    user: GitHubUser | None = None
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    head: GitRef = Field(default_factory=GitRef)
    base: GitRef = Field(default_factory=GitRef)
    html_url: str = ""


class RepositoryPayload(_GitHubModel):
    id: int
    full_name: str
    default_branch: str = "main"


class InstallationPayload(_GitHubModel):
    id: int


class PullRequestEvent(_GitHubModel):
    action: str
    pull_request: PullPayload
    repository: RepositoryPayload
    installation: InstallationPayload | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_key(v: str) -> str:
    if not _KEY_RE.match(v):
        raise ValueError("key must contain only letters, numbers, dots, hyphens and underscores")
    return v


class ComponentIn(BaseModel):
    key: str
    name: str = ""
    description: str = ""
    multiplier: float = Field(1.0, ge=0)
    is_active: bool = True
    sort_order: int = 0
    repo_id: int | None = None

    _key = field_validator("key")(_check_key)


class ComponentOut(ComponentIn):
    model_config = ConfigDict(from_attributes=True)

    id: int


class SeverityIn(BaseModel):
    key: str
    name: str = ""
    description: str = ""
    base_points: int = Field(ge=0)
    sort_order: int = 0

    _key = field_validator("key")(_check_key)


class SeverityOut(SeverityIn):
    model_config = ConfigDict(from_attributes=True)

    id: int


class FileRuleIn(BaseModel):
    match_type: Literal["prefix", "suffix", "regex", "glob"]
    pattern: str = Field(min_length=1)
    priority: int = 0

    @model_validator(mode="after")
    def regex_compiles(self) -> FileRuleIn:
        check_pattern(self.match_type, self.pattern)
        return self


class FileRuleOut(FileRuleIn):
    model_config = ConfigDict(from_attributes=True)

    id: int
    component_id: int


class PullRequestComponentOut(BaseModel):
    component_id: int
    key: str
    lines_changed: int
    is_primary: bool


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    repo_id: int | None = None
    lookback_months: int = Field(3, ge=1, le=36)


class BackfillRequest(BaseModel):
    repo_id: int | None = None
    limit: int | None = Field(None, ge=1)
    post_comments: bool = False


class BatchSummary(BaseModel):
    batch_id: int | None = None
    total: int
    processed: int
    skipped: int
    errors: int
    details: list[dict[str, Any]] = []


class BatchOut(BaseModel):
    id: int
    rule_set_id: int | None = None
    run_type: str
    status: str
    total: int
    processed: int
    skipped: int
    errors: int
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class EvaluationOut(BaseModel):
    id: int
    pull_request_id: int
    repository: str
    number: int
    title: str
    author: str | None = None
    merged_at: datetime | None = None
    component_key: str
    severity_key: str
    is_eligible: bool
    final_score: float
    impact_summary: str = ""
    evaluated_at: datetime | None = None


class StatsOut(BaseModel):
    pull_requests: int
    evaluated: int
    unprocessed: int
    eligible: int
    total_score: float
    by_severity: dict[str, int]
    by_component: dict[str, int]
    top_developers: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Bounty programs
# ---------------------------------------------------------------------------


class RankRewardIn(BaseModel):
    rank: int
    amount: float
    currency: str = "USD"


class TierIn(BaseModel):
    name: str
    min_score: float
    max_score: float | None = None
    amount: float
    currency: str = "USD"


class ProgramCreate(BaseModel):
    name: str
    description: str = ""
    program_type: Literal["ranking", "tier"]
    period_type: Literal["weekly", "monthly", "quarterly", "custom"] = "custom"
    start_date: date | None = None
    end_date: date | None = None
    ranking_rewards: list[RankRewardIn] = []
    tiers: list[TierIn] = []

    @model_validator(mode="after")
    def custom_needs_dates(self) -> ProgramCreate:
        if self.period_type == "custom" and (self.start_date is None or self.end_date is None):
            raise ValueError("custom programs need start_date and end_date")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ProgramStatusUpdate(BaseModel):
    status: Literal["draft", "active", "completed", "cancelled"]


class RewardOut(BaseModel):
    id: int | None = None
    developer_id: int
    login: str = ""
    final_score: float
    rank: int | None = None
    tier_name: str | None = None
    amount: float
    currency: str
    payout_status: str = "pending"


class MarkPaidRequest(BaseModel):
    payout_method: str = Field(min_length=1)
    payout_reference: str = Field(min_length=1)
    payout_notes: str = ""


class RejectRequest(BaseModel):
    reason: str = ""
