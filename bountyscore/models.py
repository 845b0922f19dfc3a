from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    connections: Mapped[list[GithubConnection]] = relationship("GithubConnection", back_populates="organization", cascade="all, delete-orphan")
    repositories: Mapped[list[Repository]] = relationship("Repository", back_populates="organization", cascade="all, delete-orphan")


class GithubConnection(Base):
    __tablename__ = "github_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    installation_type: Mapped[str] = mapped_column(String(20), default="app")  # "app" | "token"
    github_org_name: Mapped[str] = mapped_column(String(200), default="")
    github_installation_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    organization: Mapped[Organization] = relationship("Organization", back_populates="connections")


class Repository(Base):
    __tablename__ = "repositories"
    __table_args__ = (UniqueConstraint("org_id", "github_repo_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    github_repo_id: Mapped[int] = mapped_column(Integer, nullable=False)
    full_name: Mapped[str] = mapped_column(String(300), nullable=False)
    default_branch: Mapped[str] = mapped_column(String(100), default="main")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    organization: Mapped[Organization] = relationship("Organization", back_populates="repositories")


class DeveloperIdentity(Base):
    __tablename__ = "developer_identities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    github_user_id: Mapped[int | None] = mapped_column(Integer, unique=True, nullable=True)
    login: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    avatar_url: Mapped[str] = mapped_column(String(500), default="")
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class PullRequest(Base):
    __tablename__ = "pull_requests"
    __table_args__ = (UniqueConstraint("org_id", "github_pr_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    repo_id: Mapped[int] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=False)
    github_pr_id: Mapped[int] = mapped_column(Integer, nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), default="")
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    author_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("developer_identities.id"), nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at_gh: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)
    changed_files: Mapped[int] = mapped_column(Integer, default=0)
    head_sha: Mapped[str] = mapped_column(String(64), default="")
    base_sha: Mapped[str] = mapped_column(String(64), default="")
    url: Mapped[str] = mapped_column(String(500), default="")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    repository: Mapped[Repository] = relationship("Repository")
    author: Mapped[DeveloperIdentity | None] = relationship("DeveloperIdentity")
    evaluations: Mapped[list[Evaluation]] = relationship("Evaluation", back_populates="pull_request", cascade="all, delete-orphan")
    components: Mapped[list[PullRequestComponent]] = relationship("PullRequestComponent", cascade="all, delete-orphan")


class RuleSet(Base):
    __tablename__ = "rule_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    is_default: Mapped[bool] = mapped_column(Boolean, default=True)
    model_name: Mapped[str] = mapped_column(String(100), default="")
    prompt_template: Mapped[str] = mapped_column(Text, default="")
    active_from: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Component(Base):
    __tablename__ = "components"
    __table_args__ = (UniqueConstraint("org_id", "key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    repo_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    rules: Mapped[list[ComponentFileRule]] = relationship(
        "ComponentFileRule", back_populates="component", cascade="all, delete-orphan",
        order_by="ComponentFileRule.priority.desc()",
    )


class ComponentFileRule(Base):
    __tablename__ = "component_file_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    component_id: Mapped[int] = mapped_column(Integer, ForeignKey("components.id"), nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), nullable=False)  # prefix | suffix | regex | glob
    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    component: Mapped[Component] = relationship("Component", back_populates="rules")


class SeverityLevel(Base):
    __tablename__ = "severity_levels"
    __table_args__ = (UniqueConstraint("org_id", "key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    key: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    base_points: Mapped[int] = mapped_column(Integer, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)  # 0 = most severe


class Evaluation(Base):
    __tablename__ = "pr_evaluations"
    __table_args__ = (UniqueConstraint("pull_request_id", "rule_set_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    pull_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("pull_requests.id"), nullable=False)
    rule_set_id: Mapped[int] = mapped_column(Integer, ForeignKey("rule_sets.id"), nullable=False)
    batch_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("evaluation_batches.id"), nullable=True)
    component_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("components.id"), nullable=True)
    component_key: Mapped[str] = mapped_column(String(100), default="")
    severity_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("severity_levels.id"), nullable=True)
    severity_key: Mapped[str] = mapped_column(String(50), default="")
    eligibility_issue: Mapped[bool] = mapped_column(Boolean, default=False)
    eligibility_fix_implementation: Mapped[bool] = mapped_column(Boolean, default=False)
    eligibility_pr_linked: Mapped[bool] = mapped_column(Boolean, default=False)
    eligibility_tests: Mapped[bool] = mapped_column(Boolean, default=False)
    is_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    base_points: Mapped[float] = mapped_column(Float, default=0.0)
    multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    final_score: Mapped[float] = mapped_column(Float, default=0.0)
    justification_component: Mapped[str] = mapped_column(Text, default="")
    justification_severity: Mapped[str] = mapped_column(Text, default="")
    impact_summary: Mapped[str] = mapped_column(Text, default="")
    eligibility_notes: Mapped[str] = mapped_column(Text, default="")
    review_notes: Mapped[str] = mapped_column(Text, default="")
    raw_response: Mapped[str] = mapped_column(Text, default="")  # classifier output as received
    model_name: Mapped[str] = mapped_column(String(100), default="")
    evaluation_source: Mapped[str] = mapped_column(String(20), default="auto")  # "auto" | "manual"
    evaluated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    pull_request: Mapped[PullRequest] = relationship("PullRequest", back_populates="evaluations")


class PullRequestComponent(Base):
    """Changed lines credited to a component by the file rules."""

    __tablename__ = "pr_components"
    __table_args__ = (UniqueConstraint("pull_request_id", "component_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pull_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("pull_requests.id"), nullable=False)
    component_id: Mapped[int] = mapped_column(Integer, ForeignKey("components.id"), nullable=False)
    lines_changed: Mapped[int] = mapped_column(Integer, default=0)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)

    component: Mapped[Component] = relationship("Component")


class EvaluationBatch(Base):
    __tablename__ = "evaluation_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    rule_set_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("rule_sets.id"), nullable=True)
    run_type: Mapped[str] = mapped_column(String(20), default="manual")  # manual | scheduled
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | running | completed | failed
    total: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class BountyProgram(Base):
    __tablename__ = "bounty_programs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    program_type: Mapped[str] = mapped_column(String(20), nullable=False)  # "ranking" | "tier"
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | active | completed | cancelled
    period_type: Mapped[str] = mapped_column(String(20), default="custom")
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    ranking_rewards: Mapped[list[BountyRankingReward]] = relationship(
        "BountyRankingReward", cascade="all, delete-orphan", order_by="BountyRankingReward.rank",
    )
    tiers: Mapped[list[BountyTier]] = relationship(
        "BountyTier", cascade="all, delete-orphan", order_by="BountyTier.min_score.desc()",
    )
    rewards: Mapped[list[BountyReward]] = relationship("BountyReward", back_populates="program", cascade="all, delete-orphan")


class BountyRankingReward(Base):
    __tablename__ = "bounty_ranking_rewards"
    __table_args__ = (UniqueConstraint("program_id", "rank"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    program_id: Mapped[int] = mapped_column(Integer, ForeignKey("bounty_programs.id"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD")


class BountyTier(Base):
    __tablename__ = "bounty_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    program_id: Mapped[int] = mapped_column(Integer, ForeignKey("bounty_programs.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_score: Mapped[float] = mapped_column(Float, nullable=False)
    max_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class BountyReward(Base):
    __tablename__ = "bounty_rewards"
    __table_args__ = (UniqueConstraint("program_id", "developer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    program_id: Mapped[int] = mapped_column(Integer, ForeignKey("bounty_programs.id"), nullable=False)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False)
    developer_id: Mapped[int] = mapped_column(Integer, ForeignKey("developer_identities.id"), nullable=False)
    final_score: Mapped[float] = mapped_column(Float, default=0.0)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    payout_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | approved | paid | rejected
    payout_method: Mapped[str] = mapped_column(String(100), default="")
    payout_reference: Mapped[str] = mapped_column(String(200), default="")
    payout_notes: Mapped[str] = mapped_column(Text, default="")
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    program: Mapped[BountyProgram] = relationship("BountyProgram", back_populates="rewards")
    developer: Mapped[DeveloperIdentity] = relationship("DeveloperIdentity")
