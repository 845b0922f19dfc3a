"""Bounty reward calculation.

Everything here is pure: evaluations go in, a ``pending`` reward projection
comes out. Persisting rewards and moving them through the payout lifecycle
live in ``bountyscore.services``.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable



class ProgramConfigError(ValueError):
    """Invalid ranking or tier configuration for a bounty program."""


@dataclass(frozen=True)
class ScoredEvaluation:
    developer_id: int
    final_score: float
    is_eligible: bool
    merged_at: datetime | None


@dataclass(frozen=True)
class DeveloperTotal:
    developer_id: int
    total_score: float
    pr_count: int


@dataclass(frozen=True)
class RankReward:
    rank: int
    amount: float
    currency: str = "USD"


@dataclass(frozen=True)
class TierBucket:
    name: str
    min_score: float
    amount: float
    max_score: float | None = None
    currency: str = "USD"

    def contains(self, value: float) -> bool:
        return value >= self.min_score and (self.max_score is None or value <= self.max_score)


@dataclass(frozen=True)
class CalculatedReward:
    developer_id: int
    final_score: float
    amount: float
    currency: str
    rank: int | None = None
    tier_name: str | None = None
    payout_status: str = "pending"


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def aggregate_scores(
    evaluations: Iterable[ScoredEvaluation], start: datetime, end: datetime,
) -> dict[int, DeveloperTotal]:
    """Sum eligible scores per developer for PRs merged in ``[start, end]``."""
    scores: dict[int, float] = defaultdict(float)
    counts: dict[int, int] = defaultdict(int)
    for ev in evaluations:
        if not ev.is_eligible or ev.merged_at is None:
            continue
        if not (start <= ev.merged_at <= end):
            continue
        scores[ev.developer_id] += ev.final_score
        counts[ev.developer_id] += 1
    return {
        dev: DeveloperTotal(developer_id=dev, total_score=scores[dev], pr_count=counts[dev])
        for dev in scores
    }


def rank_totals(totals: Iterable[DeveloperTotal]) -> list[DeveloperTotal]:
    """Score descending; ties broken by developer id so runs are repeatable."""
    return sorted(totals, key=lambda t: (-t.total_score, t.developer_id))


# ---------------------------------------------------------------------------
# Distribution policies
# ---------------------------------------------------------------------------


def calculate_ranking_rewards(
    totals: Iterable[DeveloperTotal], rank_rewards: list[RankReward],
) -> list[CalculatedReward]:
    by_rank = {r.rank: r for r in rank_rewards}
    out = []
    ranked = [t for t in rank_totals(totals) if t.total_score > 0]
    for position, total in enumerate(ranked, start=1):
        reward = by_rank.get(position)
        if reward is None:
            continue
        out.append(CalculatedReward(
            developer_id=total.developer_id, final_score=total.total_score,
            amount=reward.amount, currency=reward.currency, rank=position,
        ))
    return out


def calculate_tier_rewards(
    totals: Iterable[DeveloperTotal], tiers: list[TierBucket],
) -> list[CalculatedReward]:
    ordered = sorted(tiers, key=lambda t: t.min_score, reverse=True)
    out = []
    for total in rank_totals(totals):
        tier = next((t for t in ordered if t.contains(total.total_score)), None)
        if tier is None:
            continue
        out.append(CalculatedReward(
            developer_id=total.developer_id, final_score=total.total_score,
            amount=tier.amount, currency=tier.currency, tier_name=tier.name,
        ))
    return out


def calculate_rewards(
    program_type: str,
    evaluations: Iterable[ScoredEvaluation],
    start: datetime,
    end: datetime,
    rank_rewards: list[RankReward] | None = None,
    tiers: list[TierBucket] | None = None,
) -> list[CalculatedReward]:
    totals = aggregate_scores(evaluations, start, end).values()
    if program_type == "ranking":
        return calculate_ranking_rewards(totals, rank_rewards or [])
    if program_type == "tier":
        return calculate_tier_rewards(totals, tiers or [])
    raise ProgramConfigError(f"Unknown program type: {program_type!r}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_rank_rewards(rank_rewards: list[RankReward]) -> None:
    if not rank_rewards:
        raise ProgramConfigError("Ranking program needs at least one rank reward")
    seen: set[int] = set()
    for r in rank_rewards:
        if r.rank < 1:
            raise ProgramConfigError(f"Rank must be >= 1, got {r.rank}")
        if r.rank in seen:
            raise ProgramConfigError(f"Duplicate rank {r.rank}")
        if r.amount < 0:
            raise ProgramConfigError(f"Negative amount for rank {r.rank}")
        seen.add(r.rank)


def validate_tiers(tiers: list[TierBucket]) -> None:
    """Reject tiers that are malformed or whose score ranges overlap."""
    if not tiers:
        raise ProgramConfigError("Tier program needs at least one tier")
    for t in tiers:
        if t.min_score < 0 or t.amount < 0:
            raise ProgramConfigError(f"Tier {t.name!r} has a negative min score or amount")
        if t.max_score is not None and t.max_score < t.min_score:
            raise ProgramConfigError(f"Tier {t.name!r} has max_score below min_score")

    ordered = sorted(tiers, key=lambda t: t.min_score)
    for lower, upper in zip(ordered, ordered[1:]):
        # An open-ended tier can only be the top one
        if lower.max_score is None or lower.max_score >= upper.min_score:
            raise ProgramConfigError(f"Tiers {lower.name!r} and {upper.name!r} overlap")


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


def period_bounds(period_type: str, today: date) -> tuple[datetime, datetime]:
    """Window containing *today*: weekly (Mon-Sun), monthly or quarterly."""
    if period_type == "weekly":
        first = today - timedelta(days=today.weekday())
        last = first + timedelta(days=6)
    elif period_type == "monthly":
        first = today.replace(day=1)
        last = _next_month(first) - timedelta(days=1)
    elif period_type == "quarterly":
        first = date(today.year, 3 * ((today.month - 1) // 3) + 1, 1)
        last = _next_month(_next_month(_next_month(first))) - timedelta(days=1)
    else:
        raise ProgramConfigError(f"Period {period_type!r} needs explicit start and end dates")
    return datetime.combine(first, time.min), datetime.combine(last, time.max)


def _next_month(d: date) -> date:
    return date(d.year + 1, 1, 1) if d.month == 12 else date(d.year, d.month + 1, 1)
