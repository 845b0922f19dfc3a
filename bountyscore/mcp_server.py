from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from bountyscore import services
from bountyscore.db import get_session, init_db
from bountyscore.models import BountyProgram
from bountyscore.scoring import ConfigurationError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def bountyscore_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "bountyscore",
    instructions=(
        "bountyscore scores merged GitHub pull requests for bug bounty programs. "
        "Start with get_stats(org) for an overview, list_evaluations(org) to browse "
        "scored pull requests, and calculate_rewards(org, program_id) to preview payouts."
    ),
    lifespan=bountyscore_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _org_or_error(session, slug: str):
    org = services.get_org_by_slug(session, slug)
    if org is None:
        return None, {"error": f"Organization '{slug}' not found"}
    return org, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("bountyscore://overview")
def bountyscore_overview() -> str:
    """Overview of the scoring model and workflow."""
    return json.dumps({
        "system": "bountyscore: AI-assisted bounty scoring for merged pull requests",
        "scoring": {
            "eligibility": "issue AND fix_implementation AND pr_linked AND tests",
            "final_score": "severity.base_points * component.multiplier when eligible, else 0",
            "fallbacks": "unknown component -> OTHER (x1); unknown severity -> lowest-ranked severity",
        },
        "workflow": [
            "1. get_stats(org) - coverage and score distribution.",
            "2. list_unprocessed(org) - merged PRs still waiting for an evaluation.",
            "3. list_evaluations(org) - scored PRs with component, severity and score.",
            "4. calculate_rewards(org, program_id) - pending payout projection for a program.",
            "5. list_batches(org) - history of backfill runs and their failures.",
        ],
        "programs": {
            "ranking": "Top-N developers by summed score get the reward for their rank.",
            "tier": "Each developer gets the highest tier whose score range contains their total.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats(org: str) -> dict:
    """Aggregate statistics for an organization: PR counts, eligibility, top developers."""
    with _session() as session:
        organization, err = _org_or_error(session, org)
        if err:
            return err
        try:
            return services.compute_stats(session, organization.id)
        except ConfigurationError as exc:
            return {"error": str(exc)}


@mcp.tool()
def list_evaluations(org: str, eligible_only: bool = False, limit: int = 50) -> list[dict] | dict:
    """List evaluations under the active ruleset, most recently merged first.

    Args:
        org: Organization slug.
        eligible_only: Only include evaluations that passed all four eligibility checks.
        limit: Max results (default 50, max 500).
    """
    with _session() as session:
        organization, err = _org_or_error(session, org)
        if err:
            return err
        try:
            evaluations = services.list_evaluations(
                session, organization.id, eligible_only=eligible_only, limit=max(1, min(limit, 500)),
            )
        except ConfigurationError as exc:
            return {"error": str(exc)}
        return [services.evaluation_summary(ev) for ev in evaluations]


@mcp.tool()
def list_unprocessed(org: str, limit: int = 100) -> list[dict] | dict:
    """List recorded merged pull requests that have no evaluation yet."""
    with _session() as session:
        organization, err = _org_or_error(session, org)
        if err:
            return err
        try:
            ruleset = services.get_active_ruleset(session, organization.id)
        except ConfigurationError as exc:
            return {"error": str(exc)}
        return [
            {"id": pr.id, "repository": pr.repository.full_name, "number": pr.number, "title": pr.title,
             "merged_at": pr.merged_at.isoformat() if pr.merged_at else None}
            for pr in services.find_unprocessed(session, organization.id, ruleset.id, limit=max(1, limit))
        ]


@mcp.tool()
def list_batches(org: str, limit: int = 20) -> list[dict] | dict:
    """Recent evaluation batches with their status and processed/error counts."""
    with _session() as session:
        organization, err = _org_or_error(session, org)
        if err:
            return err
        return [services.batch_summary(b) for b in services.list_batches(session, organization.id, max(1, limit))]


@mcp.tool()
def calculate_rewards(org: str, program_id: int) -> dict:
    """Preview the pending reward projection for a bounty program. Writes nothing."""
    with _session() as session:
        organization, err = _org_or_error(session, org)
        if err:
            return err
        program = session.get(BountyProgram, program_id)
        if program is None or program.org_id != organization.id:
            return {"error": f"Program {program_id} not found"}
        try:
            calculated = services.calculate_program_rewards(session, program)
        except ConfigurationError as exc:
            return {"error": str(exc)}
        return {
            "program": services.program_summary(program),
            "rewards": [services.calculated_summary(session, c) for c in calculated],
        }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the bountyscore MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
