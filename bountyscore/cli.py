from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select

from bountyscore import services
from bountyscore.config import get_settings
from bountyscore.db import init_db, seed_organization, session_scope
from bountyscore.models import BountyProgram, Component, GithubConnection, Organization, Repository

app = typer.Typer(help="Score merged GitHub pull requests and compute bounty payouts")
console = Console()
log = logging.getLogger(__name__)


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db: str | None = typer.Option(None, "--db", help="SQLite database file (overrides BOUNTYSCORE_DB)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db:
        os.environ["BOUNTYSCORE_DB"] = str(Path(db).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, (list, dict)):
            value = f"{len(value)} items" if isinstance(value, list) else json.dumps(value, default=str)
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _print_rows(title: str, rows: list[dict[str, Any]], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False, default=str))
        return
    if not rows:
        console.print(Panel("[dim]nothing to show[/dim]", title=title, border_style="yellow"))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in rows[0]:
        table.add_column(col)
    for row in rows:
        table.add_row(*(_format_scalar(v) for v in row.values()))
    console.print(Panel(table, title=title, border_style="cyan"))


def _run(ctx: typer.Context, label: str, runner: Callable[[], Awaitable[Any]]) -> Any:
    started = time.perf_counter()
    if _wants_json(ctx):
        return asyncio.run(runner())
    with console.status(f"[bold cyan]{label}[/bold cyan]", spinner="dots"):
        result = asyncio.run(runner())
    console.print(f"[green]{label} finished in {time.perf_counter() - started:.1f}s[/green]")
    return result


def _require_org(session, slug: str) -> Organization:
    org = services.get_org_by_slug(session, slug)
    if org is None:
        raise typer.BadParameter(f"Unknown organization '{slug}'")
    return org


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
) -> None:
    """Run the HTTP API (webhook receiver and admin endpoints)."""
    import uvicorn
    uvicorn.run("bountyscore.app:app", host=host, port=port)


@app.command("init-org")
def init_org_command(
    ctx: typer.Context,
    slug: str = typer.Argument(..., help="Short identifier used in API paths."),
    name: str | None = typer.Option(None, help="Display name."),
) -> None:
    """Create an organization and seed its ruleset, components and severities."""
    init_db()
    with session_scope() as session:
        org = services.get_org_by_slug(session, slug)
        if org is None:
            org = Organization(slug=slug, name=name or slug)
            session.add(org)
            session.flush()
        seed_organization(session, org)
        session.commit()
        _print("init-org", {
            "id": org.id, "slug": org.slug,
            "components": len(services.load_components(session, org.id)),
            "severities": len(services.load_severities(session, org.id)),
        }, ctx)


@app.command("connect")
def connect_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    installation_id: int | None = typer.Option(None, help="GitHub App installation id."),
    token: bool = typer.Option(False, "--token", help="Use GITHUB_TOKEN instead of a GitHub App."),
    github_org: str = typer.Option("", help="GitHub organization login."),
) -> None:
    """Register the organization's active GitHub connection."""
    if installation_id is None and not token:
        raise typer.BadParameter("Provide --installation-id or --token")
    init_db()
    with session_scope() as session:
        org = _require_org(session, org_slug)
        for conn in session.execute(select(GithubConnection).where(GithubConnection.org_id == org.id)).scalars():
            conn.is_active = False
        conn = GithubConnection(
            org_id=org.id, installation_type="token" if token else "app",
            github_installation_id=installation_id, github_org_name=github_org, is_active=True,
        )
        session.add(conn)
        session.commit()
        _print("connect", {"org": org.slug, "connection_id": conn.id, "type": conn.installation_type,
                           "installation_id": installation_id}, ctx)


@app.command("track-repo")
def track_repo_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    full_name: str = typer.Argument(..., help="owner/name"),
    github_repo_id: int = typer.Option(..., help="Numeric GitHub repository id."),
    default_branch: str = typer.Option("main"),
) -> None:
    """Start tracking a repository for webhooks, sync and backfill."""
    init_db()
    with session_scope() as session:
        org = _require_org(session, org_slug)
        repo = services.get_tracked_repository(session, org.id, github_repo_id) or session.execute(
            select(Repository).where(Repository.org_id == org.id, Repository.github_repo_id == github_repo_id)
        ).scalar_one_or_none()
        if repo is None:
            repo = Repository(org_id=org.id, github_repo_id=github_repo_id, full_name=full_name)
            session.add(repo)
        repo.full_name = full_name
        repo.default_branch = default_branch
        repo.is_active = True
        session.commit()
        _print("track-repo", {"id": repo.id, "full_name": repo.full_name, "github_repo_id": github_repo_id}, ctx)


@app.command("sync")
def sync_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    repo: str | None = typer.Option(None, help="Only this repository (owner/name)."),
    months: int = typer.Option(3, help="Lookback window in months."),
) -> None:
    """Record merged pull requests from GitHub without evaluating them."""
    init_db()
    settings = get_settings()

    async def runner() -> list[dict[str, Any]]:
        with session_scope() as session:
            org = _require_org(session, org_slug)
            stmt = select(Repository).where(Repository.org_id == org.id, Repository.is_active.is_(True))
            if repo:
                stmt = stmt.where(Repository.full_name == repo)
            repos = session.execute(stmt).scalars().all()
            async with services.github_client_for_org(session, org, settings) as github:
                return [await services.sync_repository(session, org, r, github, months, settings=settings)
                        for r in repos]

    _print_rows("sync", _run(ctx, "Syncing", runner), ctx)


@app.command("backfill")
def backfill_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    repo_id: int | None = typer.Option(None, help="Only this repository (internal id)."),
    limit: int | None = typer.Option(None, help="Process at most N pull requests."),
    comments: bool = typer.Option(False, "--comments", help="Post evaluation comments on GitHub."),
    scheduled: bool = typer.Option(False, "--scheduled", help="Record the batch as a scheduled run."),
) -> None:
    """Evaluate recorded merged pull requests that lack an evaluation."""
    init_db()
    settings = get_settings()

    async def runner() -> dict[str, Any]:
        with session_scope() as session:
            org = _require_org(session, org_slug)
            async with services.github_client_for_org(session, org, settings) as github:
                return await services.backfill(
                    session, org, github, repo_id=repo_id, limit=limit, post_comments=comments,
                    run_type="scheduled" if scheduled else "manual", settings=settings,
                )

    summary = _run(ctx, "Backfilling", runner)
    _print("backfill", summary, ctx)
    if summary["errors"] and not _wants_json(ctx):
        _print_rows("errors", [d for d in summary["details"] if d["status"] == "error"], ctx)


@app.command("batches")
def batches_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    limit: int = typer.Option(20, help="Show at most N batches."),
) -> None:
    """List recent evaluation batches."""
    init_db()
    with session_scope() as session:
        org = _require_org(session, org_slug)
        rows = [services.batch_summary(b) for b in services.list_batches(session, org.id, limit=limit)]
        _print_rows("batches", rows, ctx)


@app.command("add-rule")
def add_rule_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    component_key: str = typer.Argument(..., help="Component credited with matching files."),
    pattern: str = typer.Argument(..., help="Path pattern, e.g. src/api/ or *.tsx"),
    match_type: str = typer.Option("prefix", help="prefix, suffix, regex or glob."),
    priority: int = typer.Option(0, help="Higher priority wins the primary component."),
) -> None:
    """Add a file rule mapping changed paths to a component."""
    init_db()
    with session_scope() as session:
        org = _require_org(session, org_slug)
        component = session.execute(
            select(Component).where(Component.org_id == org.id, Component.key == component_key)
        ).scalar_one_or_none()
        if component is None:
            raise typer.BadParameter(f"Unknown component {component_key!r}")
        try:
            rule = services.add_file_rule(session, component, match_type, pattern, priority)
        except ValueError as exc:
            raise typer.BadParameter(str(exc))
        session.commit()
        _print("add-rule", {"id": rule.id, "component": component.key, "match_type": rule.match_type,
                            "pattern": rule.pattern, "priority": rule.priority}, ctx)


@app.command("rewards")
def rewards_command(
    ctx: typer.Context,
    org_slug: str = typer.Argument(...),
    program_id: int = typer.Argument(...),
    commit: bool = typer.Option(False, "--commit", help="Persist the projection as pending rewards."),
) -> None:
    """Show (or commit) the reward projection for a bounty program."""
    init_db()
    with session_scope() as session:
        org = _require_org(session, org_slug)
        program = session.get(BountyProgram, program_id)
        if program is None or program.org_id != org.id:
            raise typer.BadParameter(f"Unknown program {program_id}")
        if commit:
            try:
                committed = services.commit_program_rewards(session, program)
            except services.InvalidTransitionError as exc:
                raise typer.BadParameter(str(exc))
            rows = [services.reward_summary(r) for r in committed]
            session.commit()
        else:
            rows = [services.calculated_summary(session, c)
                    for c in services.calculate_program_rewards(session, program)]
        _print_rows(f"{program.name} ({program.program_type})", rows, ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
