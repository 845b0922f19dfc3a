from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from bountyscore.config import Settings, get_settings
from bountyscore.models import Base, Component, Organization, RuleSet, SeverityLevel
from bountyscore.scoring import OTHER_KEY

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        log.info("Database ready at %s", db_path)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, MCP server, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def upsert_statement(session: Session, model: type[Base], values: dict[str, Any],
                     conflict: list[str], update: list[str]):
    """Build ``INSERT ... ON CONFLICT DO UPDATE`` for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f"Upsert not supported for dialect {dialect!r}")
    return stmt.on_conflict_do_update(
        index_elements=conflict,
        set_={col: stmt.excluded[col] for col in update},
    )


def seed_organization(session: Session, org: Organization, settings: Settings | None = None) -> None:
    """Seed the default ruleset, components and severities for *org*.

    Only fills what is missing, so it is safe to run repeatedly. Caller must commit.
    """
    from bountyscore.classifier import DEFAULT_PROMPT_TEMPLATE

    settings = settings or get_settings()
    seed = settings.load_ruleset_seed()

    has_ruleset = session.execute(
        select(RuleSet.id).where(RuleSet.org_id == org.id).limit(1)
    ).scalar_one_or_none()
    if has_ruleset is None:
        session.add(RuleSet(
            org_id=org.id, name="Default", version=1, is_default=True,
            model_name=settings.llm_model, prompt_template=DEFAULT_PROMPT_TEMPLATE,
        ))

    existing_components = set(session.execute(
        select(Component.key).where(Component.org_id == org.id)
    ).scalars())
    for i, spec in enumerate(seed["components"]):
        key = str(spec["key"])
        if key in existing_components:
            continue
        session.add(Component(
            org_id=org.id, key=key, name=spec.get("name") or key,
            description=spec.get("description") or "",
            multiplier=1.0 if key == OTHER_KEY else max(float(spec.get("multiplier", 1.0)), 0.0),
            sort_order=spec.get("sort_order", i),
        ))

    existing_severities = set(session.execute(
        select(SeverityLevel.key).where(SeverityLevel.org_id == org.id)
    ).scalars())
    if not existing_severities:
        for i, spec in enumerate(seed["severities"]):
            session.add(SeverityLevel(
                org_id=org.id, key=str(spec["key"]), name=spec.get("name") or spec["key"],
                description=spec.get("description") or "",
                base_points=max(int(spec.get("base_points", 0)), 0),
                sort_order=spec.get("sort_order", i),
            ))
    session.flush()
