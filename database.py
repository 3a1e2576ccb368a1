"""
Relational persistence for the store.

Every table is declared on ``Base`` (see models.py). Request handlers receive a
session through the ``get_db`` dependency; multi-write use-cases wrap their
writes in ``transaction(session)`` so they either commit or roll back as a unit.
"""
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List

from fastapi import Request
from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utc_now() -> datetime:
    # Naive UTC: the same value round-trips through PostgreSQL and SQLite.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def paginate(session: Session, stmt, page: int, limit: int):
    """Run ``stmt`` for one page; returns (rows, pagination dict)."""
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows: List[Any] = list(session.scalars(stmt.limit(limit).offset((page - 1) * limit)).unique())
    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def page_window(page: int, limit: int, default_limit: int = 20, max_limit: int = 100):
    """Clamp client-supplied paging values into range."""
    page = page if page and page > 0 else 1
    if not limit or limit < 1:
        limit = default_limit
    return page, min(limit, max_limit)
