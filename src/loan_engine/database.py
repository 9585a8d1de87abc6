"""Database connection and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

SWEEP_LOCK_NAME = "loan_engine.payments.sweep"


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create a database engine for the given URL.

    In-memory SQLite shares a single connection so every session sees the
    same database.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory used by the API, the CLI and the sweep."""
    return sessionmaker(engine, expire_on_commit=False)


@contextmanager
def sweep_lock(engine: Engine, name: str = SWEEP_LOCK_NAME) -> Iterator[bool]:
    """Hold a cross-process lock for the duration of one sweep.

    Uses a session-level advisory lock on a dedicated connection so the lock
    survives the per-intent commits the sweep performs. Yields True if the lock
    was acquired, False if another process holds it. Dialects without advisory
    locks always yield True; the in-process guard in SweepRunner still applies.
    """
    if engine.dialect.name != "postgresql":
        yield True
        return

    with engine.connect() as conn:
        acquired = bool(
            conn.execute(
                text("SELECT pg_try_advisory_lock(hashtext(:name))"),
                {"name": name},
            ).scalar()
        )
        conn.commit()
        try:
            yield acquired
        finally:
            if acquired:
                conn.execute(
                    text("SELECT pg_advisory_unlock(hashtext(:name))"),
                    {"name": name},
                )
                conn.commit()
