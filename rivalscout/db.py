from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rivalscout.models import Base

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None

DATA_DIR = Path(__file__).parent / "data"


def default_db_url() -> str:
    return os.environ.get("RIVALSCOUT_DB_URL") or f"sqlite:///{DATA_DIR / 'rivalscout.db'}"


def init_db(db_url: str | None = None) -> Engine:
    """Create (or re-create) the process engine and session factory for *db_url*."""
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = db_url or default_db_url()
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if url.startswith("sqlite:///") and ":memory:" not in url:
                Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        return _engine


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


def get_session_factory() -> sessionmaker:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, scheduler handlers, scripts)::

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


# ---------------------------------------------------------------------------
# Insert-if-absent
# ---------------------------------------------------------------------------


def insert_if_absent(session: Session, model: type, values: list[dict[str, Any]], keys: list[str]) -> None:
    """Bulk ``INSERT ... ON CONFLICT DO NOTHING`` on the unique *keys* of *model*.

    Concurrent writers racing on the same key both succeed; exactly one row survives.
    Callers re-select afterwards to obtain the persisted rows.
    """
    if not values:
        return
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(values).on_conflict_do_nothing(index_elements=keys)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(values).on_conflict_do_nothing(index_elements=keys)
    else:
        # Fall back to check-then-insert; not race-safe across processes.
        for row in values:
            clause = [getattr(model, k) == row[k] for k in keys]
            if session.execute(select(model).where(*clause)).first() is None:
                session.add(model(**row))
        session.flush()
        return
    session.execute(stmt)
