from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable

from sqlalchemy import Engine, create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from epicscore.config import DEFAULT_ROLES
from epicscore.models import Base, Role

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def enable_foreign_keys(engine: Engine) -> None:
    """SQLite ignores ON DELETE CASCADE unless the pragma is set per connection."""

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_db(db_path: str | Path, roles: Iterable[tuple[str, str]] | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        enable_foreign_keys(_engine)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_roles(_engine, roles if roles is not None else DEFAULT_ROLES)
    log.info("Database ready at %s", db_path)


def seed_roles(engine: Engine, roles: Iterable[tuple[str, str]]) -> int:
    """Insert any missing default roles. Returns how many were added."""
    added = 0
    with Session(engine) as session:
        existing = set(session.execute(select(Role.name)).scalars())
        for name, description in roles:
            if name in existing:
                continue
            session.add(Role(name=name, description=description))
            added += 1
        session.commit()
    if added:
        log.info("Seeded %d roles", added)
    return added


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, scripts)::

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
