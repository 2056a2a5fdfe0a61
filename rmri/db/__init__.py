"""
Engine and session handling for the run/iteration/agent tables.

One process-wide engine; ``get_session`` initializes it lazily from
``RMRIConfig.database`` when nothing has called ``init_database`` yet.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, pool
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from rmri.db.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _engine_options(database_url: str, pool_size: int, max_overflow: int, pool_timeout: int) -> Dict[str, Any]:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": pool_timeout,
            "pool_pre_ping": True,
        }

    # sessions can be opened outside the thread that created the engine
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # each new connection would otherwise see an empty database
        options["poolclass"] = pool.StaticPool
    return options


def init_database(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30
):
    """
    Create the engine, the session factory and any missing tables.

    Pool settings only apply to server databases; SQLite URLs ignore them.
    ``sqlite:///:memory:`` is shared by all sessions, which is what the
    tests rely on.
    """
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(
        database_url,
        echo=echo,
        **_engine_options(database_url, pool_size, max_overflow, pool_timeout)
    )
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=_engine)

    logger.info(f"Database ready at {_engine.url.render_as_string(hide_password=True)}")


def reset_database():
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine, _SessionLocal = None, None


def init_from_config():
    """Initialize from ``get_config().database``."""
    from rmri.config import get_config

    db = get_config().database
    init_database(db.url, echo=db.echo, pool_size=db.pool_size, max_overflow=db.max_overflow)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Transactional session scope.

    Commits when the block exits normally and rolls back when it raises.

        with get_session() as session:
            run = get_run(session, "run-1")
    """
    if _SessionLocal is None:
        try:
            init_from_config()
        except Exception as e:
            raise RuntimeError(f"Database auto-initialization failed: {e}") from e

    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
