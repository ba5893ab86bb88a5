from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from dulu.config import Settings
from dulu.models import Base

logger = logging.getLogger(__name__)


engine: Engine | None = None
_session_factory: sessionmaker | None = None


class _SessionWrapper:
    """Callable proxy returning sessions from the current factory."""

    def __call__(self, *args: Any, **kwargs: Any):
        if _session_factory is None:
            raise RuntimeError("Database not initialized")
        return _session_factory(*args, **kwargs)


SessionLocal = _SessionWrapper()


def init_db(cfg: Settings) -> None:
    """Create engine and session factory using SQLAlchemy's ``create_engine``."""
    global engine, _session_factory

    engine_kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if not cfg.database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=20, max_overflow=0, pool_recycle=30)
    engine = create_engine(cfg.database_url, **engine_kwargs)
    _session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )

    if cfg.db_create_all:
        Base.metadata.create_all(engine)
    logger.info("database initialized", extra={"dialect": engine.dialect.name})
