"""Database engine builder (single source of truth).

- Default pool: NullPool (connection pooling left to pgbouncer / the pooler)
- ENT_DB_POOL=queuepool switches to a client-side QueuePool
- pool_pre_ping=True always
- SQLite URLs (tests, local tooling) get check_same_thread=False and a busy
  timeout so concurrent writers wait instead of failing
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, QueuePool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from ent_api.config.env import get_database_url

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str | None = None) -> Engine:
    """Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, resolved via get_database_url().

    Returns:
        SQLAlchemy Engine instance.

    Environment Variables:
        ENT_DB_POOL: "nullpool" (default) | "queuepool"
        ENT_DB_POOL_SIZE: QueuePool size (default: 5)
        ENT_DB_MAX_OVERFLOW: QueuePool overflow (default: 10)
    """
    url = database_url or get_database_url()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}

    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        engine = create_engine(url, **kwargs)
        _install_sqlite_pragmas(engine)
        logger.info("Database engine built", extra={"url": _mask_password(url), "pool": "default"})
        return engine

    pool_mode = os.getenv("ENT_DB_POOL", "nullpool").lower()
    if pool_mode == "queuepool":
        kwargs["poolclass"] = QueuePool
        kwargs["pool_size"] = int(os.getenv("ENT_DB_POOL_SIZE", "5"))
        kwargs["max_overflow"] = int(os.getenv("ENT_DB_MAX_OVERFLOW", "10"))
    else:
        kwargs["poolclass"] = NullPool

    engine = create_engine(url, **kwargs)
    logger.info("Database engine built", extra={"url": _mask_password(url), "pool": pool_mode})
    return engine


def _install_sqlite_pragmas(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build sessionmaker (autocommit=False, autoflush=False, expire_on_commit=False)."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
