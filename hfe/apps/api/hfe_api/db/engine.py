"""Database engine builder.

- Default pool: NullPool (transaction-mode poolers such as Supabase/pgbouncer
  do their own pooling); HFE_DB_POOL=queuepool opts into client-side pooling
- pool_pre_ping always on
- application_name tags every connection for pg_stat_activity
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, QueuePool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from hfe_api.config.env import get_database_url

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str | None = None) -> Engine:
    """Build the SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, resolved via config.env.get_database_url().

    Environment Variables:
        HFE_DB_POOL: "nullpool" (default) | "queuepool"
        HFE_DB_POOL_SIZE / HFE_DB_MAX_OVERFLOW: QueuePool sizing
        HFE_DB_APPLICATION_NAME: connection tag (default: hfe-api)
    """
    url = database_url or get_database_url()

    connect_args: dict[str, Any] = {}
    if url.startswith("postgresql"):
        app_name = os.getenv("HFE_DB_APPLICATION_NAME", "hfe-api")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = os.getenv("HFE_DB_POOL", "nullpool").lower()

    if pool_mode == "queuepool":
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=int(os.getenv("HFE_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("HFE_DB_MAX_OVERFLOW", "10")),
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    else:
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )

    logger.info(
        "DB_ENGINE_BUILT",
        extra={"database_url": _mask_password(url), "pool_mode": pool_mode},
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build the session factory bound to engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
