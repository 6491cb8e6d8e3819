"""
Database Connection Module

Provides the SQLAlchemy engine for the SQL-backed stores.
"""

import logging
import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from budget.sql_store import metadata

# Importing registers the approval tables on the shared metadata
import approvals.sql_store  # noqa: F401

logger = logging.getLogger(__name__)


def database_url() -> str:
    """Database URL from the environment."""
    return os.getenv(
        "DATABASE_URL",
        f"postgresql://{os.getenv('POSTGRES_USER', 'pmis')}:"
        f"{os.getenv('POSTGRES_PASSWORD', 'password')}@"
        f"{os.getenv('POSTGRES_HOST', 'localhost')}:"
        f"{os.getenv('POSTGRES_PORT', '5432')}/"
        f"{os.getenv('POSTGRES_DB', 'pmis')}"
    )


@lru_cache
def get_engine() -> Engine:
    """Create the process-wide engine on first use."""
    url = database_url()
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def init_schema(engine: Engine | None = None) -> None:
    """Create any missing ledger and approval tables."""
    engine = engine or get_engine()
    metadata.create_all(engine)
    logger.info(f"Database schema ready ({len(metadata.tables)} tables)")
