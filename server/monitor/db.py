from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from shared_lib.config import DatabaseConfig
from server.monitor.errors import PersistenceError


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create the async engine from database configuration."""
    return create_async_engine(
        config.get_url(),
        echo=config.echo,
        pool_pre_ping=True,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def dialect_insert(session: AsyncSession, table):
    """
    Return an INSERT construct supporting ON CONFLICT for the session's backend.

    PostgreSQL runs in production and SQLite in tests; both share the
    ``on_conflict_do_nothing`` / ``on_conflict_do_update`` API.
    """
    dialect_name: Optional[str] = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise PersistenceError(f"Unsupported database dialect for upserts: {dialect_name}")
