"""
Database connection and session management for feedcast.

This module provides:
- SQLAlchemy engine and session factory setup for the upload ledger
- Session context manager with commit/rollback handling
- Table creation and health checks
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import DatabaseConfig, settings
from ..core.logging import get_logger

logger = get_logger("models.db")

# Base class for all SQLAlchemy models
Base = declarative_base()


class DatabaseManager:
    """Database connection and session manager."""

    def __init__(self, config: DatabaseConfig | None = None):
        self.config = config or settings.database
        self._engine = None
        self._session_factory = None

    def _engine_kwargs(self) -> dict:
        url = self.config.database_url
        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection so every session sees the same in-memory database
                kwargs["poolclass"] = StaticPool
            return kwargs
        return {
            "pool_size": self.config.pool_size,
            "max_overflow": self.config.max_overflow,
            "pool_timeout": self.config.pool_timeout,
            "pool_recycle": self.config.pool_recycle,
            "pool_pre_ping": True,
        }

    @property
    def engine(self):
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = create_engine(
                self.config.database_url,
                echo=self.config.echo_sql,
                **self._engine_kwargs(),
            )
        return self._engine

    @property
    def session_factory(self):
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine, class_=Session, autoflush=True, expire_on_commit=False
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Context manager that commits on success and rolls back on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all ledger tables that do not exist yet."""
        # Import entities so their tables are registered on Base.metadata
        from . import entities  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("Database tables ensured")

    def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def dispose(self) -> None:
        """Close all pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


# Global database manager
db_manager = DatabaseManager()
