"""
Database Connection
"""
from contextlib import contextmanager
import logging
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from changedetect.infrastructure.database.models import Base
from changedetect.core.config import settings
from changedetect.core.exceptions import DatabaseError

logger = logging.getLogger(__name__)

class DatabaseManager:
    """Sync database manager used by workers."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.database.database_url
        self.engine = None
        self.SessionLocal = None
        self._initialize_engine()

    def _initialize_engine(self):
        engine_kwargs = {"echo": settings.debug, "future": True}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_recycle=settings.database.pool_recycle,
                pool_pre_ping=settings.database.pool_pre_ping,
            )

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(
            "Database engine initialized",
            extra={"dialect": self.engine.dialect.name}
        )

    def create_tables(self):
        """Create all database tables."""
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created")
        except Exception as e:
            logger.error(f"Failed to create database tables: {e}")
            raise DatabaseError("Failed to create tables", operation="create_tables", cause=e)

    def check_connection(self) -> bool:
        """Check if database connection is healthy."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self):
        if self.engine:
            self.engine.dispose()
            logger.info("Database connections closed")

_db_manager: Optional[DatabaseManager] = None

def get_db_manager() -> DatabaseManager:
    """Process-wide manager, created on first use."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager

__all__ = ['DatabaseManager', 'get_db_manager']
