"""
Database connection and session management for Registrations Service.
Transaction management for order and registration writes.
"""

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Generator, Optional
import logging

from app.core.config import config
from app.models.registration import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Database manager for order and registration consistency.
    Handles connection pooling and transaction management.
    """

    def __init__(self):
        self.engine = None
        self.session_factory = None
        self._initialized = False

    async def initialize(self, database_url: Optional[str] = None):
        """Initialize database connections."""
        if self._initialized:
            return

        try:
            db_url = database_url or await config.get_database_url()

            if db_url.startswith("sqlite"):
                engine_kwargs = {"connect_args": {"check_same_thread": False}}
                if ":memory:" in db_url:
                    engine_kwargs["poolclass"] = StaticPool
            else:
                engine_kwargs = {
                    "pool_size": 20,
                    "max_overflow": 30,
                    "pool_timeout": 30,
                    "pool_recycle": 3600,
                }

            self.engine = create_engine(db_url, echo=False, future=True, **engine_kwargs)

            self.session_factory = sessionmaker(
                bind=self.engine,
                class_=Session,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False
            )

            self._setup_event_listeners()

            self._initialized = True
            logger.info("Database manager initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database manager: {e}")
            raise

    def _setup_event_listeners(self):
        """Set up database event listeners."""

        @event.listens_for(self.engine, "connect")
        def set_connection_pragmas(dbapi_connection, connection_record):
            """Enforce foreign keys on SQLite connections."""
            if self.engine.dialect.name == "sqlite":
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic transaction management.
        Ensures proper rollback on exceptions.
        """
        if not self._initialized:
            raise RuntimeError("Database manager not initialized")

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def get_transaction_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with explicit transaction control.
        The caller commits; anything raised rolls the transaction back.
        """
        if not self._initialized:
            raise RuntimeError("Database manager not initialized")

        session = self.session_factory()
        try:
            session.begin()
            yield session
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction session error: {e}")
            raise
        finally:
            session.close()

    async def create_tables(self):
        """Create all database tables."""
        if not self._initialized:
            await self.initialize()

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        if not self._initialized:
            return False
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self):
        """Close all database connections."""
        if self.engine:
            self.engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()

