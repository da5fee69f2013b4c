# Async database connection management
import time
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager
from typing import AsyncIterator

from core.logging import get_database_logger_safe, get_error_logger_safe

db_logger = get_database_logger_safe("database_manager")
error_logger = get_error_logger_safe("database_manager")

# The base class for all SQLAlchemy models
Base = declarative_base()


class DatabaseManager:
    """Manages the connection to the ledger database"""

    def __init__(self, db_url: str, echo: bool = False, environment: str = "development"):
        engine_kwargs = {"echo": echo}
        if not db_url.startswith("sqlite"):
            # Pool tuning only applies to server databases
            engine_kwargs.update(
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
            )
        self._engine = create_async_engine(db_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession
        )
        self._environment = environment

    @property
    def engine(self):
        return self._engine

    async def init(self):
        """Create tables that do not exist yet"""
        # Models must be imported so they register on Base.metadata
        from core.database import models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        db_logger.info("Database initialized with create_all", environment=self._environment)

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            error_logger.error("Database connection verification failed", error=str(e))
            return False

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        db_logger.info("Database connection pool closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provides a new database session context manager WITHOUT auto-commit.

        Services own their transaction boundaries (``session.begin()``).
        """
        session_start_time = time.time()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                if isinstance(session_error, SQLAlchemyError):
                    error_logger.error("Database session error with rollback",
                                       error=str(session_error),
                                       session_duration_ms=(time.time() - session_start_time) * 1000,
                                       environment=self._environment)
                else:
                    db_logger.debug("Session rolled back", error_type=type(session_error).__name__)
                raise
            finally:
                db_logger.debug("Database session closed",
                                session_duration_ms=(time.time() - session_start_time) * 1000)
