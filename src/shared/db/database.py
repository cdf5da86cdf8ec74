"""
Database utility for connecting to and interacting with the database.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shared.db.models import Base
from shared.utils.configs import db_configs
from shared.utils.errors import DatabaseError, ErrorType
from shared.utils.helpers import prepare_database_url
from shared.utils.logger import logger
from shared.utils.metrics import Metrics


class Database:
    """Database is a service class.

    Responsible for managing database interactions, including creating
    tables and handling sessions. It integrates with SQLAlchemy for
    asynchronous database operations (asyncpg in production, aiosqlite in
    tests).

    Attributes:
        engine (AsyncEngine): The SQLAlchemy asynchronous engine for database connections.
        async_session (async_sessionmaker): The session maker for creating asynchronous sessions.
        metrics (Metrics): Optional metrics sink; session durations are recorded here.

    Methods:
        initialize():
            Create the engine and session maker. Also ensures tables are created.

        session():
            Asynchronous context manager for handling database sessions.

        close():
            Cleans up resources by properly disposing of the database engine.
    """

    def __init__(self, db_url: Optional[str] = None, metrics: Optional[Metrics] = None):
        """
        Args:
            db_url: Database URL, defaults to PG_DATABASE_URL.
            metrics: Metrics instance for the session timing wrapper.
        """
        self.db_url, self.connect_args = prepare_database_url(
            db_url or db_configs["pg_database_url"]
        )
        self.metrics = metrics
        self.engine = None
        self.async_session = None

    @property
    def is_sqlite(self) -> bool:
        return self.db_url.startswith("sqlite")

    async def initialize(self):
        """Initialize the database engine and session maker."""
        try:
            engine_kwargs = {
                "echo": db_configs["echo"],
                "connect_args": self.connect_args,
            }
            if not self.is_sqlite:
                engine_kwargs.update(
                    pool_size=db_configs["pool_size"],
                    max_overflow=db_configs["max_overflow"],
                    pool_timeout=db_configs["pool_timeout"],
                    pool_recycle=db_configs["pool_recycle"],
                    pool_pre_ping=db_configs["pool_pre_ping"],
                )
            self.engine = create_async_engine(self.db_url, **engine_kwargs)

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self.async_session = async_sessionmaker(
                self.engine, class_=AsyncSession, expire_on_commit=False
            )

            logger.info("Successfully initialized database connection")
            return self

        except Exception as e:
            logger.error(f"Failed to initialize database: {str(e)}")
            raise DatabaseError(
                message=f"Failed to initialize database: {str(e)}",
                error_type=ErrorType.DATABASE_ERROR,
                status_code=500,
            ) from e

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions.

        Commits on clean exit, rolls back and re-raises as DatabaseError
        (original exception chained) otherwise. Application errors raised by
        the caller inside the block are rolled back and re-raised unchanged.
        """
        if not self.async_session:
            await self.initialize()

        session = self.async_session()
        started = time.perf_counter()
        outcome = "success"
        try:
            yield session
            await session.commit()
        except DatabaseError:
            outcome = "error"
            await session.rollback()
            raise
        except Exception as e:
            outcome = "error"
            await session.rollback()
            if getattr(e, "error_type", None) is not None:
                # Application error raised inside the block, not a driver fault
                raise
            logger.error(f"Error in database session: {str(e)}")
            raise DatabaseError(
                message=f"Database session error: {str(e)}",
                error_type=ErrorType.DATABASE_ERROR,
                status_code=500,
            ) from e
        finally:
            await session.close()
            if self.metrics is not None:
                self.metrics.db_session_seconds.labels(outcome=outcome).observe(
                    time.perf_counter() - started
                )

    async def close(self):
        """Close the database connection."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connection closed")
