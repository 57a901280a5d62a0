"""
Database service for the TimeTide scheduling core
Async SQLAlchemy engine and session management over the durable store
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from timetide.core.models import Base

EXPECTED_TABLES = (
    'jobs', 'calendar_credentials', 'calendars', 'synced_events',
    'webhooks', 'webhook_deliveries', 'bookings'
)


class DatabaseService:
    """Async database service; one instance per process"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./data/timetide.db", echo: bool = False):
        self.database_url = database_url
        self.logger = logging.getLogger(__name__)

        url = make_url(database_url)
        engine_kwargs = {'echo': echo}

        if url.get_backend_name() == 'sqlite':
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if not url.database or url.database == ':memory:':
                # In-memory databases exist per connection
                engine_kwargs['poolclass'] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_async_engine(database_url, **engine_kwargs)

        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        self.logger.info(f"Database service initialized: {url.render_as_string(hide_password=True)}")

    async def create_tables(self):
        """Create tables using SQLAlchemy directly"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("All tables created successfully")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session; commits on success, rolls back on error"""
        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check database connection health"""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                existing = await conn.run_sync(
                    lambda sync_conn: set(sync_conn.dialect.get_table_names(sync_conn))
                )
        except Exception as e:
            self.logger.error(f"Database health check failed: {e}")
            return False

        missing = [name for name in EXPECTED_TABLES if name not in existing]
        if missing:
            self.logger.warning(f"Missing tables: {', '.join(missing)}")
            return False
        return True

    async def close(self):
        """Close database connections"""
        await self.engine.dispose()
        self.logger.info("Database connections closed")
