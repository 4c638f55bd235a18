"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobcoord.config import Settings
from jobcoord.db import Base, DistributedLock, Job, QueuedJob, Storage, create_session_factory


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL. Defaults to a throwaway SQLite file."""
    return os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh schema."""
    engine = create_async_engine(database_url, echo=False)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        distributed_lock_lifetime_seconds=600,
        queue_poll_interval_seconds=0.05,
        sliding_invisibility_timeout_seconds=300,
        job_expiration_check_interval_seconds=1,
    )


@pytest.fixture
def storage(session_factory: async_sessionmaker[AsyncSession], test_settings: Settings) -> Storage:
    return Storage(session_factory, test_settings)


class StoreHelper:
    """Direct table access for arranging and asserting test state."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def add(self, *instances: Any) -> None:
        async with self._session_factory() as session:
            session.add_all(instances)
            await session.commit()

    async def locks(self) -> list[DistributedLock]:
        return await self._all(DistributedLock)

    async def queue(self) -> list[QueuedJob]:
        return await self._all(QueuedJob)

    async def jobs(self) -> list[Job]:
        return await self._all(Job)

    async def add_job(
        self,
        invocation_data: dict[str, Any] | None = None,
        expire_at: datetime | None = None,
    ) -> Job:
        job = Job(
            invocation_data=invocation_data or {"job_type": "echo", "data": {}},
            expire_at=expire_at,
        )
        await self.add(job)
        return job

    async def add_queued_job(
        self,
        job: Job,
        queue: str = "default",
        fetched_at: datetime | None = None,
        item_id: int | None = None,
    ) -> QueuedJob:
        item = QueuedJob(id=item_id, job_id=job.id, queue=queue, fetched_at=fetched_at)
        await self.add(item)
        return item

    async def _all(self, model: Any) -> list[Any]:
        async with self._session_factory() as session:
            result = await session.execute(select(model).order_by(model.id))
            return list(result.scalars().all())


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> StoreHelper:
    return StoreHelper(session_factory)

