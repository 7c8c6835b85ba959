"""pytest fixtures for genjobs tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test settings (APP_ENV=test, SQLite database)
- engine: Function-scoped SQLite database file with tables from SQLModel metadata
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- create_account / create_job: Helpers that commit rows through a UnitOfWork
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from genjobs import models  # noqa: F401
from genjobs.core.config import Settings
from genjobs.core.database import engine_options
from genjobs.models.job import GenerationJob, JobStatus, QualityTier
from genjobs.models.user_account import UserAccount
from genjobs.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def database_url(tmp_path) -> str:
    """One fresh SQLite file per test (separate connections can run concurrently)."""
    return f"sqlite+aiosqlite:///{tmp_path / 'genjobs_test.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(  # type: ignore[call-arg]
        DATABASE_URL=database_url,
        APP_ENV="test",
        EXTERNAL_BASE_DELAY_SECONDS=0,
        EXTERNAL_MAX_DELAY_SECONDS=0,
        S3_PUBLIC_BASE_URL="https://cdn.test/bucket",
    )


@pytest_asyncio.fixture
async def engine(database_url):
    engine = create_async_engine(database_url, **engine_options(database_url, pool_size=5))
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def create_account(uow_factory):
    """Return a coroutine that creates a committed user account."""

    async def _create(balance: int = 100, push_token: str | None = None) -> UserAccount:
        async with await uow_factory() as uow:
            account = UserAccount(credit_balance=balance, push_token=push_token)
            await uow.accounts.add(account)
        return account

    return _create


@pytest.fixture
def create_job(uow_factory):
    """Return a coroutine that creates a committed generation job."""

    async def _create(
        user_id,
        cost: int = 10,
        status: JobStatus = JobStatus.PENDING,
        quality_tier: QualityTier = QualityTier.STANDARD,
        input_image_refs: list[str] | None = None,
        **values,
    ) -> GenerationJob:
        async with await uow_factory() as uow:
            job = GenerationJob(
                user_id=user_id,
                original_prompt="Make the sky purple",
                input_image_refs=input_image_refs or ["https://images.test/source.jpg"],
                quality_tier=quality_tier,
                cost_in_credits=cost,
                status=status,
                **values,
            )
            await uow.jobs.add(job)
        return job

    return _create


@pytest.fixture
def balance_of(uow_factory):
    """Return a coroutine reading a committed balance."""

    async def _balance(user_id) -> int:
        async with await uow_factory() as uow:
            return await uow.accounts.get_balance(user_id)

    return _balance


@pytest.fixture
def reload_job(uow_factory):
    """Return a coroutine reading a committed job."""

    async def _reload(job_id) -> GenerationJob:
        async with await uow_factory() as uow:
            return await uow.jobs.get_by_id(job_id)

    return _reload
