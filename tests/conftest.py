"""
tests/conftest.py - test harness bootstrap.

Every test gets its own SQLite file, so sessions opened by the app under test
see exactly what the fixtures committed.
"""
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.database.base import Base
from app.core.database.engine import import_models
from tests.helpers.school import School, add_branches, seed_school

import_models()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def branches(db: AsyncSession) -> None:
    await add_branches(db)
    await db.commit()
    db.expunge_all()


@pytest_asyncio.fixture
async def school(db: AsyncSession) -> School:
    # Emptied so tests load everything fresh, relationships included
    school = await seed_school(db)
    await db.commit()
    db.expunge_all()
    return school
