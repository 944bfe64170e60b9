"""
Runner Control Plane - Session Scope Tests
==========================================
"""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from control_plane.core import database
from control_plane.core.models import Infrastructure


@pytest.fixture
def scoped_sessions(db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point get_db_session at the in-memory test database."""
    factory = async_sessionmaker(bind=db_session.bind, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)


async def _names(db: AsyncSession) -> list[str]:
    result = await db.execute(select(Infrastructure.name))
    return list(result.scalars().all())


class TestSessionScope:

    async def test_commits_on_exit(self, db_session: AsyncSession, scoped_sessions):
        async with database.get_db_session() as db:
            db.add(Infrastructure(name="kept"))

        assert await _names(db_session) == ["kept"]

    async def test_rolls_back_on_error(self, db_session: AsyncSession, scoped_sessions):
        with pytest.raises(RuntimeError):
            async with database.get_db_session() as db:
                db.add(Infrastructure(name="discarded"))
                await db.flush()
                raise RuntimeError("handler failed")

        assert await _names(db_session) == []

    async def test_request_dependency_yields_scoped_session(self, db_session: AsyncSession, scoped_sessions):
        dependency = database.get_db()
        db = await dependency.__anext__()
        db.add(Infrastructure(name="from-request"))
        with pytest.raises(StopAsyncIteration):
            await dependency.__anext__()

        assert await _names(db_session) == ["from-request"]
