"""Tests for SQLite transaction handling in Database."""

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from soundshelf.infrastructure.persistence import Database
from soundshelf.infrastructure.persistence.models import ArtistModel


async def _add_artist(db: Database, spotify_id: str) -> None:
    async with db.session_factory() as session:
        session.add(ArtistModel(spotify_id=spotify_id, name=spotify_id))
        await session.commit()


class TestConcurrentWriters:
    """A second connection must not break a transaction that read first."""

    async def test_read_then_write_survives_concurrent_commit(self, db: Database) -> None:
        async with db.session_factory() as sync_session:
            # batch pre-check read, then a progress write from another connection
            await sync_session.execute(select(func.count()).select_from(ArtistModel))
            other = asyncio.create_task(_add_artist(db, "relay"))
            done, _ = await asyncio.wait({other}, timeout=0.2)

            # the other writer waits for our lock instead of invalidating our snapshot
            assert not done
            sync_session.add(ArtistModel(spotify_id="batch", name="batch"))
            await sync_session.commit()

        await other
        async with db.session_factory() as session:
            ids = (await session.execute(select(ArtistModel.spotify_id))).scalars()
            assert sorted(ids) == ["batch", "relay"]

    async def test_savepoints_still_nest(self, db: Database) -> None:
        async with db.session_factory() as session:
            session.add(ArtistModel(spotify_id="kept", name="kept"))
            await session.flush()
            with pytest.raises(IntegrityError):
                async with session.begin_nested():
                    session.add(ArtistModel(spotify_id="kept", name="duplicate"))
            await session.commit()

            count = await session.execute(select(func.count()).select_from(ArtistModel))
            assert count.scalar_one() == 1
