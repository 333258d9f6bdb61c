"""Tests for the repositories' find-or-create primitive."""

import logging

import pytest
from sqlalchemy import func, select

from soundshelf.infrastructure.persistence import Database
from soundshelf.infrastructure.persistence.models import ArtistModel
from soundshelf.infrastructure.persistence.repositories import ArtistRepository


class TestGetOrCreate:
    """Test _get_or_create through ArtistRepository."""

    async def test_creates_then_finds(self, db: Database) -> None:
        async with db.session_factory() as session:
            repo = ArtistRepository(session)
            first, created = await repo.get_or_create("ar1", "Artist", None)
            again, created_again = await repo.get_or_create("ar1", "Other name", None)

        assert created is True
        assert created_again is False
        assert again.id == first.id

    async def test_lost_race_returns_winner_row(
        self, db: Database, caplog: pytest.LogCaptureFixture
    ) -> None:
        async with db.session_factory() as session:
            session.add(ArtistModel(spotify_id="ar1", name="Winner"))
            await session.commit()

        async with db.session_factory() as session:
            repo = ArtistRepository(session)
            real_lookup = repo.get_by_spotify_id
            calls = 0

            # first read misses the row, as if the other run committed right after it
            async def stale_then_real(spotify_id: str) -> ArtistModel | None:
                nonlocal calls
                calls += 1
                return None if calls == 1 else await real_lookup(spotify_id)

            repo.get_by_spotify_id = stale_then_real  # type: ignore[method-assign]

            with caplog.at_level(logging.DEBUG, logger=ArtistRepository.__module__):
                artist, created = await repo.get_or_create("ar1", "Loser", None)
            await session.commit()
            count = await session.execute(select(func.count()).select_from(ArtistModel))

        assert created is False
        assert artist.name == "Winner"
        assert count.scalar_one() == 1
        assert "Lost create race for ArtistModel" in caplog.text
