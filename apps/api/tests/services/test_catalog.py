"""Tests for the SQL catalog service."""

from collections.abc import Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Audiobook, Chapter
from services.catalog import SqlCatalogService


@pytest.fixture
async def unmeasured_book(test_session_maker: Callable[[], AsyncSession]) -> int:
    """Audiobook 4: two chapters, the first without a stored duration."""
    async with test_session_maker() as session:
        session.add(Audiobook(id=4, title="Fresh Upload"))
        session.add(Chapter(id=40, audiobook_id=4, index=0, title="Part 1", duration_seconds=0))
        session.add(Chapter(id=41, audiobook_id=4, index=1, title="Part 2", duration_seconds=300))
        await session.commit()
    return 4


class TestLoadPlayable:
    """Tests for SqlCatalogService.load_playable."""

    @pytest.mark.asyncio
    async def test_loads_audiobook_with_ordered_chapters(
        self, test_session_maker: Callable[[], AsyncSession], seeded_catalog: dict[str, int]
    ) -> None:
        service = SqlCatalogService(test_session_maker)

        playable = await service.load_playable(seeded_catalog["free"])

        assert playable is not None
        audiobook, chapters = playable
        assert audiobook.is_music is True
        assert [c.id for c in chapters] == [30, 31]

    @pytest.mark.asyncio
    async def test_missing_audiobook(
        self, test_session_maker: Callable[[], AsyncSession], seeded_catalog: dict[str, int]
    ) -> None:
        service = SqlCatalogService(test_session_maker)

        assert await service.load_playable(999) is None


class TestUpdateChapterDuration:
    """Tests for storing engine-measured chapter durations."""

    @pytest.mark.asyncio
    async def test_fills_missing_duration_and_total(
        self, test_session_maker: Callable[[], AsyncSession], unmeasured_book: int
    ) -> None:
        service = SqlCatalogService(test_session_maker)

        total = await service.update_chapter_duration(40, 420)

        assert total == 720
        async with test_session_maker() as session:
            chapter = await session.get(Chapter, 40)
            audiobook = await session.get(Audiobook, unmeasured_book)
        assert chapter is not None
        assert chapter.duration_seconds == 420
        assert audiobook is not None
        assert audiobook.total_duration_seconds == 720

    @pytest.mark.asyncio
    async def test_existing_duration_is_kept(
        self, test_session_maker: Callable[[], AsyncSession], unmeasured_book: int
    ) -> None:
        """Test a chapter that already has a duration is not overwritten."""
        service = SqlCatalogService(test_session_maker)

        assert await service.update_chapter_duration(41, 999) is None

        async with test_session_maker() as session:
            chapter = await session.get(Chapter, 41)
        assert chapter is not None
        assert chapter.duration_seconds == 300

    @pytest.mark.asyncio
    async def test_unknown_chapter_and_bad_values(
        self, test_session_maker: Callable[[], AsyncSession], unmeasured_book: int
    ) -> None:
        service = SqlCatalogService(test_session_maker)

        assert await service.update_chapter_duration(404, 120) is None
        assert await service.update_chapter_duration(40, 0) is None
