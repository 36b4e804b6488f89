"""Unit tests for database models."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from db.models import Audiobook, Chapter, ChapterProgress, ContentType, ListeningProgress


class TestAudiobookModel:
    """Tests for Audiobook model."""

    def test_audiobook_defaults(self) -> None:
        audiobook = Audiobook(title="Test Book")

        assert audiobook.content_type == ContentType.BOOK
        assert audiobook.is_free is False
        assert audiobook.cover_url is None
        assert audiobook.total_duration_seconds is None

    @pytest.mark.asyncio
    async def test_chapters_ordered_by_index(
        self, test_session: AsyncSession, seeded_catalog: dict[str, int]
    ) -> None:
        """Test chapter rows come back in playback order."""
        result = await test_session.execute(
            select(Chapter).where(Chapter.audiobook_id == 1).order_by(Chapter.index)
        )
        chapters = result.scalars().all()

        assert [c.index for c in chapters] == [0, 1, 2]
        assert chapters[0].is_preview is True


class TestProgressModels:
    """Tests for ListeningProgress and ChapterProgress."""

    def test_listening_progress_defaults(self) -> None:
        progress = ListeningProgress(user_id="user-1", audiobook_id=1)

        assert progress.current_chapter_index == 0
        assert progress.position_seconds == 0
        assert progress.playback_speed == 1.0
        assert progress.is_completed is False
        assert progress.completion_percentage == 0
        assert progress.completed_at is None

    @pytest.mark.asyncio
    async def test_progress_keyed_by_user_and_audiobook(
        self, test_session: AsyncSession, seeded_catalog: dict[str, int]
    ) -> None:
        test_session.add(ListeningProgress(user_id="user-1", audiobook_id=1, position_seconds=10))
        test_session.add(ListeningProgress(user_id="user-2", audiobook_id=1, position_seconds=20))
        test_session.add(
            ChapterProgress(user_id="user-1", audiobook_id=1, chapter_index=2, is_completed=True)
        )
        await test_session.commit()

        progress = await test_session.get(ListeningProgress, ("user-2", 1))
        chapter = await test_session.get(ChapterProgress, ("user-1", 1, 2))

        assert progress is not None
        assert progress.position_seconds == 20
        assert chapter is not None
        assert chapter.is_completed is True
