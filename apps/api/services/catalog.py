"""Catalog lookups that turn database rows into playback records."""

import logging
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from db.models import Audiobook, Chapter, ContentType
from db.session import async_session_maker
from services.session_state import AudiobookInfo, ChapterInfo

logger = logging.getLogger(__name__)


def to_audiobook_info(audiobook: Audiobook) -> AudiobookInfo:
    assert audiobook.id is not None
    return AudiobookInfo(
        id=audiobook.id,
        title=audiobook.title,
        cover_url=audiobook.cover_url,
        content_type=ContentType(audiobook.content_type).value,
        is_free=audiobook.is_free,
        total_duration_seconds=audiobook.total_duration_seconds,
    )


def to_chapter_info(chapter: Chapter) -> ChapterInfo:
    assert chapter.id is not None
    return ChapterInfo(
        id=chapter.id,
        title=chapter.title,
        duration_seconds=chapter.duration_seconds,
        is_preview=chapter.is_preview,
        audio_url=chapter.audio_url,
    )


async def get_chapters(session: AsyncSession, audiobook_id: int) -> list[Chapter]:
    """Chapters of an audiobook in playback order."""
    result = await session.execute(
        select(Chapter).where(Chapter.audiobook_id == audiobook_id).order_by(Chapter.index)
    )
    return list(result.scalars().all())


async def load_playable(
    session: AsyncSession, audiobook_id: int
) -> tuple[AudiobookInfo, list[ChapterInfo]] | None:
    """
    Load an audiobook and its chapters for playback.

    Returns:
        (audiobook, chapters), or None if the audiobook does not exist.
    """
    audiobook = await session.get(Audiobook, audiobook_id)
    if audiobook is None:
        return None
    chapters = await get_chapters(session, audiobook_id)
    return to_audiobook_info(audiobook), [to_chapter_info(c) for c in chapters]


class CatalogService(Protocol):
    """Catalog reads and duration updates needed during playback."""

    async def load_playable(
        self, audiobook_id: int
    ) -> tuple[AudiobookInfo, list[ChapterInfo]] | None: ...

    async def update_chapter_duration(self, chapter_id: int, duration_seconds: int) -> int | None: ...


class SqlCatalogService:
    """Catalog access against the `audiobooks` and `chapters` tables."""

    def __init__(self, session_maker: Callable[[], AsyncSession] | None = None) -> None:
        self._session_maker = session_maker or async_session_maker

    async def load_playable(
        self, audiobook_id: int
    ) -> tuple[AudiobookInfo, list[ChapterInfo]] | None:
        async with self._session_maker() as session:
            return await load_playable(session, audiobook_id)

    async def update_chapter_duration(self, chapter_id: int, duration_seconds: int) -> int | None:
        """
        Store a chapter duration measured by the engine.

        Only chapters without a stored duration are updated. The audiobook
        total is recomputed from its chapters.

        Returns:
            The new audiobook total in seconds, or None if nothing changed.
        """
        if duration_seconds <= 0:
            return None
        async with self._session_maker() as session:
            try:
                chapter = await session.get(Chapter, chapter_id)
                if chapter is None or chapter.duration_seconds > 0:
                    return None
                chapter.duration_seconds = duration_seconds
                session.add(chapter)
                await session.flush()

                result = await session.execute(
                    select(func.coalesce(func.sum(Chapter.duration_seconds), 0)).where(
                        Chapter.audiobook_id == chapter.audiobook_id
                    )
                )
                total = int(result.scalar_one())
                audiobook = await session.get(Audiobook, chapter.audiobook_id)
                if audiobook is not None and total > 0:
                    audiobook.total_duration_seconds = total
                    session.add(audiobook)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("Stored duration %ds for chapter %s (audiobook total %ds)",
                    duration_seconds, chapter_id, total)
        return total if total > 0 else None
