"""Listening progress persistence."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ChapterProgress, ListeningProgress
from db.session import async_session_maker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    """
    One progress write.

    `is_completed` refers to the chapter at `chapter_index`;
    `audiobook_completed` marks the whole audiobook as finished.
    """

    user_id: str
    audiobook_id: int
    chapter_index: int
    position_seconds: int
    is_completed: bool = False
    audiobook_completed: bool = False
    playback_speed: float = 1.0
    completion_percentage: int = 0
    client_updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Resume point of an audiobook."""

    chapter_index: int
    position_seconds: int
    is_completed: bool
    playback_speed: float = 1.0
    completion_percentage: int = 0


@dataclass(frozen=True)
class ChapterProgressSnapshot:
    """Resume point of a single chapter."""

    chapter_index: int
    position_seconds: int
    is_completed: bool


class ProgressGateway(Protocol):
    """Storage contract used by the playback controller."""

    async def upsert(self, update: ProgressUpdate) -> None: ...

    async def fetch(self, user_id: str, audiobook_id: int) -> ProgressSnapshot | None: ...

    async def fetch_chapter(
        self, user_id: str, audiobook_id: int, chapter_index: int
    ) -> ChapterProgressSnapshot | None: ...


class SqlProgressGateway:
    """
    Progress gateway backed by the `listening_progress` and `chapter_progress` tables.

    Writes are last-write-wins by `client_updated_at`: a write that was issued
    earlier but lands later never overwrites a newer row.
    """

    def __init__(self, session_maker: Callable[[], AsyncSession] | None = None) -> None:
        self._session_maker = session_maker or async_session_maker

    async def upsert(self, update: ProgressUpdate) -> None:
        try:
            await self._upsert_once(update)
        except IntegrityError:
            # A concurrent writer inserted the row first; the retry takes the update path.
            logger.debug(
                "Concurrent insert for user=%s audiobook=%s, retrying as update",
                update.user_id,
                update.audiobook_id,
            )
            await self._upsert_once(update)

    async def _upsert_once(self, update: ProgressUpdate) -> None:
        async with self._session_maker() as session:
            try:
                self._apply_book_row(
                    session,
                    await session.get(ListeningProgress, (update.user_id, update.audiobook_id)),
                    update,
                )
                self._apply_chapter_row(
                    session,
                    await session.get(
                        ChapterProgress,
                        (update.user_id, update.audiobook_id, update.chapter_index),
                    ),
                    update,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _apply_book_row(
        self,
        session: AsyncSession,
        progress: ListeningProgress | None,
        update: ProgressUpdate,
    ) -> None:
        now = datetime.utcnow()
        if progress is None:
            session.add(
                ListeningProgress(
                    user_id=update.user_id,
                    audiobook_id=update.audiobook_id,
                    current_chapter_index=update.chapter_index,
                    position_seconds=update.position_seconds,
                    playback_speed=update.playback_speed,
                    is_completed=update.audiobook_completed,
                    completion_percentage=update.completion_percentage,
                    last_played_at=now,
                    completed_at=now if update.audiobook_completed else None,
                    client_updated_at=update.client_updated_at,
                )
            )
            return

        if progress.client_updated_at > update.client_updated_at:
            logger.debug(
                "Skipping stale progress write for user=%s audiobook=%s",
                update.user_id,
                update.audiobook_id,
            )
            return

        progress.current_chapter_index = update.chapter_index
        progress.position_seconds = update.position_seconds
        progress.playback_speed = update.playback_speed
        progress.completion_percentage = update.completion_percentage
        progress.last_played_at = now
        progress.client_updated_at = update.client_updated_at
        if update.audiobook_completed:
            progress.is_completed = True
            if not progress.completed_at:
                progress.completed_at = now
        elif progress.is_completed:
            # Listening again after finishing restarts the book.
            progress.is_completed = False
            progress.completed_at = None
        session.add(progress)

    def _apply_chapter_row(
        self,
        session: AsyncSession,
        chapter: ChapterProgress | None,
        update: ProgressUpdate,
    ) -> None:
        if chapter is None:
            session.add(
                ChapterProgress(
                    user_id=update.user_id,
                    audiobook_id=update.audiobook_id,
                    chapter_index=update.chapter_index,
                    position_seconds=update.position_seconds,
                    is_completed=update.is_completed,
                    client_updated_at=update.client_updated_at,
                )
            )
            return

        if chapter.client_updated_at > update.client_updated_at:
            return

        chapter.position_seconds = update.position_seconds
        chapter.is_completed = update.is_completed
        chapter.client_updated_at = update.client_updated_at
        session.add(chapter)

    async def fetch(self, user_id: str, audiobook_id: int) -> ProgressSnapshot | None:
        async with self._session_maker() as session:
            progress = await session.get(ListeningProgress, (user_id, audiobook_id))
            if progress is None:
                return None
            return ProgressSnapshot(
                chapter_index=progress.current_chapter_index,
                position_seconds=progress.position_seconds,
                is_completed=progress.is_completed,
                playback_speed=progress.playback_speed,
                completion_percentage=progress.completion_percentage,
            )

    async def fetch_chapter(
        self, user_id: str, audiobook_id: int, chapter_index: int
    ) -> ChapterProgressSnapshot | None:
        async with self._session_maker() as session:
            chapter = await session.get(ChapterProgress, (user_id, audiobook_id, chapter_index))
            if chapter is None:
                return None
            return ChapterProgressSnapshot(
                chapter_index=chapter.chapter_index,
                position_seconds=chapter.position_seconds,
                is_completed=chapter.is_completed,
            )
