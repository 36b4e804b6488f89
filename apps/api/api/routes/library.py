"""Library endpoints: audiobook details and listening progress."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from api.dependencies import get_progress_gateway, get_user_id
from api.schemas import (
    AudiobookDetailsResponse,
    ChapterResponse,
    ContinueListeningItem,
    ListeningProgressResponse,
    UpdateProgressRequest,
)
from core.config import Settings, get_settings
from db.models import Audiobook, Entitlement, ListeningProgress
from db.session import get_session
from services.catalog import get_chapters, to_chapter_info
from services.progress_gateway import ProgressGateway, ProgressUpdate
from services.progress_recorder import compute_completion_percentage

router = APIRouter(tags=["library"])
logger = logging.getLogger(__name__)


def _progress_response(progress: ListeningProgress) -> ListeningProgressResponse:
    return ListeningProgressResponse(
        audiobook_id=progress.audiobook_id,
        current_chapter_index=progress.current_chapter_index,
        position_seconds=progress.position_seconds,
        playback_speed=progress.playback_speed,
        is_completed=progress.is_completed,
        completion_percentage=progress.completion_percentage,
        last_played_at=progress.last_played_at,
        completed_at=progress.completed_at,
    )


def _as_naive_utc(value: datetime | None) -> datetime:
    # Stored timestamps are naive UTC.
    if value is None:
        return datetime.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


async def _get_audiobook_or_404(session: AsyncSession, audiobook_id: int) -> Audiobook:
    audiobook = await session.get(Audiobook, audiobook_id)
    if audiobook is None:
        raise HTTPException(status_code=404, detail="Audiobook not found")
    return audiobook


@router.get("/continue-listening", response_model=list[ContinueListeningItem])
async def continue_listening(
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
    limit: int = Query(default=10, ge=1, le=50),
) -> list[ContinueListeningItem]:
    """Get audiobooks in progress, sorted by last played."""
    result = await session.execute(
        select(ListeningProgress, Audiobook)
        .join(Audiobook, Audiobook.id == ListeningProgress.audiobook_id)
        .where(
            ListeningProgress.user_id == user_id,
            ListeningProgress.is_completed == False,  # noqa: E712
        )
        .order_by(ListeningProgress.last_played_at.desc())
        .limit(limit)
    )

    items: list[ContinueListeningItem] = []
    for progress, audiobook in result.all():
        items.append(
            ContinueListeningItem(
                id=audiobook.id,
                title=audiobook.title,
                cover_url=audiobook.cover_url,
                content_type=audiobook.content_type,
                progress=_progress_response(progress),
            )
        )
    return items


@router.get("/audiobooks/{audiobook_id}", response_model=AudiobookDetailsResponse)
async def get_audiobook_details(
    audiobook_id: int,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> AudiobookDetailsResponse:
    """Get audiobook with chapters, ownership and the listener's progress."""
    audiobook = await _get_audiobook_or_404(session, audiobook_id)
    chapters = await get_chapters(session, audiobook_id)
    progress = await session.get(ListeningProgress, (user_id, audiobook_id))
    owned = await session.get(Entitlement, (user_id, audiobook_id))

    return AudiobookDetailsResponse(
        id=audiobook_id,
        title=audiobook.title,
        cover_url=audiobook.cover_url,
        content_type=audiobook.content_type,
        is_free=audiobook.is_free,
        total_duration_seconds=audiobook.total_duration_seconds,
        is_owned=owned is not None,
        chapters=[
            ChapterResponse(
                id=c.id,
                index=c.index,
                title=c.title,
                duration_seconds=c.duration_seconds,
                is_preview=c.is_preview,
                audio_url=c.audio_url,
            )
            for c in chapters
        ],
        progress=_progress_response(progress) if progress else None,
    )


@router.put("/progress/{audiobook_id}", response_model=ListeningProgressResponse)
async def update_progress(
    audiobook_id: int,
    update_data: UpdateProgressRequest,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
    gateway: ProgressGateway = Depends(get_progress_gateway),
    settings: Settings = Depends(get_settings),
) -> ListeningProgressResponse:
    """Update listening progress (last write wins by `client_updated_at`)."""
    audiobook = await _get_audiobook_or_404(session, audiobook_id)
    chapters = [to_chapter_info(c) for c in await get_chapters(session, audiobook_id)]
    if chapters and update_data.chapter_index >= len(chapters):
        raise HTTPException(status_code=422, detail="Chapter index out of range")

    await gateway.upsert(
        ProgressUpdate(
            user_id=user_id,
            audiobook_id=audiobook_id,
            chapter_index=update_data.chapter_index,
            position_seconds=update_data.position_seconds,
            is_completed=update_data.is_completed,
            audiobook_completed=update_data.audiobook_completed,
            playback_speed=update_data.playback_speed,
            completion_percentage=compute_completion_percentage(
                chapters,
                update_data.chapter_index,
                update_data.position_seconds,
                completed=update_data.audiobook_completed,
                fallback_total_seconds=audiobook.total_duration_seconds,
                chapter_threshold=settings.chapter_completion_threshold,
                near_completion_threshold=settings.audiobook_near_completion_threshold,
            ),
            client_updated_at=_as_naive_utc(update_data.client_updated_at),
        )
    )

    # The gateway wrote through its own session; re-read the stored row.
    session.expire_all()
    progress = await session.get(ListeningProgress, (user_id, audiobook_id))
    if progress is None:
        raise HTTPException(status_code=500, detail="Progress was not stored")
    return _progress_response(progress)


@router.get("/progress/{audiobook_id}")
async def get_progress(
    audiobook_id: int,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> ListeningProgressResponse | None:
    """Get listening progress for an audiobook. Returns null if no progress exists."""
    await _get_audiobook_or_404(session, audiobook_id)
    progress = await session.get(ListeningProgress, (user_id, audiobook_id))
    if progress is None:
        return None
    return _progress_response(progress)
