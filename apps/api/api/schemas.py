from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from db.models import ContentType
from services.session_state import PlaylistItem, SessionSnapshot

SPEED_OPTIONS = (0.5, 0.75, 1.0, 1.25, 1.5, 1.75, 2.0)


class ChapterResponse(BaseModel):
    id: int
    index: int
    title: str
    duration_seconds: int
    is_preview: bool
    audio_url: str | None = None


class ListeningProgressResponse(BaseModel):
    audiobook_id: int
    current_chapter_index: int
    position_seconds: int
    playback_speed: float
    is_completed: bool
    completion_percentage: int
    last_played_at: datetime
    completed_at: datetime | None = None


class AudiobookDetailsResponse(BaseModel):
    """Canonical response model for audiobook details."""
    id: int
    title: str
    cover_url: str | None = None
    content_type: ContentType
    is_free: bool
    total_duration_seconds: int | None = None
    is_owned: bool = False

    chapters: list[ChapterResponse] = []
    progress: ListeningProgressResponse | None = None


class ContinueListeningItem(BaseModel):
    id: int
    title: str
    cover_url: str | None = None
    content_type: ContentType
    progress: ListeningProgressResponse


class UpdateProgressRequest(BaseModel):
    chapter_index: int = Field(ge=0)
    position_seconds: int = Field(ge=0)
    playback_speed: float = Field(default=1.0, gt=0)
    is_completed: bool = False
    audiobook_completed: bool = False
    client_updated_at: datetime | None = None


class PlayRequest(BaseModel):
    audiobook_id: int = Field(gt=0)
    chapter_index: int = 0
    seek_to: int | None = Field(default=None, ge=0, description="Start offset in seconds")
    is_subscription_active: bool = False


class SeekRequest(BaseModel):
    position_ms: int


class SkipRequest(BaseModel):
    seconds: int | None = None


class ChapterRequest(BaseModel):
    index: int


class SpeedRequest(BaseModel):
    speed: float

    @field_validator("speed")
    @classmethod
    def validate_speed(cls, v: float) -> float:
        if v not in SPEED_OPTIONS:
            raise ValueError(f"speed must be one of {', '.join(str(s) for s in SPEED_OPTIONS)}")
        return v


class SleepTimerRequest(BaseModel):
    minutes: int


class PlaylistPlayRequest(BaseModel):
    playlist_id: str = Field(min_length=1)
    items: list[PlaylistItem] = Field(min_length=1)
    start_index: int = Field(default=0, ge=0)
    is_subscription_active: bool = False


class NavigationResponse(BaseModel):
    changed: bool
    state: SessionSnapshot


class PersistResponse(BaseModel):
    saved: bool
