"""Database models using SQLModel."""

from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel


class ContentType(str, Enum):
    """Kind of catalog item."""

    BOOK = "book"
    MUSIC = "music"


class AudiobookBase(SQLModel):
    """Base audiobook model with common fields."""

    title: str = Field(index=True, description="Display title")
    cover_url: str | None = Field(default=None, description="Cover image URL")
    content_type: ContentType = Field(default=ContentType.BOOK)
    is_free: bool = Field(default=False, description="Free with an active subscription")
    total_duration_seconds: int | None = Field(default=None, ge=0)


class Audiobook(AudiobookBase, table=True):
    """Audiobook (or music album) catalog table."""

    __tablename__ = "audiobooks"

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Chapter(SQLModel, table=True):
    """A playable unit of an audiobook. `index` defines playback order."""

    __tablename__ = "chapters"

    id: int | None = Field(default=None, primary_key=True)
    audiobook_id: int = Field(foreign_key="audiobooks.id", index=True)
    index: int = Field(ge=0)
    title: str
    duration_seconds: int = Field(default=0, ge=0)
    is_preview: bool = Field(default=False)
    audio_url: str | None = Field(default=None, description="Stream URL of the chapter audio")


class Entitlement(SQLModel, table=True):
    """Ownership of an audiobook (purchase or claim)."""

    __tablename__ = "entitlements"

    user_id: str = Field(primary_key=True)
    audiobook_id: int = Field(foreign_key="audiobooks.id", primary_key=True)
    source: str = Field(default="purchase")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ListeningProgress(SQLModel, table=True):
    """Per-user, per-audiobook resume point."""

    __tablename__ = "listening_progress"

    user_id: str = Field(primary_key=True)
    audiobook_id: int = Field(foreign_key="audiobooks.id", primary_key=True)
    current_chapter_index: int = Field(default=0, ge=0)
    position_seconds: int = Field(default=0, ge=0)
    playback_speed: float = Field(default=1.0)
    is_completed: bool = Field(default=False)
    completion_percentage: int = Field(default=0, ge=0, le=100)
    last_played_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
    # Timestamp taken by the writer; older writes never overwrite newer rows.
    client_updated_at: datetime = Field(default_factory=datetime.utcnow)


class ChapterProgress(SQLModel, table=True):
    """Per-chapter resume point and completion flag."""

    __tablename__ = "chapter_progress"

    user_id: str = Field(primary_key=True)
    audiobook_id: int = Field(foreign_key="audiobooks.id", primary_key=True)
    chapter_index: int = Field(primary_key=True)
    position_seconds: int = Field(default=0, ge=0)
    is_completed: bool = Field(default=False)
    client_updated_at: datetime = Field(default_factory=datetime.utcnow)
