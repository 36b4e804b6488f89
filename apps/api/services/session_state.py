"""Playback session state and the domain records it holds."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SleepTimerMode(str, Enum):
    """Sleep timer configuration."""

    OFF = "off"
    TIMED = "timed"
    END_OF_CHAPTER = "end_of_chapter"


class AudioErrorType(str, Enum):
    """Error classification for user-facing messages."""

    NONE = "none"
    NETWORK_ERROR = "network_error"
    AUDIO_NOT_FOUND = "audio_not_found"
    PLAYBACK_FAILED = "playback_failed"
    UNAUTHORIZED = "unauthorized"


class PlaybackPhase(str, Enum):
    """Coarse player state derived from the session flags."""

    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    BUFFERING = "buffering"
    ERROR = "error"
    COMPLETED = "completed"


class AudiobookInfo(BaseModel):
    """Audiobook (or music album) being played."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(gt=0)
    title: str
    cover_url: str | None = None
    content_type: Literal["book", "music"] = "book"
    is_free: bool = False
    total_duration_seconds: int | None = Field(default=None, ge=0)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be empty")
        return v

    @property
    def is_music(self) -> bool:
        return self.content_type == "music"


class ChapterInfo(BaseModel):
    """One playable unit of an audiobook."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(gt=0)
    title: str
    duration_seconds: int = Field(default=0, ge=0)
    is_preview: bool = False
    audio_url: str | None = None


class PlaylistItem(BaseModel):
    """
    One entry of a playlist queue.

    `chapter_index` set means only that chapter is played; otherwise the
    whole audiobook is.
    """

    model_config = ConfigDict(frozen=True)

    audiobook_id: int = Field(gt=0)
    chapter_index: int | None = Field(default=None, ge=0)
    title: str | None = None


class SessionSnapshot(BaseModel):
    """Read-only copy of the session handed to observers."""

    model_config = ConfigDict(frozen=True)

    audiobook: AudiobookInfo | None = None
    chapters: tuple[ChapterInfo, ...] = ()
    current_chapter_index: int = 0
    position_ms: int = 0
    duration_ms: int = 0
    is_playing: bool = False
    is_loading: bool = False
    is_buffering: bool = False
    is_finished: bool = False
    error_type: AudioErrorType = AudioErrorType.NONE
    error_message: str | None = None
    playback_speed: float = 1.0
    sleep_timer_mode: SleepTimerMode = SleepTimerMode.OFF
    sleep_timer_remaining_seconds: int = 0
    session_start_position_ms: int = 0
    is_owned: bool = False
    is_subscription_active: bool = False
    has_next_chapter: bool = False
    has_previous_chapter: bool = False
    playlist_id: str | None = None
    playlist_items: tuple[PlaylistItem, ...] = ()
    playlist_index: int = 0
    phase: PlaybackPhase = PlaybackPhase.IDLE

    @property
    def has_error(self) -> bool:
        return self.error_type is not AudioErrorType.NONE

    @property
    def current_chapter(self) -> ChapterInfo | None:
        if 0 <= self.current_chapter_index < len(self.chapters):
            return self.chapters[self.current_chapter_index]
        return None


@dataclass
class SessionState:
    """
    Mutable playback session, owned by a single PlaybackSessionController.

    Consumers never receive this object; they get `SessionSnapshot` copies.
    """

    audiobook: AudiobookInfo | None = None
    chapters: list[ChapterInfo] = field(default_factory=list)
    current_chapter_index: int = 0
    position_ms: int = 0
    duration_ms: int = 0
    is_playing: bool = False
    is_loading: bool = False
    is_buffering: bool = False
    is_finished: bool = False
    error_type: AudioErrorType = AudioErrorType.NONE
    error_message: str | None = None
    playback_speed: float = 1.0
    sleep_timer_mode: SleepTimerMode = SleepTimerMode.OFF
    sleep_timer_remaining_seconds: int = 0
    session_start_position_ms: int = 0
    is_owned: bool = False
    is_subscription_active: bool = False
    playlist_id: str | None = None
    playlist_items: list[PlaylistItem] = field(default_factory=list)
    playlist_index: int = 0

    @property
    def has_audio(self) -> bool:
        return self.audiobook is not None

    @property
    def has_error(self) -> bool:
        return self.error_type is not AudioErrorType.NONE

    @property
    def has_sleep_timer(self) -> bool:
        return self.sleep_timer_mode is not SleepTimerMode.OFF

    @property
    def current_chapter(self) -> ChapterInfo | None:
        if 0 <= self.current_chapter_index < len(self.chapters):
            return self.chapters[self.current_chapter_index]
        return None

    @property
    def is_playlist_active(self) -> bool:
        return self.playlist_id is not None and bool(self.playlist_items)

    @property
    def has_next_playlist_item(self) -> bool:
        return self.is_playlist_active and self.playlist_index < len(self.playlist_items) - 1

    @property
    def clamped_position_ms(self) -> int:
        """Position clamped into [0, duration]; engines may overshoot at boundaries."""
        position = max(0, self.position_ms)
        if self.duration_ms > 0:
            return min(position, self.duration_ms)
        return position

    @property
    def phase(self) -> PlaybackPhase:
        if self.audiobook is None:
            return PlaybackPhase.IDLE
        if self.has_error:
            return PlaybackPhase.ERROR
        if self.is_loading:
            return PlaybackPhase.LOADING
        if self.is_buffering:
            return PlaybackPhase.BUFFERING
        if self.is_playing:
            return PlaybackPhase.PLAYING
        if self.is_finished:
            return PlaybackPhase.COMPLETED
        return PlaybackPhase.PAUSED

    def set_error(self, error_type: AudioErrorType, message: str) -> None:
        self.error_type = error_type
        self.error_message = message
        self.is_playing = False
        self.is_loading = False
        self.is_buffering = False

    def clear_error(self) -> None:
        self.error_type = AudioErrorType.NONE
        self.error_message = None

    def clear_playlist(self) -> None:
        self.playlist_id = None
        self.playlist_items = []
        self.playlist_index = 0

    def reset(self) -> None:
        """Return to the empty (Idle) session."""
        self.__init__()  # type: ignore[misc]

    def snapshot(
        self, *, has_next_chapter: bool = False, has_previous_chapter: bool = False
    ) -> SessionSnapshot:
        """
        Frozen copy of the session.

        Chapter availability depends on the access rules, so the owner passes it in.
        """
        return SessionSnapshot(
            audiobook=self.audiobook,
            chapters=tuple(self.chapters),
            current_chapter_index=self.current_chapter_index,
            position_ms=self.clamped_position_ms,
            duration_ms=self.duration_ms,
            is_playing=self.is_playing,
            is_loading=self.is_loading,
            is_buffering=self.is_buffering,
            is_finished=self.is_finished,
            error_type=self.error_type,
            error_message=self.error_message,
            playback_speed=self.playback_speed,
            sleep_timer_mode=self.sleep_timer_mode,
            sleep_timer_remaining_seconds=self.sleep_timer_remaining_seconds,
            session_start_position_ms=self.session_start_position_ms,
            is_owned=self.is_owned,
            is_subscription_active=self.is_subscription_active,
            has_next_chapter=has_next_chapter,
            has_previous_chapter=has_previous_chapter,
            playlist_id=self.playlist_id,
            playlist_items=tuple(self.playlist_items),
            playlist_index=self.playlist_index,
            phase=self.phase,
        )
