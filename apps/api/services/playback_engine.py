"""Playback engine contract and event payloads.

`PlaybackSessionController` depends on this protocol to stay engine-agnostic.
Adapters translate a concrete audio library into these commands and events.

Every `load` and `seek` carries a sequence number chosen by the controller.
Events report `seq`, the sequence of the latest such command the engine had
applied when the event was produced, so the controller can drop events that
predate a newer load or seek.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol


class EngineError(Exception):
    """Base exception for playback engine failures."""

    transient = False


class EngineNetworkError(EngineError):
    """Media could not be fetched because of a network problem."""

    transient = True


class MediaNotFoundError(EngineError):
    """Media resource does not exist."""
    pass


class MediaForbiddenError(EngineError):
    """Media resource refused access."""
    pass


@dataclass(frozen=True)
class MediaSource:
    """A media resource the engine can open."""

    url: str
    duration_ms: int = 0


@dataclass(frozen=True)
class EngineEvent:
    """Marker base type for engine-originated events."""

    seq: int


@dataclass(frozen=True)
class PositionChanged(EngineEvent):
    """Periodic transport position update in milliseconds."""

    position_ms: int
    duration_ms: int


@dataclass(frozen=True)
class BufferingChanged(EngineEvent):
    """Engine started or stopped buffering."""

    is_buffering: bool


@dataclass(frozen=True)
class PlayingChanged(EngineEvent):
    """Engine-side play/pause transition (e.g. audio focus loss)."""

    is_playing: bool


@dataclass(frozen=True)
class PlaybackCompleted(EngineEvent):
    """Current media reached its end."""
    pass


@dataclass(frozen=True)
class PlaybackFailed(EngineEvent):
    """Engine-reported runtime error while playing."""

    message: str


EngineEventHandler = Callable[[EngineEvent], Awaitable[None]]


class PlaybackEngine(Protocol):
    """Playback engine protocol consumed by `PlaybackSessionController`."""

    def set_event_handler(self, handler: EngineEventHandler) -> None: ...

    async def load(self, source: MediaSource, *, seq: int, start_position_ms: int = 0) -> None: ...

    async def play(self) -> None: ...

    async def pause(self) -> None: ...

    async def stop(self) -> None: ...

    async def seek(self, position_ms: int, *, seq: int) -> None: ...

    async def set_speed(self, rate: float) -> None: ...

    async def shutdown(self) -> None: ...
