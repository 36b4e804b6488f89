"""Clock-driven in-process playback engine.

Does not decode audio: it advances a virtual position at `speed` times wall
time and reports it like a real adapter would. The HTTP service uses it as the
default engine so sessions can be driven end to end without a device.
"""

import asyncio
import logging
from contextlib import suppress

from core.config import get_settings
from services.playback_engine import (
    EngineError,
    EngineEvent,
    EngineEventHandler,
    MediaNotFoundError,
    MediaSource,
    PlaybackCompleted,
    PositionChanged,
)

logger = logging.getLogger(__name__)


class VirtualPlaybackEngine:
    """Engine adapter that simulates playback of a media source of known length."""

    def __init__(self, tick_seconds: float | None = None) -> None:
        settings = get_settings()
        self._tick = tick_seconds or settings.engine_tick_seconds
        self._handler: EngineEventHandler | None = None
        self._source: MediaSource | None = None
        self._seq = 0
        self._position_ms = 0
        self._speed = 1.0
        self._playing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def position_ms(self) -> int:
        return self._position_ms

    def set_event_handler(self, handler: EngineEventHandler) -> None:
        self._handler = handler

    async def load(self, source: MediaSource, *, seq: int, start_position_ms: int = 0) -> None:
        await self._halt()
        self._playing = False
        if not source.url:
            raise MediaNotFoundError("Media source has no URL")
        self._source = source
        self._seq = seq
        self._position_ms = self._clamp(start_position_ms)
        logger.debug("Loaded %s (seq=%d, start=%dms)", source.url, seq, self._position_ms)

    async def play(self) -> None:
        if self._source is None:
            raise EngineError("No media loaded")
        if self._playing:
            return
        self._playing = True
        self._task = asyncio.create_task(self._run(), name=f"virtual-engine-{self._seq}")

    async def pause(self) -> None:
        self._playing = False
        await self._halt()

    async def stop(self) -> None:
        self._playing = False
        await self._halt()
        self._source = None
        self._position_ms = 0

    async def seek(self, position_ms: int, *, seq: int) -> None:
        self._seq = seq
        self._position_ms = self._clamp(position_ms)

    async def set_speed(self, rate: float) -> None:
        if rate <= 0:
            raise ValueError("Playback speed must be positive")
        self._speed = rate

    async def shutdown(self) -> None:
        await self.stop()

    def _clamp(self, position_ms: int) -> int:
        position_ms = max(0, position_ms)
        if self._source is not None and self._source.duration_ms > 0:
            return min(position_ms, self._source.duration_ms)
        return position_ms

    async def _halt(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _emit(self, event: EngineEvent) -> None:
        if self._handler is None:
            return
        try:
            await self._handler(event)
        except Exception:
            logger.exception("Engine event handler failed for %s", type(event).__name__)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        last = loop.time()
        while self._playing and self._source is not None:
            await asyncio.sleep(self._tick)
            now = loop.time()
            self._position_ms += int((now - last) * 1000 * self._speed)
            last = now

            duration_ms = self._source.duration_ms
            if duration_ms > 0 and self._position_ms >= duration_ms:
                self._position_ms = duration_ms
                self._playing = False
                # Detach first: the completion handler may load the next source.
                self._task = None
                await self._emit(PositionChanged(self._seq, duration_ms, duration_ms))
                await self._emit(PlaybackCompleted(self._seq))
                return

            await self._emit(PositionChanged(self._seq, self._position_ms, duration_ms))
