"""Sleep timer: timed countdown or end-of-chapter auto-pause."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from services.session_state import SleepTimerMode

logger = logging.getLogger(__name__)


class SleepTimer:
    """
    Owns the sleep timer mode and, for timed mode, a single countdown task.

    Starting any timer cancels the previous countdown before the new one
    exists, so two countdowns can never race to pause playback.

    The timer only ever pauses: expiry calls `on_expire`, which must take the
    force-pause path. Cancelling never resumes playback.
    """

    def __init__(
        self,
        on_expire: Callable[[], Awaitable[None]],
        on_change: Callable[[], None] | None = None,
        tick_seconds: float = 1.0,
    ) -> None:
        """
        Args:
            on_expire: Awaited when a timed countdown reaches zero.
            on_change: Called after every mode or remaining-time change.
            tick_seconds: Wall time of one countdown second (shortened in tests).
        """
        self._on_expire = on_expire
        self._on_change = on_change
        self._tick = tick_seconds
        self._mode = SleepTimerMode.OFF
        self._remaining = 0
        self._task: asyncio.Task[None] | None = None
        self._generation = 0

    @property
    def mode(self) -> SleepTimerMode:
        return self._mode

    @property
    def remaining_seconds(self) -> int:
        return self._remaining if self._mode is SleepTimerMode.TIMED else 0

    @property
    def is_counting_down(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, minutes: int) -> None:
        """Start a timed countdown; a non-positive value just cancels."""
        self._stop_countdown()
        if minutes <= 0:
            self._set(SleepTimerMode.OFF, 0)
            return

        self._set(SleepTimerMode.TIMED, minutes * 60)
        self._generation += 1
        self._task = asyncio.create_task(
            self._countdown(self._generation), name=f"sleep-timer-{self._generation}"
        )
        logger.info("Sleep timer set: %d minutes", minutes)

    def set_end_of_chapter(self) -> None:
        self._stop_countdown()
        self._set(SleepTimerMode.END_OF_CHAPTER, 0)
        logger.info("Sleep timer set: end of chapter")

    def cancel(self) -> None:
        """Remove any pending auto-pause."""
        self._stop_countdown()
        if self._mode is SleepTimerMode.OFF:
            return
        self._set(SleepTimerMode.OFF, 0)
        logger.info("Sleep timer cancelled")

    async def shutdown(self) -> None:
        task = self._task
        self.cancel()
        if task is not None and task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await task

    def _stop_countdown(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _set(self, mode: SleepTimerMode, remaining: int) -> None:
        self._mode = mode
        self._remaining = remaining
        if self._on_change is not None:
            try:
                self._on_change()
            except Exception:
                logger.exception("Sleep timer change callback failed")

    async def _countdown(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._tick)
            if generation != self._generation or self._mode is not SleepTimerMode.TIMED:
                return

            remaining = self._remaining - 1
            if remaining > 0:
                self._set(SleepTimerMode.TIMED, remaining)
                continue

            logger.info("Sleep timer expired - pausing")
            self._task = None
            self._set(SleepTimerMode.OFF, 0)
            try:
                await self._on_expire()
            except Exception:
                logger.exception("Sleep timer expiry handler failed")
            return
