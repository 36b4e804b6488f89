"""Best-effort progress writes with timeout and backoff.

Progress persistence must never interrupt playback: every failure here is
logged and swallowed.
"""

import asyncio
import logging
from collections.abc import Sequence

from core.config import Settings, get_settings
from services.progress_gateway import ProgressGateway, ProgressUpdate
from services.session_state import ChapterInfo

logger = logging.getLogger(__name__)


def compute_completion_percentage(
    chapters: Sequence[ChapterInfo],
    chapter_index: int,
    position_seconds: int,
    *,
    completed: bool = False,
    fallback_total_seconds: int | None = None,
    chapter_threshold: float = 0.95,
    near_completion_threshold: float = 0.98,
) -> int:
    """
    Overall completion of an audiobook in percent.

    - Chapters before the current one count as fully listened.
    - The current chapter counts fully once it is `chapter_threshold` listened,
      otherwise by its position (capped at its duration).
    - An overall ratio of `near_completion_threshold` or more rounds to 100.
    - `completed` forces 100.
    """
    if completed:
        return 100

    completed_seconds = 0
    total_seconds = 0
    for i, chapter in enumerate(chapters):
        duration = chapter.duration_seconds
        total_seconds += duration
        if i < chapter_index:
            completed_seconds += duration
        elif i == chapter_index:
            position = max(0, position_seconds)
            if duration > 0:
                position = min(position, duration)
                if position / duration >= chapter_threshold:
                    position = duration
            completed_seconds += position

    if total_seconds == 0 and fallback_total_seconds:
        total_seconds = fallback_total_seconds

    if total_seconds <= 0:
        return 0

    ratio = completed_seconds / total_seconds
    if ratio >= near_completion_threshold:
        return 100
    return max(0, min(100, round(ratio * 100)))


class ProgressRecorder:
    """Writes progress through a gateway without ever raising to the caller."""

    def __init__(self, gateway: ProgressGateway, settings: Settings | None = None) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of fire-and-forget writes still in flight."""
        return len(self._pending)

    async def save(self, update: ProgressUpdate) -> bool:
        """
        Write progress, retrying with exponential backoff on timeouts only.

        Returns:
            True if the write succeeded, False otherwise.
        """
        attempts = self.settings.progress_save_max_retries
        timeout = self.settings.database_query_timeout_seconds
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(self.gateway.upsert(update), timeout=timeout)
                logger.debug(
                    "Progress saved for audiobook=%s chapter=%d pos=%ds (attempt %d)",
                    update.audiobook_id,
                    update.chapter_index,
                    update.position_seconds,
                    attempt,
                )
                return True
            except asyncio.TimeoutError:
                if attempt < attempts:
                    delay = self.settings.progress_save_retry_delay_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "Progress save timeout (attempt %d/%d), retrying in %.1fs",
                        attempt,
                        attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
            except Exception as e:
                # Non-timeout errors are auth or data problems; retrying will not help.
                logger.warning(
                    "Progress save failed for audiobook=%s (non-retryable): %s",
                    update.audiobook_id,
                    e,
                )
                return False

        logger.error(
            "Progress save failed after %d attempts for audiobook=%s",
            attempts,
            update.audiobook_id,
        )
        return False

    def schedule(self, update: ProgressUpdate) -> asyncio.Task[None]:
        """Fire-and-forget write; the task is tracked until it finishes."""

        async def _run() -> None:
            await self.save(update)

        task = asyncio.create_task(_run(), name=f"progress-{update.audiobook_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight writes (used at shutdown)."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning("%d progress writes still pending at shutdown", len(pending))
