"""Playback session controller: the single owner of a listening session.

Presentation surfaces (full player, car mode, mini player) call the command
methods and observe state through `subscribe`. The controller mediates every
engine call, advances chapters, runs the sleep timer and persists progress.

Concurrency model: everything runs on one event loop. Commands mutate state
before their first `await`, so they apply in call order. Each `play` takes a
request id and gives up as soon as a newer request exists. Engine events are
sequence-tagged; events older than the latest load or seek are dropped.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import suppress
from time import monotonic

from core.config import Settings, get_settings
from services.access_gate import AccessResult, check_access
from services.catalog import CatalogService
from services.entitlements import EntitlementService
from services.playback_engine import (
    BufferingChanged,
    EngineEvent,
    EngineNetworkError,
    MediaForbiddenError,
    MediaNotFoundError,
    MediaSource,
    PlaybackCompleted,
    PlaybackEngine,
    PlaybackFailed,
    PlayingChanged,
    PositionChanged,
)
from services.progress_gateway import ProgressGateway, ProgressUpdate
from services.progress_recorder import ProgressRecorder, compute_completion_percentage
from services.session_state import (
    AudioErrorType,
    AudiobookInfo,
    ChapterInfo,
    PlaylistItem,
    SessionSnapshot,
    SessionState,
    SleepTimerMode,
)
from services.sleep_timer import SleepTimer

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionSnapshot], None]


def _unit(audiobook: AudiobookInfo) -> str:
    return "track" if audiobook.is_music else "chapter"


def classify_engine_error(
    error: BaseException, audiobook: AudiobookInfo
) -> tuple[AudioErrorType, str, bool]:
    """
    Map an engine failure to (error type, user message, is transient).

    Transient failures are retried automatically before surfacing.
    """
    if isinstance(error, (EngineNetworkError, ConnectionError)):
        return AudioErrorType.NETWORK_ERROR, "No internet connection", True
    if isinstance(error, asyncio.TimeoutError):
        return AudioErrorType.NETWORK_ERROR, "Connection timed out", True
    if isinstance(error, MediaNotFoundError):
        return AudioErrorType.AUDIO_NOT_FOUND, "Audio file not found", False
    if isinstance(error, MediaForbiddenError):
        return (
            AudioErrorType.UNAUTHORIZED,
            "You do not have permission to access this content",
            False,
        )
    return (
        AudioErrorType.PLAYBACK_FAILED,
        f"Could not load this {_unit(audiobook)}. Please try again",
        False,
    )


class PlaybackSessionController:
    """
    Owns one `SessionState` and mediates all playback commands.

    No command raises to the caller: engine failures become error state,
    persistence failures are logged, invalid navigation is ignored.
    """

    def __init__(
        self,
        engine: PlaybackEngine,
        gateway: ProgressGateway,
        entitlements: EntitlementService,
        *,
        user_id: str | None = None,
        settings: Settings | None = None,
        catalog: CatalogService | None = None,
    ) -> None:
        """
        Initialize the controller and attach it to the engine.

        Args:
            engine: Playback engine; owned exclusively by this controller.
            gateway: Progress storage.
            entitlements: Ownership lookups.
            user_id: Listener the session belongs to; None disables persistence.
            settings: Tuning values (defaults to application settings).
            catalog: Catalog used for playlist items and duration updates.
        """
        self.settings = settings or get_settings()
        self.user_id = user_id
        self._engine = engine
        self._gateway = gateway
        self._entitlements = entitlements
        self._catalog = catalog
        self._recorder = ProgressRecorder(gateway, self.settings)

        self._state = SessionState(playback_speed=self.settings.default_playback_speed)
        self._listeners: list[SessionListener] = []

        self._sleep_timer = SleepTimer(
            on_expire=self._on_sleep_timer_expired,
            on_change=self._on_sleep_timer_change,
            tick_seconds=self.settings.sleep_timer_tick_seconds,
        )

        # Play request cancellation
        self._request_id = 0
        self._play_after_load = False

        # Engine event sequencing
        self._seq = 0
        self._load_seq = 0
        self._position_seq = 0
        self._completion_handled_seq: int | None = None

        self._last_toggle_at: float | None = None
        self._autosave_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._duration_updates: set[int] = set()

        engine.set_event_handler(self._handle_engine_event)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionSnapshot:
        """Current read-only snapshot."""
        return self._snapshot()

    @property
    def recorder(self) -> ProgressRecorder:
        return self._recorder

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register a listener called with a snapshot after every state change.

        Returns:
            Function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _snapshot(self) -> SessionSnapshot:
        index = self._state.current_chapter_index
        return self._state.snapshot(
            has_next_chapter=self.can_play_chapter(index + 1),
            has_previous_chapter=self.can_play_chapter(index - 1),
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self._snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("Session listener failed: %s", e)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def _access_for(self, chapter: ChapterInfo, audiobook: AudiobookInfo, is_owned: bool,
                    is_subscription_active: bool) -> AccessResult:
        return check_access(
            is_owned,
            audiobook.is_free,
            is_subscription_active,
            self.settings.subscriptions_available,
            is_preview=chapter.is_preview,
        )

    def can_play_chapter(self, index: int) -> bool:
        """True if `index` is in range and the listener may play that chapter."""
        s = self._state
        if s.audiobook is None or not 0 <= index < len(s.chapters):
            return False
        return self._access_for(
            s.chapters[index], s.audiobook, s.is_owned, s.is_subscription_active
        ).can_access

    def mark_owned(self, audiobook_id: int) -> None:
        """Refresh cached ownership after a purchase completes."""
        s = self._state
        if s.audiobook is None or s.audiobook.id != audiobook_id:
            return
        s.is_owned = True
        if s.error_type is AudioErrorType.UNAUTHORIZED:
            s.clear_error()
        self._notify()

    async def _resolve_ownership(self, audiobook_id: int) -> bool:
        if self.user_id is None:
            return False
        try:
            return await self._entitlements.is_owned(self.user_id, audiobook_id)
        except Exception as e:
            logger.warning("Entitlement check failed for audiobook=%s: %s", audiobook_id, e)
            return False

    # ------------------------------------------------------------------
    # Play / load
    # ------------------------------------------------------------------

    def _is_superseded(self, request_id: int) -> bool:
        return request_id != self._request_id

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    async def play(
        self,
        audiobook: AudiobookInfo,
        chapters: Sequence[ChapterInfo],
        chapter_index: int = 0,
        seek_to: int | None = None,
        *,
        is_owned: bool | None = None,
        is_subscription_active: bool | None = None,
    ) -> None:
        """
        Start playing `chapters[chapter_index]` of `audiobook`.

        Args:
            audiobook: Audiobook to play.
            chapters: Chapters in playback order; empty is reported as an error.
            chapter_index: Chapter to start with (clamped into range).
            seek_to: Start offset in seconds; defaults to the saved position.
            is_owned: Known ownership; looked up when omitted.
            is_subscription_active: Listener's subscription status.

        An empty `chapters` list does not replace the current session: the
        previous audiobook stays loaded (paused) and carries the
        `audio_not_found` error until the next successful `play`.
        """
        chapters = list(chapters)
        s = self._state

        if not chapters:
            logger.warning("No chapters to play for audiobook=%s", audiobook.id)
            if s.is_playing:
                await self._pause_engine()
            self._stop_autosave()
            s.set_error(
                AudioErrorType.AUDIO_NOT_FOUND,
                f"There is no {_unit(audiobook)} to play",
            )
            self._notify()
            return

        index = min(max(chapter_index, 0), len(chapters) - 1)
        same_audiobook = s.audiobook is not None and s.audiobook.id == audiobook.id

        if (
            same_audiobook
            and s.current_chapter_index == index
            and (s.is_playing or s.is_loading)
            and not s.has_error
        ):
            logger.debug(
                "Ignoring play for audiobook=%s chapter=%d: already active", audiobook.id, index
            )
            return

        self._request_id += 1
        request_id = self._request_id
        logger.info(
            "play() request=%d audiobook=%s chapter=%d/%d",
            request_id,
            audiobook.id,
            index,
            len(chapters),
        )

        if not same_audiobook:
            if s.audiobook is not None:
                self._schedule_persist()
            self._sleep_timer.cancel()
            self._stop_autosave()

        if is_owned is None:
            is_owned = s.is_owned if same_audiobook else await self._resolve_ownership(audiobook.id)
            if self._is_superseded(request_id):
                logger.debug("play() request=%d superseded during entitlement check", request_id)
                return
        if is_subscription_active is None:
            is_subscription_active = s.is_subscription_active if same_audiobook else False

        speed = s.playback_speed if same_audiobook else self.settings.default_playback_speed
        chapter = chapters[index]

        s.audiobook = audiobook
        s.chapters = chapters
        s.current_chapter_index = index
        s.is_owned = is_owned
        s.is_subscription_active = is_subscription_active
        s.playback_speed = speed
        s.is_finished = False
        s.is_buffering = False
        s.is_playing = False
        s.clear_error()
        s.duration_ms = chapter.duration_seconds * 1000

        access = self._access_for(chapter, audiobook, is_owned, is_subscription_active)
        if not access.can_access:
            logger.warning("Access denied for audiobook=%s chapter=%d: %s",
                           audiobook.id, index, access.type.value)
            await self._stop_engine()
            self._stop_autosave()
            if access.needs_subscription:
                message = "An active subscription is required to access this content"
            else:
                message = f"Purchase this {'album' if audiobook.is_music else 'book'} to listen"
            s.set_error(AudioErrorType.UNAUTHORIZED, message)
            self._notify()
            return

        s.is_loading = True
        self._notify()

        if seek_to is not None:
            start_ms = max(0, seek_to) * 1000
        else:
            start_ms = await self._resolve_start_position_ms(audiobook.id, index)
            if self._is_superseded(request_id):
                logger.debug("play() request=%d superseded during resume lookup", request_id)
                return
        if s.duration_ms > 0:
            start_ms = min(start_ms, s.duration_ms)

        s.position_ms = start_ms
        s.session_start_position_ms = start_ms
        await self._load_current_chapter(request_id, start_ms, autoplay=True)

    async def _resolve_start_position_ms(self, audiobook_id: int, chapter_index: int) -> int:
        """Saved position of a chapter, or 0 if none (or the chapter was finished)."""
        if self.user_id is None:
            return 0
        timeout = self.settings.database_query_timeout_seconds
        try:
            chapter = await asyncio.wait_for(
                self._gateway.fetch_chapter(self.user_id, audiobook_id, chapter_index),
                timeout=timeout,
            )
            if chapter is not None:
                return 0 if chapter.is_completed else chapter.position_seconds * 1000

            progress = await asyncio.wait_for(
                self._gateway.fetch(self.user_id, audiobook_id), timeout=timeout
            )
            if progress is not None and progress.chapter_index == chapter_index and not progress.is_completed:
                return progress.position_seconds * 1000
        except Exception as e:
            logger.warning("Could not load saved position for audiobook=%s: %s", audiobook_id, e)
        return 0

    async def _load_current_chapter(self, request_id: int, start_ms: int, *, autoplay: bool) -> bool:
        """
        Load the current chapter into the engine and optionally start it.

        Returns:
            True if this request ended with the chapter loaded.
        """
        s = self._state
        audiobook = s.audiobook
        chapter = s.current_chapter
        assert audiobook is not None and chapter is not None

        self._play_after_load = autoplay
        if not chapter.audio_url:
            logger.error("No audio source for audiobook=%s chapter=%d", audiobook.id, s.current_chapter_index)
            await self._stop_engine()
            s.set_error(
                AudioErrorType.AUDIO_NOT_FOUND,
                f"The audio file for this {_unit(audiobook)} is not available",
            )
            self._notify()
            return False

        source = MediaSource(url=chapter.audio_url, duration_ms=chapter.duration_seconds * 1000)
        attempt = 0
        while True:
            seq = self._next_seq()
            self._load_seq = seq
            self._position_seq = seq
            self._completion_handled_seq = None
            try:
                await self._engine.load(source, seq=seq, start_position_ms=start_ms)
                if self._is_superseded(request_id):
                    logger.debug("Load request=%d superseded after load", request_id)
                    return False
                await self._engine.set_speed(s.playback_speed)
                if self._is_superseded(request_id):
                    return False
                if self._play_after_load:
                    await self._engine.play()
                    if self._is_superseded(request_id):
                        return False
                break
            except Exception as e:
                if self._is_superseded(request_id):
                    logger.debug("Ignoring failure of superseded request=%d: %s", request_id, e)
                    return False
                error_type, message, transient = classify_engine_error(e, audiobook)
                if transient and attempt < self.settings.network_error_max_retries:
                    attempt += 1
                    logger.info(
                        "Transient load failure (%s), auto-retrying (attempt %d/%d)",
                        e,
                        attempt,
                        self.settings.network_error_max_retries,
                    )
                    await asyncio.sleep(self.settings.network_error_retry_delay_seconds)
                    if self._is_superseded(request_id):
                        return False
                    continue
                logger.warning("Load failed for audiobook=%s: %s", audiobook.id, e)
                self._stop_autosave()
                s.set_error(error_type, message)
                self._notify()
                return False

        s.is_loading = False
        s.is_playing = self._play_after_load
        if s.is_playing:
            self._start_autosave()
        logger.info(
            "Chapter %d of audiobook=%s loaded (playing=%s)",
            s.current_chapter_index,
            audiobook.id,
            s.is_playing,
        )
        self._notify()
        return True

    async def retry(self) -> None:
        """Re-issue the last play request; meaningful only in the error state."""
        s = self._state
        if not s.has_error or s.audiobook is None or not s.chapters:
            return
        audiobook = s.audiobook
        chapters = list(s.chapters)
        index = s.current_chapter_index
        position_s = s.clamped_position_ms // 1000

        s.clear_error()
        self._notify()
        await self.play(audiobook, chapters, index, seek_to=position_s)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def toggle_play_pause(self) -> None:
        """Flip play/pause; in the error state this retries instead."""
        s = self._state
        if s.has_error:
            await self.retry()
            return
        if s.audiobook is None:
            return

        now = monotonic()
        debounce = self.settings.play_pause_debounce_ms / 1000.0
        if self._last_toggle_at is not None and now - self._last_toggle_at < debounce:
            logger.debug("Ignoring toggle within debounce window")
            return
        self._last_toggle_at = now

        if s.is_playing or (s.is_loading and self._play_after_load):
            await self.pause()
        else:
            await self.resume()

    async def pause(self) -> None:
        """Pause playback and persist progress. Never starts playback."""
        s = self._state
        if s.audiobook is None:
            return
        if s.is_loading:
            # Cancel the pending auto-play of the chapter being loaded.
            self._play_after_load = False
            self._notify()
            return
        was_playing = s.is_playing
        s.is_playing = False
        self._stop_autosave()
        self._notify()
        if was_playing:
            await self._pause_engine()
        self._schedule_persist()

    async def resume(self) -> None:
        s = self._state
        if s.audiobook is None or s.is_playing or s.is_loading or s.has_error:
            return
        if s.is_finished:
            s.is_finished = False
            await self.seek(0)
        try:
            await self._engine.play()
        except Exception as e:
            logger.warning("Engine failed to resume: %s", e)
            error_type, message, _ = classify_engine_error(e, s.audiobook)
            s.set_error(error_type, message)
            self._notify()
            return
        s.is_playing = True
        self._start_autosave()
        self._notify()

    async def seek(self, position_ms: int) -> None:
        """Seek within the current chapter, clamped to [0, duration]."""
        s = self._state
        if s.audiobook is None or s.is_loading:
            return
        target = max(0, int(position_ms))
        if s.duration_ms > 0:
            target = min(target, s.duration_ms)

        seq = self._next_seq()
        self._position_seq = seq
        s.position_ms = target
        if s.is_finished and target < s.duration_ms:
            s.is_finished = False
        self._notify()
        try:
            await self._engine.seek(target, seq=seq)
        except Exception as e:
            logger.warning("Engine seek to %dms failed: %s", target, e)

    async def skip_forward(self, seconds: int | None = None) -> None:
        amount = self.settings.skip_seconds if seconds is None else seconds
        if amount <= 0:
            logger.debug("Ignoring non-positive skip of %s seconds", amount)
            return
        await self.seek(self._state.clamped_position_ms + amount * 1000)

    async def skip_backward(self, seconds: int | None = None) -> None:
        amount = self.settings.skip_seconds if seconds is None else seconds
        if amount <= 0:
            logger.debug("Ignoring non-positive skip of %s seconds", amount)
            return
        await self.seek(self._state.clamped_position_ms - amount * 1000)

    async def set_speed(self, value: float) -> bool:
        """Set playback speed; non-positive values are ignored."""
        if value <= 0:
            logger.warning("Ignoring non-positive playback speed %s", value)
            return False
        self._state.playback_speed = value
        self._notify()
        try:
            await self._engine.set_speed(value)
        except Exception as e:
            logger.warning("Engine failed to set speed %s: %s", value, e)
        return True

    async def stop(self) -> None:
        """Persist, release the engine and return to the empty session."""
        s = self._state
        if s.audiobook is None:
            return
        self._request_id += 1
        self._schedule_persist()
        self._sleep_timer.cancel()
        self._stop_autosave()
        await self._stop_engine()
        s.reset()
        s.playback_speed = self.settings.default_playback_speed
        self._notify()

    # ------------------------------------------------------------------
    # Chapter navigation
    # ------------------------------------------------------------------

    async def next_chapter(self) -> bool:
        return await self.go_to_chapter(self._state.current_chapter_index + 1)

    async def previous_chapter(self) -> bool:
        return await self.go_to_chapter(self._state.current_chapter_index - 1)

    async def go_to_chapter(self, index: int) -> bool:
        """
        Switch to chapter `index`, keeping the play/pause state.

        Out-of-range or locked targets are ignored without surfacing an error.

        Returns:
            True if the chapter was switched and loaded.
        """
        if not self.can_play_chapter(index):
            logger.debug("Ignoring navigation to chapter %d", index)
            return False
        s = self._state
        autoplay = s.is_playing or (s.is_loading and self._play_after_load)
        return await self._change_chapter(index, autoplay=autoplay)

    async def _change_chapter(
        self, index: int, *, autoplay: bool, outgoing_completed: bool | None = None
    ) -> bool:
        s = self._state
        self._request_id += 1
        request_id = self._request_id

        self._schedule_persist(chapter_completed=outgoing_completed)

        chapter = s.chapters[index]
        s.current_chapter_index = index
        s.position_ms = 0
        s.session_start_position_ms = 0
        s.duration_ms = chapter.duration_seconds * 1000
        s.is_finished = False
        s.is_buffering = False
        s.is_playing = False
        s.is_loading = True
        s.clear_error()
        self._notify()

        logger.info("Switching to chapter %d - %r", index, chapter.title)
        return await self._load_current_chapter(request_id, 0, autoplay=autoplay)

    # ------------------------------------------------------------------
    # Playlist queue
    # ------------------------------------------------------------------

    async def play_from_playlist(
        self,
        playlist_id: str,
        items: Sequence[PlaylistItem],
        start_index: int = 0,
        *,
        is_subscription_active: bool | None = None,
    ) -> bool:
        """
        Queue `items` and start playing the one at `start_index`.

        When an item's audiobook finishes, the next item is loaded
        automatically. An out-of-range `start_index` starts from the top.

        Returns:
            True if the first item was loaded.
        """
        items = list(items)
        if not items:
            logger.warning("Playlist %s has no items", playlist_id)
            return False
        if not 0 <= start_index < len(items):
            start_index = 0

        s = self._state
        if is_subscription_active is not None:
            s.is_subscription_active = is_subscription_active
        s.playlist_id = playlist_id
        s.playlist_items = items
        s.playlist_index = start_index
        logger.info("Playing playlist %s from item %d/%d", playlist_id, start_index, len(items))
        self._notify()
        return await self._load_playlist_item(start_index)

    def clear_playlist_queue(self) -> None:
        """Forget the playlist; the current audiobook keeps playing."""
        if not self._state.is_playlist_active:
            return
        self._state.clear_playlist()
        self._notify()

    async def _load_playlist_item(self, index: int) -> bool:
        s = self._state
        items = list(s.playlist_items)
        if not 0 <= index < len(items):
            return False
        s.playlist_index = index
        item = items[index]

        if self._catalog is None:
            s.set_error(AudioErrorType.PLAYBACK_FAILED, "Playlist playback is not available")
            self._notify()
            return False

        try:
            playable = await asyncio.wait_for(
                self._catalog.load_playable(item.audiobook_id),
                timeout=self.settings.database_query_timeout_seconds,
            )
        except Exception as e:
            logger.warning("Failed to load playlist item %d (audiobook=%s): %s",
                           index, item.audiobook_id, e)
            s.set_error(AudioErrorType.PLAYBACK_FAILED, "Could not load the next playlist item")
            self._notify()
            return False

        if s.playlist_items != items:
            logger.debug("Playlist changed while loading item %d", index)
            return False

        if playable is None:
            logger.warning("Playlist item %d: audiobook %s not found", index, item.audiobook_id)
            s.set_error(AudioErrorType.AUDIO_NOT_FOUND, "This playlist item is no longer available")
            self._notify()
            return False

        audiobook, chapters = playable
        if item.chapter_index is not None:
            if item.chapter_index >= len(chapters):
                s.set_error(
                    AudioErrorType.AUDIO_NOT_FOUND,
                    f"This {_unit(audiobook)} is no longer available",
                )
                self._notify()
                return False
            chapters = [chapters[item.chapter_index]]

        await self.play(audiobook, chapters, 0, is_subscription_active=s.is_subscription_active)
        return not s.has_error

    # ------------------------------------------------------------------
    # Sleep timer
    # ------------------------------------------------------------------

    def set_sleep_timer(self, minutes: int) -> None:
        self._sleep_timer.start(minutes)

    def set_sleep_timer_end_of_chapter(self) -> None:
        self._sleep_timer.set_end_of_chapter()

    def cancel_sleep_timer(self) -> None:
        self._sleep_timer.cancel()

    def _on_sleep_timer_change(self) -> None:
        self._state.sleep_timer_mode = self._sleep_timer.mode
        self._state.sleep_timer_remaining_seconds = self._sleep_timer.remaining_seconds
        self._notify()

    async def _on_sleep_timer_expired(self) -> None:
        await self.pause()

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    async def _handle_engine_event(self, event: EngineEvent) -> None:
        s = self._state
        if event.seq < self._load_seq or s.audiobook is None:
            logger.debug("Dropping stale %s (seq=%d < %d)", type(event).__name__, event.seq, self._load_seq)
            return

        if isinstance(event, PositionChanged):
            if event.seq < self._position_seq or s.is_loading:
                logger.debug("Dropping stale position %dms (seq=%d)", event.position_ms, event.seq)
                return
            s.position_ms = max(0, event.position_ms)
            if event.duration_ms > 0:
                s.duration_ms = event.duration_ms
                self._backfill_chapter_duration(event.duration_ms)
            self._notify()

        elif isinstance(event, BufferingChanged):
            if s.is_buffering != event.is_buffering:
                s.is_buffering = event.is_buffering
                self._notify()

        elif isinstance(event, PlayingChanged):
            if s.is_loading or s.has_error or s.is_playing == event.is_playing:
                return
            s.is_playing = event.is_playing
            if event.is_playing:
                self._start_autosave()
            else:
                self._stop_autosave()
                self._schedule_persist()
            self._notify()

        elif isinstance(event, PlaybackCompleted):
            if event.seq < self._position_seq or s.is_loading:
                logger.debug("Dropping stale completion (seq=%d)", event.seq)
                return
            await self._on_chapter_complete(event.seq)

        elif isinstance(event, PlaybackFailed):
            if s.is_loading:
                return
            logger.warning("Engine reported playback failure: %s", event.message)
            self._stop_autosave()
            self._schedule_persist()
            s.set_error(
                AudioErrorType.PLAYBACK_FAILED,
                f"Playback of this {_unit(s.audiobook)} failed. Please try again",
            )
            self._notify()

    def _backfill_chapter_duration(self, duration_ms: int) -> None:
        s = self._state
        index = s.current_chapter_index
        if s.audiobook is None or not 0 <= index < len(s.chapters):
            return
        chapter = s.chapters[index]
        seconds = duration_ms // 1000
        if chapter.duration_seconds > 0 or seconds <= 0 or chapter.id in self._duration_updates:
            return
        self._duration_updates.add(chapter.id)
        s.chapters[index] = chapter.model_copy(update={"duration_seconds": seconds})
        if self._catalog is None:
            return
        task = asyncio.create_task(self._store_chapter_duration(s.audiobook.id, chapter.id, seconds))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _store_chapter_duration(self, audiobook_id: int, chapter_id: int, seconds: int) -> None:
        assert self._catalog is not None
        try:
            total = await asyncio.wait_for(
                self._catalog.update_chapter_duration(chapter_id, seconds),
                timeout=self.settings.database_query_timeout_seconds,
            )
        except Exception as e:
            logger.warning("Failed to store duration of chapter %s: %s", chapter_id, e)
            return
        s = self._state
        if total is None or s.audiobook is None or s.audiobook.id != audiobook_id:
            return
        s.audiobook = s.audiobook.model_copy(update={"total_duration_seconds": total})
        self._notify()

    async def _on_chapter_complete(self, seq: int) -> None:
        if self._completion_handled_seq == seq:
            logger.debug("Ignoring duplicate completion (seq=%d)", seq)
            return
        self._completion_handled_seq = seq

        s = self._state
        if s.duration_ms > 0:
            s.position_ms = s.duration_ms
        index = s.current_chapter_index
        logger.info(
            "Chapter %d of audiobook=%s complete (sleep_timer=%s)",
            index,
            s.audiobook.id if s.audiobook else None,
            self._sleep_timer.mode.value,
        )

        if self._sleep_timer.mode is SleepTimerMode.END_OF_CHAPTER:
            self._sleep_timer.cancel()
            await self._force_pause(chapter_completed=True)
            return

        next_index = index + 1
        if next_index < len(s.chapters):
            if self.settings.auto_play_next and self.can_play_chapter(next_index):
                await self._change_chapter(next_index, autoplay=True, outgoing_completed=True)
            else:
                logger.info("Stopping at end of chapter %d (next locked or auto-play off)", index)
                await self._force_pause(chapter_completed=True)
            return

        logger.info("Last chapter complete - audiobook finished")
        s.is_finished = True
        await self._force_pause(chapter_completed=True, audiobook_completed=True)

        if s.has_next_playlist_item and self.settings.auto_play_next:
            await self._load_playlist_item(s.playlist_index + 1)
        elif s.is_playlist_active:
            logger.info("Playlist %s finished", s.playlist_id)
            s.clear_playlist()
            self._notify()

    async def _force_pause(self, *, chapter_completed: bool | None = None,
                           audiobook_completed: bool = False) -> None:
        s = self._state
        was_playing = s.is_playing
        s.is_playing = False
        self._stop_autosave()
        self._notify()
        if was_playing:
            await self._pause_engine()
        self._schedule_persist(
            chapter_completed=chapter_completed, audiobook_completed=audiobook_completed
        )

    async def _pause_engine(self) -> None:
        try:
            await self._engine.pause()
        except Exception as e:
            logger.warning("Engine failed to pause: %s", e)

    async def _stop_engine(self) -> None:
        try:
            await self._engine.stop()
        except Exception as e:
            logger.warning("Engine failed to stop: %s", e)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _build_update(
        self, *, chapter_completed: bool | None = None, audiobook_completed: bool = False
    ) -> ProgressUpdate | None:
        s = self._state
        chapter = s.current_chapter
        if self.user_id is None or s.audiobook is None or chapter is None:
            return None

        position_ms = s.clamped_position_ms
        duration_ms = s.duration_ms or chapter.duration_seconds * 1000
        if chapter_completed is None:
            chapter_completed = (
                duration_ms > 0
                and position_ms >= duration_ms * self.settings.chapter_completion_threshold
            )
        position_s = position_ms // 1000

        return ProgressUpdate(
            user_id=self.user_id,
            audiobook_id=s.audiobook.id,
            chapter_index=s.current_chapter_index,
            position_seconds=position_s,
            is_completed=chapter_completed,
            audiobook_completed=audiobook_completed,
            playback_speed=s.playback_speed,
            completion_percentage=compute_completion_percentage(
                s.chapters,
                s.current_chapter_index,
                position_s,
                completed=audiobook_completed,
                fallback_total_seconds=s.audiobook.total_duration_seconds,
                chapter_threshold=self.settings.chapter_completion_threshold,
                near_completion_threshold=self.settings.audiobook_near_completion_threshold,
            ),
        )

    def _schedule_persist(
        self, *, chapter_completed: bool | None = None, audiobook_completed: bool = False
    ) -> None:
        update = self._build_update(
            chapter_completed=chapter_completed, audiobook_completed=audiobook_completed
        )
        if update is not None:
            self._recorder.schedule(update)

    async def persist_now(self) -> bool:
        """
        Persist the current position immediately (e.g. app backgrounding).

        Returns:
            True if progress was written.
        """
        update = self._build_update()
        if update is None:
            return False
        return await self._recorder.save(update)

    def _start_autosave(self) -> None:
        if self._autosave_task is not None and not self._autosave_task.done():
            return
        self._autosave_task = asyncio.create_task(self._autosave_loop(), name="progress-autosave")

    def _stop_autosave(self) -> None:
        task, self._autosave_task = self._autosave_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _autosave_loop(self) -> None:
        interval = self.settings.progress_save_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if not self._state.is_playing:
                return
            self._schedule_persist()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self, timeout: float | None = None) -> None:
        """Persist, stop background tasks and release the engine."""
        self._request_id += 1
        await self.persist_now()
        await self._sleep_timer.shutdown()
        self._stop_autosave()
        for task in list(self._background_tasks):
            task.cancel()
        try:
            await self._engine.shutdown()
        except Exception as e:
            logger.warning("Engine shutdown failed: %s", e)
        await self._recorder.drain(timeout=timeout)
        self._listeners.clear()
