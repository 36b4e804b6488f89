"""Pytest fixtures for API tests."""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from api.dependencies import get_progress_gateway, get_session_registry
from core.config import Settings, get_settings
from db.models import Audiobook, Chapter, ContentType, Entitlement
from db.session import get_session
from main import app
from services.catalog import SqlCatalogService
from services.entitlements import SqlEntitlementService
from services.playback_controller import PlaybackSessionController
from services.playback_engine import (
    EngineEvent,
    MediaSource,
    PlaybackCompleted,
    PositionChanged,
)
from services.progress_gateway import (
    ChapterProgressSnapshot,
    ProgressSnapshot,
    ProgressUpdate,
    SqlProgressGateway,
)
from services.session_registry import SessionRegistry
from services.session_state import AudiobookInfo, ChapterInfo


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_USER = "user-1"


class FakePlaybackEngine:
    """Scriptable engine: records commands and lets tests emit events."""

    def __init__(self) -> None:
        self.handler: Callable[[EngineEvent], Any] | None = None
        self.calls: list[str] = []
        self.loads: list[tuple[str, int, int]] = []
        self.source: MediaSource | None = None
        self.seq = 0
        self.position_ms = 0
        self.speed = 1.0
        self.is_playing = False
        # Exceptions raised by successive load() calls
        self.load_errors: list[BaseException] = []
        # load() of these URLs blocks until the event is set
        self.load_gates: dict[str, asyncio.Event] = {}
        self.play_error: BaseException | None = None

    def set_event_handler(self, handler: Callable[[EngineEvent], Any]) -> None:
        self.handler = handler

    async def load(self, source: MediaSource, *, seq: int, start_position_ms: int = 0) -> None:
        self.calls.append("load")
        self.loads.append((source.url, seq, start_position_ms))
        self.is_playing = False
        gate = self.load_gates.get(source.url)
        if gate is not None:
            await gate.wait()
        if self.load_errors:
            raise self.load_errors.pop(0)
        self.source = source
        self.seq = seq
        self.position_ms = start_position_ms

    async def play(self) -> None:
        self.calls.append("play")
        if self.play_error is not None:
            raise self.play_error
        self.is_playing = True

    async def pause(self) -> None:
        self.calls.append("pause")
        self.is_playing = False

    async def stop(self) -> None:
        self.calls.append("stop")
        self.is_playing = False
        self.source = None

    async def seek(self, position_ms: int, *, seq: int) -> None:
        self.calls.append("seek")
        self.seq = seq
        self.position_ms = position_ms

    async def set_speed(self, rate: float) -> None:
        self.calls.append("set_speed")
        self.speed = rate

    async def shutdown(self) -> None:
        self.calls.append("shutdown")

    @property
    def load_count(self) -> int:
        return self.calls.count("load")

    async def emit(self, event: EngineEvent) -> None:
        assert self.handler is not None
        await self.handler(event)

    async def report_position(self, position_ms: int, seq: int | None = None) -> None:
        duration = self.source.duration_ms if self.source else 0
        await self.emit(PositionChanged(self.seq if seq is None else seq, position_ms, duration))

    async def complete(self, seq: int | None = None) -> None:
        self.is_playing = False
        await self.emit(PlaybackCompleted(self.seq if seq is None else seq))


class InMemoryProgressGateway:
    """Progress gateway keeping rows in dictionaries."""

    def __init__(self) -> None:
        self.updates: list[ProgressUpdate] = []
        self.books: dict[tuple[str, int], ProgressSnapshot] = {}
        self.chapters: dict[tuple[str, int, int], ChapterProgressSnapshot] = {}
        self.fail_with: BaseException | None = None
        self.delay = 0.0

    async def upsert(self, update: ProgressUpdate) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.updates.append(update)
        self.books[(update.user_id, update.audiobook_id)] = ProgressSnapshot(
            chapter_index=update.chapter_index,
            position_seconds=update.position_seconds,
            is_completed=update.audiobook_completed,
            playback_speed=update.playback_speed,
            completion_percentage=update.completion_percentage,
        )
        self.chapters[(update.user_id, update.audiobook_id, update.chapter_index)] = (
            ChapterProgressSnapshot(
                chapter_index=update.chapter_index,
                position_seconds=update.position_seconds,
                is_completed=update.is_completed,
            )
        )

    async def fetch(self, user_id: str, audiobook_id: int) -> ProgressSnapshot | None:
        return self.books.get((user_id, audiobook_id))

    async def fetch_chapter(
        self, user_id: str, audiobook_id: int, chapter_index: int
    ) -> ChapterProgressSnapshot | None:
        return self.chapters.get((user_id, audiobook_id, chapter_index))


class StaticEntitlements:
    """Entitlement service answering from a fixed set of owned audiobook ids."""

    def __init__(self, owned: set[int] | None = None) -> None:
        self.owned = owned if owned is not None else set()
        self.calls = 0

    async def is_owned(self, user_id: str, audiobook_id: int) -> bool:
        self.calls += 1
        return audiobook_id in self.owned


class InMemoryCatalog:
    """Catalog keeping playable audiobooks in a dictionary."""

    def __init__(self) -> None:
        self.books: dict[int, tuple[AudiobookInfo, list[ChapterInfo]]] = {}
        self.duration_updates: list[tuple[int, int]] = []
        self.fail_with: BaseException | None = None

    def add(self, audiobook: AudiobookInfo, chapters: list[ChapterInfo]) -> None:
        self.books[audiobook.id] = (audiobook, list(chapters))

    async def load_playable(
        self, audiobook_id: int
    ) -> tuple[AudiobookInfo, list[ChapterInfo]] | None:
        if self.fail_with is not None:
            raise self.fail_with
        playable = self.books.get(audiobook_id)
        if playable is None:
            return None
        return playable[0], list(playable[1])

    async def update_chapter_duration(self, chapter_id: int, duration_seconds: int) -> int | None:
        self.duration_updates.append((chapter_id, duration_seconds))
        for _, chapters in self.books.values():
            for i, chapter in enumerate(chapters):
                if chapter.id == chapter_id:
                    chapters[i] = chapter.model_copy(update={"duration_seconds": duration_seconds})
                    return sum(c.duration_seconds for c in chapters)
        return None


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings with overrides."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        debug=True,
        environment="development",
        play_pause_debounce_ms=0,
        network_error_retry_delay_seconds=0,
        progress_save_retry_delay_seconds=0,
        progress_save_interval_seconds=60,
        database_query_timeout_seconds=1,
        sleep_timer_tick_seconds=0.01,
        engine_tick_seconds=0.01,
        ws_position_buffer_ms=10,
    )


@pytest.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[Any, None]:
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_maker(test_engine: Any) -> Callable[[], AsyncSession]:
    """Session factory bound to the test database."""
    return sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(
    test_session_maker: Callable[[], AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with test_session_maker() as session:
        yield session


@pytest.fixture
async def seeded_catalog(test_session_maker: Callable[[], AsyncSession]) -> dict[str, int]:
    """
    Insert a small catalog.

    - audiobook 1: paid book, 3 chapters, chapter 0 is a preview, owned by TEST_USER
    - audiobook 2: paid book, 2 chapters, not owned
    - audiobook 3: free music album, 2 tracks
    """
    async with test_session_maker() as session:
        session.add(Audiobook(id=1, title="The Long Road", is_free=False, total_duration_seconds=1800))
        session.add(Audiobook(id=2, title="Locked Tales", is_free=False, total_duration_seconds=1200))
        session.add(
            Audiobook(id=3, title="Night Songs", content_type=ContentType.MUSIC, is_free=True)
        )
        for i in range(3):
            session.add(
                Chapter(
                    id=10 + i,
                    audiobook_id=1,
                    index=i,
                    title=f"Chapter {i + 1}",
                    duration_seconds=600,
                    is_preview=i == 0,
                    audio_url=f"https://cdn.test/1/{i}.mp3",
                )
            )
        for i in range(2):
            session.add(
                Chapter(
                    id=20 + i,
                    audiobook_id=2,
                    index=i,
                    title=f"Chapter {i + 1}",
                    duration_seconds=600,
                    audio_url=f"https://cdn.test/2/{i}.mp3",
                )
            )
            session.add(
                Chapter(
                    id=30 + i,
                    audiobook_id=3,
                    index=i,
                    title=f"Track {i + 1}",
                    duration_seconds=180,
                    audio_url=f"https://cdn.test/3/{i}.mp3",
                )
            )
        session.add(Entitlement(user_id=TEST_USER, audiobook_id=1))
        await session.commit()
    return {"owned": 1, "locked": 2, "free": 3}


@pytest.fixture
def fake_engine() -> FakePlaybackEngine:
    return FakePlaybackEngine()


@pytest.fixture
def progress_gateway() -> InMemoryProgressGateway:
    return InMemoryProgressGateway()


@pytest.fixture
def entitlements() -> StaticEntitlements:
    return StaticEntitlements(owned={1})


@pytest.fixture
async def controller(
    fake_engine: FakePlaybackEngine,
    progress_gateway: InMemoryProgressGateway,
    entitlements: StaticEntitlements,
    test_settings: Settings,
) -> AsyncGenerator[PlaybackSessionController, None]:
    """Controller wired to the fake engine and in-memory gateway."""
    ctrl = PlaybackSessionController(
        fake_engine,
        progress_gateway,
        entitlements,
        user_id=TEST_USER,
        settings=test_settings,
    )
    yield ctrl
    await ctrl.shutdown(timeout=1.0)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture
async def catalog_controller(
    fake_engine: FakePlaybackEngine,
    progress_gateway: InMemoryProgressGateway,
    entitlements: StaticEntitlements,
    test_settings: Settings,
    catalog: InMemoryCatalog,
) -> AsyncGenerator[PlaybackSessionController, None]:
    """Controller that can load playlist items and store chapter durations."""
    ctrl = PlaybackSessionController(
        fake_engine,
        progress_gateway,
        entitlements,
        user_id=TEST_USER,
        settings=test_settings,
        catalog=catalog,
    )
    yield ctrl
    await ctrl.shutdown(timeout=1.0)


@pytest.fixture
def audiobook() -> AudiobookInfo:
    return AudiobookInfo(id=1, title="The Long Road", total_duration_seconds=1800)


@pytest.fixture
def chapters() -> list[ChapterInfo]:
    return [
        ChapterInfo(
            id=10 + i,
            title=f"Chapter {i + 1}",
            duration_seconds=600,
            is_preview=i == 0,
            audio_url=f"https://cdn.test/1/{i}.mp3",
        )
        for i in range(3)
    ]


@pytest.fixture
async def session_registry(
    test_session_maker: Callable[[], AsyncSession],
    test_settings: Settings,
) -> AsyncGenerator[SessionRegistry, None]:
    """Registry using fake engines and the test database."""
    registry = SessionRegistry(
        engine_factory=FakePlaybackEngine,
        gateway=SqlProgressGateway(test_session_maker),
        entitlements=SqlEntitlementService(test_session_maker),
        settings=test_settings,
        catalog=SqlCatalogService(test_session_maker),
    )
    yield registry
    await registry.shutdown_all(timeout=1.0)


@pytest.fixture
async def client(
    test_session_maker: Callable[[], AsyncSession],
    test_settings: Settings,
    session_registry: SessionRegistry,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with test_session_maker() as session:
            yield session
            await session.commit()

    def override_get_settings() -> Settings:
        return test_settings

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_session_registry] = lambda: session_registry
    app.dependency_overrides[get_progress_gateway] = lambda: SqlProgressGateway(test_session_maker)

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-User-Id": TEST_USER}
    ) as client:
        yield client

    app.dependency_overrides.clear()
