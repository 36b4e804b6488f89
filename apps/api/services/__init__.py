"""Services module."""

from .access_gate import AccessResult, AccessType, check_access
from .catalog import CatalogService, SqlCatalogService
from .entitlements import EntitlementService, SqlEntitlementService
from .playback_controller import PlaybackSessionController
from .playback_engine import (
    EngineError,
    EngineNetworkError,
    MediaForbiddenError,
    MediaNotFoundError,
    MediaSource,
    PlaybackEngine,
)
from .progress_gateway import ProgressGateway, ProgressUpdate, SqlProgressGateway
from .progress_recorder import ProgressRecorder, compute_completion_percentage
from .session_registry import SessionRegistry
from .session_state import (
    AudioErrorType,
    AudiobookInfo,
    ChapterInfo,
    PlaybackPhase,
    PlaylistItem,
    SessionSnapshot,
    SessionState,
    SleepTimerMode,
)
from .sleep_timer import SleepTimer
from .virtual_engine import VirtualPlaybackEngine
from .websocket_manager import WebSocketManager

__all__ = [
    # Access gate
    "AccessResult",
    "AccessType",
    "check_access",
    # Catalog
    "CatalogService",
    "SqlCatalogService",
    # Entitlements
    "EntitlementService",
    "SqlEntitlementService",
    # Controller
    "PlaybackSessionController",
    "SessionRegistry",
    # Engine
    "EngineError",
    "EngineNetworkError",
    "MediaForbiddenError",
    "MediaNotFoundError",
    "MediaSource",
    "PlaybackEngine",
    "VirtualPlaybackEngine",
    # Progress
    "ProgressGateway",
    "ProgressUpdate",
    "SqlProgressGateway",
    "ProgressRecorder",
    "compute_completion_percentage",
    # Session state
    "AudioErrorType",
    "AudiobookInfo",
    "ChapterInfo",
    "PlaybackPhase",
    "PlaylistItem",
    "SessionSnapshot",
    "SessionState",
    "SleepTimerMode",
    "SleepTimer",
    # WebSocketManager
    "WebSocketManager",
]
