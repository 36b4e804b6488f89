"""Per-listener playback sessions for the HTTP service."""

import asyncio
import logging
from collections.abc import Callable

from core.config import Settings, get_settings
from services.catalog import CatalogService, SqlCatalogService
from services.entitlements import EntitlementService, SqlEntitlementService
from services.playback_controller import PlaybackSessionController
from services.playback_engine import PlaybackEngine
from services.progress_gateway import ProgressGateway, SqlProgressGateway
from services.virtual_engine import VirtualPlaybackEngine

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], PlaybackEngine]


class SessionRegistry:
    """
    Holds exactly one PlaybackSessionController per user.

    Each controller gets its own engine from `engine_factory`; controllers
    share the gateway, entitlement and catalog services.
    """

    def __init__(
        self,
        engine_factory: EngineFactory | None = None,
        gateway: ProgressGateway | None = None,
        entitlements: EntitlementService | None = None,
        settings: Settings | None = None,
        catalog: CatalogService | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._engine_factory = engine_factory or (
            lambda: VirtualPlaybackEngine(tick_seconds=self.settings.engine_tick_seconds)
        )
        self._gateway = gateway or SqlProgressGateway()
        self._entitlements = entitlements or SqlEntitlementService()
        self._catalog = catalog or SqlCatalogService()
        self._controllers: dict[str, PlaybackSessionController] = {}

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._controllers

    def __len__(self) -> int:
        return len(self._controllers)

    def get(self, user_id: str) -> PlaybackSessionController:
        """Return the user's controller, creating it on first use."""
        controller = self._controllers.get(user_id)
        if controller is None:
            controller = PlaybackSessionController(
                self._engine_factory(),
                self._gateway,
                self._entitlements,
                user_id=user_id,
                settings=self.settings,
                catalog=self._catalog,
            )
            self._controllers[user_id] = controller
            logger.info("Created playback session for user=%s", user_id)
        return controller

    def peek(self, user_id: str) -> PlaybackSessionController | None:
        return self._controllers.get(user_id)

    async def close(self, user_id: str) -> None:
        controller = self._controllers.pop(user_id, None)
        if controller is not None:
            await controller.shutdown()
            logger.info("Closed playback session for user=%s", user_id)

    async def release_if_idle(self, user_id: str) -> bool:
        """
        Close the user's session if nothing is loaded in it.

        Returns:
            True if a session was closed.
        """
        controller = self._controllers.get(user_id)
        if controller is None or controller.state.audiobook is not None:
            return False
        await self.close(user_id)
        return True

    async def shutdown_all(self, timeout: float = 10.0) -> None:
        """Persist and release every session (application shutdown)."""
        controllers = list(self._controllers.values())
        self._controllers.clear()
        if not controllers:
            return
        logger.info("Shutting down %d playback session(s)", len(controllers))
        results = await asyncio.gather(
            *(c.shutdown(timeout=timeout) for c in controllers), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Error during session shutdown: %s", result)
