"""Shared request dependencies."""

from fastapi import Header, HTTPException

from services.progress_gateway import ProgressGateway, SqlProgressGateway
from services.session_registry import SessionRegistry

# Global services (created lazily, replaced in tests via dependency_overrides)
_session_registry: SessionRegistry | None = None
_progress_gateway: ProgressGateway | None = None


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Listener identity, supplied by the fronting auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_session_registry() -> SessionRegistry:
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry()
    return _session_registry


def get_progress_gateway() -> ProgressGateway:
    global _progress_gateway
    if _progress_gateway is None:
        _progress_gateway = SqlProgressGateway()
    return _progress_gateway


async def shutdown_sessions() -> None:
    """Persist and release all playback sessions (application shutdown)."""
    if _session_registry is not None:
        await _session_registry.shutdown_all()
