"""Playback session endpoints.

Every listener has one session; commands act on it and return the resulting
state snapshot. `/player/ws` streams snapshots as the session changes.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_session_registry, get_user_id
from api.schemas import (
    ChapterRequest,
    NavigationResponse,
    PersistResponse,
    PlaylistPlayRequest,
    PlayRequest,
    SeekRequest,
    SkipRequest,
    SleepTimerRequest,
    SpeedRequest,
)
from db.session import get_session
from services.catalog import load_playable
from services.playback_controller import PlaybackSessionController
from services.session_registry import SessionRegistry
from services.session_state import SessionSnapshot
from services.websocket_manager import WebSocketManager

router = APIRouter()
logger = logging.getLogger(__name__)

# Global manager (initialized on startup)
ws_manager = WebSocketManager()


def get_controller(
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_session_registry),
) -> PlaybackSessionController:
    return registry.get(user_id)


@router.get("/state", response_model=SessionSnapshot)
async def get_state(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    """Current session snapshot."""
    return controller.state


@router.post("/play", response_model=SessionSnapshot)
async def play(
    request: PlayRequest,
    controller: PlaybackSessionController = Depends(get_controller),
    session: AsyncSession = Depends(get_session),
) -> SessionSnapshot:
    """Start (or resume) an audiobook at a chapter."""
    playable = await load_playable(session, request.audiobook_id)
    if playable is None:
        raise HTTPException(status_code=404, detail="Audiobook not found")
    audiobook, chapters = playable

    await controller.play(
        audiobook,
        chapters,
        request.chapter_index,
        seek_to=request.seek_to,
        is_subscription_active=request.is_subscription_active,
    )
    return controller.state


@router.post("/playlist", response_model=SessionSnapshot)
async def play_playlist(
    request: PlaylistPlayRequest,
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    """Queue a playlist and start the item at `start_index`."""
    await controller.play_from_playlist(
        request.playlist_id,
        request.items,
        request.start_index,
        is_subscription_active=request.is_subscription_active,
    )
    return controller.state


@router.delete("/playlist", response_model=SessionSnapshot)
async def clear_playlist(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    controller.clear_playlist_queue()
    return controller.state


@router.post("/toggle", response_model=SessionSnapshot)
async def toggle_play_pause(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.toggle_play_pause()
    return controller.state


@router.post("/pause", response_model=SessionSnapshot)
async def pause(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.pause()
    return controller.state


@router.post("/resume", response_model=SessionSnapshot)
async def resume(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.resume()
    return controller.state


@router.post("/seek", response_model=SessionSnapshot)
async def seek(
    request: SeekRequest,
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.seek(request.position_ms)
    return controller.state


@router.post("/skip-forward", response_model=SessionSnapshot)
async def skip_forward(
    request: SkipRequest | None = None,
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.skip_forward(request.seconds if request else None)
    return controller.state


@router.post("/skip-backward", response_model=SessionSnapshot)
async def skip_backward(
    request: SkipRequest | None = None,
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.skip_backward(request.seconds if request else None)
    return controller.state


@router.post("/next", response_model=NavigationResponse)
async def next_chapter(
    controller: PlaybackSessionController = Depends(get_controller),
) -> NavigationResponse:
    changed = await controller.next_chapter()
    return NavigationResponse(changed=changed, state=controller.state)


@router.post("/previous", response_model=NavigationResponse)
async def previous_chapter(
    controller: PlaybackSessionController = Depends(get_controller),
) -> NavigationResponse:
    changed = await controller.previous_chapter()
    return NavigationResponse(changed=changed, state=controller.state)


@router.post("/chapter/{index}", response_model=NavigationResponse)
async def go_to_chapter(
    index: int,
    controller: PlaybackSessionController = Depends(get_controller),
) -> NavigationResponse:
    changed = await controller.go_to_chapter(index)
    return NavigationResponse(changed=changed, state=controller.state)


@router.post("/speed", response_model=SessionSnapshot)
async def set_speed(
    request: SpeedRequest,
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.set_speed(request.speed)
    return controller.state


@router.post("/retry", response_model=SessionSnapshot)
async def retry(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    await controller.retry()
    return controller.state


@router.post("/stop", response_model=SessionSnapshot)
async def stop(
    user_id: str = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionSnapshot:
    """Stop playback; the session is released unless a websocket is watching it."""
    controller = registry.get(user_id)
    await controller.stop()
    state = controller.state
    if not ws_manager.is_connected(user_id):
        await registry.release_if_idle(user_id)
    return state


@router.post("/persist", response_model=PersistResponse)
async def persist(
    controller: PlaybackSessionController = Depends(get_controller),
) -> PersistResponse:
    """Save progress now (e.g. before the client goes to background)."""
    return PersistResponse(saved=await controller.persist_now())


@router.post("/sleep-timer", response_model=SessionSnapshot)
async def set_sleep_timer(
    request: SleepTimerRequest,
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    controller.set_sleep_timer(request.minutes)
    return controller.state


@router.post("/sleep-timer/end-of-chapter", response_model=SessionSnapshot)
async def set_sleep_timer_end_of_chapter(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    controller.set_sleep_timer_end_of_chapter()
    return controller.state


@router.delete("/sleep-timer", response_model=SessionSnapshot)
async def cancel_sleep_timer(
    controller: PlaybackSessionController = Depends(get_controller),
) -> SessionSnapshot:
    controller.cancel_sleep_timer()
    return controller.state


async def _dispatch(controller: PlaybackSessionController, data: dict[str, Any]) -> bool:
    """
    Run a command received over the websocket.

    Returns:
        False if the command is unknown.

    Raises:
        ValidationError: If the command's arguments are malformed.
    """
    command = data.get("command")
    if command == "toggle":
        await controller.toggle_play_pause()
    elif command == "pause":
        await controller.pause()
    elif command == "resume":
        await controller.resume()
    elif command == "seek":
        await controller.seek(SeekRequest.model_validate(data).position_ms)
    elif command == "skip_forward":
        await controller.skip_forward(SkipRequest.model_validate(data).seconds)
    elif command == "skip_backward":
        await controller.skip_backward(SkipRequest.model_validate(data).seconds)
    elif command == "next":
        await controller.next_chapter()
    elif command == "previous":
        await controller.previous_chapter()
    elif command == "chapter":
        await controller.go_to_chapter(ChapterRequest.model_validate(data).index)
    elif command == "speed":
        await controller.set_speed(SpeedRequest.model_validate(data).speed)
    elif command == "sleep_timer":
        controller.set_sleep_timer(SleepTimerRequest.model_validate(data).minutes)
    elif command == "sleep_timer_end_of_chapter":
        controller.set_sleep_timer_end_of_chapter()
    elif command == "cancel_sleep_timer":
        controller.cancel_sleep_timer()
    elif command == "clear_playlist":
        controller.clear_playlist_queue()
    elif command == "retry":
        await controller.retry()
    elif command == "stop":
        await controller.stop()
    else:
        return False
    return True


@router.websocket("/ws")
async def player_websocket(
    websocket: WebSocket,
    user_id: str | None = None,
    registry: SessionRegistry = Depends(get_session_registry),
) -> None:
    """
    WebSocket feed of the listener's session.

    The user id comes from the `X-User-Id` header or, for browser clients,
    the `user_id` query parameter.
    """
    resource_id = (websocket.headers.get("x-user-id") or user_id or "").strip()
    if not resource_id:
        await websocket.close(code=4401, reason="Missing user id")
        return

    controller = registry.get(resource_id)
    await ws_manager.connect(websocket, resource_id)
    unsubscribe = controller.subscribe(ws_manager.create_state_listener(resource_id))

    try:
        await ws_manager.send_personal_message(
            {"type": "connected", "user_id": resource_id}, resource_id
        )
        await ws_manager.send_state(resource_id, controller.state)

        # Keep connection alive and handle incoming messages
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                await ws_manager.send_error(resource_id, "Expected a JSON object")
                continue
            if data.get("command") == "ping":
                await websocket.send_json({"type": "pong"})
                continue
            try:
                handled = await _dispatch(controller, data)
            except ValidationError as e:
                await ws_manager.send_error(
                    resource_id, f"Invalid {data.get('command')} command: {e.errors()[0]['msg']}"
                )
                continue
            if not handled:
                await ws_manager.send_error(resource_id, f"Unknown command: {data.get('command')}")

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning("Player websocket for %s closed: %s", resource_id, e)
    finally:
        unsubscribe()
        ws_manager.disconnect(websocket, resource_id)
        if not ws_manager.is_connected(resource_id):
            await registry.release_if_idle(resource_id)
