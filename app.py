from contextlib import asynccontextmanager
from typing import Callable, Optional
import json
import os
import uuid

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import create_backend
from coordinator import SessionCoordinator
from logging_config import get_logger, setup_logging
from notifier import Notifier
from observer import SessionObserver
from player import websocket_player_factory
from playlist import PlaylistRegistry
from routers.broadcast import broadcast_router
from routers.playlist import playlist_router
from store import SharedStateStore

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


async def viewer_websocket(websocket: WebSocket):
    """One viewer per connection.

    The page hosts the actual video widget; this endpoint runs the viewer's
    SessionObserver and drives that widget with command messages.

    Page -> server: ``{"type": "ready"}``, ``{"type": "ended"}``,
    ``{"type": "enable_audio"}``.
    Server -> page: ``command``, ``state`` and ``notification`` messages.
    """
    store = websocket.app.state.store
    viewer_id = uuid.uuid4().hex
    await websocket.accept()
    logger.info(f"Viewer {viewer_id} connected")

    async def send_notification(message: str):
        await websocket.send_json({"type": "notification", "message": message})

    notifier = Notifier(sink=send_notification)
    observer = SessionObserver(
        store,
        websocket_player_factory(websocket),
        notifier,
        viewer_id=viewer_id,
        on_change=websocket.send_json,
    )

    try:
        await websocket.send_json({"type": "system", "message": "Connected", "viewer_id": viewer_id})
        await observer.mount()

        message_count = 0
        while True:
            data = await websocket.receive_text()
            message_count += 1
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON message #{message_count} from viewer {viewer_id}")
                continue
            event = message.get("type") if isinstance(message, dict) else None
            logger.debug(f"Received message #{message_count} ({event}) from viewer {viewer_id}")

            if event in ("ready", "ended"):
                if observer.player is not None:
                    await observer.player.handle_event(event)
            elif event == "enable_audio":
                await observer.enable_audio()
            else:
                logger.debug(f"Ignoring unknown message type {event!r} from viewer {viewer_id}")
    except WebSocketDisconnect:
        logger.info(f"Viewer {viewer_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error for viewer {viewer_id}: {e}", exc_info=True)
    finally:
        await observer.unmount()
        notifier.close()
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


def create_app(store_factory: Callable[[], SharedStateStore] = create_backend,
               coordinator_options: Optional[dict] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = store_factory()
        await store.connect()
        notifier = Notifier()
        app.state.store = store
        app.state.notifier = notifier
        app.state.registry = PlaylistRegistry(store, notifier)
        app.state.coordinator = SessionCoordinator(store, notifier, **(coordinator_options or {}))
        logger.info("Shared state store connected")
        try:
            yield
        finally:
            await app.state.coordinator.shutdown()
            notifier.close()
            await store.close()
            logger.info("Shared state store closed")

    app = FastAPI(title="cimena", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(playlist_router)
    app.include_router(broadcast_router)
    app.websocket("/view/ws")(viewer_websocket)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
