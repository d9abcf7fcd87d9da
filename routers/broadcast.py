from fastapi import APIRouter, HTTPException, Request
from coordinator import SessionCoordinator
from errors import AlreadyBroadcasting, EmptyPlaylist, SessionError, StoreUnavailable
from logging_config import get_logger
from schemas.session import SessionStatusResponse, StartSessionResponse, StopSessionResponse

logger = get_logger(__name__)

broadcast_router = APIRouter(prefix="/broadcast", tags=["broadcast"])

ERROR_STATUS = {
    AlreadyBroadcasting: 409,
    EmptyPlaylist: 400,
    StoreUnavailable: 503,
}


def get_coordinator(request: Request) -> SessionCoordinator:
    return request.app.state.coordinator


@broadcast_router.post("/start", response_model=StartSessionResponse)
async def start_session(request: Request):
    coordinator = get_coordinator(request)
    logger.info(f"Start session request from {request.client.host if request.client else 'unknown'}")
    try:
        ctx = await coordinator.start_session()
    except SessionError as e:
        raise HTTPException(status_code=ERROR_STATUS.get(type(e), 500), detail=e.message)

    if ctx is None:
        detail = "Session already running" if coordinator.is_streaming else "Please wait a few seconds before trying again"
        raise HTTPException(status_code=409 if coordinator.is_streaming else 429, detail=detail)

    return StartSessionResponse(
        broadcaster_id=ctx.broadcaster_id,
        started_at=ctx.started_at_ms,
        connections=ctx.connections,
    )


@broadcast_router.post("/stop", response_model=StopSessionResponse)
async def stop_session(request: Request):
    # Always succeeds; a stop inside the cooldown or with nothing live is a no-op
    coordinator = get_coordinator(request)
    elapsed = coordinator.status().elapsed
    stopped = await coordinator.stop_session()
    logger.info(f"Stop session request handled: stopped={stopped}")
    return StopSessionResponse(stopped=stopped, elapsed=elapsed if stopped else None)


@broadcast_router.get("/status", response_model=SessionStatusResponse)
async def session_status(request: Request):
    return get_coordinator(request).status()
