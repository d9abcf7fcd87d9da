from fastapi import APIRouter, HTTPException, Request
from errors import InvalidLink, StoreUnavailable
from logging_config import get_logger
from playlist import PlaylistRegistry
from schemas.playlist import AddItemRequest, PlaylistItem, PlaylistResponse

logger = get_logger(__name__)

playlist_router = APIRouter(prefix="/playlist", tags=["playlist"])


def get_registry(request: Request) -> PlaylistRegistry:
    return request.app.state.registry


@playlist_router.get("/", response_model=PlaylistResponse)
async def list_items(request: Request):
    try:
        items = await get_registry(request).list_items()
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message)
    return PlaylistResponse(items=items)


@playlist_router.post("/", response_model=PlaylistItem, status_code=201)
async def add_item(body: AddItemRequest, request: Request):
    # Body: { "input": "https://youtu.be/dQw4w9WgXcQ" } or a bare 11 character id
    logger.info(f"Add playlist item request from {request.client.host if request.client else 'unknown'}")
    try:
        return await get_registry(request).add_item(body.input)
    except InvalidLink as e:
        raise HTTPException(status_code=400, detail=e.message)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message)


@playlist_router.delete("/{key}")
async def remove_item(key: str, request: Request):
    # Deleting a key that does not exist is not an error
    try:
        await get_registry(request).remove_item(key)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message)
    return {"message": "Link removed", "key": key}
