from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class StoreRecord(BaseModel):
    """Records are stored with their camelCase wire names."""
    model_config = ConfigDict(populate_by_name=True)

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class BroadcasterPresence(StoreRecord):
    id: str
    started: bool = True
    last_ping: int = Field(0, alias="lastPing")


class SessionOnline(StoreRecord):
    started: bool = True
    started_at: int = Field(0, alias="startedAt")
    broadcaster_id: str = Field(alias="broadcasterId")


class ViewerRecord(StoreRecord):
    last_seen: Optional[int] = Field(None, alias="lastSeen")


class ConnectionEntry(BaseModel):
    type: str
    id: str

class StartSessionResponse(BaseModel):
    broadcaster_id: str
    started_at: int
    connections: list[ConnectionEntry]

class StopSessionResponse(BaseModel):
    stopped: bool
    elapsed: Optional[str] = None

class PreviewResponse(BaseModel):
    video_id: str
    thumbnail_url: str
    fallback_thumbnail_url: str

class SessionStatusResponse(BaseModel):
    is_streaming: bool
    broadcaster_id: Optional[str] = None
    elapsed_seconds: int = 0
    elapsed: str = "00:00"
    connections: list[ConnectionEntry] = []
    preview: Optional[PreviewResponse] = None
    cooldown_active: bool = False
    notifications: list[str] = []
