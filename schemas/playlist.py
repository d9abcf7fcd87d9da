from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class PlaylistItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    url: str
    video_id: str = Field(alias="videoId")
    added_at: Optional[int] = Field(None, alias="addedAt")

    def to_store(self) -> dict:
        # the key is the path segment, not part of the record
        return self.model_dump(by_alias=True, exclude={"key"}, exclude_none=True)

class AddItemRequest(BaseModel):
    input: str

class PlaylistResponse(BaseModel):
    items: list[PlaylistItem]
