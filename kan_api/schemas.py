from __future__ import annotations

from pydantic import BaseModel, Field


class CoverImageUploadRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str
    size: int = Field(gt=0)


class CoverImageUploadResponse(BaseModel):
    url: str
    key: str


class BoardCoverUpdateRequest(BaseModel):
    cover_image: str | None = None
