from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CaseListItem(BaseModel):
    case_id: str
    title: str
    patient_ref: str
    status: str
    updated_at: datetime
    slides_count: int


class CaseListResponse(BaseModel):
    cases: List[CaseListItem]
    total: int
    limit: int
    offset: int


class SlideInfo(BaseModel):
    slide_id: str
    filename: str
    width: int
    height: int
    mpp: float
    scanner: Optional[str]
    has_preview: bool
    updated_at: datetime


class CaseDetail(BaseModel):
    case_id: str
    title: str
    patient_ref: str
    status: str
    created_at: datetime
    updated_at: datetime
    slides: List[SlideInfo] = Field(default_factory=list)


class PreviewTiles(BaseModel):
    strategy: Literal["signed-per-tile"] = "signed-per-tile"
    max_preview_level: int
    tile_size: int
    format: str
    preview_width: Optional[int] = None
    preview_height: Optional[int] = None
    endpoint: str = "/api/v1/tiles/sign"


class PreviewResponse(BaseModel):
    """Signed entry points for a slide's preview pyramid.

    preview_width/height can differ from the source slide after the edge
    rebases the pyramid; viewers translate levels using them.
    """

    slide_id: str
    case_id: Optional[str]
    thumb_url: str
    manifest_url: str
    tiles: PreviewTiles


class TileSignRequest(BaseModel):
    key: str = Field(min_length=1)
    expires_seconds: int = Field(default=120, ge=10, le=3600)


class TileSignResponse(BaseModel):
    url: str
