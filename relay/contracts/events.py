from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    AliasChoices,
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

AggregateType = Literal["case", "slide", "annotation", "thread", "message", "preview"]
CaseStatus = Literal["active", "archived", "deleted"]

EVENT_CASE_UPSERTED = "CaseUpserted"
EVENT_SLIDE_REGISTERED = "SlideRegistered"
EVENT_PREVIEW_PUBLISHED = "PreviewPublished"


class EventIn(BaseModel):
    """One edge-origin event as submitted by a producer.

    ``edge_id`` and ``type`` are accepted as the older wire names for
    ``origin_id`` and ``event_type``.
    """

    model_config = ConfigDict(populate_by_name=True)

    event_id: UUID
    origin_id: str = Field(min_length=1, validation_alias=AliasChoices("origin_id", "edge_id"))
    aggregate_type: AggregateType
    aggregate_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1, validation_alias=AliasChoices("event_type", "type"))
    occurred_at: AwareDatetime
    payload: Dict[str, Any]

    @property
    def id(self) -> str:
        return str(self.event_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "event_id": self.id,
            "origin_id": self.origin_id,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "event_type": self.event_type,
            "occurred_at": self.occurred_at,
            "payload": self.payload,
        }


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    origin_id: str = Field(min_length=1, validation_alias=AliasChoices("origin_id", "edge_id"))
    cursor: Optional[str] = None
    events: List[EventIn] = Field(min_length=1, max_length=1000)


class RejectedEvent(BaseModel):
    event_id: str
    reason: str


class SyncResponse(BaseModel):
    accepted: int
    duplicated: int
    rejected: List[RejectedEvent] = Field(default_factory=list)
    last_cursor: Optional[str] = None


# --- Typed payloads, validated at projection time ---

class CaseUpsertedPayload(BaseModel):
    case_id: str = Field(min_length=1)
    title: str
    patient_ref: str
    status: CaseStatus = "active"
    created_at: AwareDatetime
    updated_at: AwareDatetime


class SlideRegisteredPayload(BaseModel):
    """Slide metadata from the edge scanner pipeline.

    Dimensions and mpp may be missing on legacy producers, which means
    "unknown" and never overwrites a previously known value. When present
    they must be positive.
    """

    slide_id: str = Field(min_length=1)
    case_id: Optional[str] = Field(default=None, min_length=1)
    filename: Optional[str] = Field(default=None, validation_alias=AliasChoices("filename", "svs_filename"))
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    mpp: Optional[float] = Field(default=None, gt=0)
    scanner: Optional[str] = None


class PreviewPublishedPayload(BaseModel):
    slide_id: str = Field(min_length=1)
    case_id: str = Field(min_length=1)
    storage_bucket: str = Field(min_length=1, validation_alias=AliasChoices("storage_bucket", "wasabi_bucket"))
    storage_region: str = Field(min_length=1, validation_alias=AliasChoices("storage_region", "wasabi_region"))
    storage_endpoint: str = Field(validation_alias=AliasChoices("storage_endpoint", "wasabi_endpoint"))
    storage_prefix: str = Field(min_length=1, validation_alias=AliasChoices("storage_prefix", "wasabi_prefix"))
    thumb_key: str = Field(min_length=1)
    manifest_key: str = Field(min_length=1)
    tiles_prefix: Optional[str] = Field(default=None, min_length=1)
    low_tiles_prefix: Optional[str] = Field(default=None, min_length=1)  # legacy name
    max_preview_level: int = Field(ge=0)
    tile_size: int = Field(gt=0)
    format: str = Field(min_length=1)
    preview_width: Optional[int] = Field(default=None, gt=0)
    preview_height: Optional[int] = Field(default=None, gt=0)

    @field_validator("storage_endpoint")
    @classmethod
    def _endpoint_is_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("storage_endpoint must be an http(s) URL")
        return v

    @model_validator(mode="after")
    def _tiles_prefix_present(self) -> "PreviewPublishedPayload":
        if self.tiles_prefix is None and self.low_tiles_prefix is None:
            raise ValueError("Either tiles_prefix or low_tiles_prefix must be provided")
        return self

    @property
    def normalized_tiles_prefix(self) -> str:
        prefix = self.tiles_prefix if self.tiles_prefix is not None else self.low_tiles_prefix
        return prefix if prefix.endswith("/") else prefix + "/"


class UnprojectedPayload(BaseModel):
    """Event types this deployment does not project; carried through as-is."""

    event_type: str
    raw: Dict[str, Any] = Field(default_factory=dict)


ProjectablePayload = Union[CaseUpsertedPayload, SlideRegisteredPayload, PreviewPublishedPayload, UnprojectedPayload]

PAYLOAD_TYPES = {
    EVENT_CASE_UPSERTED: CaseUpsertedPayload,
    EVENT_SLIDE_REGISTERED: SlideRegisteredPayload,
    EVENT_PREVIEW_PUBLISHED: PreviewPublishedPayload,
}


def parse_payload(event_type: str, payload: Dict[str, Any]) -> ProjectablePayload:
    """Map an event onto its typed payload variant.

    Raises pydantic.ValidationError when a known type carries a bad payload.
    """
    model = PAYLOAD_TYPES.get(event_type)
    if model is None:
        return UnprojectedPayload(event_type=event_type, raw=dict(payload or {}))
    return model.model_validate(payload)
