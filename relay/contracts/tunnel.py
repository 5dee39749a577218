from __future__ import annotations

import base64
import binascii
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TunnelHttpRequest(BaseModel):
    """cloud -> agent frame."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["http_request"] = "http_request"
    request_id: str = Field(alias="requestId")
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body_base64: Optional[str] = Field(default=None, alias="bodyBase64")

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class TunnelHttpResponse(BaseModel):
    """agent -> cloud frame."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["http_response"] = "http_response"
    request_id: str = Field(alias="requestId")
    status_code: int = Field(alias="statusCode")
    headers: Dict[str, str] = Field(default_factory=dict)
    body_base64: Optional[str] = Field(default=None, alias="bodyBase64")

    @field_validator("body_base64")
    @classmethod
    def _body_is_base64(cls, v: Optional[str]) -> Optional[str]:
        if v:
            try:
                base64.b64decode(v, validate=True)
            except binascii.Error as e:
                raise ValueError(f"bodyBase64 is not valid base64: {e}") from e
        return v

    def body(self) -> bytes:
        return base64.b64decode(self.body_base64) if self.body_base64 else b""


def encode_body(body: Optional[bytes]) -> Optional[str]:
    if not body:
        return None
    return base64.b64encode(body).decode("ascii")
