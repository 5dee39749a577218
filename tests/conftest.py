from __future__ import annotations

import os

# Settings are read at import time; pin a hermetic configuration first.
os.environ.setdefault("DB_MODE", "memory")
os.environ.setdefault("AUTH_MODE", "none")
os.environ.setdefault("EDGE_TUNNEL_TOKEN", "test-tunnel-token")
os.environ.setdefault("EDGE_PING_INTERVAL_SEC", "3600")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("S3_ENDPOINT_URL", "https://s3.example.test")
os.environ.setdefault("S3_ACCESS_KEY_ID", "test-key")
os.environ.setdefault("S3_SECRET_ACCESS_KEY", "test-secret")

from typing import Any, Dict, Optional  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from relay.contracts.events import EventIn  # noqa: E402
from relay.services.event_log import InMemoryEventLog  # noqa: E402
from relay.services.ingestion import IngestionService  # noqa: E402
from relay.services.read_models import InMemoryReadModelStore  # noqa: E402

ORIGIN = "lab-01"
T0 = "2026-01-15T10:00:00+00:00"


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def read_models() -> InMemoryReadModelStore:
    return InMemoryReadModelStore()


@pytest.fixture
def ingestion(event_log, read_models) -> IngestionService:
    return IngestionService(event_log, read_models)


@pytest.fixture
def make_event():
    """Factory for EventIn (or its wire dict with ``as_wire=True``)."""

    def _make(
        event_type: str,
        payload: Dict[str, Any],
        *,
        aggregate_type: str = "case",
        aggregate_id: Optional[str] = None,
        origin_id: str = ORIGIN,
        event_id: Optional[str] = None,
        occurred_at: str = T0,
        as_wire: bool = False,
    ):
        wire = {
            "event_id": event_id or str(uuid4()),
            "origin_id": origin_id,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id or payload.get("case_id") or payload.get("slide_id") or "agg-1",
            "event_type": event_type,
            "occurred_at": occurred_at,
            "payload": payload,
        }
        return wire if as_wire else EventIn.model_validate(wire)

    return _make


def case_payload(case_id: str = "case-1", **overrides) -> Dict[str, Any]:
    payload = {
        "case_id": case_id,
        "title": "Biopsy A",
        "patient_ref": "P-001",
        "status": "active",
        "created_at": T0,
        "updated_at": T0,
    }
    payload.update(overrides)
    return payload


def slide_payload(slide_id: str = "slide-1", case_id: Optional[str] = "case-1", **overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "slide_id": slide_id,
        "case_id": case_id,
        "filename": "A1.svs",
        "width": 100000,
        "height": 80000,
        "mpp": 0.25,
        "scanner": "Aperio GT450",
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}


def preview_payload(slide_id: str = "slide-1", case_id: str = "case-1", **overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "slide_id": slide_id,
        "case_id": case_id,
        "storage_bucket": "previews",
        "storage_region": "us-east-1",
        "storage_endpoint": "https://s3.example.test",
        "storage_prefix": f"previews/{slide_id}/",
        "thumb_key": f"previews/{slide_id}/thumb.jpg",
        "manifest_key": f"previews/{slide_id}/manifest.json",
        "tiles_prefix": f"previews/{slide_id}/tiles",
        "max_preview_level": 6,
        "tile_size": 256,
        "format": "jpg",
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}


@pytest.fixture(scope="session")
def payloads():
    """Payload builders for the projected event types."""

    class _Payloads:
        case = staticmethod(case_payload)
        slide = staticmethod(slide_payload)
        preview = staticmethod(preview_payload)

    return _Payloads


@pytest.fixture
def client():
    from relay.main import app

    with TestClient(app) as c:
        yield c
