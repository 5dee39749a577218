from __future__ import annotations

from typing import Iterator

from fastapi import Request

from relay.infra.db import Postgres
from relay.infra.storage import PreviewSigner, make_signer
from relay.services.event_log import make_event_log
from relay.services.ingestion import IngestionService
from relay.services.read_models import ReadModelStore, make_read_models
from relay.services.tunnel import TunnelMultiplexer
from relay.settings import settings


def get_ingestion(request: Request) -> Iterator[IngestionService]:
    if settings.DB_MODE == "memory":
        yield IngestionService(request.app.state.event_log, request.app.state.read_models)
        return
    db = Postgres()
    try:
        yield IngestionService(make_event_log(db), make_read_models(db))
    finally:
        db.close()


def get_read_models(request: Request) -> Iterator[ReadModelStore]:
    if settings.DB_MODE == "memory":
        yield request.app.state.read_models
        return
    db = Postgres()
    try:
        yield make_read_models(db)
    finally:
        db.close()


def get_tunnel(request: Request) -> TunnelMultiplexer:
    return request.app.state.tunnel


def get_signer() -> PreviewSigner:
    return make_signer()
