import uvicorn
from fastapi import FastAPI

from relay.api.routes_edge import router as edge_router
from relay.api.routes_health import router as health_router
from relay.api.routes_read import router as read_router
from relay.api.routes_sync import router as sync_router
from relay.infra.logging import configure_logging
from relay.infra.middleware import correlation_id_middleware
from relay.services.event_log import InMemoryEventLog
from relay.services.read_models import InMemoryReadModelStore
from relay.services.tunnel import TunnelMultiplexer, TunnelRegistry
from relay.settings import settings

configure_logging()

app = FastAPI(title="Slide Relay (event sync + edge tunnel)")

# Observability: correlation id per request (also returned in header)
app.middleware("http")(correlation_id_middleware)

@app.on_event("startup")
async def startup():
    app.state.tunnel = TunnelMultiplexer(TunnelRegistry())
    if settings.DB_MODE == "memory":
        app.state.event_log = InMemoryEventLog()
        app.state.read_models = InMemoryReadModelStore()

@app.on_event("shutdown")
async def shutdown():
    await app.state.tunnel.registry.close_all()

app.include_router(health_router)
app.include_router(sync_router)
app.include_router(edge_router)
app.include_router(read_router)


def run() -> None:
    uvicorn.run("relay.main:app", host=settings.HOST, port=settings.PORT, log_config=None)
