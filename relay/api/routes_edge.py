from __future__ import annotations

import asyncio
import json
from typing import Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, WebSocket, WebSocketDisconnect

from relay.api.deps import get_tunnel
from relay.infra.auth import extract_bearer, is_valid_agent_id, validate_tunnel_token
from relay.services.tunnel import (
    AgentDisconnectedError,
    AgentNotConnectedError,
    ConnectionReplacedError,
    EdgeConnection,
    TunnelError,
    TunnelMultiplexer,
    TunnelTimeoutError,
)
from relay.settings import settings

router = APIRouter(prefix="/edge", tags=["edge"])
log = structlog.get_logger(__name__)

CLOSE_UNAUTHORIZED = 4001
CLOSE_MISSING_AGENT_ID = 4002
CLOSE_INVALID_AGENT_ID = 4003

FILTERED_REQUEST_HEADERS = {
    "host",
    "connection",
    "transfer-encoding",
    "upgrade",
    "proxy-connection",
    "keep-alive",
    "te",
    "trailer",
}
FILTERED_RESPONSE_HEADERS = {
    "connection",
    "transfer-encoding",
    "keep-alive",
    "proxy-connection",
    "upgrade",
    "trailer",
    # recomputed from the body we actually send
    "content-length",
}


async def _keepalive(conn: EdgeConnection, interval_sec: float) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await conn.send(json.dumps({"type": "ping"}))
        except Exception as e:
            log.warning("edge_ping_failed", agent_id=conn.agent_id, error=str(e))
            return


@router.websocket("/connect")
async def edge_connect(websocket: WebSocket):
    """Agent side of the tunnel: one long-lived socket per edge agent."""
    await websocket.accept()

    token = extract_bearer(websocket.headers.get("authorization"), websocket.query_params.get("token"))
    if not settings.EDGE_TUNNEL_TOKEN:
        log.error("edge_tunnel_token_not_configured")
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Tunnel authentication not configured")
        return
    if not validate_tunnel_token(token, settings.EDGE_TUNNEL_TOKEN):
        log.warning("edge_auth_failed", has_token=bool(token))
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return

    agent_id = websocket.query_params.get("agentId")
    if not agent_id:
        await websocket.close(code=CLOSE_MISSING_AGENT_ID, reason="Missing agentId")
        return
    if not is_valid_agent_id(agent_id):
        log.warning("edge_agent_id_invalid", agent_id=agent_id[:80])
        await websocket.close(code=CLOSE_INVALID_AGENT_ID, reason="Invalid agentId format")
        return

    tunnel: TunnelMultiplexer = websocket.app.state.tunnel
    conn = await tunnel.registry.register(agent_id, websocket)
    ping = asyncio.create_task(_keepalive(conn, settings.EDGE_PING_INTERVAL_SEC))
    try:
        await conn.send(json.dumps({"type": "connected", "agentId": agent_id}))
        while True:
            raw = await websocket.receive_text()
            tunnel.handle_message(agent_id, raw)
    except WebSocketDisconnect as e:
        log.info("edge_agent_disconnected", agent_id=agent_id, code=e.code)
    except Exception as e:
        log.exception("edge_connection_error", agent_id=agent_id, error=str(e))
    finally:
        ping.cancel()
        tunnel.registry.unregister(agent_id, websocket)


@router.get("/status")
def edge_status(tunnel: TunnelMultiplexer = Depends(get_tunnel)):
    agents = []
    for agent_id in tunnel.registry.connected_agents():
        info = tunnel.registry.connection_info(agent_id)
        if info is None:
            continue
        connected_at, last_seen = info
        agents.append(
            {
                "agentId": agent_id,
                "connectedAt": connected_at.isoformat(),
                "lastSeen": last_seen.isoformat(),
            }
        )
    return {"connectedAgents": len(agents), "agents": agents}


def _offline(agent_id: str, message: str, request_id: str | None = None) -> HTTPException:
    detail: Dict[str, str] = {"error": "Edge Offline", "message": message, "agentId": agent_id}
    if request_id:
        detail["requestId"] = request_id
    return HTTPException(status_code=503, detail=detail)


@router.api_route("/{agent_id}/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def edge_proxy(
    agent_id: str,
    path: str,
    request: Request,
    tunnel: TunnelMultiplexer = Depends(get_tunnel),
):
    """Forward an HTTP request to the agent's local API through its tunnel."""
    if agent_id in ("connect", "status"):
        raise HTTPException(status_code=404, detail="Not Found")
    if not tunnel.registry.is_connected(agent_id):
        raise _offline(agent_id, f"Agent {agent_id} is not connected")

    url = "/" + path
    if request.url.query:
        url += "?" + request.url.query
    headers = {k: v for k, v in request.headers.items() if k.lower() not in FILTERED_REQUEST_HEADERS}
    timeout_ms = (
        settings.EDGE_TUNNEL_HEALTH_TIMEOUT_MS if "/health" in url else settings.EDGE_TUNNEL_TILE_TIMEOUT_MS
    )
    body = await request.body()

    try:
        resp = await tunnel.send_request(
            agent_id,
            method=request.method,
            url=url,
            headers=headers,
            body=body,
            timeout_sec=timeout_ms / 1000,
        )
    except AgentNotConnectedError:
        raise _offline(agent_id, f"Agent {agent_id} is not connected")
    except (AgentDisconnectedError, ConnectionReplacedError):
        raise _offline(agent_id, f"Agent {agent_id} disconnected during request")
    except TunnelTimeoutError as e:
        log.warning("edge_request_timeout", agent_id=agent_id, request_id=e.request_id, timeout_ms=timeout_ms)
        raise HTTPException(
            status_code=504,
            detail={
                "error": "Gateway Timeout",
                "message": f"Request to edge agent {agent_id} timed out after {timeout_ms}ms",
                "agentId": agent_id,
                "requestId": e.request_id,
            },
        )
    except TunnelError as e:
        log.error("edge_proxy_failed", agent_id=agent_id, error=str(e))
        raise HTTPException(
            status_code=502,
            detail={"error": "Bad Gateway", "message": "Failed to communicate with edge agent", "agentId": agent_id},
        )

    try:
        content = resp.body()
    except ValueError as e:
        log.error("edge_response_body_invalid", agent_id=agent_id, request_id=resp.request_id, error=str(e))
        raise HTTPException(
            status_code=502,
            detail={"error": "Bad Gateway", "message": "Edge agent returned an unreadable body", "agentId": agent_id},
        )

    out_headers = {k: v for k, v in resp.headers.items() if k.lower() not in FILTERED_RESPONSE_HEADERS}
    return Response(content=content, status_code=resp.status_code, headers=out_headers)
