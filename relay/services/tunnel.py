from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

import structlog
from pydantic import ValidationError

from relay.contracts.tunnel import TunnelHttpRequest, TunnelHttpResponse, encode_body

log = structlog.get_logger(__name__)

CLOSE_REPLACED = (1000, "Replaced by new connection")
CLOSE_SHUTDOWN = (1001, "Server shutting down")


class Transport(Protocol):
    """What the tunnel needs from a WebSocket (starlette's satisfies it)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class TunnelError(Exception):
    def __init__(self, agent_id: str, message: str) -> None:
        super().__init__(message)
        self.agent_id = agent_id


class AgentNotConnectedError(TunnelError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(agent_id, f"Agent {agent_id} is not connected")


class ConnectionReplacedError(TunnelError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(agent_id, f"Connection for agent {agent_id} replaced")


class AgentDisconnectedError(TunnelError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(agent_id, f"Agent {agent_id} disconnected")


class TunnelTimeoutError(TunnelError):
    def __init__(self, agent_id: str, request_id: str, timeout_sec: float) -> None:
        super().__init__(agent_id, f"Request {request_id} timed out after {int(timeout_sec * 1000)}ms")
        self.request_id = request_id
        self.timeout_sec = timeout_sec


class TunnelSendError(TunnelError):
    pass


class TunnelProtocolError(TunnelError):
    """The agent answered with a frame that does not parse."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingRequest:
    future: "asyncio.Future[TunnelHttpResponse]"
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class EdgeConnection:
    """One live agent transport and the requests in flight on it.

    All mutation happens on the event loop that owns the transport; the send
    lock serializes frames from concurrent proxy handlers and the keep-alive.
    """

    agent_id: str
    transport: Any
    connected_at: datetime = field(default_factory=_utcnow)
    last_seen: datetime = field(default_factory=_utcnow)
    pending: Dict[str, PendingRequest] = field(default_factory=dict)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def open_request(self, request_id: str) -> "asyncio.Future[TunnelHttpResponse]":
        fut: asyncio.Future[TunnelHttpResponse] = asyncio.get_running_loop().create_future()
        self.pending[request_id] = PendingRequest(future=fut)
        return fut

    def resolve(self, response: TunnelHttpResponse) -> Optional[float]:
        """Complete a pending request; returns its duration in ms, None if unknown."""
        pending = self.pending.pop(response.request_id, None)
        if pending is None or pending.future.done():
            return None
        pending.future.set_result(response)
        return (time.monotonic() - pending.started_at) * 1000

    def discard(self, request_id: str) -> None:
        self.pending.pop(request_id, None)

    def fail(self, request_id: str, exc: TunnelError) -> bool:
        pending = self.pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(exc)
        return True

    def fail_all(self, exc: TunnelError) -> int:
        failed = 0
        for pending in self.pending.values():
            if not pending.future.done():
                pending.future.set_exception(exc)
                failed += 1
        self.pending.clear()
        return failed

    async def send(self, data: str) -> None:
        async with self.send_lock:
            await self.transport.send_text(data)


class TunnelRegistry:
    """At most one live connection per agent id.

    Created once per process (app.state) and discarded at shutdown; agents
    reconnect after a restart. The registry never evicts stale connections:
    it only records last_seen from keep-alive acknowledgements, and callers
    decide what staleness means.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, EdgeConnection] = {}

    async def register(self, agent_id: str, transport: Any) -> EdgeConnection:
        old = self._connections.pop(agent_id, None)
        conn = EdgeConnection(agent_id=agent_id, transport=transport)
        self._connections[agent_id] = conn
        if old is not None:
            failed = old.fail_all(ConnectionReplacedError(agent_id))
            log.info("edge_connection_replaced", agent_id=agent_id, failed_requests=failed)
            await _close_quietly(old.transport, *CLOSE_REPLACED, agent_id=agent_id)
        log.info("edge_agent_registered", agent_id=agent_id)
        return conn

    def unregister(self, agent_id: str, transport: Any = None) -> bool:
        conn = self._connections.get(agent_id)
        if conn is None:
            return False
        # A replaced socket closing late must not evict its successor.
        if transport is not None and conn.transport is not transport:
            return False
        del self._connections[agent_id]
        failed = conn.fail_all(AgentDisconnectedError(agent_id))
        log.info("edge_agent_unregistered", agent_id=agent_id, failed_requests=failed)
        return True

    def update_last_seen(self, agent_id: str) -> None:
        conn = self._connections.get(agent_id)
        if conn is not None:
            conn.last_seen = _utcnow()

    def get(self, agent_id: str) -> Optional[EdgeConnection]:
        return self._connections.get(agent_id)

    def is_connected(self, agent_id: str) -> bool:
        return agent_id in self._connections

    def connection_info(self, agent_id: str) -> Optional[Tuple[datetime, datetime]]:
        conn = self._connections.get(agent_id)
        if conn is None:
            return None
        return conn.connected_at, conn.last_seen

    def connected_agents(self) -> List[str]:
        return list(self._connections)

    async def close_all(self) -> None:
        for agent_id in list(self._connections):
            conn = self._connections.pop(agent_id)
            conn.fail_all(AgentDisconnectedError(agent_id))
            await _close_quietly(conn.transport, *CLOSE_SHUTDOWN, agent_id=agent_id)


class TunnelMultiplexer:
    """Correlates requests sent over an agent's transport with its responses."""

    def __init__(self, registry: Optional[TunnelRegistry] = None) -> None:
        self.registry = registry or TunnelRegistry()

    async def send_request(
        self,
        agent_id: str,
        *,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        timeout_sec: float,
    ) -> TunnelHttpResponse:
        conn = self.registry.get(agent_id)
        if conn is None:
            raise AgentNotConnectedError(agent_id)

        request = TunnelHttpRequest(
            request_id=str(uuid4()),
            method=method,
            url=url,
            headers=dict(headers or {}),
            body_base64=encode_body(body),
        )
        fut = conn.open_request(request.request_id)
        try:
            await conn.send(request.to_wire())
        except Exception as e:
            conn.discard(request.request_id)
            # A replacement may have failed the future while send was pending.
            if fut.done():
                fut.exception()
            else:
                fut.cancel()
            raise TunnelSendError(agent_id, f"Failed to send request: {e}") from e

        try:
            return await asyncio.wait_for(fut, timeout_sec)
        except asyncio.TimeoutError:
            raise TunnelTimeoutError(agent_id, request.request_id, timeout_sec) from None
        finally:
            conn.discard(request.request_id)

    def handle_response(self, agent_id: str, response: TunnelHttpResponse) -> bool:
        conn = self.registry.get(agent_id)
        if conn is None:
            log.warning("response_for_unknown_agent", agent_id=agent_id, request_id=response.request_id)
            return False
        duration_ms = conn.resolve(response)
        if duration_ms is None:
            log.warning("response_for_unknown_request", agent_id=agent_id, request_id=response.request_id)
            return False
        log.info(
            "edge_request_completed",
            agent_id=agent_id,
            request_id=response.request_id,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )
        return True

    def _fail_invalid(self, agent_id: str, request_id: Any, error: ValidationError) -> None:
        conn = self.registry.get(agent_id)
        if conn is None or not isinstance(request_id, str):
            return
        exc = TunnelProtocolError(agent_id, f"Invalid response frame: {error.error_count()} error(s)")
        conn.fail(request_id, exc)

    def handle_message(self, agent_id: str, raw: str) -> None:
        """Dispatch one inbound text frame from an agent."""
        try:
            message = json.loads(raw)
        except ValueError as e:
            log.error("edge_message_unparseable", agent_id=agent_id, error=str(e))
            return
        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "http_response":
            try:
                response = TunnelHttpResponse.model_validate(message)
            except ValidationError as e:
                request_id = message.get("requestId")
                log.error("edge_response_invalid", agent_id=agent_id, request_id=request_id, error=str(e))
                self._fail_invalid(agent_id, request_id, e)
                return
            self.handle_response(agent_id, response)
        elif kind == "pong":
            self.registry.update_last_seen(agent_id)
        else:
            log.warning("edge_message_unknown_type", agent_id=agent_id, type=kind)


async def _close_quietly(transport: Any, code: int, reason: str, *, agent_id: str) -> None:
    try:
        await transport.close(code=code, reason=reason)
    except Exception as e:
        # Already-dead sockets raise on close; the entry is gone either way.
        log.warning("edge_close_failed", agent_id=agent_id, error=str(e))
