from __future__ import annotations

import asyncio
import gc
import json
import time
from typing import List, Optional, Tuple

import pytest

from relay.contracts.tunnel import TunnelHttpResponse, encode_body
from relay.services.tunnel import (
    AgentDisconnectedError,
    AgentNotConnectedError,
    ConnectionReplacedError,
    TunnelMultiplexer,
    TunnelProtocolError,
    TunnelRegistry,
    TunnelSendError,
    TunnelTimeoutError,
)


class FakeTransport:
    def __init__(self, fail_send: bool = False) -> None:
        self.sent: List[dict] = []
        self.closed: Optional[Tuple[int, Optional[str]]] = None
        self.fail_send = fail_send

    async def send_text(self, data: str) -> None:
        if self.fail_send:
            raise ConnectionResetError("socket gone")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = (code, reason)


def _response_frame(request_id: str, status: int = 200, body: bytes = b"ok") -> str:
    return json.dumps(
        {
            "type": "http_response",
            "requestId": request_id,
            "statusCode": status,
            "headers": {"content-type": "image/jpeg"},
            "bodyBase64": encode_body(body),
        }
    )


async def _wait_for_sent(transport: FakeTransport, n: int = 1) -> None:
    while len(transport.sent) < n:
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_register_and_lookup(self) -> None:
        async def scenario():
            reg = TunnelRegistry()
            conn = await reg.register("agent-1", FakeTransport())
            assert reg.is_connected("agent-1")
            assert reg.get("agent-1") is conn
            connected_at, last_seen = reg.connection_info("agent-1")
            assert connected_at <= last_seen
            assert reg.connected_agents() == ["agent-1"]

        asyncio.run(scenario())

    def test_unregister_ignores_stale_transport(self) -> None:
        async def scenario():
            reg = TunnelRegistry()
            old, new = FakeTransport(), FakeTransport()
            await reg.register("agent-1", old)
            await reg.register("agent-1", new)
            assert reg.unregister("agent-1", old) is False
            assert reg.get("agent-1").transport is new
            assert reg.unregister("agent-1", new) is True
            assert not reg.is_connected("agent-1")

        asyncio.run(scenario())

    def test_close_all_closes_transports(self) -> None:
        async def scenario():
            reg = TunnelRegistry()
            transports = [FakeTransport(), FakeTransport()]
            await reg.register("a", transports[0])
            await reg.register("b", transports[1])
            await reg.close_all()
            assert reg.connected_agents() == []
            assert all(t.closed == (1001, "Server shutting down") for t in transports)

        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Multiplexer
# ---------------------------------------------------------------------------

class TestMultiplexer:
    def test_request_response_correlation(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer(TunnelRegistry())
            transport = FakeTransport()
            await mux.registry.register("agent-1", transport)

            task = asyncio.create_task(
                mux.send_request("agent-1", method="GET", url="/tiles/1/0_0.jpg", timeout_sec=1.0)
            )
            await _wait_for_sent(transport)
            frame = transport.sent[0]
            assert frame["type"] == "http_request"
            assert frame["url"] == "/tiles/1/0_0.jpg"
            assert "bodyBase64" not in frame

            mux.handle_message("agent-1", _response_frame(frame["requestId"], body=b"jpeg"))
            resp = await task
            assert resp.status_code == 200
            assert resp.body() == b"jpeg"
            assert mux.registry.get("agent-1").pending == {}

        asyncio.run(scenario())

    def test_body_is_base64_encoded(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            transport = FakeTransport()
            await mux.registry.register("agent-1", transport)
            task = asyncio.create_task(
                mux.send_request("agent-1", method="POST", url="/x", body=b'{"a":1}', timeout_sec=1.0)
            )
            await _wait_for_sent(transport)
            assert transport.sent[0]["bodyBase64"] == encode_body(b'{"a":1}')
            mux.handle_message("agent-1", _response_frame(transport.sent[0]["requestId"], status=201))
            assert (await task).status_code == 201

        asyncio.run(scenario())

    def test_not_connected_fails_immediately(self) -> None:
        mux = TunnelMultiplexer()
        with pytest.raises(AgentNotConnectedError):
            asyncio.run(mux.send_request("ghost", method="GET", url="/health", timeout_sec=1.0))

    def test_timeout_then_late_response_ignored(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            transport = FakeTransport()
            await mux.registry.register("agent-1", transport)

            started = time.monotonic()
            with pytest.raises(TunnelTimeoutError) as exc:
                await mux.send_request("agent-1", method="GET", url="/health", timeout_sec=0.05)
            elapsed = time.monotonic() - started
            assert 0.04 <= elapsed < 1.0
            assert exc.value.request_id == transport.sent[0]["requestId"]

            # Late arrival: no pending entry, no exception.
            assert mux.handle_response(
                "agent-1",
                TunnelHttpResponse.model_validate(json.loads(_response_frame(exc.value.request_id))),
            ) is False
            assert mux.registry.get("agent-1").pending == {}

        asyncio.run(scenario())

    def test_replacement_fails_pending_and_new_connection_works(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            first, second = FakeTransport(), FakeTransport()
            await mux.registry.register("agent-1", first)

            pending = asyncio.create_task(
                mux.send_request("agent-1", method="GET", url="/slow", timeout_sec=5.0)
            )
            await _wait_for_sent(first)
            await mux.registry.register("agent-1", second)

            with pytest.raises(ConnectionReplacedError):
                await pending
            assert first.closed == (1000, "Replaced by new connection")

            task = asyncio.create_task(
                mux.send_request("agent-1", method="GET", url="/fast", timeout_sec=1.0)
            )
            await _wait_for_sent(second)
            mux.handle_message("agent-1", _response_frame(second.sent[0]["requestId"]))
            assert (await task).status_code == 200

        asyncio.run(scenario())

    def test_disconnect_fails_pending(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            transport = FakeTransport()
            await mux.registry.register("agent-1", transport)
            task = asyncio.create_task(mux.send_request("agent-1", method="GET", url="/x", timeout_sec=5.0))
            await _wait_for_sent(transport)
            mux.registry.unregister("agent-1", transport)
            with pytest.raises(AgentDisconnectedError):
                await task

        asyncio.run(scenario())

    def test_send_failure_discards_pending(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            await mux.registry.register("agent-1", FakeTransport(fail_send=True))
            with pytest.raises(TunnelSendError):
                await mux.send_request("agent-1", method="GET", url="/x", timeout_sec=1.0)
            assert mux.registry.get("agent-1").pending == {}

        asyncio.run(scenario())

    def test_pong_updates_last_seen(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            conn = await mux.registry.register("agent-1", FakeTransport())
            before = conn.last_seen
            await asyncio.sleep(0.01)
            mux.handle_message("agent-1", json.dumps({"type": "pong"}))
            assert conn.last_seen > before

        asyncio.run(scenario())

    def test_garbage_frames_are_ignored(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            await mux.registry.register("agent-1", FakeTransport())
            mux.handle_message("agent-1", "not json")
            mux.handle_message("agent-1", json.dumps({"type": "http_response", "requestId": "x"}))
            mux.handle_message("agent-1", json.dumps({"type": "mystery"}))
            assert mux.registry.is_connected("agent-1")

        asyncio.run(scenario())

    def test_invalid_response_frame_fails_its_request(self) -> None:
        async def scenario():
            mux = TunnelMultiplexer()
            transport = FakeTransport()
            await mux.registry.register("agent-1", transport)
            task = asyncio.create_task(mux.send_request("agent-1", method="GET", url="/x", timeout_sec=5.0))
            await _wait_for_sent(transport)
            request_id = transport.sent[0]["requestId"]
            mux.handle_message(
                "agent-1",
                json.dumps({"type": "http_response", "requestId": request_id, "statusCode": 200, "bodyBase64": "!!"}),
            )
            with pytest.raises(TunnelProtocolError):
                await task
            assert mux.registry.get("agent-1").pending == {}

        asyncio.run(scenario())

    def test_send_failure_during_replacement_leaves_no_unretrieved_future(self) -> None:
        class ReplacedMidSend(FakeTransport):
            def __init__(self, registry: TunnelRegistry) -> None:
                super().__init__()
                self.registry = registry

            async def send_text(self, data: str) -> None:
                await self.registry.register("agent-1", FakeTransport())
                raise ConnectionResetError("socket gone")

        async def scenario():
            errors = []
            asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: errors.append(ctx))
            mux = TunnelMultiplexer()
            await mux.registry.register("agent-1", ReplacedMidSend(mux.registry))
            try:
                await mux.send_request("agent-1", method="GET", url="/x", timeout_sec=1.0)
            except TunnelSendError:
                pass
            else:
                pytest.fail("send_request should have raised")
            gc.collect()
            assert [ctx["message"] for ctx in errors] == []

        asyncio.run(scenario())
