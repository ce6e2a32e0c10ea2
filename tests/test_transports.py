import json
import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import anyio
import httpx

from agentrelay.config import RelayConfig
from agentrelay.models import StartupTimeoutError, TransportConfigError, UpstreamError
from agentrelay.transports import (
    BridgeProcess,
    ConnectionRequest,
    SseClientTransport,
    SseRemoteTransport,
    StdioBridgeTransport,
    StreamableHttpRemoteTransport,
    TransportFactory,
    TransportKind,
    forwarded_headers,
)

INBOUND_HEADERS = {
    "authorization": "Bearer upstream",
    "mcp-session-id": "remote-1",
    "last-event-id": "42",
    "x-custom-auth-header": "X-Api-Key",
    "x-api-key": "secret",
    "cookie": "ignored",
}

def json_request(body :bytes):
    request = MagicMock()
    request.body = AsyncMock(return_value=body)
    return request

# --- ConnectionRequest ---

def test_connection_request_from_query():
    request = ConnectionRequest.from_query({
        "transportType": "stdio",
        "command": "node",
        "args": "server.js --verbose",
        "env": json.dumps({"API_KEY": "x", "DEBUG": 1}),
    })
    assert request.kind is TransportKind.STDIO
    assert request.command == "node"
    assert request.env == {"API_KEY": "x", "DEBUG": "1"}

def test_connection_request_requires_transport_type():
    with pytest.raises(TransportConfigError) as exc_info:
        ConnectionRequest.from_query({"command": "node"})
    assert exc_info.value.status_code == 400

def test_connection_request_rejects_bad_env():
    with pytest.raises(TransportConfigError):
        ConnectionRequest.from_query({"transportType": "stdio", "env": "{not json"})

def test_unknown_transport_kind():
    request = ConnectionRequest.from_query({"transportType": "websocket"})
    with pytest.raises(TransportConfigError) as exc_info:
        request.kind
    assert str(exc_info.value) == "Invalid transport type specified: websocket"

# --- Header forwarding ---

def test_sse_forwards_authorization_only():
    headers = forwarded_headers(INBOUND_HEADERS, TransportKind.SSE)
    assert headers == {"authorization": "Bearer upstream", "X-Api-Key": "secret"}

def test_streamable_http_forwards_session_headers():
    headers = forwarded_headers(INBOUND_HEADERS, TransportKind.STREAMABLE_HTTP)
    assert headers == {
        "authorization": "Bearer upstream",
        "mcp-session-id": "remote-1",
        "last-event-id": "42",
        "X-Api-Key": "secret",
    }

def test_custom_header_ignored_when_named_header_absent():
    headers = forwarded_headers({"x-custom-auth-header": "X-Api-Key"}, TransportKind.SSE)
    assert headers == {}

# --- TransportFactory ---

@pytest.mark.asyncio
async def test_factory_rejects_unknown_kind_before_allocating():
    factory = TransportFactory(RelayConfig())
    with patch.object(factory, "build_bridge") as build_bridge:
        with pytest.raises(TransportConfigError):
            async with factory.connect(ConnectionRequest(transport_type="websocket")):
                pass
    build_bridge.assert_not_called()

@pytest.mark.asyncio
async def test_factory_requires_url_for_remote_kinds():
    factory = TransportFactory(RelayConfig())
    with pytest.raises(TransportConfigError):
        async with factory.connect(ConnectionRequest(transport_type="sse")):
            pass

@pytest.mark.asyncio
async def test_factory_builds_sse_transport_with_forwarded_headers():
    calls = []

    @asynccontextmanager
    async def fake_sse_client(url, headers=None):
        calls.append((url, headers))
        yield "read", "write"

    factory = TransportFactory(RelayConfig())
    request = ConnectionRequest(transport_type="sse", url="https://agents.example/sse")
    with patch("agentrelay.transports.factory.sse_client", fake_sse_client):
        async with factory.connect(request, INBOUND_HEADERS) as transport:
            assert isinstance(transport, SseRemoteTransport)
            assert transport.url == "https://agents.example/sse"
            assert transport.read_stream == "read"

    assert calls == [("https://agents.example/sse", {"authorization": "Bearer upstream", "X-Api-Key": "secret"})]

@pytest.mark.asyncio
async def test_factory_builds_streamable_http_transport():
    @asynccontextmanager
    async def fake_client(url, headers=None, terminate_on_close=True):
        assert terminate_on_close is False
        yield "read", "write", lambda: "remote-7"

    factory = TransportFactory(RelayConfig())
    request = ConnectionRequest(transport_type="streamable-http", url="http://localhost:3001/mcp")
    with patch("agentrelay.transports.factory.streamablehttp_client", fake_client):
        async with factory.connect(request, {}) as transport:
            assert isinstance(transport, StreamableHttpRemoteTransport)
            assert transport.remote_session_id == "remote-7"

@pytest.mark.asyncio
async def test_factory_propagates_upstream_auth_status():
    request_obj = httpx.Request("GET", "https://agents.example/sse")
    status_error = httpx.HTTPStatusError(
        "401 Unauthorized", request=request_obj, response=httpx.Response(401, request=request_obj)
    )

    @asynccontextmanager
    async def failing_sse_client(url, headers=None):
        raise ExceptionGroup("unhandled errors in a TaskGroup", [status_error])
        yield

    factory = TransportFactory(RelayConfig())
    request = ConnectionRequest(transport_type="sse", url="https://agents.example/sse")
    with patch("agentrelay.transports.factory.sse_client", failing_sse_client):
        with pytest.raises(UpstreamError) as exc_info:
            async with factory.connect(request):
                pass
    assert exc_info.value.status_code == 401

@pytest.mark.asyncio
async def test_factory_reports_refused_connection():
    @asynccontextmanager
    async def refused(url, headers=None, terminate_on_close=True):
        raise httpx.ConnectError("All connection attempts failed")
        yield

    factory = TransportFactory(RelayConfig())
    request = ConnectionRequest(transport_type="streamable-http", url="http://localhost:3001/mcp")
    with patch("agentrelay.transports.factory.streamablehttp_client", refused):
        with pytest.raises(UpstreamError) as exc_info:
            async with factory.connect(request):
                pass
    assert str(exc_info.value) == "Connection refused. Is the MCP server running?"

@pytest.mark.asyncio
async def test_factory_connects_stdio_through_bridge():
    calls = []

    @asynccontextmanager
    async def fake_sse_client(url, headers=None):
        calls.append((url, headers))
        yield "read", "write"

    factory = TransportFactory(RelayConfig(bridge_port=9100))
    request = ConnectionRequest(transport_type="stdio", command="node", args="server.js")
    with patch("agentrelay.transports.factory.sse_client", fake_sse_client), \
         patch.object(BridgeProcess, "start", AsyncMock()) as start, \
         patch.object(BridgeProcess, "wait_until_ready", AsyncMock()) as wait_until_ready, \
         patch.object(BridgeProcess, "aclose", AsyncMock()) as aclose:
        async with factory.connect(request) as transport:
            assert isinstance(transport, StdioBridgeTransport)
            assert transport.kind is TransportKind.STDIO
            assert transport.bridge.user_command == "node server.js"
            assert transport.bridge.port == 9100
            assert transport.read_stream == "read"
            start.assert_awaited_once()
            wait_until_ready.assert_awaited_once()
            aclose.assert_not_awaited()

    aclose.assert_awaited_once()
    assert calls == [("http://localhost:9100/sse", {})]

@pytest.mark.asyncio
async def test_factory_stops_bridge_that_never_became_ready():
    factory = TransportFactory(RelayConfig())
    request = ConnectionRequest(transport_type="stdio", command="node")
    with patch.object(BridgeProcess, "start", AsyncMock()), \
         patch.object(BridgeProcess, "wait_until_ready", AsyncMock(side_effect=StartupTimeoutError("Supergateway failed to start"))), \
         patch.object(BridgeProcess, "aclose", AsyncMock()) as aclose:
        with pytest.raises(StartupTimeoutError):
            async with factory.connect(request):
                pass
    aclose.assert_awaited_once()

def test_factory_layers_bridge_environment(monkeypatch):
    monkeypatch.setenv("HOST_ONLY", "host")
    monkeypatch.setenv("SHARED", "host")
    config = RelayConfig(default_environment={"SHARED": "default", "DEFAULT_ONLY": "default"}, bridge_port=9100)
    request = ConnectionRequest(transport_type="stdio", command="node", args="server.js", env={"SHARED": "request"})

    bridge = TransportFactory(config).build_bridge(request)
    assert bridge.port == 9100
    assert bridge.env["HOST_ONLY"] == "host"
    assert bridge.env["DEFAULT_ONLY"] == "default"
    assert bridge.env["SHARED"] == "request"
    assert bridge.env["NPM_CONFIG_LOGLEVEL"] == "silent"

# --- Client-facing SSE transport ---

@pytest.mark.asyncio
async def test_sse_client_announces_endpoint_first():
    transport = SseClientTransport("01HSESSION")
    closed = []
    events = transport.events(on_close=lambda: closed.append(True))

    first = await events.__anext__()
    assert first == {"event": "endpoint", "data": "/message?sessionId=01HSESSION"}

    await events.aclose()
    assert closed == [True]

@pytest.mark.asyncio
async def test_sse_client_relays_outgoing_messages_as_events():
    transport = SseClientTransport("s1")
    message = json.dumps({"jsonrpc": "2.0", "id": 1, "result": {}}).encode()
    await transport.handle_post_message(json_request(message))
    received = transport.read_stream.receive_nowait()
    await transport.send(received)
    transport.close()

    events = [event async for event in transport.events()]
    assert events[0]["event"] == "endpoint"
    assert events[1]["event"] == "message"
    assert json.loads(events[1]["data"]) == {"jsonrpc": "2.0", "id": 1, "result": {}}

@pytest.mark.asyncio
async def test_sse_client_post_message():
    transport = SseClientTransport("s1")
    body = json.dumps({"jsonrpc": "2.0", "id": 3, "method": "tools/list"}).encode()

    response = await transport.handle_post_message(json_request(body))
    assert response.status_code == 202
    assert response.body == b"Accepted"

    received = transport.read_stream.receive_nowait()
    assert received.message.root.method == "tools/list"

@pytest.mark.asyncio
async def test_sse_client_rejects_unparseable_message():
    transport = SseClientTransport("s1")
    response = await transport.handle_post_message(json_request(b"{not json"))
    assert response.status_code == 400

    with pytest.raises(anyio.WouldBlock):
        transport.read_stream.receive_nowait()

@pytest.mark.asyncio
async def test_sse_client_post_after_close():
    transport = SseClientTransport("s1")
    transport.close()
    body = json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}).encode()
    response = await transport.handle_post_message(json_request(body))
    assert response.status_code == 404

# --- Remote streamable HTTP termination ---

@pytest.mark.asyncio
async def test_remote_terminate_sends_delete_with_session_header():
    http_client = AsyncMock()
    http_client.delete.return_value = httpx.Response(405)
    transport = StreamableHttpRemoteTransport(
        None, None,
        url="http://localhost:3001/mcp",
        headers={"authorization": "Bearer upstream"},
        get_session_id=lambda: "remote-1",
    )

    with patch("agentrelay.transports.remote.httpx.AsyncClient") as async_client:
        async_client.return_value.__aenter__.return_value = http_client
        await transport.terminate()

    http_client.delete.assert_awaited_once_with(
        "http://localhost:3001/mcp",
        headers={"authorization": "Bearer upstream", "mcp-session-id": "remote-1"},
    )

@pytest.mark.asyncio
async def test_remote_terminate_without_session_is_noop():
    transport = StreamableHttpRemoteTransport(None, None, url="http://localhost:3001/mcp", get_session_id=lambda: None)
    with patch("agentrelay.transports.remote.httpx.AsyncClient") as async_client:
        await transport.terminate()
    async_client.assert_not_called()
