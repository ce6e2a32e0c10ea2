"""
agentrelay.server.app
=====================
FastAPI application exposing the relay.

Routes
------
``GET /health``
    Liveness check, never gated.
``GET /config``
    Default command and arguments used to prefill a client UI.
``GET /stdio`` and ``GET /sse``
    Open an event-stream session. The first event names the ``/message``
    URL the client must POST to.
``POST /message?sessionId=<id>``
    Deliver one message into an event-stream session.
``GET|POST|DELETE /mcp``
    Request/response sessions, keyed by the ``mcp-session-id`` header.
``POST /tunnel/start``, ``POST /tunnel/stop``, ``GET /tunnel/status``
    Public tunnel control.

Every route but ``/health`` runs behind :class:`~agentrelay.security.SecurityMiddleware`.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from agentrelay.config import RelayConfig
from agentrelay.const import MCP_SESSION_ID_HEADER
from agentrelay.models import AgentRelayBaseException, SessionNotFoundError, TransportConfigError
from agentrelay.relay import RelayEngine
from agentrelay.security import SecurityGate, SecurityMiddleware
from agentrelay.sessions import SessionRegistry, new_session_id
from agentrelay.transports import (
    ConnectionRequest,
    SseClientTransport,
    StreamableHttpClientTransport,
    TransportFactory,
)
from agentrelay.tunnel import TunnelManager, TunnelStartRequest

SERVER_VERSION = "0.1.0"

class RelayContext:
    """Everything one application instance owns: the token, the sessions and the tunnel."""
    def __init__(self,
                 config :Optional[RelayConfig]=None,
                 gate :Optional[SecurityGate]=None,
                 registry :Optional[SessionRegistry]=None,
                 factory :Optional[TransportFactory]=None,
                 relay :Optional[RelayEngine]=None,
                 tunnels :Optional[TunnelManager]=None):
        self.config = config or RelayConfig()
        self.gate = gate or SecurityGate(
            self.config.allowed_origins_list,
            token=self.config.auth_token,
            auth_disabled=self.config.auth_disabled,
        )
        self.registry = registry if registry is not None else SessionRegistry()
        self.factory = factory or TransportFactory(self.config)
        self.relay = relay or RelayEngine(self.factory, self.registry)
        self.tunnels = tunnels or TunnelManager(self.config.tunnel, bridge_port=self.config.bridge_port)

def error_response(exc :AgentRelayBaseException)->JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

class ResponseRecorder:
    """Wraps an ASGI ``send`` and remembers the status once the response has started."""
    def __init__(self, send :Send):
        self.send = send
        self.status :Optional[int] = None

    @property
    def started(self)->bool:
        return self.status is not None

    async def __call__(self, message :Message):
        if message["type"] == "http.response.start":
            self.status = message["status"]
        await self.send(message)

class StreamableHttpEndpoint:
    """Raw ASGI endpoint for ``/mcp`` so the SDK transport can answer on the connection itself."""
    def __init__(self, context :RelayContext):
        self.context = context

    async def __call__(self, scope :Scope, receive :Receive, send :Send):
        request = Request(scope, receive)
        recorder = ResponseRecorder(send)
        try:
            await self.dispatch(request, scope, receive, recorder)
        except AgentRelayBaseException as exc:
            logger.warning(f"{request.method} /mcp failed: {exc}")
            if recorder.started:
                return
            await error_response(exc)(scope, receive, send)

    async def dispatch(self, request :Request, scope :Scope, receive :Receive, send :ResponseRecorder):
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request.method == "DELETE":
            if not session_id:
                raise TransportConfigError("Missing mcp-session-id header")
            self._client_for(session_id)
            await self.context.relay.terminate_session(session_id)
            await Response(status_code=200)(scope, receive, send)
            return

        if session_id:
            client = self._client_for(session_id)
            await client.handle_request(scope, receive, send)
            return

        if request.method != "POST":
            raise TransportConfigError("Bad Request: No valid session ID provided")
        await self._open_session(request, scope, receive, send)

    def _client_for(self, session_id :str)->StreamableHttpClientTransport:
        session = self.context.registry.get(session_id)
        if not isinstance(session.client, StreamableHttpClientTransport):
            raise SessionNotFoundError.from_id(session_id)
        return session.client

    async def _open_session(self, request :Request, scope :Scope, receive :Receive, send :ResponseRecorder):
        connection = ConnectionRequest.from_query(request.query_params)
        client = StreamableHttpClientTransport(new_session_id())
        session = await self.context.relay.open_session(client, connection, request.headers, register=False)
        logger.info(f"New streamable-http session {session.session_id}")

        try:
            await client.handle_request(scope, receive, send)
        except Exception:
            session.close()
            raise

        if session.is_closed:
            logger.warning(f"Session {session.session_id} ended while answering its first request")
            return
        if client.is_terminated or (send.status or 500) >= 400:
            logger.warning(f"Session {session.session_id} was not initialised, closing it")
            session.close()
            return
        self.context.relay.activate(session)

def create_app(config :Optional[RelayConfig]=None, context :Optional[RelayContext]=None)->FastAPI:
    context = context or RelayContext(config)
    config = context.config

    @asynccontextmanager
    async def lifespan(app :FastAPI):
        async with context.relay, context.tunnels:
            logger.info(f"Relay ready on http://{config.host}:{config.port}")
            yield
        logger.info("Relay shut down")

    app = FastAPI(title="Agent Relay", version=SERVER_VERSION, lifespan=lifespan)
    app.state.context = context

    app.add_middleware(SecurityMiddleware, gate=context.gate)

    @app.middleware("http")
    async def log_requests(request :Request, call_next):
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
        expose_headers=[MCP_SESSION_ID_HEADER],
    )

    @app.exception_handler(AgentRelayBaseException)
    async def handle_relay_error(request :Request, exc :AgentRelayBaseException):
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request :Request, exc :Exception):
        logger.opt(exception=exc).error(f"Unexpected error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/config")
    async def get_config():
        return {
            "defaultEnvironment": {},
            "defaultCommand": config.default_command,
            "defaultArgs": config.default_args,
        }

    async def open_event_stream(request :Request):
        if request.url.path == "/sse":
            logger.info("/sse is kept for older clients, /stdio behaves the same")

        connection = ConnectionRequest.from_query(request.query_params)
        client = SseClientTransport(new_session_id())
        session = await context.relay.open_session(client, connection, request.headers)
        logger.info(f"New {connection.transport_type} event-stream session {session.session_id}")
        return client.event_response(on_close=lambda: context.relay.close_session(session.session_id))

    app.add_api_route("/stdio", open_event_stream, methods=["GET"])
    app.add_api_route("/sse", open_event_stream, methods=["GET"])

    @app.post("/message")
    async def post_message(request :Request):
        session_id = request.query_params.get("sessionId")
        session = context.registry.find(session_id)
        if session is None or not isinstance(session.client, SseClientTransport):
            raise SessionNotFoundError.from_id(session_id)
        return await session.client.handle_post_message(request)

    app.add_route("/mcp", StreamableHttpEndpoint(context), methods=["GET", "POST", "DELETE"])

    @app.post("/tunnel/start")
    async def start_tunnel(body :TunnelStartRequest):
        info = await context.tunnels.start(body.transport_type, url=body.url, port=body.port)
        return JSONResponse(info.model_dump(by_alias=True, exclude_none=True))

    @app.post("/tunnel/stop")
    async def stop_tunnel():
        await context.tunnels.stop()
        return {"success": True}

    @app.get("/tunnel/status")
    async def tunnel_status():
        return JSONResponse(context.tunnels.status().model_dump(by_alias=True))

    return app
