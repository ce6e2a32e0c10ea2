from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional
from urllib.parse import quote

from loguru import logger
import anyio
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from agentrelay.const import MESSAGE_ENDPOINT, STREAM_BUFFER_SIZE
from agentrelay.transports.base import ClientTransport, TransportKind

def dump_message(message :JSONRPCMessage)->str:
    return message.model_dump_json(by_alias=True, exclude_none=True)

class SseClientTransport(ClientTransport):
    """
    Client-facing event stream.

    The first event (``endpoint``) tells the client where to POST its
    messages; every relayed message then follows as a ``message`` event.
    Inbound messages arrive through :meth:`handle_post_message`.
    """
    kind = TransportKind.SSE

    def __init__(self, session_id :str, endpoint :str=MESSAGE_ENDPOINT):
        super().__init__(session_id)
        self.endpoint = endpoint
        incoming_writer, incoming_reader = anyio.create_memory_object_stream(STREAM_BUFFER_SIZE)
        outgoing_writer, outgoing_reader = anyio.create_memory_object_stream(STREAM_BUFFER_SIZE)
        self.bind(incoming_reader, outgoing_writer)
        self._incoming_writer = incoming_writer
        self._outgoing_reader = outgoing_reader

    @property
    def endpoint_url(self)->str:
        return f"{self.endpoint}?sessionId={quote(self.session_id)}"

    def close(self):
        super().close()
        self._incoming_writer.close()

    async def handle_post_message(self, request :Request)->Response:
        body = await request.body()
        try:
            message = JSONRPCMessage.model_validate_json(body)
        except ValidationError as exc:
            logger.warning(f"Failed to parse message for session {self.session_id}: {exc}")
            return Response("Could not parse message", status_code=400)

        try:
            await self._incoming_writer.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            return Response("Session closed", status_code=404)
        return Response("Accepted", status_code=202)

    async def events(self, on_close :Optional[Callable[[], None]]=None)->AsyncIterator[dict]:
        try:
            yield {"event": "endpoint", "data": self.endpoint_url}
            async for session_message in self._outgoing_reader:
                yield {"event": "message", "data": dump_message(session_message.message)}
        finally:
            if on_close is not None:
                on_close()

    def event_response(self, on_close :Optional[Callable[[], None]]=None)->EventSourceResponse:
        return EventSourceResponse(self.events(on_close))

class StreamableHttpClientTransport(ClientTransport):
    """Client-facing request/response session backed by the SDK transport."""
    kind = TransportKind.STREAMABLE_HTTP

    def __init__(self, session_id :str):
        super().__init__(session_id)
        self.http_transport = StreamableHTTPServerTransport(mcp_session_id=session_id)

    @property
    def is_terminated(self)->bool:
        return self.http_transport.is_terminated

    @asynccontextmanager
    async def connect(self)->AsyncIterator["StreamableHttpClientTransport"]:
        async with self.http_transport.connect() as (read_stream, write_stream):
            self.bind(read_stream, write_stream)
            try:
                yield self
            finally:
                self.close()

    async def handle_request(self, scope :Scope, receive :Receive, send :Send):
        await self.http_transport.handle_request(scope, receive, send)

    def close(self):
        # Both streams belong to the SDK transport and close with its connect() context.
        return None
