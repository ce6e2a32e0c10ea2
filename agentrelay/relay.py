"""
agentrelay.relay
================
Pairs a client-facing transport with a server-facing transport and moves
messages between them.

Every session runs as one task inside the engine's task group. That task
connects the client side, starts the server side, registers the pair,
reports readiness back to the caller of :meth:`RelayEngine.open_session`
and then runs two pumps, one per direction. Anything that goes wrong before
readiness is raised to the caller; anything afterwards is logged and ends
only that session.

Requests forwarded to the server are remembered until their answer comes
back. When the server side fails with an HTTP error, every request still
waiting is answered with a proxy error, so no client call is left hanging
on a response that will never arrive.
"""

from typing import Mapping, Optional, Union

import anyio
from mcp.shared.message import SessionMessage
from mcp.types import (
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
import httpx

from agentrelay.const import (
    MODULE_NOT_FOUND_MARKER,
    MODULE_NOT_FOUND_MESSAGE,
    PROXY_ERROR_CODE,
    STDERR_NOTIFICATION_METHOD,
)
from agentrelay.logger import Logger
from agentrelay.models import SessionNotFoundError, UpstreamError
from agentrelay.sessions import Session, SessionRegistry
from agentrelay.transports.base import ClientTransport, ConnectionRequest
from agentrelay.transports.bridge import StdioBridgeTransport
from agentrelay.transports.factory import TransportFactory
from agentrelay.utils import find_http_status

CLOSED_STREAM_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError)

def stderr_notification(content :str)->SessionMessage:
    notification = JSONRPCNotification(
        jsonrpc="2.0",
        method=STDERR_NOTIFICATION_METHOD,
        params={"content": content},
    )
    return SessionMessage(JSONRPCMessage(notification))

def error_reply(request_id :Union[int, str], message :str)->SessionMessage:
    error = JSONRPCError(
        jsonrpc="2.0",
        id=request_id,
        error=ErrorData(code=PROXY_ERROR_CODE, message=message),
    )
    return SessionMessage(JSONRPCMessage(error))

def proxy_error_reply(message :JSONRPCMessage, exc :BaseException)->Optional[SessionMessage]:
    """Build the error answer for a request that could not be delivered; ``None`` for anything else."""
    request = message.root
    if not isinstance(request, JSONRPCRequest):
        return None
    return error_reply(request.id, str(exc) or type(exc).__name__)

class RelayEngine:
    def __init__(self, factory :Optional[TransportFactory]=None, registry :Optional[SessionRegistry]=None):
        self.factory = factory or TransportFactory()
        self.registry = registry if registry is not None else SessionRegistry()
        self._task_group = None

    async def __aenter__(self)->"RelayEngine":
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        return self

    async def __aexit__(self, *exc_info):
        task_group, self._task_group = self._task_group, None
        task_group.cancel_scope.cancel()
        return await task_group.__aexit__(*exc_info)

    async def open_session(self,
                           client :ClientTransport,
                           request :ConnectionRequest,
                           headers :Optional[Mapping[str, str]]=None,
                           register :bool=True)->Session:
        """
        Start the server-facing transport for ``request``, pair it with ``client``
        and begin relaying.

        Returns once both sides are connected. With ``register=False`` the caller
        is expected to call :meth:`activate` once the session id is known to the
        client.

        :raises AgentRelayBaseException: when the server-facing transport cannot be started.
        """
        assert self._task_group is not None, "RelayEngine must be entered before opening sessions"
        session = Session(client.session_id, client)
        return await self._task_group.start(self._run_session, session, request, headers, register)

    def activate(self, session :Session):
        if session.is_closed:
            raise SessionNotFoundError.from_id(session.session_id)
        if session.session_id not in self.registry:
            self.registry.add(session)

    def close_session(self, session_id :Optional[str])->bool:
        """Cancel and forget a session. Unknown ids are ignored."""
        session = self.registry.remove(session_id)
        if session is None:
            return False
        session.close()
        Logger.for_session(session.session_id).info("Session closed on request")
        return True

    async def terminate_session(self, session_id :Optional[str]):
        """End the remote side of a session, then close it locally."""
        session = self.registry.get(session_id)
        log = Logger.for_session(session.session_id)
        if session.server is not None:
            try:
                await session.server.terminate()
            except httpx.HTTPError as exc:
                log.warning(f"Remote session termination failed: {exc}")
        self.close_session(session.session_id)

    async def _run_session(self,
                           session :Session,
                           request :ConnectionRequest,
                           headers :Optional[Mapping[str, str]],
                           register :bool,
                           *,
                           task_status=anyio.TASK_STATUS_IGNORED):
        log = Logger.for_session(session.session_id)
        started = False
        session.cancel_scope = anyio.CancelScope()
        try:
            with session.cancel_scope:
                async with session.client.connect():
                    try:
                        async with self.factory.connect(request, headers) as server:
                            session.activate(server)
                            if register:
                                self.registry.add(session)
                            log.info(f"Session active: {session.client.kind.value} client <-> {server.kind.value} server")
                            started = True
                            task_status.started(session)
                            await self._relay(session, log)
                    except Exception as exc:
                        if not started:
                            raise
                        log.opt(exception=exc).error(f"Session failed: {exc}")
                        await self._answer_pending(session, UpstreamError.from_exception(exc), log)
            if not started:
                raise UpstreamError(f"Session {session.session_id} was closed before the server transport became ready")
        except Exception as exc:
            if not started:
                raise
            log.opt(exception=exc).error(f"Session teardown failed: {exc}")
        finally:
            session.close()
            if self.registry.find(session.session_id) is session:
                self.registry.remove(session.session_id)
            if started:
                log.info("Session ended")

    async def _relay(self, session :Session, log):
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(self._forward_to_server, session, log)
            task_group.start_soon(self._forward_to_client, session, log)
            if isinstance(session.server, StdioBridgeTransport):
                task_group.start_soon(self._watch_diagnostics, session, session.server, log)

    async def _forward_to_server(self, session :Session, log):
        client, server = session.pair
        async for item in client.messages():
            if isinstance(item, Exception):
                log.warning(f"Error on client transport: {item}")
                continue
            request = item.message.root
            if isinstance(request, JSONRPCRequest):
                session.pending_requests.add(request.id)
            try:
                await server.send(SessionMessage(item.message))
            except Exception as exc:
                log.error(f"Error sending message to server: {exc}")
                reply = proxy_error_reply(item.message, exc)
                if reply is not None:
                    session.pending_requests.discard(request.id)
                    await self._send_to_client(session, reply, log)
        log.info("Client transport closed")
        session.close()

    async def _forward_to_client(self, session :Session, log):
        server = session.server
        async for item in server.messages():
            if isinstance(item, Exception):
                log.warning(f"Error on server transport: {item}")
                status_code = find_http_status(item)
                if status_code is not None and status_code >= 400:
                    await self._answer_pending(session, UpstreamError.from_exception(item), log)
                continue
            answer = item.message.root
            if isinstance(answer, (JSONRPCResponse, JSONRPCError)):
                session.pending_requests.discard(answer.id)
            if not await self._send_to_client(session, SessionMessage(item.message), log):
                break
        log.info("Server transport closed")
        session.close()

    async def _answer_pending(self, session :Session, error :UpstreamError, log):
        """Fail every request still waiting on the server with ``error``."""
        while session.pending_requests:
            request_id = session.pending_requests.pop()
            log.warning(f"Answering request {request_id} with: {error}")
            if not await self._send_to_client(session, error_reply(request_id, error.message), log):
                return

    async def _send_to_client(self, session :Session, message :SessionMessage, log)->bool:
        try:
            await session.client.send(message)
        except CLOSED_STREAM_ERRORS:
            log.info("Client transport is gone, dropping message")
            return False
        return True

    async def _watch_diagnostics(self, session :Session, server :StdioBridgeTransport, log):
        async for line in server.diagnostics():
            if MODULE_NOT_FOUND_MARKER in line:
                log.error(f"Bridged command could not start: {line.strip()}")
                await self._send_to_client(session, stderr_notification(MODULE_NOT_FOUND_MESSAGE), log)
                self.close_session(session.session_id)
                session.close()
                return
            log.debug(f"stderr: {line.rstrip()}")
            await self._send_to_client(session, stderr_notification(line), log)
