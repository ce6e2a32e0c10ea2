from typing import Callable, Dict, Mapping, Optional
from loguru import logger
import httpx

from agentrelay.const import (
    CUSTOM_AUTH_HEADER,
    MCP_SESSION_ID_HEADER,
    SSE_HEADERS_PASSTHROUGH,
    STREAMABLE_HTTP_HEADERS_PASSTHROUGH,
)
from agentrelay.transports.base import ServerTransport, TransportKind

def forwarded_headers(headers :Mapping[str, str], kind :TransportKind)->Dict[str, str]:
    """
    Select the inbound headers that are passed on to a remote agent server.

    ``headers`` is looked up case-insensitively (Starlette ``Headers`` or a plain
    dict with lower-case keys). When ``x-custom-auth-header`` names another
    header that is also present, that header is copied under the name the
    caller spelled out.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    passthrough = SSE_HEADERS_PASSTHROUGH if kind is TransportKind.SSE else STREAMABLE_HTTP_HEADERS_PASSTHROUGH

    forwarded = {}
    for key in passthrough:
        if key in lowered:
            forwarded[key] = lowered[key]

    custom_header_name = lowered.get(CUSTOM_AUTH_HEADER)
    if custom_header_name:
        value = lowered.get(custom_header_name.lower())
        if value is not None:
            forwarded[custom_header_name] = value
    return forwarded

class SseRemoteTransport(ServerTransport):
    kind = TransportKind.SSE

    def __init__(self, read_stream, write_stream, url :str):
        super().__init__(read_stream, write_stream)
        self.url = url

class StreamableHttpRemoteTransport(ServerTransport):
    kind = TransportKind.STREAMABLE_HTTP

    def __init__(self,
                 read_stream,
                 write_stream,
                 url :str,
                 headers :Optional[Dict[str, str]]=None,
                 get_session_id :Optional[Callable[[], Optional[str]]]=None):
        super().__init__(read_stream, write_stream)
        self.url = url
        self.headers = dict(headers or {})
        self._get_session_id = get_session_id

    @property
    def remote_session_id(self)->Optional[str]:
        if self._get_session_id is None:
            return None
        return self._get_session_id()

    async def terminate(self):
        """Ask the remote server to drop its session (``DELETE`` on the endpoint)."""
        session_id = self.remote_session_id
        if not session_id:
            logger.debug(f"No remote session to terminate for {self.url}")
            return

        headers = {**self.headers, MCP_SESSION_ID_HEADER: session_id}
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.delete(self.url, headers=headers)

        if response.status_code == 405:
            logger.debug(f"Server at {self.url} does not allow session termination")
        elif response.status_code >= 400:
            logger.warning(f"Session termination at {self.url} answered {response.status_code}")
        else:
            logger.info(f"Remote session {session_id} terminated")
