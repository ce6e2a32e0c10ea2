from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional
import os

from loguru import logger
from mcp.client.sse import sse_client
from mcp.client.stdio import get_default_environment
from mcp.client.streamable_http import streamablehttp_client

from agentrelay.config import RelayConfig
from agentrelay.models import AgentRelayBaseException, TransportConfigError, UpstreamError
from agentrelay.transports.base import ConnectionRequest, ServerTransport, TransportKind
from agentrelay.transports.bridge import BridgeProcess, StdioBridgeTransport, merge_environment
from agentrelay.transports.remote import (
    SseRemoteTransport,
    StreamableHttpRemoteTransport,
    forwarded_headers,
)

class TransportFactory:
    """
    Builds started server-facing transports.

    ``connect`` is an async context manager: leaving it closes the transport
    and, for ``stdio`` requests, stops the bridging process.
    """
    def __init__(self, config :Optional[RelayConfig]=None):
        self.config = config or RelayConfig()

    @property
    def default_environment(self)->Dict[str, str]:
        return {**get_default_environment(), **self.config.default_environment}

    def build_bridge(self, request :ConnectionRequest)->BridgeProcess:
        env = merge_environment(os.environ, self.default_environment, request.env)
        return BridgeProcess(
            command=request.command,
            args=request.args,
            env=env,
            port=self.config.bridge_port,
            bridge_command=self.config.bridge_command,
            package=self.config.bridge_package,
            ready_attempts=self.config.bridge_ready_attempts,
            ready_interval=self.config.bridge_ready_interval,
            check_timeout=self.config.bridge_check_timeout,
        )

    @asynccontextmanager
    async def connect(self,
                      request :ConnectionRequest,
                      headers :Optional[Mapping[str, str]]=None)->AsyncIterator[ServerTransport]:
        kind = request.kind
        headers = headers or {}
        logger.info(f"Creating {kind.value} server transport")

        if kind is TransportKind.STDIO:
            async with self._connect_stdio(request) as transport:
                yield transport
        elif kind is TransportKind.SSE:
            url = self._require_url(request)
            async with self._connect_sse(url, forwarded_headers(headers, kind)) as transport:
                yield transport
        else:
            url = self._require_url(request)
            async with self._connect_streamable_http(url, forwarded_headers(headers, kind)) as transport:
                yield transport

    @staticmethod
    def _require_url(request :ConnectionRequest)->str:
        if not request.url:
            raise TransportConfigError(f"A url is required for the {request.transport_type} transport")
        return request.url

    @asynccontextmanager
    async def _connect_stdio(self, request :ConnectionRequest)->AsyncIterator[StdioBridgeTransport]:
        bridge = self.build_bridge(request)
        async with bridge:
            await bridge.wait_until_ready()
            logger.info(f"Connecting to supergateway at {bridge.sse_url}")
            async with self._connect_sse(bridge.sse_url, {}) as remote:
                yield StdioBridgeTransport(remote.read_stream, remote.write_stream, bridge=bridge)

    @asynccontextmanager
    async def _connect_sse(self, url :str, headers :Dict[str, str])->AsyncIterator[SseRemoteTransport]:
        logger.info(f"SSE transport: url={url}, headers={sorted(headers)}")
        entered = False
        try:
            async with sse_client(url, headers=headers) as (read_stream, write_stream):
                entered = True
                yield SseRemoteTransport(read_stream, write_stream, url=url)
        except AgentRelayBaseException:
            raise
        except Exception as exc:
            if entered:
                raise
            raise UpstreamError.from_exception(exc) from exc

    @asynccontextmanager
    async def _connect_streamable_http(self,
                                       url :str,
                                       headers :Dict[str, str])->AsyncIterator[StreamableHttpRemoteTransport]:
        logger.info(f"Streamable HTTP transport: url={url}, headers={sorted(headers)}")
        entered = False
        try:
            async with streamablehttp_client(url, headers=headers, terminate_on_close=False) as (
                read_stream, write_stream, get_session_id
            ):
                entered = True
                yield StreamableHttpRemoteTransport(
                    read_stream,
                    write_stream,
                    url=url,
                    headers=headers,
                    get_session_id=get_session_id,
                )
        except AgentRelayBaseException:
            raise
        except Exception as exc:
            if entered:
                raise
            raise UpstreamError.from_exception(exc) from exc
