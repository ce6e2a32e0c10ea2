from agentrelay.transports.base import (
    ClientTransport,
    ConnectionRequest,
    ServerTransport,
    StreamItem,
    Transport,
    TransportKind,
)
from agentrelay.transports.bridge import BridgeProcess, StdioBridgeTransport, build_user_command, merge_environment
from agentrelay.transports.client import SseClientTransport, StreamableHttpClientTransport
from agentrelay.transports.factory import TransportFactory
from agentrelay.transports.remote import SseRemoteTransport, StreamableHttpRemoteTransport, forwarded_headers

__all__ = [
    "BridgeProcess",
    "ClientTransport",
    "ConnectionRequest",
    "ServerTransport",
    "SseClientTransport",
    "SseRemoteTransport",
    "StdioBridgeTransport",
    "StreamItem",
    "StreamableHttpClientTransport",
    "StreamableHttpRemoteTransport",
    "Transport",
    "TransportFactory",
    "TransportKind",
    "build_user_command",
    "forwarded_headers",
    "merge_environment",
]
