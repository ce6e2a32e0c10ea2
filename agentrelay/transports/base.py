from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Union
from enum import Enum
import json

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentrelay.models import TransportConfigError

StreamItem = Union[SessionMessage, Exception]

class TransportKind(Enum):
    STDIO = "stdio"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"

    @classmethod
    def parse(cls, value :Optional[str])->"TransportKind":
        try:
            return cls(value)
        except ValueError:
            raise TransportConfigError(f"Invalid transport type specified: {value}") from None

class ConnectionRequest(BaseModel):
    """Per-request connection parameters, as sent on the query string."""
    model_config = ConfigDict(populate_by_name=True)

    transport_type :str=Field(alias="transportType")
    command :Optional[str]=None
    args :str=""
    env :Dict[str, str]=Field(default_factory=dict)
    url :Optional[str]=None

    @field_validator("env", mode="before")
    @classmethod
    def parse_env(cls, env :Optional[Union[str, dict]])->dict:
        if not env:
            return {}
        if isinstance(env, str):
            try:
                env = json.loads(env)
            except json.JSONDecodeError as exc:
                raise ValueError(f"env should be a JSON object: {exc}") from exc
        assert isinstance(env, dict), "env should be a JSON object"
        return {key: str(value) for key, value in env.items()}

    @property
    def kind(self)->TransportKind:
        return TransportKind.parse(self.transport_type)

    @classmethod
    def from_query(cls, query)->"ConnectionRequest":
        params = dict(query)
        if not params.get("transportType"):
            raise TransportConfigError("Invalid transport type specified: missing transportType")
        try:
            return cls(**params)
        except ValueError as exc:
            raise TransportConfigError(f"Invalid connection parameters: {exc}") from exc

class Transport:
    """A bidirectional channel of ``SessionMessage`` objects."""
    kind :TransportKind

    def __init__(self,
                 read_stream :Optional[MemoryObjectReceiveStream]=None,
                 write_stream :Optional[MemoryObjectSendStream]=None):
        self.read_stream = read_stream
        self.write_stream = write_stream

    def bind(self, read_stream :MemoryObjectReceiveStream, write_stream :MemoryObjectSendStream):
        self.read_stream = read_stream
        self.write_stream = write_stream

    async def send(self, message :SessionMessage):
        await self.write_stream.send(message)

    async def messages(self)->AsyncIterator[StreamItem]:
        """Yield incoming messages in arrival order; SDK errors arrive as exceptions."""
        async for item in self.read_stream:
            yield item

    def close(self):
        if self.write_stream is not None:
            self.write_stream.close()

class ClientTransport(Transport):
    """Client-facing side of a session (talks to the inbound connection)."""
    def __init__(self, session_id :str):
        super().__init__()
        self.session_id = session_id

    @asynccontextmanager
    async def connect(self)->AsyncIterator["ClientTransport"]:
        try:
            yield self
        finally:
            self.close()

class ServerTransport(Transport):
    """Server-facing side of a session (talks to the agent server)."""

    async def terminate(self):
        """End the remote session, where the variant has one."""
        return None
