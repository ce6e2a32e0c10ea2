from typing import Optional
import httpx

class AgentRelayBaseException(Exception):
    status_code :int = 500

    def __init__(self, message :str, status_code :Optional[int]=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self)->str:
        return self.message

    def to_dict(self)->dict:
        return {"error": self.message}

class TransportConfigError(AgentRelayBaseException):
    status_code = 400

class UpstreamError(AgentRelayBaseException):
    status_code = 502

    @classmethod
    def from_exception(cls, exc :BaseException)->"UpstreamError":
        from agentrelay.utils import find_exception, find_http_status

        status_code = find_http_status(exc)
        if status_code is not None:
            return cls(message=f"Upstream server responded with status {status_code}", status_code=status_code)

        if find_exception(exc, httpx.ConnectError) is not None or "ECONNREFUSED" in str(exc):
            return cls(message="Connection refused. Is the MCP server running?", status_code=502)

        return cls(message=f"Failed to connect to upstream server: {exc}")

class StartupTimeoutError(AgentRelayBaseException):
    status_code = 504

class BridgeExitedError(AgentRelayBaseException):
    status_code = 502

    @classmethod
    def from_returncode(cls, returncode :Optional[int], port :int)->"BridgeExitedError":
        return cls(message=f"Supergateway on port {port} exited with code {returncode} before it became ready")

class SessionNotFoundError(AgentRelayBaseException):
    status_code = 404

    @classmethod
    def from_id(cls, session_id :Optional[str])->"SessionNotFoundError":
        return cls(message=f"Transport not found for sessionId {session_id}")

class TunnelConflictError(AgentRelayBaseException):
    status_code = 409

class TunnelNotRunningError(AgentRelayBaseException):
    status_code = 400

class TunnelStartError(AgentRelayBaseException):
    status_code = 500

class DependencyError(AgentRelayBaseException):
    ...
