from typing import Iterable, Mapping, Optional
import secrets
import hmac

from loguru import logger
from starlette.datastructures import Headers, QueryParams
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from agentrelay.const import AUTH_HEADER, AUTH_QUERY_PARAM, AUTH_QUERY_PARAM_ALIASES, BEARER_PREFIX

UNPROTECTED_PATHS = ("/health",)

UNAUTHORIZED_MESSAGE = (
    "Authentication required. Use the session token shown in the console when starting the server."
)

def generate_token()->str:
    return secrets.token_hex(32)

class SecurityGate:
    """
    Origin and token checks applied in front of every relay route.

    The gate owns the process token. When none is given a random one is
    generated; it is only ever shown in the startup banner.
    """
    def __init__(self,
                 allowed_origins :Iterable[str],
                 token :Optional[str]=None,
                 auth_disabled :bool=False):
        self.allowed_origins = list(allowed_origins)
        self.token = token or generate_token()
        self.auth_disabled = auth_disabled

    def check_origin(self, origin :Optional[str])->bool:
        if not origin:
            return True
        return origin in self.allowed_origins

    @staticmethod
    def extract_token(query :Mapping[str, str], headers :Mapping[str, str])->Optional[str]:
        for name in (AUTH_QUERY_PARAM, *AUTH_QUERY_PARAM_ALIASES):
            token = query.get(name)
            if token:
                return token

        header = headers.get(AUTH_HEADER)
        if header and header.startswith(BEARER_PREFIX):
            return header[len(BEARER_PREFIX):]
        return None

    def token_matches(self, candidate :Optional[str])->bool:
        if not candidate:
            return False
        candidate_bytes = candidate.encode("utf-8")
        expected_bytes = self.token.encode("utf-8")
        if len(candidate_bytes) != len(expected_bytes):
            return False
        return hmac.compare_digest(candidate_bytes, expected_bytes)

    def check(self, query :Mapping[str, str], headers :Mapping[str, str])->Optional[JSONResponse]:
        """Return the rejection response for a request, or ``None`` when it may proceed."""
        origin = headers.get("origin")
        if not self.check_origin(origin):
            logger.warning(f"Rejected request from origin {origin}")
            return JSONResponse(
                status_code=403,
                content={
                    "error": "Forbidden - invalid origin",
                    "message": "Request blocked to prevent DNS rebinding attacks. Configure allowed origins via environment variable ALLOWED_ORIGINS.",
                },
            )

        if self.auth_disabled:
            return None

        if not self.token_matches(self.extract_token(query, headers)):
            logger.warning("Rejected request with a missing or invalid session token")
            return JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "message": UNAUTHORIZED_MESSAGE},
            )
        return None

class SecurityMiddleware:
    """ASGI middleware running :class:`SecurityGate` on every HTTP request but the health check."""
    def __init__(self, app :ASGIApp, gate :SecurityGate, unprotected_paths :Iterable[str]=UNPROTECTED_PATHS):
        self.app = app
        self.gate = gate
        self.unprotected_paths = tuple(unprotected_paths)

    async def __call__(self, scope :Scope, receive :Receive, send :Send):
        if scope["type"] != "http" or scope["path"] in self.unprotected_paths:
            await self.app(scope, receive, send)
            return

        rejection = self.gate.check(
            QueryParams(scope.get("query_string", b"")),
            Headers(scope=scope),
        )
        if rejection is not None:
            await rejection(scope, receive, send)
            return
        await self.app(scope, receive, send)
