import os

DEFAULT_CONFIG_PATH = os.getenv("CONFIG_PATH") or "./config/config.yml"

DEFAULT_LOGS_DIR = os.getenv("LOGS_PATH") or "logs"

DEFAULT_LOG_LEVEL = "INFO"

DEFAULT_ENCODING = "utf8"

# Ports
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 6277
DEFAULT_CLIENT_PORT = 6274
DEFAULT_BRIDGE_PORT = 8742

# Environment variable names
HOST_ENV = "HOST"
PORT_ENV = "PORT"
CLIENT_PORT_ENV = "CLIENT_PORT"
ALLOWED_ORIGINS_ENV = "ALLOWED_ORIGINS"
OMIT_AUTH_ENV = "DANGEROUSLY_OMIT_AUTH"
AUTH_TOKEN_ENV = "MCP_PROXY_AUTH_TOKEN"
BRIDGE_PORT_ENV = "SUPERGATEWAY_PORT"
DEFAULT_ENV_VARS_ENV = "MCP_ENV_VARS"
NGROK_BINARY_ENV = "NGROK_BINARY"
LOG_LEVEL_ENV = "LOG_LEVEL"
LOGS_PATH_ENV = "LOGS_PATH"

# Security gate
AUTH_QUERY_PARAM = "mcp-proxy-auth-token"
AUTH_QUERY_PARAM_ALIASES = ("MCP_PROXY_AUTH_TOKEN",)
# Query parameter the client UI reads the token from
CLIENT_TOKEN_PARAM = "MCP_PROXY_AUTH_TOKEN"
AUTH_HEADER = "x-mcp-proxy-auth"
BEARER_PREFIX = "Bearer "

# Header forwarding
MCP_SESSION_ID_HEADER = "mcp-session-id"
LAST_EVENT_ID_HEADER = "last-event-id"
AUTHORIZATION_HEADER = "authorization"
CUSTOM_AUTH_HEADER = "x-custom-auth-header"
SSE_HEADERS_PASSTHROUGH = [AUTHORIZATION_HEADER]
STREAMABLE_HTTP_HEADERS_PASSTHROUGH = [
    AUTHORIZATION_HEADER,
    MCP_SESSION_ID_HEADER,
    LAST_EVENT_ID_HEADER,
]

# Bridging process (supergateway)
BRIDGE_COMMAND = "npx"
BRIDGE_PACKAGE = "supergateway"
BRIDGE_SSE_PATH = "/sse"
BRIDGE_MESSAGE_PATH = "/message"
BRIDGE_READY_ATTEMPTS = 30
BRIDGE_READY_INTERVAL = 1.0
BRIDGE_CHECK_TIMEOUT = 0.5
BRIDGE_SHUTDOWN_GRACE = 5.0
QUIET_NPM_ENVIRONMENT = {
    "NPM_CONFIG_LOGLEVEL": "silent",
    "NPM_CONFIG_UPDATE_NOTIFIER": "false",
}

# Client-facing stream transport
MESSAGE_ENDPOINT = "/message"
STREAM_BUFFER_SIZE = 100

# Relay
STDERR_NOTIFICATION_METHOD = "notifications/stderr"
MODULE_NOT_FOUND_MARKER = "MODULE_NOT_FOUND"
MODULE_NOT_FOUND_MESSAGE = "Command not found, transports removed"
PROXY_ERROR_CODE = -32001

# Tunnel (ngrok)
NGROK_BINARY = os.getenv(NGROK_BINARY_ENV) or "ngrok"
NGROK_API_URL = "http://127.0.0.1:4040/api/tunnels"
TUNNEL_STARTUP_TIMEOUT = 10.0
TUNNEL_STARTUP_GRACE = 2.0
TUNNEL_POLL_INTERVAL = 1.0
TUNNEL_BRIDGE_SUFFIX = BRIDGE_SSE_PATH
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")
