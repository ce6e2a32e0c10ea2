"""
agentrelay.scripts.relay_server
===============================
Agent Relay Server: local proxy between a client and an agent server.

Entry points
------------
::

    # Registered by setup.py console_scripts
    agentrelay-server [OPTIONS]

    # Python module invocation
    python -m agentrelay.scripts.relay_server [OPTIONS]

The ``stdio`` transport needs Node.js (``npx``) on the PATH; the public tunnel
needs ``ngrok``. ``--check-deps`` reports what is available and
``--install-deps`` installs what is missing.

CLI options
-----------
--host HOST
    Bind address (default: ``127.0.0.1``).
--port PORT
    TCP port (default: ``6277``).
--command COMMAND / --args ARGS
    Default command and arguments returned by ``GET /config``.
--config PATH
    YAML configuration file. Environment variables are used when omitted.
--no-auth
    Disable the session token check (same as ``DANGEROUSLY_OMIT_AUTH=true``).
--bridge-port PORT
    Local port for the supergateway bridge (default: ``8742``).
--log-level {DEBUG,INFO,WARNING,ERROR}
    Logging verbosity (default: ``INFO``).
--logs-dir PATH
    Directory for the daily log files (default: ``logs``).
"""

from typing import List, Optional
import argparse
import errno
import sys

from dotenv import load_dotenv
from loguru import logger
import anyio

from agentrelay.config import RelayConfig
from agentrelay.const import CLIENT_TOKEN_PARAM
from agentrelay.deps import DependencyManager
from agentrelay.logger import Logger
from agentrelay.models import DependencyError
from agentrelay.server import RelayContext, create_app

def parse_args(argv :Optional[List[str]]=None)->argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agentrelay-server",
        description="Agent Relay Server: proxies stdio, SSE and streamable HTTP agent servers.",
    )
    parser.add_argument("--host", type=str, default=None, help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="TCP port (default: 6277)")
    parser.add_argument("--command", type=str, default=None, help="Default command shown to clients")
    parser.add_argument("--args", type=str, default=None, help="Default arguments shown to clients")
    parser.add_argument("--config", type=str, default=None, help="YAML configuration file")
    parser.add_argument("--no-auth", action="store_true", help="Disable the session token check")
    parser.add_argument("--bridge-port", type=int, default=None, help="Port for the supergateway bridge")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--logs-dir", type=str, default=None, help="Directory for log files")
    parser.add_argument("--check-deps", action="store_true", help="Report helper tool availability and exit")
    parser.add_argument("--install-deps", action="store_true", help="Install missing helper tools and exit")
    return parser.parse_args(argv)

def build_config(args :argparse.Namespace)->RelayConfig:
    config = RelayConfig.from_yaml(args.config) if args.config else RelayConfig.from_environment()

    overrides = {
        "host": args.host,
        "port": args.port,
        "default_command": args.command,
        "default_args": args.args,
        "bridge_port": args.bridge_port,
        "log_level": args.log_level,
        "logs_dir": args.logs_dir,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if args.no_auth:
        overrides["auth_disabled"] = True

    return RelayConfig(**{**config.model_dump(), **overrides})

async def check_dependencies(manager :DependencyManager)->bool:
    status = await manager.check()
    print("\n=== Helper tools ===\n")
    for name, available in status.model_dump().items():
        print(f"  [{'OK' if available else 'MISSING'}] {name}")
    return status.complete

async def install_dependencies(manager :DependencyManager):
    async for progress in manager.install():
        print(f"  [{progress.current}/{progress.total}] {progress.message}")
    print("  Nothing left to install.")

def run_dependency_task(args :argparse.Namespace, config :RelayConfig)->int:
    manager = DependencyManager(ngrok_binary=config.tunnel.binary, bridge_package=config.bridge_package)
    try:
        if args.install_deps:
            anyio.run(install_dependencies, manager)
        complete = anyio.run(check_dependencies, manager)
    except DependencyError as exc:
        print(f"ERROR: {exc}")
        return 1
    return 0 if complete else 1

def print_banner(context :RelayContext):
    config = context.config
    local_url = f"http://{config.host}:{config.port}"
    client_url = f"http://localhost:{config.client_port}"
    if context.gate.auth_disabled:
        auth_display = "DISABLED (DANGEROUSLY_OMIT_AUTH)"
        client_display = client_url
    else:
        auth_display = context.gate.token
        client_display = f"{client_url}/?{CLIENT_TOKEN_PARAM}={context.gate.token}"

    print(
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║              Agent Relay Server is running               ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
        f"\n  Proxy URL        : {local_url}"
        f"\n  Session token    : {auth_display}"
        f"\n  Client URL       : {client_display}"
        f"\n  Bridge port      : {config.bridge_port}"
        f"\n  Allowed origins  : {', '.join(context.gate.allowed_origins)}"
        "\n"
        "\n  ── Health check ─────────────────────────────────────────"
        f"\n  curl {local_url}/health"
        "\n"
        "────────────────────────────────────────────────────────────\n"
    )
    if context.gate.auth_disabled:
        print("  WARNING: authentication is disabled. Any local process can use this relay.\n")

def main(argv :Optional[List[str]]=None):
    args = parse_args(argv)
    load_dotenv()

    config = build_config(args)
    Logger(logs_dir=config.logs_dir, level=config.log_level).configure()

    if args.check_deps or args.install_deps:
        sys.exit(run_dependency_task(args, config))

    context = RelayContext(config)
    app = create_app(context=context)
    print_banner(context)

    import uvicorn

    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    except OSError as exc:
        if exc.errno != errno.EADDRINUSE:
            raise
        logger.error(f"Proxy Server PORT IS IN USE at port {config.port}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nRelay server stopped by user (Ctrl+C).")

if __name__ == "__main__":
    main()
