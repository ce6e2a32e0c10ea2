"""
agentrelay.tunnel
=================
Publishes one local port through an ngrok tunnel.

At most one tunnel exists per :class:`TunnelManager`. The port it exposes
depends on the transport the caller is using: a remote server that already
listens on a loopback address is exposed directly ("direct mapping"),
anything else goes through the local bridge port.
"""

from typing import List, Optional
from urllib.parse import urlparse
import subprocess

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from anyio.abc import Process
import anyio
import httpx

from agentrelay.config import TunnelConfig
from agentrelay.const import BRIDGE_SHUTDOWN_GRACE, DEFAULT_BRIDGE_PORT, TUNNEL_BRIDGE_SUFFIX
from agentrelay.models import TunnelConflictError, TunnelNotRunningError, TunnelStartError
from agentrelay.transports.base import TransportKind
from agentrelay.utils import is_loopback_url, poll_until

DIRECT_MAPPING_KINDS = (TransportKind.SSE.value, TransportKind.STREAMABLE_HTTP.value)

class TunnelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class TunnelStartRequest(TunnelModel):
    transport_type :Optional[str]=None
    url :Optional[str]=None
    port :Optional[int]=None

class TunnelTarget(TunnelModel):
    port :int
    direct_mapping :bool=False
    original_url :Optional[str]=None

class TunnelInfo(TunnelModel):
    success :bool=True
    public_url :str
    local_port :int
    direct_mapping :bool
    original_url :Optional[str]=None

class TunnelStatus(TunnelModel):
    running :bool
    public_url :Optional[str]=None

def resolve_target(transport_type :Optional[str],
                   url :Optional[str]=None,
                   port :Optional[int]=None,
                   bridge_port :int=DEFAULT_BRIDGE_PORT)->TunnelTarget:
    """Pick the local port to expose and whether it maps straight onto a remote server."""
    if transport_type in DIRECT_MAPPING_KINDS and is_loopback_url(url):
        parsed = urlparse(url)
        local_port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return TunnelTarget(port=local_port, direct_mapping=True, original_url=url)
    return TunnelTarget(port=port or bridge_port, direct_mapping=False)

def build_public_url(base_url :str, target :TunnelTarget)->str:
    base_url = base_url.rstrip("/")
    if not target.direct_mapping:
        return f"{base_url}{TUNNEL_BRIDGE_SUFFIX}"

    path = urlparse(target.original_url).path
    if path and path != "/":
        return f"{base_url}{path}"
    return base_url

def find_https_tunnel(tunnels :List[dict])->Optional[str]:
    for tunnel in tunnels:
        if tunnel.get("proto") == "https":
            return tunnel.get("public_url")
    return None

class TunnelManager:
    def __init__(self, config :Optional[TunnelConfig]=None, bridge_port :int=DEFAULT_BRIDGE_PORT):
        self.config = config or TunnelConfig()
        self.bridge_port = bridge_port
        self._process :Optional[Process] = None
        self._public_url :Optional[str] = None
        self._starting = False
        self._task_group = None

    @property
    def running(self)->bool:
        return self._process is not None

    async def __aenter__(self)->"TunnelManager":
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        return self

    async def __aexit__(self, *exc_info):
        process, self._process = self._process, None
        self._public_url = None
        if process is not None:
            await self._terminate(process)
        task_group, self._task_group = self._task_group, None
        task_group.cancel_scope.cancel()
        return await task_group.__aexit__(*exc_info)

    def status(self)->TunnelStatus:
        return TunnelStatus(running=self.running, public_url=self._public_url)

    async def start(self,
                    transport_type :Optional[str],
                    url :Optional[str]=None,
                    port :Optional[int]=None)->TunnelInfo:
        assert self._task_group is not None, "TunnelManager must be entered before starting a tunnel"
        if self._process is not None or self._starting:
            raise TunnelConflictError("Tunnel is already running")
        self._starting = True

        try:
            target = resolve_target(transport_type, url, port, self.bridge_port)
            mode = "direct URL mapping" if target.direct_mapping else "port"
            logger.info(f"Starting ngrok tunnel for {mode} {target.port}...")

            process = await self._spawn(target.port)
            self._process = process
            self._task_group.start_soon(self._watch_exit, process)

            try:
                base_url = await self._discover_url(process)
            except BaseException:
                self._clear(process)
                await self._terminate(process)
                raise

            self._public_url = base_url
        finally:
            self._starting = False

        info = TunnelInfo(
            public_url=build_public_url(base_url, target),
            local_port=target.port,
            direct_mapping=target.direct_mapping,
            original_url=target.original_url,
        )
        logger.info(f"Ngrok tunnel started: {info.public_url}")
        return info

    async def stop(self):
        process = self._process
        if process is None:
            raise TunnelNotRunningError("No tunnel is running")
        self._clear(process)
        await self._terminate(process)
        logger.info("Ngrok tunnel stopped")

    async def _spawn(self, port :int)->Process:
        try:
            return await anyio.open_process(
                [self.config.binary, "http", str(port)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            raise TunnelStartError(
                "ngrok command not found. Please install ngrok: https://ngrok.com/download"
            ) from exc

    async def _discover_url(self, process :Process)->str:
        async def find_url()->Optional[str]:
            if process.returncode is not None:
                raise TunnelStartError(f"ngrok exited with code {process.returncode} before publishing a URL")
            async with httpx.AsyncClient(timeout=self.config.poll_interval) as client:
                response = await client.get(self.config.api_url)
                response.raise_for_status()
                return find_https_tunnel(response.json().get("tunnels") or [])

        return await poll_until(
            find_url,
            description="the ngrok public URL",
            interval=self.config.poll_interval,
            initial_delay=self.config.startup_grace,
            timeout=self.config.startup_timeout,
            retry_on=(httpx.HTTPError, OSError, ValueError),
        )

    async def _watch_exit(self, process :Process):
        await process.wait()
        if self._process is process:
            logger.info(f"Ngrok process exited with code {process.returncode}")
            self._clear(process)

    def _clear(self, process :Process):
        if self._process is process:
            self._process = None
            self._public_url = None

    @staticmethod
    async def _terminate(process :Process):
        with anyio.CancelScope(shield=True):
            if process.returncode is None:
                process.terminate()
                with anyio.move_on_after(BRIDGE_SHUTDOWN_GRACE):
                    await process.wait()
                if process.returncode is None:
                    process.kill()
            await process.aclose()
