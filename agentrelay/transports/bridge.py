"""
agentrelay.transports.bridge
============================
Supervision of the local bridging process.

A ``stdio`` connection request names a program that speaks the agent
protocol over its standard streams. Rather than driving those streams
directly, the relay launches ``supergateway`` (through ``npx``), which runs
the program and republishes it as an SSE endpoint on a local port. The
relay then talks to that endpoint like any other remote SSE server.

Because ``npx`` may have to download both supergateway and the target
program on first use, readiness is not assumed: the endpoint is checked once
per interval for a bounded number of attempts before giving up.

The bridge's error stream is read from the moment it is spawned and split
into lines, so the pipe never fills up while readiness is still pending and
markers are never cut in half by a read boundary.
"""

from typing import AsyncIterator, Dict, List, Mapping, Optional
import subprocess
import shlex
import math
import os

from loguru import logger
import anyio
from anyio.abc import ByteReceiveStream, Process
from anyio.streams.text import TextReceiveStream
import httpx

from agentrelay.const import (
    BRIDGE_COMMAND,
    BRIDGE_MESSAGE_PATH,
    BRIDGE_PACKAGE,
    BRIDGE_CHECK_TIMEOUT,
    BRIDGE_READY_ATTEMPTS,
    BRIDGE_READY_INTERVAL,
    BRIDGE_SHUTDOWN_GRACE,
    BRIDGE_SSE_PATH,
    DEFAULT_ENCODING,
    QUIET_NPM_ENVIRONMENT,
)
from agentrelay.models import BridgeExitedError, StartupTimeoutError, TransportConfigError
from agentrelay.transports.base import ServerTransport, TransportKind
from agentrelay.utils import poll_until

def merge_environment(host :Mapping[str, str],
                      defaults :Mapping[str, str],
                      overrides :Mapping[str, str])->Dict[str, str]:
    """Layer host < defaults < overrides, then force npm into quiet mode."""
    return {**host, **defaults, **overrides, **QUIET_NPM_ENVIRONMENT}

def build_user_command(command :str, args :str="")->str:
    """Join the command and its shell-tokenized argument string into one command line."""
    if not command or not command.strip():
        raise TransportConfigError("A command is required for the stdio transport")
    tokens = shlex.split(args or "")
    return shlex.join([command.strip(), *tokens])

async def read_lines(stream :ByteReceiveStream, encoding :str=DEFAULT_ENCODING)->AsyncIterator[str]:
    """Decode ``stream`` and yield it one line at a time, line endings included."""
    buffer = ""
    async for text in TextReceiveStream(stream, encoding=encoding, errors="replace"):
        buffer += text
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line + "\n"
    if buffer:
        yield buffer

class BridgeProcess:
    def __init__(self,
                 command :str,
                 args :str="",
                 env :Optional[Mapping[str, str]]=None,
                 port :int=8742,
                 bridge_command :str=BRIDGE_COMMAND,
                 package :str=BRIDGE_PACKAGE,
                 ready_attempts :int=BRIDGE_READY_ATTEMPTS,
                 ready_interval :float=BRIDGE_READY_INTERVAL,
                 check_timeout :float=BRIDGE_CHECK_TIMEOUT):
        self.user_command = build_user_command(command, args)
        self.env = dict(env if env is not None else os.environ)
        self.port = port
        self.bridge_command = bridge_command
        self.package = package
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self.check_timeout = check_timeout
        self.process :Optional[Process] = None
        self.ready = False
        self._task_group = None
        self._diagnostics_writer = None
        self._diagnostics_reader = None

    @property
    def base_url(self)->str:
        return f"http://localhost:{self.port}"

    @property
    def sse_url(self)->str:
        return f"{self.base_url}{BRIDGE_SSE_PATH}"

    @property
    def returncode(self)->Optional[int]:
        return None if self.process is None else self.process.returncode

    def build_command_line(self)->List[str]:
        return [
            self.bridge_command,
            "-y",
            self.package,
            "--stdio",
            self.user_command,
            "--port",
            str(self.port),
            "--baseUrl",
            self.base_url,
            "--ssePath",
            BRIDGE_SSE_PATH,
            "--messagePath",
            BRIDGE_MESSAGE_PATH,
            "--logLevel",
            "none",
        ]

    async def start(self):
        logger.info(f"STDIO transport: Starting supergateway for command: {self.user_command}")
        logger.info(f"Supergateway will be available at: {self.sse_url}")
        try:
            self.process = await anyio.open_process(
                self.build_command_line(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=self.env,
            )
        except FileNotFoundError as exc:
            raise TransportConfigError(
                f"'{self.bridge_command}' not found. Install Node.js to use the stdio transport."
            ) from exc

    async def _check_endpoint(self)->Optional[bool]:
        if self.process is not None and self.process.returncode is not None:
            raise BridgeExitedError.from_returncode(self.process.returncode, self.port)

        async with httpx.AsyncClient(timeout=self.check_timeout) as client:
            # Any response, even an error status, means the port is listening.
            async with client.stream("GET", self.sse_url, headers={"Accept": "text/event-stream"}):
                return True

    async def wait_until_ready(self):
        logger.info(f"Waiting for supergateway to start on port {self.port}...")
        try:
            await poll_until(
                self._check_endpoint,
                description=f"supergateway on port {self.port}",
                max_attempts=self.ready_attempts,
                interval=self.ready_interval,
                initial_delay=self.ready_interval,
            )
        except StartupTimeoutError as exc:
            raise StartupTimeoutError(
                f"Supergateway failed to start on port {self.port} after {int(self.ready_attempts * self.ready_interval)} seconds"
            ) from exc
        self.ready = True
        logger.info(f"Supergateway is ready on port {self.port}")

    async def _pump_stderr(self):
        """Drain the error pipe from spawn onwards, buffering whole lines for :meth:`diagnostics`."""
        stream = None if self.process is None else self.process.stderr
        async with self._diagnostics_writer:
            if stream is None:
                return
            try:
                async for line in read_lines(stream):
                    logger.debug(f"supergateway stderr: {line.rstrip()}")
                    await self._diagnostics_writer.send(line)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                return

    async def diagnostics(self)->AsyncIterator[str]:
        """Yield the lines written by the bridge to its error stream."""
        if self._diagnostics_reader is None:
            return
        async for line in self._diagnostics_reader:
            yield line

    async def aclose(self):
        process, self.process = self.process, None
        self.ready = False
        if process is None:
            return

        with anyio.CancelScope(shield=True):
            if process.returncode is None:
                process.terminate()
                with anyio.move_on_after(BRIDGE_SHUTDOWN_GRACE):
                    await process.wait()
                if process.returncode is None:
                    logger.warning(f"Supergateway on port {self.port} ignored SIGTERM, killing it")
                    process.kill()
            await process.aclose()
        logger.info(f"Supergateway on port {self.port} stopped")

    async def __aenter__(self)->"BridgeProcess":
        await self.start()
        self._diagnostics_writer, self._diagnostics_reader = anyio.create_memory_object_stream(math.inf)
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._pump_stderr)
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
        task_group, self._task_group = self._task_group, None
        task_group.cancel_scope.cancel()
        # The pump never raises, so the body's own exception is left to propagate untouched.
        await task_group.__aexit__(None, None, None)

class StdioBridgeTransport(ServerTransport):
    """Server-facing transport reached through a supervised bridging process."""
    kind = TransportKind.STDIO

    def __init__(self, read_stream, write_stream, bridge :BridgeProcess):
        super().__init__(read_stream, write_stream)
        self.bridge = bridge

    def diagnostics(self)->AsyncIterator[str]:
        return self.bridge.diagnostics()
