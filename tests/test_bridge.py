import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import anyio
import httpx

from agentrelay.models import BridgeExitedError, StartupTimeoutError, TransportConfigError
from agentrelay.transports.bridge import BridgeProcess, build_user_command, merge_environment, read_lines

@pytest.fixture
def bridge():
    return BridgeProcess(
        command="node",
        args="server.js --name 'my server'",
        env={"PATH": "/usr/bin"},
        port=9200,
        ready_attempts=3,
        ready_interval=0.01,
    )

def fake_process(stderr=None, returncode=None):
    process = MagicMock()
    process.returncode = returncode

    async def wait():
        process.returncode = 0

    process.stderr = stderr
    process.wait = AsyncMock(side_effect=wait)
    process.aclose = AsyncMock()
    return process

def test_build_user_command_tokenizes_args():
    assert build_user_command("node", "server.js --name 'my server'") == "node server.js --name 'my server'"
    assert build_user_command(" uvx ", "") == "uvx"

def test_build_user_command_requires_command():
    with pytest.raises(TransportConfigError):
        build_user_command("  ", "server.js")

def test_merge_environment_precedence():
    env = merge_environment(
        {"A": "host", "B": "host", "NPM_CONFIG_LOGLEVEL": "verbose"},
        {"B": "default", "C": "default"},
        {"C": "request"},
    )
    assert env == {
        "A": "host",
        "B": "default",
        "C": "request",
        "NPM_CONFIG_LOGLEVEL": "silent",
        "NPM_CONFIG_UPDATE_NOTIFIER": "false",
    }

def test_build_command_line(bridge):
    assert bridge.build_command_line() == [
        "npx", "-y", "supergateway",
        "--stdio", "node server.js --name 'my server'",
        "--port", "9200",
        "--baseUrl", "http://localhost:9200",
        "--ssePath", "/sse",
        "--messagePath", "/message",
        "--logLevel", "none",
    ]
    assert bridge.sse_url == "http://localhost:9200/sse"

@pytest.mark.asyncio
async def test_start_with_missing_bridge_binary():
    bridge = BridgeProcess(command="node", bridge_command="agentrelay-missing-binary-for-tests")
    with pytest.raises(TransportConfigError):
        await bridge.start()

@pytest.mark.asyncio
async def test_wait_until_ready_after_retries(bridge):
    check = AsyncMock(side_effect=[httpx.ConnectError("refused"), httpx.ReadTimeout("slow"), True])
    with patch.object(bridge, "_check_endpoint", check):
        await bridge.wait_until_ready()
    assert bridge.ready
    assert check.await_count == 3

@pytest.mark.asyncio
async def test_wait_until_ready_gives_up_after_attempt_budget(bridge):
    check = AsyncMock(side_effect=httpx.ConnectError("refused"))
    with patch.object(bridge, "_check_endpoint", check):
        with pytest.raises(StartupTimeoutError) as exc_info:
            await bridge.wait_until_ready()
    assert check.await_count == 3
    assert "Supergateway failed to start on port 9200" in str(exc_info.value)
    assert not bridge.ready

@pytest.mark.asyncio
async def test_endpoint_check_fails_fast_when_process_exited(bridge):
    bridge.process = fake_process(returncode=1)
    with pytest.raises(BridgeExitedError):
        await bridge._check_endpoint()

@pytest.mark.asyncio
async def test_wait_until_ready_stops_when_process_exited(bridge):
    bridge.process = fake_process(returncode=127)
    with pytest.raises(BridgeExitedError) as exc_info:
        await bridge.wait_until_ready()
    assert "exited with code 127" in str(exc_info.value)

async def byte_stream(chunks):
    writer, reader = anyio.create_memory_object_stream(len(chunks) or 1)
    for chunk in chunks:
        await writer.send(chunk)
    writer.close()
    return reader

@pytest.mark.asyncio
async def test_read_lines_rejoins_lines_split_across_reads():
    cafe = "café\n".encode("utf8")
    stream = await byte_stream([
        b"npm warn\nError: code: 'MODULE_",
        b"NOT_FOUND'\n" + cafe[:4],
        cafe[4:] + b"tail",
    ])
    lines = [line async for line in read_lines(stream)]
    assert lines == ["npm warn\n", "Error: code: 'MODULE_NOT_FOUND'\n", "café\n", "tail"]

@pytest.mark.asyncio
async def test_stderr_is_drained_from_spawn(bridge):
    stderr = await byte_stream([b"downloading supergateway\n", b"ready\n"])
    process = fake_process(stderr=stderr)
    with patch("agentrelay.transports.bridge.anyio.open_process", AsyncMock(return_value=process)):
        async with bridge:
            with anyio.fail_after(2):
                while stderr.statistics().current_buffer_used:
                    await anyio.sleep(0.01)
            lines = [line async for line in bridge.diagnostics()]

    assert lines == ["downloading supergateway\n", "ready\n"]
    process.terminate.assert_called_once()

@pytest.mark.asyncio
async def test_diagnostics_without_process(bridge):
    assert [chunk async for chunk in bridge.diagnostics()] == []

@pytest.mark.asyncio
async def test_aclose_terminates_running_process(bridge):
    process = fake_process()
    bridge.process = process
    await bridge.aclose()

    process.terminate.assert_called_once()
    process.kill.assert_not_called()
    process.aclose.assert_awaited_once()
    assert bridge.process is None

@pytest.mark.asyncio
async def test_aclose_kills_process_ignoring_terminate(bridge):
    process = fake_process()
    process.wait = AsyncMock()
    bridge.process = process
    await bridge.aclose()

    process.kill.assert_called_once()
