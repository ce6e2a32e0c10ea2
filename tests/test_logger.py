import pytest
import os

from loguru import logger

from agentrelay.logger import Logger

@pytest.fixture
def temp_dir(tmp_path):
    """Fixture to provide a temporary directory for logs"""
    return str(tmp_path)

@pytest.fixture(autouse=True)
def restore_sinks():
    yield
    Logger(logs_dir=None).configure()

def test_logger_initialization(temp_dir):
    """Test level normalisation and that nothing is installed before configure()"""
    log = Logger(logs_dir=temp_dir, level="debug")
    assert log.level == "DEBUG"
    assert log.sink_ids == []

def test_configure_without_logs_dir():
    log = Logger(logs_dir=None).configure()
    assert len(log.sink_ids) == 1

def test_session_records_reach_daily_file(temp_dir):
    log = Logger(logs_dir=temp_dir, level="DEBUG").configure()
    assert len(log.sink_ids) == 2

    Logger.for_session("01HSESSION").info("relay started")
    logger.info("no session bound")
    logger.complete()

    files = os.listdir(temp_dir)
    assert len(files) == 1
    assert files[0].endswith(".log")

    with open(os.path.join(temp_dir, files[0]), "r") as _file:
        content = _file.read()
    assert "| 01HSESSION | relay started" in content
    assert "| - | no session bound" in content

def test_configure_is_repeatable(temp_dir):
    log = Logger(logs_dir=temp_dir)
    first = log.configure().sink_ids
    second = log.configure().sink_ids
    assert len(first) == len(second) == 2
