from typing import Optional
from loguru import logger
import sys
import os

from agentrelay.const import DEFAULT_LOGS_DIR, DEFAULT_LOG_LEVEL

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[session_id]} | {message}"

class Logger:
    def __init__(self, logs_dir :Optional[str]=DEFAULT_LOGS_DIR, level :str=DEFAULT_LOG_LEVEL):
        """
        Initialize the logger object.
        :param logs_dir: Directory where log files will be stored. ``None`` keeps logs on stderr only.
        :param level: Minimum level emitted by every sink.
        """
        self.logs_dir = logs_dir
        self.level = level.upper()
        self.sink_ids = []

    def configure(self)->"Logger":
        """
        (Re)install the loguru sinks. Safe to call more than once.
        """
        logger.remove()  # Remove default logging to stderr
        logger.configure(extra={"session_id": "-"})
        self.sink_ids = [
            logger.add(sys.stderr, format=LOG_FORMAT, level=self.level, enqueue=False)
        ]

        if self.logs_dir:
            os.makedirs(self.logs_dir, exist_ok=True)
            log_file_path = os.path.join(self.logs_dir, "{time:YYYY-MM-DD}.log")
            self.sink_ids.append(logger.add(
                log_file_path,
                format=LOG_FORMAT,
                level=self.level,
                rotation="00:00",
                retention="7 days",
                enqueue=True,
                serialize=False,
            ))
        return self

    @staticmethod
    def for_session(session_id :str):
        return logger.bind(session_id=session_id)

logger.configure(extra={"session_id": "-"})
