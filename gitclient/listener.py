"""Progress sinks. Commands write human-readable progress text to a listener."""

import logging
from typing import Protocol, TextIO

logger = logging.getLogger(__name__)


class TaskListener(Protocol):
    """Anything accepting progress text."""

    def write(self, text: str) -> None: ...


class LoggingListener:
    """Forwards progress text to the ``gitclient`` logger, one record per line."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def write(self, text: str) -> None:
        for line in text.splitlines():
            if line.strip():
                logger.log(self.level, line)


class StreamListener:
    """Writes progress text to a text stream such as a build log."""

    def __init__(self, stream: TextIO):
        self.stream = stream

    def write(self, text: str) -> None:
        if not text.endswith("\n"):
            text += "\n"
        self.stream.write(text)
        self.stream.flush()
