from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("sftptools")


class Reporter(Protocol):
    """Receives user-facing progress and outcome messages from the orchestrator."""

    def info(self, message: str, server: str | None = None) -> None: ...

    def warning(self, message: str, server: str | None = None) -> None: ...

    def error(self, message: str, server: str | None = None) -> None: ...


def _prefix(message: str, server: str | None) -> str:
    return f"[{server}] {message}" if server else message


class LoggingReporter:
    """Default reporter: forwards every message to the ``sftptools`` logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def info(self, message: str, server: str | None = None) -> None:
        self.log.info(_prefix(message, server))

    def warning(self, message: str, server: str | None = None) -> None:
        self.log.warning(_prefix(message, server))

    def error(self, message: str, server: str | None = None) -> None:
        self.log.error(_prefix(message, server))
