"""Sinks receiving every raw protocol line, for debugging."""
from __future__ import annotations

import abc
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)

RAW_LOGGER_NAME = "chatbridge.raw"


class RawStreamSink(abc.ABC):
    """Receives raw stdout lines before they are parsed."""

    @abc.abstractmethod
    def write(self, session_id: str, line: str) -> None:
        ...

    def close(self) -> None:
        pass


class NullRawSink(RawStreamSink):
    def write(self, session_id: str, line: str) -> None:
        pass


class LoggingRawSink(RawStreamSink):
    """Forwards raw lines to the ``chatbridge.raw`` logger at DEBUG.

    When *path* is given the lines also go to a dedicated rotating file
    and stop propagating to the root handlers.
    """

    def __init__(self, path: str | None = None) -> None:
        self._logger = logging.getLogger(RAW_LOGGER_NAME)
        self._handler: RotatingFileHandler | None = None
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._handler = RotatingFileHandler(
                path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
            )
            self._handler.setFormatter(
                logging.Formatter("%(asctime)s %(message)s")
            )
            self._logger.addHandler(self._handler)
            self._logger.setLevel(logging.DEBUG)
            self._logger.propagate = False
            logger.info("Raw protocol lines written to %s", path)

    def write(self, session_id: str, line: str) -> None:
        self._logger.debug("[%s] %s", session_id[:8], line)

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
            self._logger.propagate = True
