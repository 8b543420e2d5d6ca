"""Loggers for the client and the server

Anything with printf-style `info` and `error` methods works, including a
standard `logging.Logger`. The default logger discards everything.
"""

import sys
from typing import Protocol, TextIO, Optional


class Logger(Protocol):
    def info(self, fmt: str, *args) -> None: ...

    def error(self, fmt: str, *args) -> None: ...


class NullLogger:
    """Discards all messages"""

    def info(self, fmt: str, *args) -> None:
        pass

    def error(self, fmt: str, *args) -> None:
        pass


class StderrLogger:
    """Writes `[LEVEL] message` lines to stderr.

    A discovery must keep stdout for protocol traffic, so this is the logger
    to use on the server side.
    """

    def __init__(self, stream: Optional[TextIO] = None, prefix: str = ""):
        self.stream = stream
        self.prefix = prefix

    def info(self, fmt: str, *args) -> None:
        self._log("info", fmt, args)

    def error(self, fmt: str, *args) -> None:
        self._log("error", fmt, args)

    def _log(self, level: str, fmt: str, args) -> None:
        message = fmt % args if args else fmt
        stream = self.stream if self.stream is not None else sys.stderr
        print(f"{self.prefix}[{level.upper()}] {message}", file=stream, flush=True)
