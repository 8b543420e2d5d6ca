"""Discovery Server - subprocess side of the pluggable discovery protocol

A discovery executable implements the Discovery interface and hands it to a
Server, which reads commands from stdin and writes JSON envelopes to stdout:

```python
from pluggable_discovery import Discovery, Server

class SerialDiscovery(Discovery):
    ...

if __name__ == "__main__":
    Server(SerialDiscovery()).run()
```

Command handling runs on the caller's thread, fed with lines by an input
thread. Everything written to stdout goes through one output thread fed by a
queue: replies queued by the command loop and port changes queued by the
implementation's callbacks, which may fire from any thread. The output
thread also owns the port registry, so a LIST reply is a snapshot taken
exactly between the events written before and after it. A failed write wakes
the command loop, which stops the implementation and raises OutputError.

Modes:
- START runs the implementation with callbacks that only feed the registry
  (poll mode, the client asks with LIST).
- START_SYNC runs it with callbacks that also emit "add"/"remove" events.
"""

import queue
import re
import sys
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, List, Optional, Tuple

from pluggable_discovery.logger import Logger, NullLogger
from pluggable_discovery.message import (
    EVENT_ADD,
    EVENT_COMMAND_ERROR,
    EVENT_HELLO,
    EVENT_LIST,
    EVENT_QUIT,
    EVENT_START,
    EVENT_START_SYNC,
    EVENT_STOP,
    PORT_EVENTS,
    PROTOCOL_VERSION,
    HelloMessage,
    ListMessage,
    Message,
    PortMessage,
    encode_message,
)
from pluggable_discovery.port import Port


EventCallback = Callable[[str, Port], None]
ErrorCallback = Callable[[str], None]

_HELLO_ARGS = re.compile(r'^(\d+) "([^"]+)"$')

_MODE_POLL = "poll"
_MODE_SYNC = "sync"


class ServerError(Exception):
    """Base error for the discovery server"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OutputError(ServerError):
    """Writing to the client failed"""
    pass


class Discovery(ABC):
    """What a discovery implementation must provide.

    Every method signals failure by raising; the exception text is sent to
    the client in an error envelope.
    """

    @abstractmethod
    def hello(self, user_agent: str, protocol_version: int) -> None:
        """Handshake; user_agent identifies the client"""

    @abstractmethod
    def start_sync(self, event_cb: EventCallback, error_cb: ErrorCallback) -> None:
        """Begin reporting port changes.

        Call event_cb("add", port) / event_cb("remove", port) for every
        change, starting with the ports present right now, and error_cb(text)
        if reporting cannot continue. Both may be called from any thread and
        must not be called after stop() returns.
        """

    @abstractmethod
    def stop(self) -> None:
        """Stop reporting port changes"""

    @abstractmethod
    def quit(self) -> None:
        """Release resources before the process exits"""


class PortRegistry:
    """Ports currently present, keyed by (address, protocol), in arrival order"""

    def __init__(self):
        self._ports: "OrderedDict[Tuple[str, str], Port]" = OrderedDict()

    def add(self, port: Port) -> None:
        self._ports[port.key] = port

    def remove(self, port: Port) -> None:
        self._ports.pop(port.key, None)

    def clear(self) -> None:
        self._ports.clear()

    def snapshot(self) -> List[Port]:
        return list(self._ports.values())

    def __contains__(self, port: Port) -> bool:
        return port.key in self._ports

    def __len__(self) -> int:
        return len(self._ports)


# =========================================================================
# Output queue items
# =========================================================================

@dataclass
class _Reply:
    message: Message


@dataclass
class _PortChanged:
    session: "_SyncSession"
    event_type: str
    port: Port


@dataclass
class _SyncFailed:
    session: "_SyncSession"
    message: str


class _ListRequest:
    pass


class _ResetRegistry:
    pass


_SHUTDOWN = None

# Input queue markers, besides command lines
_END_OF_INPUT = None
_WRITE_FAILED = object()


class _SyncSession:
    """Callbacks handed to one start_sync() call of the implementation.

    Changes reported before accept() are held back so the command reply is
    always written first. After end() callbacks are ignored.
    """

    def __init__(self, output: queue.Queue, emit: bool):
        self.emit = emit
        self._output = output
        self._lock = threading.Lock()
        self._active = True
        self._accepted = False
        self._backlog: List[Any] = []

    def event_callback(self, event_type: str, port: Port) -> None:
        if event_type not in PORT_EVENTS:
            raise ValueError(f"invalid event type '{event_type}', expected 'add' or 'remove'")
        if not isinstance(port, Port):
            raise TypeError(f"expected Port, got {type(port).__name__}")
        self._push(_PortChanged(self, event_type, port))

    def error_callback(self, message: str) -> None:
        self._push(_SyncFailed(self, message), last=True)

    def _push(self, item, last: bool = False) -> None:
        with self._lock:
            if not self._active:
                return
            if self._accepted:
                self._output.put(item)
            else:
                self._backlog.append(item)
            if last:
                self._active = False

    def accept(self) -> None:
        with self._lock:
            self._accepted = True
            for item in self._backlog:
                self._output.put(item)
            self._backlog.clear()

    def end(self) -> None:
        with self._lock:
            self._active = False
            self._backlog.clear()


# =========================================================================
# Server
# =========================================================================

class Server:
    """Runs the discovery protocol on behalf of a Discovery implementation."""

    def __init__(self, discovery: Discovery, logger: Optional[Logger] = None):
        self.discovery = discovery
        self.logger = logger if logger is not None else NullLogger()
        self.user_agent = ""
        self.protocol_version = 0
        self._initialized = False
        self._mode: Optional[str] = None
        self._session: Optional[_SyncSession] = None
        self._output: queue.Queue = queue.Queue()
        self._input: queue.Queue = queue.Queue()
        self._write_error: Optional[BaseException] = None
        self._registry = PortRegistry()
        self._sync_error = ""

    def run(self, reader: Optional[BinaryIO] = None, writer: Optional[BinaryIO] = None) -> None:
        """Serve commands until QUIT or end of input.

        Args:
            reader: Command stream (default: stdin)
            writer: Envelope stream (default: stdout)

        Raises:
            OutputError: If writing to the client fails
        """
        reader = reader if reader is not None else sys.stdin.buffer
        writer = writer if writer is not None else sys.stdout.buffer

        self._output = queue.Queue()
        self._input = queue.Queue()
        self._write_error = None
        output_thread = threading.Thread(
            target=self._output_loop, args=(writer,), name="discovery-output", daemon=True
        )
        output_thread.start()
        # Daemon: may stay blocked in readline() after run() returns
        threading.Thread(
            target=self._input_loop, args=(reader,), name="discovery-input", daemon=True
        ).start()

        try:
            while True:
                line = self._input.get()
                if line is _END_OF_INPUT:
                    self.logger.info("command input closed")
                    break
                if line is _WRITE_FAILED:
                    self._halt_after_write_failure()
                    break
                if not self._dispatch(line.decode("utf-8", errors="replace").strip()):
                    break
        finally:
            self._end_session()
            self._output.put(_SHUTDOWN)
            output_thread.join()
        self._check_output()

    def _input_loop(self, reader: BinaryIO) -> None:
        try:
            for line in iter(reader.readline, b""):
                self._input.put(line)
        except (OSError, ValueError) as e:
            self.logger.error("reading commands failed: %s", e)
        finally:
            self._input.put(_END_OF_INPUT)

    def _halt_after_write_failure(self) -> None:
        if self._mode is None:
            return
        try:
            self.discovery.stop()
        except Exception as e:
            self.logger.error("stop after write failure: %s", e)

    # -- commands ---------------------------------------------------------

    def _dispatch(self, line: str) -> bool:
        """Handle one command line. Returns False when the server must exit."""
        self.logger.info("received command %s", line)
        verb, _, args = line.partition(" ")
        cmd = verb.upper()

        if not self._initialized and cmd not in ("HELLO", "QUIT"):
            self._reply(Message.failure(
                EVENT_COMMAND_ERROR, f"First command must be HELLO, but got '{cmd}'"
            ))
            return True

        if cmd == "HELLO":
            self._hello(args.strip())
        elif cmd == "START":
            self._start()
        elif cmd == "LIST":
            self._output.put(_ListRequest())
        elif cmd == "START_SYNC":
            self._start_sync()
        elif cmd == "STOP":
            self._stop()
        elif cmd == "QUIT":
            self._quit()
            return False
        else:
            self._reply(Message.failure(EVENT_COMMAND_ERROR, f"Command {cmd} not supported"))
        return True

    def _hello(self, args: str) -> None:
        if self._initialized:
            self._reply(Message.failure(EVENT_HELLO, "HELLO already called"))
            return
        match = _HELLO_ARGS.match(args)
        if match is None:
            self._reply(Message.failure(EVENT_HELLO, "Invalid HELLO command"))
            return
        version = int(match.group(1))
        user_agent = match.group(2)
        if version != PROTOCOL_VERSION:
            self._reply(Message.failure(
                EVENT_HELLO,
                f"Unsupported protocol version: {version} (supported: {PROTOCOL_VERSION})",
            ))
            return
        try:
            self.discovery.hello(user_agent, version)
        except Exception as e:
            self.logger.error("hello failed: %s", e)
            self._reply(Message.failure(EVENT_HELLO, str(e)))
            return
        self.user_agent = user_agent
        self.protocol_version = version
        self._initialized = True
        self._reply(HelloMessage(EVENT_HELLO, "OK", protocol_version=PROTOCOL_VERSION))

    def _start(self) -> None:
        if self._mode == _MODE_POLL:
            self._reply(Message.failure(EVENT_START, "Discovery already STARTed"))
            return
        if self._mode == _MODE_SYNC:
            self._reply(Message.failure(EVENT_START, "Discovery already START_SYNCed, cannot START"))
            return
        self._begin_session(EVENT_START, _MODE_POLL, "Cannot START")

    def _start_sync(self) -> None:
        if self._mode is not None:
            # Restart: the implementation gets a fresh start_sync
            try:
                self.discovery.stop()
            except Exception as e:
                self.logger.error("reset failed: %s", e)
                self._reply(Message.failure(EVENT_START_SYNC, f"Cannot reset: {e}"))
                return
            self._end_session()
        self._begin_session(EVENT_START_SYNC, _MODE_SYNC, "Cannot START_SYNC")

    def _begin_session(self, event_type: str, mode: str, failure: str) -> None:
        self._output.put(_ResetRegistry())
        session = _SyncSession(self._output, emit=(mode == _MODE_SYNC))
        try:
            self.discovery.start_sync(session.event_callback, session.error_callback)
        except Exception as e:
            session.end()
            self.logger.error("%s: %s", failure, e)
            self._reply(Message.failure(event_type, f"{failure}: {e}"))
            return
        self._mode = mode
        self._session = session
        self._reply(Message.ok(event_type))
        session.accept()

    def _stop(self) -> None:
        if self._mode is None:
            self._reply(Message.failure(EVENT_STOP, "Discovery already STOPped"))
            return
        try:
            self.discovery.stop()
        except Exception as e:
            self.logger.error("stop failed: %s", e)
            self._reply(Message.failure(EVENT_STOP, f"Cannot STOP: {e}"))
            return
        self._end_session()
        self._reply(Message.ok(EVENT_STOP))

    def _quit(self) -> None:
        try:
            self.discovery.quit()
        except Exception as e:
            self.logger.error("quit failed: %s", e)
        self._end_session()
        self._reply(Message.ok(EVENT_QUIT))

    def _end_session(self) -> None:
        if self._session is not None:
            self._session.end()
            self._session = None
        self._mode = None

    def _reply(self, message: Message) -> None:
        self._output.put(_Reply(message))

    def _check_output(self) -> None:
        if self._write_error is not None:
            raise OutputError(f"write failed: {self._write_error}")

    # -- output thread ----------------------------------------------------

    def _output_loop(self, writer: BinaryIO) -> None:
        while True:
            item = self._output.get()
            if item is _SHUTDOWN:
                return
            try:
                self._handle_output(item, writer)
            except (OSError, ValueError) as e:
                self._write_error = e
                self.logger.error("writing to client failed: %s", e)
                self._input.put(_WRITE_FAILED)
                return

    def _handle_output(self, item, writer: BinaryIO) -> None:
        if isinstance(item, _Reply):
            self._write(writer, item.message)

        elif isinstance(item, _PortChanged):
            if item.event_type == EVENT_ADD:
                self._registry.add(item.port)
            else:
                self._registry.remove(item.port)
            if item.session.emit:
                self._write(writer, PortMessage(item.event_type, port=item.port))

        elif isinstance(item, _SyncFailed):
            if item.session.emit:
                self._write(writer, Message.failure(EVENT_START_SYNC, item.message))
            else:
                self._sync_error = item.message

        elif isinstance(item, _ListRequest):
            if self._sync_error:
                self._write(writer, Message.failure(EVENT_LIST, self._sync_error))
            else:
                self._write(writer, ListMessage(EVENT_LIST, ports=self._registry.snapshot()))

        elif isinstance(item, _ResetRegistry):
            self._registry.clear()
            self._sync_error = ""

    @staticmethod
    def _write(writer: BinaryIO, message: Message) -> None:
        writer.write(encode_message(message))
        writer.flush()
