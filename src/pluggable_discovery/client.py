"""Discovery Client - controller side of the pluggable discovery protocol

The Client spawns a discovery executable and drives it through its state
machine:

```
DEAD --run()--> IDLING --start()--> RUNNING
                  |                    |
                  +----start_sync()----+--> SYNCING
RUNNING/SYNCING --stop()--> IDLING
any --quit()--> DEAD
```

Every command is a single text line followed by a blocking wait for exactly
one reply. A daemon thread decodes the discovery's stdout: "add"/"remove"
events go to the EventChannel returned by start_sync(), every other envelope
is queued as the reply to the command in flight.

Commands must not overlap. A command that times out leaves its reply in
flight; if it arrives later it is taken as the reply to the next command.

Usage:
```python
from pluggable_discovery import Client

client = Client("builtin:serial-discovery", "/path/to/serial-discovery")
client.run()
events = client.start_sync(10)
for event in events:
    print(event)
```
"""

import queue
import subprocess
import threading
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pluggable_discovery.events import Event, EventChannel
from pluggable_discovery.logger import Logger, NullLogger
from pluggable_discovery.message import (
    EVENT_HELLO,
    EVENT_LIST,
    EVENT_START,
    EVENT_START_SYNC,
    EVENT_STOP,
    PROTOCOL_VERSION,
    Message,
    MessageDecoder,
    MessageError,
    PortMessage,
    encode_command,
    hello_command,
)
from pluggable_discovery.port import Port


# Reply timeout for HELLO, START, STOP, LIST and START_SYNC (seconds)
COMMAND_TIMEOUT = 10.0

# Reply timeout for QUIT (seconds)
QUIT_TIMEOUT = 5.0

DEFAULT_USER_AGENT = "pluggable-discovery-protocol-handler"


# =========================================================================
# Error types
# =========================================================================

class DiscoveryError(Exception):
    """Base error for the discovery client"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransportError(DiscoveryError):
    """Spawning, writing to or reading from the discovery failed"""
    pass


class CommandTimeoutError(DiscoveryError):
    """No reply arrived in time"""
    pass


class OutOfSyncError(DiscoveryError):
    """The reply does not match the command that was sent"""
    pass


class CommandFailedError(DiscoveryError):
    """The discovery replied with an error"""

    def __init__(self, detail: str):
        super().__init__(f"command failed: {detail}")
        self.detail = detail


class UnsupportedProtocolError(DiscoveryError):
    """The discovery speaks a newer protocol than this client"""

    def __init__(self, requested: int, got: int):
        super().__init__(f"protocol version not supported: requested {requested}, got {got}")
        self.requested = requested
        self.got = got


class MalformedMessageError(DiscoveryError):
    """The discovery sent something that is not a valid envelope"""
    pass


# =========================================================================
# State machine
# =========================================================================

class ClientState(Enum):
    DEAD = "dead"
    ALIVE = "alive"
    IDLING = "idling"
    RUNNING = "running"
    SYNCING = "syncing"


class ClientStateMachine:
    """State word and event channel of one client, behind one lock.

    All changes go through transition(). The decode thread and the caller
    thread both use it, so the channel swap on a start_sync reply and the
    teardown on stream death are never interleaved.
    """

    def __init__(self, discovery_id: str):
        self.discovery_id = discovery_id
        self._lock = threading.RLock()
        self._state = ClientState.DEAD
        self._events: Optional[EventChannel] = None
        self._pending_events: Optional[EventChannel] = None

    def snapshot(self) -> ClientState:
        with self._lock:
            return self._state

    def event_channel(self) -> Optional[EventChannel]:
        with self._lock:
            return self._events

    def transition(
        self,
        state: Optional[ClientState] = None,
        *,
        close_events: bool = False,
        events: Optional[EventChannel] = None,
    ) -> None:
        """Apply a state change.

        Args:
            state: New state, or None to keep the current one
            close_events: Close the active channel with a synthetic "stop"
            events: Channel replacing the active one (the old one is closed)
        """
        with self._lock:
            if (close_events or events is not None) and self._events is not None:
                self._events.close(Event.stop(self.discovery_id))
                self._events = None
            if events is not None:
                self._events = events
            if state is not None:
                self._state = state
            if state is ClientState.DEAD:
                self._pending_events = None

    def expect_sync(self, channel: EventChannel) -> None:
        """Register the channel to activate when the start_sync reply arrives"""
        with self._lock:
            self._pending_events = channel

    def sync_started(self) -> None:
        """Called by the decode thread on a successful start_sync reply"""
        with self._lock:
            channel, self._pending_events = self._pending_events, None
            if channel is not None:
                self.transition(ClientState.SYNCING, events=channel)

    def abandon_sync(self, channel: EventChannel) -> None:
        """Drop a channel whose start_sync call failed"""
        with self._lock:
            if self._pending_events is channel:
                self._pending_events = None
            elif self._events is channel:
                self.transition(close_events=True)


class _StreamClosed:
    """Queued in place of a reply once the decode thread has stopped"""

    def __init__(self, kind: type, reason: str):
        self.kind = kind
        self.reason = reason

    def error(self, command: str) -> DiscoveryError:
        return self.kind(f"calling {command}: {self.reason}")


def spawn_process(args: Sequence[str]) -> subprocess.Popen:
    """Default spawner: run the discovery with piped stdin/stdout"""
    return subprocess.Popen(
        list(args),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
    )


# =========================================================================
# Client
# =========================================================================

class Client:
    """Controller side of one discovery process.

    Args:
        discovery_id: Identifier of this discovery, copied into every Event
        *args: Executable and arguments of the discovery
        user_agent: Sent in the HELLO command after the discovery id
        logger: Receives progress and error messages (default: discard)
        command_timeout: Reply timeout for every command except QUIT
        quit_timeout: Reply timeout for QUIT
        spawn: Callable taking the argument list and returning an object
            with stdin, stdout, kill() and wait() (default: subprocess.Popen)
    """

    def __init__(
        self,
        discovery_id: str,
        *args: str,
        user_agent: str = DEFAULT_USER_AGENT,
        logger: Optional[Logger] = None,
        command_timeout: float = COMMAND_TIMEOUT,
        quit_timeout: float = QUIT_TIMEOUT,
        spawn: Optional[Callable] = None,
    ):
        self._id = discovery_id
        self.process_args = list(args)
        self.user_agent = user_agent
        self.logger = logger if logger is not None else NullLogger()
        self.command_timeout = command_timeout
        self.quit_timeout = quit_timeout
        self._spawn = spawn if spawn is not None else spawn_process
        self._process = None
        self._responses: Optional[queue.Queue] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._status = ClientStateMachine(discovery_id)

    @property
    def id(self) -> str:
        return self._id

    def set_user_agent(self, user_agent: str) -> None:
        self.user_agent = user_agent

    def set_logger(self, logger: Logger) -> None:
        self.logger = logger

    def state(self) -> ClientState:
        """Current state of the discovery"""
        return self._status.snapshot()

    def __str__(self) -> str:
        return self._id

    # -- commands ---------------------------------------------------------

    def run(self) -> None:
        """Start the discovery process and perform the HELLO handshake.

        This must be the first command. If the process starts but the
        handshake fails, the process is killed.

        Raises:
            DiscoveryError: If spawning or the handshake fails, or the id and
                user agent cannot be sent (nothing is spawned then)
        """
        try:
            hello = hello_command(PROTOCOL_VERSION, f"{self._id} {self.user_agent}")
        except ValueError as e:
            raise DiscoveryError(f"invalid HELLO for discovery {self._id}: {e}")

        self._start_process()
        try:
            self._send_command(hello)
            msg = self._wait_message("HELLO", self.command_timeout)
            self._check_reply(msg, EVENT_HELLO)
            if msg.protocol_version > PROTOCOL_VERSION:
                raise UnsupportedProtocolError(PROTOCOL_VERSION, msg.protocol_version)
        except Exception:
            try:
                self._kill_process()
            except OSError as e:
                self.logger.error("killing discovery %s after unsuccessful start: %s", self._id, e)
            raise
        self._status.transition(ClientState.IDLING)

    def start(self) -> None:
        """Start the discovery's internal port tracking (poll mode)"""
        self._send_command(encode_command("START"))
        msg = self._wait_message("START", self.command_timeout)
        self._check_reply(msg, EVENT_START)
        self._status.transition(ClientState.RUNNING)

    def stop(self) -> None:
        """Stop port tracking or event streaming.

        The active event channel, if any, is closed whatever the outcome.
        """
        try:
            self._send_command(encode_command("STOP"))
            msg = self._wait_message("STOP", self.command_timeout)
            self._check_reply(msg, EVENT_STOP)
        finally:
            self._status.transition(close_events=True)
        self._status.transition(ClientState.IDLING)

    def list(self) -> List[Port]:
        """Ports currently known to the discovery, in the order it reported them"""
        self._send_command(encode_command("LIST"))
        msg = self._wait_message("LIST", self.command_timeout)
        self._check_reply(msg, EVENT_LIST, require_ok=False)
        return list(msg.ports)

    def start_sync(self, capacity: int) -> EventChannel:
        """Put the discovery in event mode.

        The discovery reports every port change as an "add" or "remove"
        event, usually starting with an "add" burst for the ports present
        right now. Events arrive on the returned channel until the next
        stop(), start_sync() or quit(), or until the process dies; the
        channel then yields a final "stop" event and closes.

        The channel must be drained promptly: while it is full the decode
        thread waits, and replies to later commands wait behind it.

        Args:
            capacity: Number of events the channel buffers (at least 1)
        """
        channel = EventChannel(capacity)
        self._status.expect_sync(channel)
        try:
            self._send_command(encode_command("START_SYNC"))
            msg = self._wait_message("START_SYNC", self.command_timeout)
            self._check_reply(msg, EVENT_START_SYNC)
        except DiscoveryError:
            self._status.abandon_sync(channel)
            raise
        return channel

    def quit(self) -> None:
        """Terminate the discovery. Never raises; the process is always killed."""
        try:
            self._send_command(encode_command("QUIT"))
        except DiscoveryError as e:
            self.logger.info("sending QUIT to discovery %s: %s", self._id, e)
        try:
            self._wait_message("QUIT", self.quit_timeout)
        except DiscoveryError as e:
            self.logger.error("quitting discovery %s: %s", self._id, e)
        self._status.transition(close_events=True)
        try:
            self._kill_process()
        except OSError as e:
            self.logger.error("killing discovery %s: %s", self._id, e)
            self._status.transition(ClientState.DEAD)

    # -- process and pipes ------------------------------------------------

    def _start_process(self) -> None:
        self.logger.info("starting discovery %s process", self._id)
        try:
            process = self._spawn(self.process_args)
        except (OSError, ValueError) as e:
            raise TransportError(f"failed to start discovery {self._id}: {e}")

        responses: queue.Queue = queue.Queue()
        self._process = process
        self._responses = responses
        self._status.transition(ClientState.ALIVE)

        self._reader_thread = threading.Thread(
            target=self._decode_loop,
            args=(MessageDecoder(process.stdout), responses),
            name=f"discovery-{self._id}-decoder",
            daemon=True,
        )
        self._reader_thread.start()
        self.logger.info("started discovery %s process", self._id)

    def _kill_process(self) -> None:
        self.logger.info("killing discovery %s process", self._id)
        process = self._process
        if process is not None:
            process.kill()
            process.wait()
            if process.stdin is not None:
                try:
                    process.stdin.close()
                except OSError:
                    pass  # pipe already broken
            self._process = None
        reader = self._reader_thread
        if reader is not None:
            reader.join(timeout=self.quit_timeout)
            self._reader_thread = None
        # Left open only if the decode thread is still stuck in a read
        if process is not None and process.stdout is not None:
            if reader is None or not reader.is_alive():
                try:
                    process.stdout.close()
                except OSError:
                    pass
        self._status.transition(ClientState.DEAD, close_events=True)
        self.logger.info("killed discovery %s process", self._id)

    def _send_command(self, command: bytes) -> None:
        name = command.decode("ascii").strip()
        self.logger.info("sending command %s to discovery %s", name, self._id)
        process = self._process
        if process is None or process.stdin is None:
            raise TransportError(f"discovery {self._id} is not running")
        try:
            process.stdin.write(command)
            process.stdin.flush()
        except (OSError, ValueError) as e:
            self._status.transition(ClientState.DEAD, close_events=True)
            raise TransportError(f"sending {name} to discovery {self._id}: {e}")

    def _wait_message(self, command: str, timeout: float) -> Message:
        responses = self._responses
        if responses is None:
            raise TransportError(f"calling {command}: discovery {self._id} is not running")
        try:
            item = responses.get(timeout=timeout)
        except queue.Empty:
            raise CommandTimeoutError(f"calling {command}: timeout waiting for message from {self._id}")
        if isinstance(item, _StreamClosed):
            # Leave it for every later wait
            responses.put(item)
            raise item.error(command)
        return item

    @staticmethod
    def _check_reply(msg: Message, expected: str, require_ok: bool = True) -> None:
        if msg.event_type != expected:
            raise OutOfSyncError(f"event out of sync, expected '{expected}', received '{msg.event_type}'")
        if msg.error:
            raise CommandFailedError(msg.message)
        if require_ok and not msg.is_ok():
            raise OutOfSyncError(f"communication out of sync, expected 'OK', received '{msg.message}'")

    # -- decode thread ----------------------------------------------------

    def _decode_loop(self, decoder: MessageDecoder, responses: queue.Queue) -> None:
        while True:
            try:
                msg = decoder.next_message()
            except MessageError as e:
                self._close_stream(responses, _StreamClosed(MalformedMessageError, e.message))
                self.logger.error("stopped discovery %s decode loop: %s", self._id, e)
                return
            except (OSError, ValueError) as e:
                self._close_stream(responses, _StreamClosed(TransportError, str(e)))
                self.logger.error("stopped discovery %s decode loop: %s", self._id, e)
                return

            if msg is None:
                self._close_stream(responses, _StreamClosed(TransportError, "EOF"))
                self.logger.info("discovery %s closed its output", self._id)
                return

            self.logger.info("from discovery %s received message %s", self._id, msg)
            if isinstance(msg, PortMessage):
                channel = self._status.event_channel()
                if channel is not None:
                    channel.put(Event(msg.event_type, msg.port, self._id))
                continue

            if msg.event_type == EVENT_START_SYNC and not msg.error and msg.is_ok():
                self._status.sync_started()
            responses.put(msg)

    def _close_stream(self, responses: queue.Queue, closed: _StreamClosed) -> None:
        # DEAD first, so a waiter woken by the sentinel already sees it
        self._status.transition(ClientState.DEAD, close_events=True)
        responses.put(closed)
