"""Pluggable Discovery - protocol engine for port discovery subprocesses

A controller talks to a discovery executable over the executable's
stdin/stdout: text commands one way, JSON envelopes the other. This package
implements both ends:

- Client: spawns the discovery, runs the handshake, issues commands and
  delivers "add"/"remove" events on an EventChannel
- Server: runs inside the discovery executable and turns commands into calls
  on a Discovery implementation
"""

from pluggable_discovery.port import PORT_SCHEMA, Port, InvalidPortError

from pluggable_discovery.message import (
    PROTOCOL_VERSION,
    ENVELOPE_SCHEMA,
    Message,
    HelloMessage,
    ListMessage,
    PortMessage,
    MessageDecoder,
    MessageError,
    DecodeError,
    InvalidMessageError,
    decode_message,
    encode_message,
    encode_command,
    hello_command,
)

from pluggable_discovery.events import Event, EventChannel, EventChannelClosed

from pluggable_discovery.logger import Logger, NullLogger, StderrLogger

from pluggable_discovery.client import (
    COMMAND_TIMEOUT,
    QUIT_TIMEOUT,
    DEFAULT_USER_AGENT,
    Client,
    ClientState,
    DiscoveryError,
    TransportError,
    CommandTimeoutError,
    OutOfSyncError,
    CommandFailedError,
    UnsupportedProtocolError,
    MalformedMessageError,
)

from pluggable_discovery.server import (
    Discovery,
    Server,
    PortRegistry,
    ServerError,
    OutputError,
    EventCallback,
    ErrorCallback,
)

__all__ = [
    "Port",
    "InvalidPortError",
    "PORT_SCHEMA",
    "PROTOCOL_VERSION",
    "ENVELOPE_SCHEMA",
    "Message",
    "HelloMessage",
    "ListMessage",
    "PortMessage",
    "MessageDecoder",
    "MessageError",
    "DecodeError",
    "InvalidMessageError",
    "decode_message",
    "encode_message",
    "encode_command",
    "hello_command",
    "Event",
    "EventChannel",
    "EventChannelClosed",
    "Logger",
    "NullLogger",
    "StderrLogger",
    "COMMAND_TIMEOUT",
    "QUIT_TIMEOUT",
    "DEFAULT_USER_AGENT",
    "Client",
    "ClientState",
    "DiscoveryError",
    "TransportError",
    "CommandTimeoutError",
    "OutOfSyncError",
    "CommandFailedError",
    "UnsupportedProtocolError",
    "MalformedMessageError",
    "Discovery",
    "Server",
    "PortRegistry",
    "ServerError",
    "OutputError",
    "EventCallback",
    "ErrorCallback",
]
