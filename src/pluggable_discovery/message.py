"""Message codec - commands out, JSON envelopes in

Commands travel from the client to the discovery as single ASCII lines.
Replies and events travel back as JSON objects, one after another on the
discovery's stdout. They are usually newline separated and indented, but the
decoder does not rely on it: it extracts one complete top-level object at a
time from the byte stream.

## Envelope

Every envelope is a flat object:

```
{
  "eventType": "hello" | "start" | "stop" | "start_sync" | "list" | "add" | "remove" | ...,
  "message": "OK",            (optional)
  "error": true,              (optional)
  "protocolVersion": 1,       (hello only)
  "ports": [...],             (list only)
  "port": {...}               (add/remove only)
}
```

On decode the flat object becomes one of the Message classes below, chosen
by `eventType`, so callers never have to guess which optional field is set.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional

from jsonschema import Draft7Validator

from pluggable_discovery.port import PORT_SCHEMA, Port


# Protocol version spoken by both sides
PROTOCOL_VERSION = 1

# Read size for the streaming decoder
READ_CHUNK = 4096

# Tails an incomplete object may stop on while the rest is still in the pipe:
# a cut literal (json also takes NaN and Infinity) or a cut number
_PARTIAL_VALUE = re.compile(
    r"-?|-?I(n(f(i(n(i(ty?)?)?)?)?)?)?|N(aN?)?|t(r(ue?)?)?|f(a(l(se?)?)?)?|n(u(ll?)?)?"
)
_PARTIAL_NUMBER = re.compile(r"\.\d*|(\.\d+)?[eE][-+]?")

_JSON = json.JSONDecoder()

EVENT_HELLO = "hello"
EVENT_START = "start"
EVENT_STOP = "stop"
EVENT_START_SYNC = "start_sync"
EVENT_LIST = "list"
EVENT_ADD = "add"
EVENT_REMOVE = "remove"
EVENT_QUIT = "quit"
EVENT_COMMAND_ERROR = "command_error"

PORT_EVENTS = (EVENT_ADD, EVENT_REMOVE)


class MessageError(Exception):
    """Base codec error"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DecodeError(MessageError):
    """The byte stream does not contain valid JSON"""
    pass


class InvalidMessageError(MessageError):
    """The JSON value is not a valid envelope"""
    pass


# =========================================================================
# Envelopes
# =========================================================================

@dataclass
class Message:
    """A reply or event with no payload beyond its status text"""
    event_type: str
    message: str = ""
    error: bool = False

    @classmethod
    def ok(cls, event_type: str) -> "Message":
        return cls(event_type, message="OK")

    @classmethod
    def failure(cls, event_type: str, message: str) -> "Message":
        return cls(event_type, message=message, error=True)

    def is_ok(self) -> bool:
        """True if the status text is "OK", ignoring case"""
        return self.message.upper() == "OK"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"eventType": self.event_type}
        if self.message:
            data["message"] = self.message
        if self.error:
            data["error"] = True
        return data

    def _describe(self) -> List[str]:
        parts = [f"type: {self.event_type}"]
        if self.message:
            parts.append(f"message: {self.message}")
        if self.error:
            parts.append("error: true")
        return parts

    def __str__(self) -> str:
        return ", ".join(self._describe())


@dataclass
class HelloMessage(Message):
    """Handshake reply"""
    protocol_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.protocol_version:
            data["protocolVersion"] = self.protocol_version
        return data

    def _describe(self) -> List[str]:
        parts = super()._describe()
        if self.protocol_version:
            parts.append(f"protocol version: {self.protocol_version}")
        return parts


@dataclass
class ListMessage(Message):
    """LIST reply carrying the current ports"""
    ports: List[Port] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if not self.error:
            data["ports"] = [p.to_dict() for p in self.ports]
        return data

    def _describe(self) -> List[str]:
        parts = super()._describe()
        if self.ports:
            parts.append(f"ports: [{' '.join(str(p) for p in self.ports)}]")
        return parts


@dataclass
class PortMessage(Message):
    """An "add" or "remove" event"""
    port: Optional[Port] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.port is not None:
            data["port"] = self.port.to_dict()
        return data

    def _describe(self) -> List[str]:
        parts = super()._describe()
        if self.port is not None:
            parts.append(f"port: {self.port}")
        return parts


# Wire shape of an envelope. Fields that do not apply to an event type are ignored.
ENVELOPE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "eventType": {"type": ["string", "null"]},
        "message": {"type": ["string", "null"]},
        "error": {"type": ["boolean", "null"]},
        "protocolVersion": {"type": ["integer", "null"]},
        "ports": {"type": ["array", "null"], "items": PORT_SCHEMA},
        "port": {"anyOf": [{"type": "null"}, PORT_SCHEMA]},
    },
}

_ENVELOPE_VALIDATOR = Draft7Validator(ENVELOPE_SCHEMA)


def decode_message(data: Any) -> Message:
    """Turn a decoded JSON value into the matching Message variant

    Raises:
        InvalidMessageError: If the value does not match ENVELOPE_SCHEMA, or
            an add/remove event has no port
    """
    errors = list(_ENVELOPE_VALIDATOR.iter_errors(data))
    if errors:
        details = "; ".join(e.message for e in errors)
        raise InvalidMessageError(f"invalid message: {details}")

    event_type = data.get("eventType") or ""
    text = data.get("message") or ""
    error = data.get("error") or False

    if event_type == EVENT_HELLO:
        version = int(data.get("protocolVersion") or 0)
        return HelloMessage(event_type, text, error, protocol_version=version)

    if event_type == EVENT_LIST:
        ports = [Port.from_dict(p) for p in data.get("ports") or []]
        return ListMessage(event_type, text, error, ports=ports)

    if event_type in PORT_EVENTS:
        raw_port = data.get("port")
        if raw_port is None:
            raise InvalidMessageError(f"invalid '{event_type}' message: missing port")
        return PortMessage(event_type, text, error, port=Port.from_dict(raw_port))

    return Message(event_type, text, error)


def encode_message(message: Message) -> bytes:
    """Serialize an envelope the way the server writes it: indented, newline terminated"""
    return (json.dumps(message.to_dict(), indent=2) + "\n").encode("utf-8")


# =========================================================================
# Commands
# =========================================================================

def encode_command(name: str, *args: str) -> bytes:
    """Build a command line, e.g. encode_command("LIST") -> b"LIST\\n" """
    line = " ".join((name,) + args)
    if "\n" in line:
        raise ValueError("command must fit on a single line")
    return (line + "\n").encode("ascii")


def hello_command(protocol_version: int, agent: str) -> bytes:
    """Build the HELLO handshake command"""
    if '"' in agent:
        raise ValueError("user agent must not contain double quotes")
    if not agent.isascii():
        raise ValueError("user agent must be ASCII")
    return encode_command("HELLO", str(protocol_version), f'"{agent}"')


# =========================================================================
# Streaming decoder
# =========================================================================

class MessageDecoder:
    """Reads successive JSON objects from a binary stream.

    Objects may be separated by any amount of whitespace, or by nothing at
    all. The decoder scans for the end of the current top-level object
    (tracking strings and escapes) and only then hands the bytes to the json
    module, so a slow writer never produces a spurious parse error.
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.buffer = bytearray()
        self._eof = False

    def decode(self) -> Optional[Dict[str, Any]]:
        """Return the next object, or None on clean end of stream

        Raises:
            DecodeError: On malformed JSON, a non-object value, or a stream
                that ends in the middle of an object
        """
        scan = 0
        depth = 0
        in_string = False
        escaped = False
        start = None

        while True:
            while scan < len(self.buffer):
                c = self.buffer[scan]
                if start is None:
                    if c in b" \t\r\n":
                        scan += 1
                        continue
                    if c != ord("{"):
                        raise DecodeError(
                            f"invalid character {chr(c)!r} looking for beginning of object"
                        )
                    start = scan
                elif in_string:
                    if escaped:
                        escaped = False
                    elif c == ord("\\"):
                        escaped = True
                    elif c == ord('"'):
                        in_string = False
                    scan += 1
                    continue

                if c == ord('"'):
                    in_string = True
                elif c in b"{[":
                    depth += 1
                elif c in b"}]":
                    depth -= 1
                    if depth == 0:
                        raw = bytes(self.buffer[start:scan + 1])
                        del self.buffer[:scan + 1]
                        return self._parse(raw)
                scan += 1

            if start is None:
                # Only whitespace so far, safe to drop
                del self.buffer[:scan]
                scan = 0
            elif not in_string:
                self._check_prefix(start)

            if self._eof or not self._fill():
                if start is None:
                    return None
                raise DecodeError("unexpected EOF")

    def _fill(self) -> bool:
        # Read errors (OSError) are transport failures, not decode failures
        read = getattr(self.stream, "read1", None)
        data = read(READ_CHUNK) if read is not None else self.stream.read(1)
        if not data:
            self._eof = True
            return False
        self.buffer.extend(data)
        return True

    def _check_prefix(self, start: int) -> None:
        """Fail early if the incomplete object can never become valid JSON.

        The buffered text is parsed as far as it goes. Running out of input
        is fine, and so is stopping on a literal or number that the next
        read may complete. Any other error means no later bytes can repair
        the object, so waiting for them would block forever.
        """
        text = self.buffer[start:].decode("utf-8", errors="replace")
        try:
            _JSON.raw_decode(text)
        except json.JSONDecodeError as e:
            tail = text[e.pos:].strip()
            if not tail:
                return
            partial = _PARTIAL_VALUE if e.msg == "Expecting value" else _PARTIAL_NUMBER
            if partial.fullmatch(tail) is None:
                raise DecodeError(f"invalid JSON: {e}")

    @staticmethod
    def _parse(raw: bytes) -> Dict[str, Any]:
        try:
            return json.loads(raw)
        except ValueError as e:
            raise DecodeError(f"invalid JSON: {e}")

    def next_message(self) -> Optional[Message]:
        """Decode the next envelope, or None on clean end of stream"""
        data = self.decode()
        if data is None:
            return None
        return decode_message(data)
