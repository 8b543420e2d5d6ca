"""Tests for the discovery Server, driven with in-memory streams"""

import io
import socket
import threading

import pytest

from pluggable_discovery.logger import NullLogger
from pluggable_discovery.message import MessageDecoder
from pluggable_discovery.port import Port
from pluggable_discovery.server import Discovery, OutputError, PortRegistry, Server

from fake_discovery import FakeDiscovery, make_port


HELLO = b'HELLO 1 "test-client 1.0"\n'


def serve(discovery, *commands):
    """Run a server over the given command lines, return the decoded envelopes"""
    reader = io.BytesIO(b"".join(commands))
    writer = io.BytesIO()
    Server(discovery).run(reader, writer)
    writer.seek(0)
    decoder = MessageDecoder(writer)
    messages = []
    while True:
        value = decoder.decode()
        if value is None:
            return messages
        messages.append(value)


def kinds(messages):
    return [m["eventType"] for m in messages]


class BrokenWriter:
    def write(self, data):
        raise BrokenPipeError(32, "Broken pipe")

    def flush(self):
        pass


# TEST100: Test HELLO is answered with the protocol version
def test_100_hello():
    discovery = FakeDiscovery()
    messages = serve(discovery, HELLO)
    assert messages == [{"eventType": "hello", "message": "OK", "protocolVersion": 1}]
    assert discovery.calls == [("hello", "test-client 1.0", 1)]


# TEST101: Test commands before HELLO are refused
def test_101_command_before_hello():
    discovery = FakeDiscovery()
    messages = serve(discovery, b"START\n", b"list\n")
    assert messages == [
        {"eventType": "command_error", "message": "First command must be HELLO, but got 'START'", "error": True},
        {"eventType": "command_error", "message": "First command must be HELLO, but got 'LIST'", "error": True},
    ]
    assert discovery.calls == []


# TEST102: Test HELLO with a protocol version other than 1 is refused
def test_102_hello_unsupported_version():
    messages = serve(FakeDiscovery(), b'HELLO 2 "client"\n', b"START\n")
    assert messages[0] == {
        "eventType": "hello",
        "message": "Unsupported protocol version: 2 (supported: 1)",
        "error": True,
    }
    # still not initialized
    assert messages[1]["eventType"] == "command_error"


# TEST103: Test malformed HELLO arguments are refused
@pytest.mark.parametrize("line", [
    b"HELLO\n",
    b"HELLO 1 client\n",
    b'HELLO one "client"\n',
    b'HELLO 1 ""\n',
])
def test_103_hello_malformed(line):
    messages = serve(FakeDiscovery(), line)
    assert messages == [{"eventType": "hello", "message": "Invalid HELLO command", "error": True}]


# TEST104: Test a second HELLO is refused
def test_104_hello_twice():
    messages = serve(FakeDiscovery(), HELLO, HELLO)
    assert messages[1] == {"eventType": "hello", "message": "HELLO already called", "error": True}


# TEST105: Test an implementation failing hello() is reported
def test_105_hello_implementation_error():
    messages = serve(FakeDiscovery(fail_hello="no hardware"), HELLO)
    assert messages == [{"eventType": "hello", "message": "no hardware", "error": True}]


# TEST106: Test unknown commands are refused without ending the session
def test_106_unknown_command():
    messages = serve(FakeDiscovery(), HELLO, b"FROB 1\n", b"STOP\n")
    assert messages[1] == {"eventType": "command_error", "message": "Command FROB not supported", "error": True}
    assert messages[2]["eventType"] == "stop"


# TEST107: Test the START_SYNC reply precedes the initial add burst
def test_107_start_sync_reply_precedes_events():
    discovery = FakeDiscovery(initial_ports=[make_port(1), make_port(2)])
    messages = serve(discovery, HELLO, b"START_SYNC\n")

    assert kinds(messages) == ["hello", "start_sync", "add", "add"]
    assert messages[1]["message"] == "OK"
    assert [m["port"]["address"] for m in messages[2:]] == ["1", "2"]
    assert messages[2]["port"]["properties"] == {"vid": "0x2341", "pid": "0x0041", "mac": "384782"}


# TEST108: Test LIST in poll mode returns the tracked ports without events
def test_108_poll_mode_list():
    discovery = FakeDiscovery(initial_ports=[make_port(1), make_port(2), make_port(3)])
    messages = serve(discovery, HELLO, b"START\n", b"LIST\n")

    assert kinds(messages) == ["hello", "start", "list"]
    assert [p["address"] for p in messages[2]["ports"]] == ["1", "2", "3"]


# TEST109: Test LIST before START is an empty list
def test_109_list_empty():
    messages = serve(FakeDiscovery(), HELLO, b"LIST\n")
    assert messages[1] == {"eventType": "list", "ports": []}


# TEST110: Test a failing start_sync() is reported with the command prefix
def test_110_start_failure():
    discovery = FakeDiscovery(fail_start_sync="port busy")
    messages = serve(discovery, HELLO, b"START\n", b"START_SYNC\n", b"STOP\n")
    assert messages[1] == {"eventType": "start", "message": "Cannot START: port busy", "error": True}
    assert messages[2] == {"eventType": "start_sync", "message": "Cannot START_SYNC: port busy", "error": True}
    # nothing started, so nothing to stop
    assert messages[3] == {"eventType": "stop", "message": "Discovery already STOPped", "error": True}


# TEST111: Test STOP when idle is refused
def test_111_stop_when_idle():
    messages = serve(FakeDiscovery(), HELLO, b"STOP\n")
    assert messages[1] == {"eventType": "stop", "message": "Discovery already STOPped", "error": True}


# TEST112: Test a failing stop() keeps the session running
def test_112_stop_failure():
    discovery = FakeDiscovery(fail_stop="stuck")
    messages = serve(discovery, HELLO, b"START\n", b"STOP\n", b"START\n")
    assert messages[2] == {"eventType": "stop", "message": "Cannot STOP: stuck", "error": True}
    assert messages[3] == {"eventType": "start", "message": "Discovery already STARTed", "error": True}


# TEST113: Test callbacks after STOP are dropped
def test_113_late_callback_dropped():
    def late_add(discovery):
        discovery.event_cb("add", make_port(9))

    discovery = FakeDiscovery(initial_ports=[make_port(1)], on_quit=late_add)
    messages = serve(discovery, HELLO, b"START_SYNC\n", b"STOP\n", b"QUIT\n")

    assert kinds(messages) == ["hello", "start_sync", "add", "stop", "quit"]


# TEST114: Test error_cb in sync mode is written as a start_sync error and ends the stream
def test_114_error_callback_sync_mode():
    class Failing(FakeDiscovery):
        def start_sync(self, event_cb, error_cb):
            super().start_sync(event_cb, error_cb)
            error_cb("device unplugged")
            event_cb("add", make_port(7))

    messages = serve(Failing(initial_ports=[make_port(1)]), HELLO, b"START_SYNC\n")

    assert kinds(messages) == ["hello", "start_sync", "add", "start_sync"]
    assert messages[3] == {"eventType": "start_sync", "message": "device unplugged", "error": True}


# TEST115: Test error_cb in poll mode makes LIST fail until the next start
def test_115_error_callback_poll_mode():
    class Failing(FakeDiscovery):
        def start_sync(self, event_cb, error_cb):
            super().start_sync(event_cb, error_cb)
            if len([c for c in self.calls if c[0] == "start_sync"]) == 1:
                error_cb("device unplugged")

    discovery = Failing(initial_ports=[make_port(1)])
    messages = serve(discovery, HELLO, b"START\n", b"LIST\n", b"STOP\n", b"START\n", b"LIST\n")

    assert messages[2] == {"eventType": "list", "message": "device unplugged", "error": True}
    assert [p["address"] for p in messages[5]["ports"]] == ["1"]


# TEST116: Test QUIT replies, calls quit() and ends run()
def test_116_quit():
    discovery = FakeDiscovery()
    messages = serve(discovery, HELLO, b"QUIT\n", b"START\n")
    assert messages[1] == {"eventType": "quit", "message": "OK"}
    assert len(messages) == 2
    assert discovery.calls[-1] == ("quit",)


# TEST117: Test QUIT is honored before HELLO
def test_117_quit_before_hello():
    messages = serve(FakeDiscovery(), b"QUIT\n")
    assert messages == [{"eventType": "quit", "message": "OK"}]


# TEST118: Test end of input returns from run() without a reply
def test_118_eof():
    messages = serve(FakeDiscovery(), HELLO)
    assert len(messages) == 1


# TEST119: Test commands are case-insensitive
def test_119_case_insensitive_commands():
    messages = serve(FakeDiscovery(), b'hello 1 "client"\n', b"start\n", b"Stop\n")
    assert [m.get("error", False) for m in messages] == [False, False, False]
    assert kinds(messages) == ["hello", "start", "stop"]


# TEST120: Test START_SYNC after START restarts the implementation in sync mode
def test_120_start_then_start_sync():
    discovery = FakeDiscovery(initial_ports=[make_port(1)])
    messages = serve(discovery, HELLO, b"START\n", b"START_SYNC\n", b"START\n")

    assert kinds(messages) == ["hello", "start", "start_sync", "add", "start"]
    assert messages[4]["message"] == "Discovery already START_SYNCed, cannot START"
    assert [c[0] for c in discovery.calls] == ["hello", "start_sync", "stop", "start_sync"]


# TEST121: Test START_SYNC twice gives a fresh add burst
def test_121_start_sync_twice():
    discovery = FakeDiscovery(initial_ports=[make_port(1)])
    messages = serve(discovery, HELLO, b"START_SYNC\n", b"START_SYNC\n")
    assert kinds(messages) == ["hello", "start_sync", "add", "start_sync", "add"]


# TEST122: Test a write failure makes run() raise OutputError
def test_122_write_failure():
    server = Server(FakeDiscovery(), logger=NullLogger())
    with pytest.raises(OutputError, match="write failed"):
        server.run(io.BytesIO(HELLO + b"LIST\n"), BrokenWriter())


# TEST123: Test the callbacks reject bad arguments
def test_123_callback_argument_checks():
    errors = []

    class Checking(FakeDiscovery):
        def start_sync(self, event_cb, error_cb):
            super().start_sync(event_cb, error_cb)
            for args in (("update", make_port(1)), ("add", {"address": "1"})):
                try:
                    event_cb(*args)
                except (ValueError, TypeError) as e:
                    errors.append(type(e))

    messages = serve(Checking(), HELLO, b"START_SYNC\n")
    assert errors == [ValueError, TypeError]
    assert kinds(messages) == ["hello", "start_sync"]


# TEST124: Test the registry keys ports by address and protocol
def test_124_port_registry():
    registry = PortRegistry()
    registry.add(Port(address="1", protocol="serial", address_label="old"))
    registry.add(Port(address="1", protocol="network"))
    registry.add(Port(address="2", protocol="serial"))
    registry.add(Port(address="1", protocol="serial", address_label="new"))

    assert len(registry) == 3
    assert [(p.address, p.protocol) for p in registry.snapshot()] == [
        ("1", "serial"), ("1", "network"), ("2", "serial"),
    ]
    assert registry.snapshot()[0].address_label == "new"

    registry.remove(Port(address="1", protocol="serial"))
    assert Port(address="1", protocol="serial") not in registry
    assert Port(address="1", protocol="network") in registry

    registry.remove(Port(address="missing"))
    registry.clear()
    assert registry.snapshot() == []


# TEST125: Test Discovery cannot be instantiated without the four operations
def test_125_discovery_is_abstract():
    class Partial(Discovery):
        def hello(self, user_agent, protocol_version):
            pass

    with pytest.raises(TypeError):
        Partial()


# TEST126: Test a write failure ends run() even while the client sends nothing more
def test_126_write_failure_with_idle_input():
    commands, feed = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    feed.sendall(HELLO + b"START_SYNC\n")
    discovery = FakeDiscovery(initial_ports=[make_port(1)])
    server = Server(discovery)
    raised = []

    def serve_forever():
        try:
            server.run(commands.makefile("rb"), BrokenWriter())
        except OutputError as e:
            raised.append(e)

    t = threading.Thread(target=serve_forever, daemon=True)
    t.start()
    t.join(timeout=5)

    try:
        assert not t.is_alive(), "run() must return after a write failure"
        assert len(raised) == 1
        assert "Broken pipe" in raised[0].message
        # a running session is stopped before run() raises
        started = [c[0] for c in discovery.calls].count("start_sync")
        stopped = [c[0] for c in discovery.calls].count("stop")
        assert stopped == started
    finally:
        feed.close()
        commands.close()
