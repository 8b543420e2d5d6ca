"""Discovery implementations used by the tests.

Run as a script it serves TickingDiscovery on stdin/stdout, which is what
the real-subprocess test spawns.
"""

import threading
from typing import List, Optional

from pluggable_discovery import Discovery, Port, Server, StderrLogger


def make_port(n: int, protocol: str = "dummy") -> Port:
    return Port(
        address=str(n),
        address_label="Dummy upload port",
        protocol=protocol,
        protocol_label="Dummy protocol",
        properties={"vid": "0x2341", "pid": "0x0041", "mac": str(n * 384782)},
    )


class FakeDiscovery(Discovery):
    """Synchronous discovery: reports its initial ports from inside start_sync()"""

    def __init__(
        self,
        initial_ports: Optional[List[Port]] = None,
        fail_hello: Optional[str] = None,
        fail_start_sync: Optional[str] = None,
        fail_stop: Optional[str] = None,
        on_quit=None,
    ):
        self.initial_ports = list(initial_ports or [])
        self.fail_hello = fail_hello
        self.fail_start_sync = fail_start_sync
        self.fail_stop = fail_stop
        self.on_quit = on_quit
        self.calls = []
        self.event_cb = None
        self.error_cb = None

    def hello(self, user_agent, protocol_version):
        self.calls.append(("hello", user_agent, protocol_version))
        if self.fail_hello:
            raise RuntimeError(self.fail_hello)

    def start_sync(self, event_cb, error_cb):
        self.calls.append(("start_sync",))
        if self.fail_start_sync:
            raise RuntimeError(self.fail_start_sync)
        self.event_cb = event_cb
        self.error_cb = error_cb
        for port in self.initial_ports:
            event_cb("add", port)

    def stop(self):
        self.calls.append(("stop",))
        if self.fail_stop:
            raise RuntimeError(self.fail_stop)

    def quit(self):
        self.calls.append(("quit",))
        if self.on_quit is not None:
            self.on_quit(self)


class TickingDiscovery(Discovery):
    """Emits two ports at once, then adds and removes a port every interval"""

    def __init__(self, interval: float = 0.1, rounds: int = 2):
        self.interval = interval
        self.rounds = rounds
        self._counter = 0
        self._halt: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    def hello(self, user_agent, protocol_version):
        pass

    def start_sync(self, event_cb, error_cb):
        halt = threading.Event()
        self._halt = halt
        self._thread = threading.Thread(
            target=self._emit, args=(halt, event_cb, error_cb), daemon=True
        )
        self._thread.start()

    def _emit(self, halt, event_cb, error_cb):
        event_cb("add", self._next_port())
        event_cb("add", self._next_port())
        for _ in range(self.rounds):
            if halt.wait(self.interval):
                return
            port = self._next_port()
            event_cb("add", port)
            if halt.wait(self.interval):
                return
            event_cb("remove", Port(address=port.address, protocol=port.protocol))
        error_cb("unrecoverable error, cannot send more events")

    def _next_port(self) -> Port:
        self._counter += 1
        return make_port(self._counter)

    def stop(self):
        if self._halt is not None:
            self._halt.set()
            self._thread.join()
            self._halt = None

    def quit(self):
        self.stop()


if __name__ == "__main__":
    Server(TickingDiscovery(rounds=50), logger=StderrLogger(prefix="[fake-discovery] ")).run()
