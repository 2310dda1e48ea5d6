import threading

from core.errors import ResolutionError, TransportError
from core.state import Profile


class FakeXPlane:
    """In-memory telemetry/command service"""

    def __init__(self, values=None, commands=()):
        self.values = dict(values or {})
        self.commands = set(commands)
        self.invoked = []
        self.writes = []
        self.lookups = []
        self.fail_reads = set()
        self.fail_commands = set()
        self.down = False
        self._lock = threading.Lock()

    def lookup_dataref(self, name):
        self.lookups.append(name)
        if self.down:
            raise TransportError("connection refused")
        if name not in self.values:
            raise ResolutionError(name)
        return f"dataref:{name}"

    def lookup_command(self, name):
        self.lookups.append(name)
        if name not in self.commands:
            raise ResolutionError(name, kind="command")
        return f"command:{name}"

    def read(self, handle):
        name = handle.split(":", 1)[1]
        if self.down or name in self.fail_reads:
            raise TransportError(f"read {name} timed out")
        return self.values[name]

    def write(self, handle, value, index=None):
        name = handle.split(":", 1)[1]
        with self._lock:
            self.writes.append((name, value, index))
            if index is not None:
                self.values[name][index] = value
            else:
                self.values[name] = value

    def invoke(self, handle):
        name = handle.split(":", 1)[1]
        if name in self.fail_commands:
            raise TransportError(f"{name}: HTTP 500")
        with self._lock:
            self.invoked.append(name)


class LedSpy:
    """Records activate/deactivate calls per light"""

    def __init__(self):
        self.calls = []

    def bind(self, engine, *names):
        for name in names:
            engine.bind_led(name, self._cb(name, "on"), self._cb(name, "off"))

    def _cb(self, name, what):
        def cb():
            self.calls.append((name, what))
        return cb

    def for_led(self, name):
        return [what for n, what in self.calls if n == name]


def make_profile(**sections):
    sections.setdefault("metadata", {"name": "Test", "selectors": ["TEST"]})
    return Profile.from_dict(sections)
