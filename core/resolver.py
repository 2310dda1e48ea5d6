"""Dataref/command name resolution with a process-wide handle cache.

The cache lives for the whole session. Names the simulator does not know
(or that failed to resolve) are cached as MISSING so the tick does not pay
a lookup round-trip for them again; clear() drops everything, which is what
a manual profile reload does.
"""
import logging
import threading

from core.errors import ResolutionError, TransportError
from core.state import MISSING

LOG = logging.getLogger("bravobridge.resolver")


def pick(value, index=0):
    """Reduce a raw telemetry value to one number (array datarefs use index)"""
    if value is MISSING or value is None:
        return MISSING
    if isinstance(value, (list, tuple)):
        if not value:
            return MISSING
        if 0 <= index < len(value):
            value = value[index]
        else:
            value = value[0]
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    return MISSING


class DatarefResolver:
    """Memoizing front of a telemetry/command service.

    The service needs lookup_dataref(name), lookup_command(name), read(handle),
    write(handle, value, index=None) and invoke(handle); lookups raise
    ResolutionError for unknown names and every call may raise TransportError.
    """

    def __init__(self, service):
        self.service = service
        self._datarefs = {}
        self._commands = {}
        self._lock = threading.Lock()

    def resolve(self, name: str):
        """Handle for a dataref name, or MISSING"""
        return self._resolve(name, self._datarefs, self.service.lookup_dataref, "dataref")

    def resolve_command(self, name: str):
        """Handle for a command name, or MISSING"""
        return self._resolve(name, self._commands, self.service.lookup_command, "command")

    def _resolve(self, name, cache, lookup, kind):
        if not name:
            return MISSING
        with self._lock:
            if name in cache:
                return cache[name]
        try:
            handle = lookup(name)
        except ResolutionError:
            handle = MISSING
            reason = "unknown to the simulator"
        except TransportError as e:
            handle = MISSING
            reason = str(e)
        else:
            reason = None
        with self._lock:
            if name in cache:
                return cache[name]
            cache[name] = handle
        if handle is MISSING:
            LOG.warning("%s %s unavailable for this session: %s", kind, name, reason)
        else:
            LOG.debug("resolved %s %s -> %r", kind, name, handle)
        return handle

    def read(self, handle):
        """Latest raw value behind handle, or MISSING. Not cached."""
        if handle is MISSING:
            return MISSING
        try:
            return self.service.read(handle)
        except TransportError as e:
            LOG.debug("read of %r failed: %s", handle, e)
            return MISSING

    def read_value(self, handle, index=0):
        return pick(self.read(handle), index)

    def write(self, handle, value, index=None):
        """Write a value; raises ResolutionError/TransportError on failure"""
        if handle is MISSING:
            raise ResolutionError("<unresolved>")
        self.service.write(handle, value, index)

    def invoke(self, handle):
        """Run a command once; raises ResolutionError/TransportError on failure"""
        if handle is MISSING:
            raise ResolutionError("<unresolved>", kind="command")
        self.service.invoke(handle)

    def cached(self):
        with self._lock:
            return dict(self._datarefs), dict(self._commands)

    def clear(self):
        with self._lock:
            self._datarefs.clear()
            self._commands.clear()
        LOG.info("resolver cache cleared")
